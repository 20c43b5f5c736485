"""
Early-stopping monitors consulted by the simulation runner.

Each monitor looks at the running counts after an iteration completes and
either returns ``None`` (keep going) or the ``Termination`` reason it wants
to stop with. The runner consults them in a fixed order (convergence,
power, runtime) and the first abort request wins.
"""

import time
from enum import Enum
from typing import Callable, Optional

from ..config import EarlyStopRules


class Termination(Enum):
    """Why a run stopped."""

    ONGOING = "ongoing"
    COMPLETED = "completed"
    EXCESS_NONCONVERGENCE = "excess-nonconvergence"
    LOW_POWER = "low-power"
    TIME_BUDGET_EXCEEDED = "time-budget-exceeded"

    @property
    def aborted(self) -> bool:
        """True for the policy aborts."""
        return self not in (Termination.ONGOING, Termination.COMPLETED)


class ConvergenceTracker:
    """Aborts when too many fits fail to converge.

    After every iteration beyond ``rules.min_iterations`` the number of
    non-converged fits is compared with ``rules.max_nonconvergence * nsim``.
    With *override* the condition is only flagged.
    """

    def __init__(self, nsim: int, rules: EarlyStopRules, override: bool = False):
        self.nsim = nsim
        self.rules = rules
        self.override = override
        self.flagged = False
        self.flagged_at: Optional[int] = None

    @property
    def threshold(self) -> float:
        return self.rules.max_nonconvergence * self.nsim

    def check(self, iteration: int, n_nonconverged: int) -> Optional[Termination]:
        if iteration <= self.rules.min_iterations or n_nonconverged <= self.threshold:
            return None
        if self.override:
            if not self.flagged:
                self.flagged = True
                self.flagged_at = iteration
            return None
        return Termination.EXCESS_NONCONVERGENCE


class PowerMonitor:
    """Aborts when the running power estimate is clearly too low.

    Checked on iterations past ``rules.min_iterations`` that are multiples
    of ``rules.power_check_every``. Power is the share of significant
    results among converged fits; nothing is checked until a fit converges.
    """

    def __init__(self, rules: EarlyStopRules, override: bool = False):
        self.rules = rules
        self.override = override
        self.last_power: Optional[float] = None

    def is_checkpoint(self, iteration: int) -> bool:
        return iteration > self.rules.min_iterations and iteration % self.rules.power_check_every == 0

    def check(self, iteration: int, n_converged: int, n_significant: int) -> Optional[Termination]:
        if not self.is_checkpoint(iteration) or n_converged == 0:
            return None
        self.last_power = n_significant / n_converged
        if self.last_power < self.rules.min_power and not self.override:
            return Termination.LOW_POWER
        return None


class RuntimeBudgetEstimator:
    """Projects the total runtime once and aborts when it exceeds the budget.

    At ``rules.time_check_iteration`` the projected total is
    ``elapsed + mean_iteration_time * (nsim - iteration)``. The projection is
    kept on ``projected_total`` whether or not the ceiling is enforced.

    Args:
        nsim: Planned number of iterations.
        rules: Early-stopping thresholds.
        override: Disable the ceiling (projection is still computed).
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        nsim: int,
        rules: EarlyStopRules,
        override: bool = True,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.nsim = nsim
        self.rules = rules
        self.override = override
        self._clock = clock
        self._start: Optional[float] = None
        self.projected_total: Optional[float] = None

    def start(self):
        self._start = self._clock()

    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return self._clock() - self._start

    def check(self, iteration: int) -> Optional[Termination]:
        if iteration != self.rules.time_check_iteration:
            return None
        elapsed = self.elapsed()
        self.projected_total = elapsed + (elapsed / iteration) * (self.nsim - iteration)
        if self.projected_total > self.rules.time_limit_seconds and not self.override:
            return Termination.TIME_BUDGET_EXCEEDED
        return None
