"""
Run configuration for CRTPower.

``SimulationConfig`` bundles everything one power simulation needs: the
trial design, the number of simulated trials, the analysis method, the
seed, and the early-stopping policy. Configs are immutable and validated
on construction; use ``dataclasses.replace`` to derive variants.
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .stats.data_generation import DatasetGenerator
from .utils.validators import (
    _combine,
    _validate_alpha,
    _validate_count,
    _validate_flag,
    _validate_method,
    _validate_parallel_settings,
    _validate_seed,
    _validate_simulations,
    _validate_stop_rules,
    _ValidationResult,
)


class FitMethod(Enum):
    """Analysis model applied to every simulated dataset."""

    GLMM = "glmm"
    GEE = "gee"


@dataclass(frozen=True)
class EarlyStopRules:
    """Thresholds of the adaptive early-stopping policy.

    Attributes:
        min_iterations: Convergence and power checks only start after
            this many iterations.
        max_nonconvergence: Abort once non-converged fits exceed this
            share of ``nsim``.
        power_check_every: Power is checked on iterations divisible by
            this number (after ``min_iterations``).
        min_power: Abort when the running power estimate falls below this.
        time_check_iteration: Iteration at which the total runtime is
            projected.
        time_limit_seconds: Abort when the projected runtime exceeds this.
    """

    min_iterations: int = 50
    max_nonconvergence: float = 0.25
    power_check_every: int = 10
    min_power: float = 0.5
    time_check_iteration: int = 10
    time_limit_seconds: float = 120.0

    def __post_init__(self):
        _validate_stop_rules(self).raise_if_invalid()


@dataclass(frozen=True)
class SimulationConfig:
    """Immutable configuration of a single power simulation.

    Attributes:
        design: Dataset generator describing the trial.
        nsim: Number of simulated trials (0 yields an empty report).
        alpha: Significance level, strictly inside (0, 1).
        method: ``FitMethod`` or its string value (``"glmm"``/``"gee"``).
        seed: Base seed; ``None`` draws one from fresh entropy per run.
        poor_fit_override: Keep going when non-convergence exceeds the
            threshold (recorded as a report warning).
        low_power_override: Keep going when the running power is low.
        time_limit_override: Disable the runtime ceiling (default).
        retain_all_datasets: Keep every simulated dataset in the report.
        quiet: Suppress start/complete console messages.
        n_jobs: ``None`` for sequential, a worker count, or ``-1`` for all
            cores.
        stop_rules: Early-stopping thresholds.
        max_fit_attempts: Fit attempts per dataset before recording
            non-convergence.

    Example:
        >>> from crtpower import MultiArmNormalDesign, SimulationConfig
        >>> design = MultiArmNormalDesign.balanced(2, 10, 20, [0, 0.5], 1.0, 0.1)
        >>> config = SimulationConfig(design=design, nsim=200, seed=2137)
    """

    design: DatasetGenerator
    nsim: int = 1000
    alpha: float = 0.05
    method: Union[FitMethod, str] = FitMethod.GLMM
    seed: Optional[int] = None
    poor_fit_override: bool = False
    low_power_override: bool = False
    time_limit_override: bool = True
    retain_all_datasets: bool = False
    quiet: bool = True
    n_jobs: Optional[int] = None
    stop_rules: EarlyStopRules = field(default_factory=EarlyStopRules)
    max_fit_attempts: int = 2

    def __post_init__(self):
        nsim, nsim_result = _validate_simulations(self.nsim)
        _, parallel_result = _validate_parallel_settings(self.n_jobs)
        method = self.method.value if isinstance(self.method, FitMethod) else self.method
        checks = [
            nsim_result,
            _validate_alpha(self.alpha),
            _validate_method(method, [m.value for m in FitMethod]),
            _validate_seed(self.seed),
            parallel_result,
            _validate_count(self.max_fit_attempts, "max_fit_attempts"),
        ]
        for name in ("poor_fit_override", "low_power_override", "time_limit_override", "retain_all_datasets", "quiet"):
            checks.append(_validate_flag(getattr(self, name), name))
        if not isinstance(self.design, DatasetGenerator):
            checks.append(_ValidationResult(False, [f"design must implement the DatasetGenerator protocol, got {type(self.design).__name__}"], []))
        if not isinstance(self.stop_rules, EarlyStopRules):
            checks.append(_ValidationResult(False, ["stop_rules must be an EarlyStopRules instance"], []))

        result = _combine(checks)
        result.raise_if_invalid()
        for message in result.warnings:
            warnings.warn(message, stacklevel=3)

        object.__setattr__(self, "nsim", nsim)
        object.__setattr__(self, "method", FitMethod(method))
        object.__setattr__(self, "max_fit_attempts", int(self.max_fit_attempts))

    @property
    def workers(self) -> int:
        """Resolved worker count (1 = sequential)."""
        workers, _ = _validate_parallel_settings(self.n_jobs)
        return workers
