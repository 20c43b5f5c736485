"""
Simulation execution for CRTPower.

This module contains the Monte Carlo loop: for each iteration it draws a
dataset from the design, fits the analysis model (retrying transient
failures), records the outcome, and consults the early-stopping monitors.
Iterations may be computed by a joblib worker pool, but results are always
merged and checked in iteration order by the runner alone.
"""

import time
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import SimulationConfig
from ..progress import ProgressReporter, SimulationCancelled
from ..stats.data_generation import DatasetGenerator, ModelSpec
from ..stats.fitting import FitFailure, FitResult, ModelFitter, get_fitter
from .monitors import ConvergenceTracker, PowerMonitor, RuntimeBudgetEstimator, Termination
from .results import IterationResult, PowerReport, build_power_report

_NAN = float("nan")


class SimulationError(RuntimeError):
    """A dataset generator or model fitter failed in a way retries cannot fix.

    Attributes:
        iteration: 1-based iteration in which the fault occurred, if known.
    """

    def __init__(self, message: str, iteration: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration

    def __reduce__(self):
        # Survive the round trip from worker processes
        return (SimulationError, (self.args[0], self.iteration))


@dataclass
class RunState:
    """Mutable state of one run, owned by the runner."""

    nsim: int
    alpha: float
    results: List[IterationResult] = field(default_factory=list)
    n_converged: int = 0
    n_significant: int = 0
    termination: Termination = Termination.ONGOING
    sim_data: Optional[List[pd.DataFrame]] = None

    @property
    def iteration(self) -> int:
        return len(self.results)

    @property
    def n_nonconverged(self) -> int:
        return len(self.results) - self.n_converged

    def record(self, result: IterationResult, dataset: Optional[pd.DataFrame] = None):
        if len(self.results) >= self.nsim:
            raise RuntimeError(f"Cannot record more than nsim={self.nsim} iterations")
        self.results.append(result)
        if result.converged:
            self.n_converged += 1
            if result.significant(self.alpha):
                self.n_significant += 1
        if self.sim_data is not None and dataset is not None:
            self.sim_data.append(dataset)

    def terminate(self, reason: Termination):
        """Set the termination reason; it can only be set once."""
        if self.termination is not Termination.ONGOING:
            raise RuntimeError(f"Run already terminated ({self.termination.value})")
        self.termination = reason


def iteration_seed(base_seed: int, index: int) -> np.random.SeedSequence:
    """Seed of iteration *index* (1-based).

    Spawned from ``(base_seed, index)`` so that runs with nearby base
    seeds draw unrelated streams.
    """
    return np.random.SeedSequence([base_seed, index])


def _fresh_base_seed() -> int:
    return int(np.random.SeedSequence().generate_state(1)[0])


def _fit_with_retry(
    fitter: ModelFitter,
    dataset: pd.DataFrame,
    spec: ModelSpec,
    max_attempts: int,
    index: int,
) -> Tuple[Optional[FitResult], int, str]:
    """Fit *dataset*, retrying on ``FitFailure`` or non-convergence.

    Returns:
        (accepted fit or ``None`` if every attempt raised, attempts used,
        diagnostic message)
    """
    last_fit: Optional[FitResult] = None
    message = ""
    for attempt in range(1, max_attempts + 1):
        try:
            fit = fitter.fit(dataset, spec)
        except FitFailure as e:
            message = f"Fit failed: {e}"
            continue
        except Exception as e:
            raise SimulationError(f"Model fitter raised in iteration {index}: {e!r}", iteration=index) from e
        if fit.converged:
            return fit, attempt, ""
        last_fit = fit
        message = fit.message or "Model did not converge"
    return last_fit, max_attempts, message


def _run_iteration(
    index: int,
    seed: np.random.SeedSequence,
    generator: DatasetGenerator,
    fitter: ModelFitter,
    spec: ModelSpec,
    max_attempts: int,
    retain: bool,
) -> Tuple[IterationResult, Optional[pd.DataFrame]]:
    """Generate, fit and summarise one simulated trial.

    Module-level so that joblib workers can run it; it touches no shared
    state.
    """
    rng = np.random.default_rng(seed)
    try:
        dataset = generator.generate(rng)
    except Exception as e:
        raise SimulationError(f"Dataset generator raised in iteration {index}: {e!r}", iteration=index) from e

    fit, attempts, message = _fit_with_retry(fitter, dataset, spec, max_attempts, index)

    try:
        auxiliary = dict(generator.auxiliary_estimates(dataset))
    except Exception as e:
        raise SimulationError(f"Auxiliary estimation raised in iteration {index}: {e!r}", iteration=index) from e

    if fit is None:
        result = IterationResult(index, _NAN, _NAN, _NAN, _NAN, False, attempts, message, auxiliary)
    else:
        auxiliary.update(fit.extra)
        result = IterationResult(
            index=index,
            estimate=fit.estimate,
            std_error=fit.std_error,
            statistic=fit.statistic,
            p_value=fit.p_value,
            converged=bool(fit.converged),
            attempts=attempts,
            message=message,
            auxiliary=auxiliary,
        )
    return result, dataset if retain else None


class SimulationRunner:
    """Executes the Monte Carlo power simulation for one configuration.

    Each iteration draws a dataset from *generator* with its own seeded
    ``numpy.random.Generator``, fits it with *fitter* and records the
    outcome. After every iteration the convergence tracker, power monitor
    and runtime estimator are consulted in that order; the first abort
    request ends the run with partial results.

    Args:
        config: Run configuration.
        generator: Dataset generator (defaults to ``config.design``).
        fitter: Model fitter.
        progress: Optional ``ProgressReporter`` (advanced by 1 per iteration).
        cancel_check: Optional callable returning ``True`` to cancel.
        clock: Clock for the runtime estimator; injectable for tests.
        backend: joblib backend used when ``config.workers > 1``.
    """

    def __init__(
        self,
        config: SimulationConfig,
        generator: Optional[DatasetGenerator] = None,
        fitter: Optional[ModelFitter] = None,
        progress: Optional[ProgressReporter] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        clock: Optional[Callable[[], float]] = None,
        backend: str = "loky",
    ):
        self.config = config
        self.generator = generator if generator is not None else config.design
        self.fitter = fitter if fitter is not None else get_fitter(config.method)
        self.progress = progress
        self.cancel_check = cancel_check
        self.backend = backend

        rules = config.stop_rules
        self.tracker = ConvergenceTracker(config.nsim, rules, override=config.poor_fit_override)
        self.power_monitor = PowerMonitor(rules, override=config.low_power_override)
        self.runtime = RuntimeBudgetEstimator(
            config.nsim, rules, override=config.time_limit_override, clock=clock if clock is not None else time.perf_counter
        )

    def run(self) -> PowerReport:
        """Run the simulation loop and aggregate the results.

        Returns:
            ``PowerReport``; its ``termination`` tells whether the run
            completed or was stopped early.

        Raises:
            SimulationError: If the generator or fitter faults.
            SimulationCancelled: If ``cancel_check`` requests cancellation.
        """
        config = self.config
        state = RunState(
            nsim=config.nsim,
            alpha=config.alpha,
            sim_data=[] if config.retain_all_datasets else None,
        )

        if config.nsim == 0:
            state.terminate(Termination.COMPLETED)
            return self._report(state)

        try:
            spec = self.generator.model_spec()
        except Exception as e:
            raise SimulationError(f"Could not build the model specification: {e!r}") from e

        base_seed = config.seed if config.seed is not None else _fresh_base_seed()
        tasks = [(i, iteration_seed(base_seed, i)) for i in range(1, config.nsim + 1)]

        if not config.quiet:
            print(f"Simulation started: {config.nsim} iterations, {self.fitter.label} analysis")
        if self.progress is not None:
            self.progress.start()
        self.runtime.start()

        try:
            if config.workers > 1:
                from joblib import Parallel, delayed

                with Parallel(n_jobs=config.workers, backend=self.backend, return_as="generator") as parallel:
                    outcomes = parallel(
                        delayed(_run_iteration)(
                            i, seed, self.generator, self.fitter, spec, config.max_fit_attempts, config.retain_all_datasets
                        )
                        for i, seed in tasks
                    )
                    try:
                        self._consume(outcomes, state)
                    finally:
                        # Drop pending tasks on early exit
                        outcomes.close()
            else:
                outcomes = (
                    _run_iteration(i, seed, self.generator, self.fitter, spec, config.max_fit_attempts, config.retain_all_datasets)
                    for i, seed in tasks
                )
                self._consume(outcomes, state)
        finally:
            if self.progress is not None:
                self.progress.finish()

        if not config.quiet:
            elapsed = self.runtime.elapsed()
            print(f"Simulations Complete! Time Completed: {datetime.now():%Y-%m-%d %H:%M:%S}")
            print(f"Total runtime: {elapsed:.1f} seconds ({state.iteration} iterations)")
        return self._report(state)

    def _consume(self, outcomes: Iterable[Tuple[IterationResult, Optional[pd.DataFrame]]], state: RunState):
        """Merge iteration outcomes in order until completion or an abort."""
        for result, dataset in outcomes:
            state.record(result, dataset)
            reason = self._check_monitors(state)
            if self.progress is not None:
                self.progress.advance(1)
            if reason is not None:
                state.terminate(reason)
                warnings.warn(
                    f"Simulation stopped early ({reason.value}) after {state.iteration} of {state.nsim} iterations.",
                    stacklevel=2,
                )
                return
            if self.cancel_check is not None and self.cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
        state.terminate(Termination.COMPLETED)

    def _check_monitors(self, state: RunState) -> Optional[Termination]:
        i = state.iteration
        already_flagged = self.tracker.flagged

        reason = self.tracker.check(i, state.n_nonconverged)
        if self.tracker.flagged and not already_flagged:
            warnings.warn(
                f"{state.n_nonconverged} of {i} fits did not converge, exceeding the "
                f"{self.config.stop_rules.max_nonconvergence:.0%} threshold; continuing because poor_fit_override=True.",
                stacklevel=2,
            )
        if reason is None:
            reason = self.power_monitor.check(i, state.n_converged, state.n_significant)
        if reason is None:
            reason = self.runtime.check(i)
            if self.runtime.projected_total is not None and i == self.config.stop_rules.time_check_iteration:
                self._announce_projection()
        return reason

    def _announce_projection(self):
        if self.config.quiet:
            return
        remaining = max(self.runtime.projected_total - self.runtime.elapsed(), 0.0)
        eta = datetime.now() + timedelta(seconds=remaining)
        print(f"Estimated completion time: {eta:%Y-%m-%d %H:%M:%S} ({self.runtime.projected_total:.1f} seconds in total)")

    def _report(self, state: RunState) -> PowerReport:
        return build_power_report(
            state.results,
            nsim=state.nsim,
            alpha=state.alpha,
            method=self.fitter.label,
            design_label=getattr(self.generator, "label", type(self.generator).__name__),
            design_summary=self.generator.summary(),
            termination=state.termination,
            max_nonconvergence=self.config.stop_rules.max_nonconvergence,
            nonconvergence_flagged_at=self.tracker.flagged_at,
            sim_data=state.sim_data,
        )
