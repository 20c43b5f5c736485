"""
CRTPower - Monte Carlo power estimation for cluster-randomized trials.

This module provides the public entry points: ``run_power_simulation``
for a full power analysis and ``simulate_datasets`` for drawing the
simulated trials without fitting any model.
"""

from typing import Callable, List, Optional

import numpy as np
import pandas as pd

from .config import SimulationConfig
from .core import PowerReport, SimulationRunner, iteration_seed
from .core.simulation import _fresh_base_seed
from .progress import SimulationCancelled, make_reporter
from .stats.data_generation import DatasetGenerator
from .stats.fitting import ModelFitter


def run_power_simulation(
    config: SimulationConfig,
    *,
    generator: Optional[DatasetGenerator] = None,
    fitter: Optional[ModelFitter] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> PowerReport:
    """Estimate power for the configured design by Monte Carlo simulation.

    Args:
        config: Run configuration (design, nsim, alpha, method, seed,
            overrides, parallelism).
        generator: Dataset generator; defaults to ``config.design``.
        fitter: Model fitter; defaults to the fitter for ``config.method``.
        progress_callback: ``callback(current, total)`` receiving throttled
            progress events (``PrintReporter``, ``TqdmReporter`` or any
            callable). ``None`` disables progress reporting.
        cancel_check: Callable returning ``True`` to cancel the run; checked
            once per completed iteration.

    Returns:
        ``PowerReport`` with the power estimate and its confidence interval.
        Early-stopped runs return partial results with ``termination`` set.

    Raises:
        ConfigurationError: If *config* is invalid (raised when the config
            is constructed).
        SimulationError: If the generator or fitter faults.
        SimulationCancelled: If *cancel_check* cancels the run.

    Example:
        >>> from crtpower import MultiArmNormalDesign, SimulationConfig, run_power_simulation
        >>> design = MultiArmNormalDesign.balanced(2, 10, 20, [0.0, 0.5], 1.0, 0.1)
        >>> report = run_power_simulation(SimulationConfig(design=design, nsim=200, seed=2137))
        >>> report.power, report.ci_lower, report.ci_upper
    """
    runner = SimulationRunner(
        config,
        generator=generator,
        fitter=fitter,
        progress=make_reporter(config.nsim, progress_callback),
        cancel_check=cancel_check,
    )
    return runner.run()


def simulate_datasets(
    config: SimulationConfig,
    *,
    generator: Optional[DatasetGenerator] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> List[pd.DataFrame]:
    """Draw ``config.nsim`` datasets without fitting.

    Each dataset uses the same iteration seed a power run with this config
    would use, so ``simulate_datasets(config)[i]`` is the dataset analysed
    in iteration ``i + 1`` of ``run_power_simulation(config)``.
    """
    generator = generator if generator is not None else config.design
    base_seed = config.seed if config.seed is not None else _fresh_base_seed()
    datasets = []
    for i in range(1, config.nsim + 1):
        if cancel_check is not None and cancel_check():
            raise SimulationCancelled("Simulation cancelled by user")
        datasets.append(generator.generate(np.random.default_rng(iteration_seed(base_seed, i))))
    return datasets
