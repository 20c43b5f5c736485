"""Core components for the CRTPower framework.

Re-exports the simulation engine building blocks:

- ``SimulationRunner``, ``RunState``, ``SimulationError``: Monte Carlo
  loop execution.
- ``ConvergenceTracker``, ``PowerMonitor``, ``RuntimeBudgetEstimator``,
  ``Termination``: early-stopping policy.
- ``IterationResult``, ``PowerReport``, ``build_power_report``,
  ``clopper_pearson_ci``: result aggregation.
"""

from .monitors import ConvergenceTracker, PowerMonitor, RuntimeBudgetEstimator, Termination
from .results import IterationResult, PowerReport, build_power_report, clopper_pearson_ci
from .simulation import RunState, SimulationError, SimulationRunner, iteration_seed

__all__ = [
    # Simulation
    "SimulationRunner",
    "RunState",
    "SimulationError",
    "iteration_seed",
    # Monitors
    "ConvergenceTracker",
    "PowerMonitor",
    "RuntimeBudgetEstimator",
    "Termination",
    # Results
    "IterationResult",
    "PowerReport",
    "build_power_report",
    "clopper_pearson_ci",
]
