"""CRTPower - Monte Carlo power estimation for cluster-randomized trials.

Simulates many trials from a multilevel design, fits a GLMM or GEE to each,
and reports the share of significant treatment effects with an exact
confidence interval. Runs stop early when fits keep failing to converge,
when the running power is clearly low, or when the projected runtime
exceeds a budget.

Example:
    >>> from crtpower import MultiArmNormalDesign, SimulationConfig, run_power_simulation
    >>>
    >>> design = MultiArmNormalDesign.balanced(
    ...     narms=2, nclusters=10, nsubjects=20, means=[0.0, 0.5], sigma_sq=1.0, sigma_b_sq=0.1)
    >>> report = run_power_simulation(SimulationConfig(design=design, nsim=200, seed=2137))
    >>> print(report.overview, report.power)
"""

from importlib.metadata import version as _get_version

from .config import EarlyStopRules, FitMethod, SimulationConfig
from .core import PowerReport, SimulationError, Termination
from .model import run_power_simulation, simulate_datasets
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.data_generation import DatasetGenerator, DidBinaryDesign, ModelShape, ModelSpec, MultiArmNormalDesign
from .stats.fitting import FitFailure, FitResult, ModelFitter
from .stats.gee import GEEFitter
from .stats.mixed_models import GLMMFitter
from .utils.validators import ConfigurationError

__version__ = _get_version("CRTPower")

__all__ = [
    "run_power_simulation",
    "simulate_datasets",
    "SimulationConfig",
    "EarlyStopRules",
    "FitMethod",
    "PowerReport",
    "Termination",
    "MultiArmNormalDesign",
    "DidBinaryDesign",
    "DatasetGenerator",
    "ModelSpec",
    "ModelShape",
    "ModelFitter",
    "FitResult",
    "FitFailure",
    "GLMMFitter",
    "GEEFitter",
    "ConfigurationError",
    "SimulationError",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
