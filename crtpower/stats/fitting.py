"""
Model-fitter contract for CRTPower.

A fitter turns one simulated dataset into a treatment-effect test. The
simulation engine only relies on the ``ModelFitter`` protocol defined
here; the GLMM and GEE implementations live in ``mixed_models`` and
``gee``.

Ordinary non-convergence is a normal return value (``converged=False``).
Transient numeric failures are signalled with ``FitFailure`` so that the
engine may retry. Anything else a fitter raises is treated as a fault in
the design or its parameters.
"""

import math
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Protocol, Tuple, Union, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    import pandas as pd

    from .data_generation import ModelSpec


# Singular (boundary) fits and optimizer fallbacks are not convergence failures;
# unusable inference shows up as a non-finite statistic instead
_BENIGN_WARNINGS = (
    "on the boundary",
    "Retrying MixedLM optimization",
    "Hessian matrix at the estimated parameter values is not positive definite",
)


class FitFailure(Exception):
    """Raised by a fitter when the optimizer breaks down on a dataset.

    The engine retries the fit and, if the failure persists, records the
    iteration as non-converged.
    """

    pass


@dataclass(frozen=True)
class FitResult:
    """Treatment-effect test from a single model fit.

    For designs with more than two arms, *estimate* and *std_error*
    describe the ``target`` contrast (highest arm vs. control) while
    *statistic* and *p_value* belong to the omnibus test of all arms; each
    contrast's own Wald test is in *extra* under ``arm<k>.estimate``,
    ``arm<k>.std_error`` and ``arm<k>.p_value``.

    Attributes:
        estimate: Point estimate of the treatment effect (log-odds scale
            for binary outcomes).
        std_error: Standard error of *estimate*.
        statistic: Test statistic (z for GLMM, Wald chi-square for GEE,
            likelihood-ratio chi-square for multi-arm GLMM).
        p_value: Two-sided p-value of the treatment test.
        converged: Whether the optimizer reached a stable solution.
        message: Convergence diagnostics, empty when converged.
        extra: Fitter-specific diagnostics (e.g. ``icc_model``).
    """

    estimate: float
    std_error: float
    statistic: float
    p_value: float
    converged: bool
    message: str = ""
    extra: Mapping[str, float] = field(default_factory=dict)


@runtime_checkable
class ModelFitter(Protocol):
    """Protocol every model fitter implements."""

    label: str

    def fit(self, dataset: "pd.DataFrame", spec: "ModelSpec") -> FitResult:
        """Fit the treatment-effect model described by *spec* to *dataset*."""
        ...


def wald_p_value(statistic: float, df: int = 1) -> float:
    """Upper-tail chi-square p-value for a Wald or likelihood-ratio statistic."""
    from scipy.stats import chi2

    if not np.isfinite(statistic):
        return float("nan")
    return float(chi2.sf(max(statistic, 0.0), df))


def z_p_value(z: float) -> float:
    """Two-sided normal p-value."""
    from scipy.stats import norm

    if not np.isfinite(z):
        return float("nan")
    return float(2.0 * norm.sf(abs(z)))


def joint_wald(params: np.ndarray, cov: np.ndarray) -> Tuple[float, int]:
    """Joint Wald chi-square ``b' V^-1 b`` for a block of coefficients."""
    try:
        stat = float(params @ np.linalg.solve(cov, params))
    except np.linalg.LinAlgError as e:
        raise FitFailure(f"Singular covariance for joint Wald test: {e}") from e
    return stat, len(params)


def arm_contrasts(spec: "ModelSpec", estimates: Mapping[str, float], std_errors: Mapping[str, float]) -> Dict[str, float]:
    """Per-arm Wald z tests of each contrast against the control arm.

    Keys are ``arm<k>.estimate``, ``arm<k>.std_error`` and ``arm<k>.p_value``
    where *k* is the arm number in ``C(trt)[T.k]``.
    """
    out = {}
    for term in spec.arm_terms:
        arm = term.rsplit(".", 1)[-1].rstrip("]")
        estimate = finite_or_nan(estimates[term])
        std_error = finite_or_nan(std_errors[term])
        out[f"arm{arm}.estimate"] = estimate
        out[f"arm{arm}.std_error"] = std_error
        out[f"arm{arm}.p_value"] = z_p_value(estimate / std_error) if std_error > 0 else float("nan")
    return out


def capture_fit_warnings(func, *args, **kwargs) -> Tuple[Any, List[str]]:
    """Call *func* and return its value with the convergence warnings it raised.

    statsmodels reports convergence trouble through warnings rather than
    return values; they are recorded here and never reach the caller.
    """
    from statsmodels.tools.sm_exceptions import ConvergenceWarning, HessianInversionWarning, IterationLimitWarning

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        value = func(*args, **kwargs)

    messages = [
        str(w.message)
        for w in caught
        if not any(benign in str(w.message) for benign in _BENIGN_WARNINGS)
        and issubclass(w.category, (ConvergenceWarning, IterationLimitWarning, HessianInversionWarning))
        # BayesMixedGLM.fit_vb reports optimizer failure as a plain UserWarning
        or "did not converge" in str(w.message)
    ]
    return value, messages


def finite_or_nan(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return float("nan")
    return value if math.isfinite(value) else float("nan")


def get_fitter(method: Union[str, Any]) -> ModelFitter:
    """Return the fitter for an analysis method (``"glmm"`` or ``"gee"``)."""
    key = getattr(method, "value", method)
    if key == "glmm":
        from .mixed_models import GLMMFitter

        return GLMMFitter()
    if key == "gee":
        from .gee import GEEFitter

        return GEEFitter()
    raise ValueError(f"Unknown method: {method!r}")

