"""
Results processing for CRTPower.

Turns the per-iteration outcomes of a run into a ``PowerReport``: the
power estimate with its exact binomial confidence interval, the
convergence rate, per-iteration tables and the warnings a reader of the
estimate should see.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .monitors import Termination

ESTIMATE_COLUMNS = ["Estimate", "Std.err", "Test.statistic", "p.value", "converge", "sig.val"]


@dataclass(frozen=True)
class IterationResult:
    """Outcome of one simulated trial.

    Attributes:
        index: 1-based iteration number.
        estimate: Treatment-effect estimate (NaN when every fit attempt raised).
        std_error: Standard error of *estimate*.
        statistic: Test statistic reported by the fitter.
        p_value: p-value of the treatment test. For multi-arm designs this
            is the omnibus test, while *estimate* is the last arm's
            contrast; per-arm tests are in *auxiliary*.
        converged: Whether the accepted fit converged.
        attempts: Number of fit attempts used.
        message: Non-convergence diagnostics.
        auxiliary: Design estimates and fitter diagnostics for this dataset.
    """

    index: int
    estimate: float
    std_error: float
    statistic: float
    p_value: float
    converged: bool
    attempts: int = 1
    message: str = ""
    auxiliary: Mapping[str, float] = field(default_factory=dict)

    def significant(self, alpha: float) -> bool:
        """Converged and ``p < alpha``."""
        return self.converged and math.isfinite(self.p_value) and self.p_value < alpha


def clopper_pearson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Exact Clopper-Pearson interval for ``k`` successes out of ``n``.

    The interval has confidence ``1 - alpha``.

    Raises:
        ValueError: If ``n < 1`` or ``k`` is outside ``[0, n]``.
    """
    from scipy import stats

    if n < 1 or not 0 <= k <= n:
        raise ValueError(f"Need 0 <= k <= n and n >= 1, got k={k}, n={n}")
    if k == 0:
        lo = 0.0
        hi = 1.0 - (alpha / 2) ** (1.0 / n)
    elif k == n:
        lo = (alpha / 2) ** (1.0 / n)
        hi = 1.0
    else:
        lo = float(stats.beta.ppf(alpha / 2, k, n - k + 1))
        hi = float(stats.beta.ppf(1 - alpha / 2, k + 1, n - k))
    return lo, hi


@dataclass
class PowerReport:
    """Summary of a power simulation.

    ``power`` is ``None`` when no fit converged (including ``nsim = 0``);
    the interval bounds and convergence rate are then ``None`` as well.
    """

    overview: str
    nsim: int
    power: Optional[float]
    ci_lower: Optional[float]
    ci_upper: Optional[float]
    method: str
    alpha: float
    convergence_rate: Optional[float]
    n_evaluated: int
    n_converged: int
    termination: Termination
    estimates: pd.DataFrame
    auxiliary: Dict[str, float]
    auxiliary_table: pd.DataFrame
    design: Dict[str, Any]
    results: List[IterationResult] = field(default_factory=list)
    sim_data: Optional[List[pd.DataFrame]] = None
    nonconvergence: List[Tuple[int, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.termination.aborted

    @property
    def arm_power(self) -> Dict[str, float]:
        """Share of converged iterations where each arm contrast is significant.

        Empty for two-arm designs.
        """
        converged = [r for r in self.results if r.converged]
        names = sorted({k[: -len(".p_value")] for r in converged for k in r.auxiliary if k.endswith(".p_value")})
        return {
            name: float(np.mean([r.auxiliary.get(f"{name}.p_value", np.nan) < self.alpha for r in converged]))
            for name in names
        }

    def to_dict(self) -> Dict[str, Any]:
        """Scalar fields only (tables and datasets omitted)."""
        return {
            "overview": self.overview,
            "nsim": self.nsim,
            "power": self.power,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "method": self.method,
            "alpha": self.alpha,
            "convergence_rate": self.convergence_rate,
            "n_evaluated": self.n_evaluated,
            "n_converged": self.n_converged,
            "termination": self.termination.value,
            "auxiliary": dict(self.auxiliary),
            "arm_power": self.arm_power,
            "design": dict(self.design),
            "warnings": list(self.warnings),
        }


def _estimates_table(results: Sequence[IterationResult], alpha: float) -> pd.DataFrame:
    rows = [
        [r.estimate, r.std_error, r.statistic, r.p_value, r.converged, r.significant(alpha)]
        for r in results
    ]
    index = pd.Index([r.index for r in results], name="iteration")
    return pd.DataFrame(rows, columns=ESTIMATE_COLUMNS, index=index)


def _auxiliary_means(results: Sequence[IterationResult]) -> Dict[str, float]:
    """Mean of each auxiliary estimate over converged iterations, NaN ignored."""
    values: Dict[str, List[float]] = {}
    for r in results:
        for name, value in r.auxiliary.items():
            bucket = values.setdefault(name, [])
            if r.converged and value is not None and math.isfinite(value):
                bucket.append(float(value))
    return {name: float(np.mean(v)) if v else float("nan") for name, v in values.items()}


def build_power_report(
    results: Sequence[IterationResult],
    *,
    nsim: int,
    alpha: float,
    method: str,
    design_label: str,
    design_summary: Mapping[str, Any],
    termination: Termination,
    max_nonconvergence: float = 0.25,
    nonconvergence_flagged_at: Optional[int] = None,
    sim_data: Optional[List[pd.DataFrame]] = None,
) -> PowerReport:
    """Aggregate per-iteration results into a ``PowerReport``.

    Args:
        results: Iteration outcomes in iteration order.
        nsim: Planned number of iterations.
        alpha: Significance level; also sets the interval's confidence.
        method: Fitter label (e.g. ``"GLMM"``).
        design_label: Human-readable design description.
        design_summary: Design-level inputs (analytic ICCs etc.).
        termination: Final termination reason.
        max_nonconvergence: Share of non-converged fits above which the
            report carries a warning.
        nonconvergence_flagged_at: Iteration at which an overridden
            non-convergence abort would have fired.
        sim_data: Retained datasets, if requested.

    Returns:
        The assembled report.
    """
    n_evaluated = len(results)
    n_converged = sum(1 for r in results if r.converged)
    n_significant = sum(1 for r in results if r.significant(alpha))

    if n_converged > 0:
        power: Optional[float] = n_significant / n_converged
        ci_lower, ci_upper = clopper_pearson_ci(n_significant, n_converged, alpha)
        # beta.ppf rounding must not push the bounds past the point estimate
        ci_lower, ci_upper = min(ci_lower, power), max(ci_upper, power)
    else:
        power = ci_lower = ci_upper = None
    convergence_rate = n_converged / n_evaluated if n_evaluated else None

    overview = f"Monte Carlo Power Estimation based on {nsim} Simulations: {design_label}"
    warnings: List[str] = []
    if termination.aborted:
        overview += f" Stopped early after {n_evaluated} iterations ({termination.value})."
        warnings.append(f"Simulation stopped early ({termination.value}) after {n_evaluated} of {nsim} iterations; the estimate is based on partial results.")
    if nonconvergence_flagged_at is not None:
        warnings.append(
            f"Non-converged fits exceeded {max_nonconvergence:.0%} of nsim at iteration {nonconvergence_flagged_at}; "
            "continuing because poor_fit_override=True."
        )
    if n_evaluated and (n_evaluated - n_converged) / n_evaluated > max_nonconvergence:
        warnings.append(f"{n_evaluated - n_converged} of {n_evaluated} fits did not converge; the power estimate may be biased.")
    if n_evaluated and n_converged == 0:
        warnings.append("No fit converged; power cannot be estimated.")

    nonconvergence = [(r.index, r.message) for r in results if not r.converged]

    return PowerReport(
        overview=overview,
        nsim=nsim,
        power=power,
        ci_lower=ci_lower,
        ci_upper=ci_upper,
        method=method,
        alpha=alpha,
        convergence_rate=convergence_rate,
        n_evaluated=n_evaluated,
        n_converged=n_converged,
        termination=termination,
        estimates=_estimates_table(results, alpha),
        auxiliary=_auxiliary_means(results),
        auxiliary_table=pd.DataFrame(
            [dict(r.auxiliary) for r in results], index=pd.Index([r.index for r in results], name="iteration")
        ),
        design=dict(design_summary),
        results=list(results),
        sim_data=sim_data,
        nonconvergence=nonconvergence,
        warnings=warnings,
    )
