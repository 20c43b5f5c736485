"""
Data generation for cluster-randomized trial designs.

Each design is a frozen dataclass that knows how to draw one simulated
trial from a ``numpy.random.Generator`` and which model the fitters
should apply to it. Designs are immutable and picklable, so the same
object can be shipped to parallel workers.

Datasets are ``pandas.DataFrame`` objects with columns ``y`` (response),
``trt`` (1-based arm label), ``clust`` (1-based cluster id) and, for
longitudinal designs, ``period`` (0 = baseline, 1 = follow-up).
"""

import math
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

import numpy as np
import pandas as pd

from ..utils.validators import (
    _combine,
    _validate_arm_vector,
    _validate_count,
    _validate_flag,
    _validate_probability,
    _ValidationResult,
)

Number = Union[int, float]


class ModelShape(Enum):
    """Variance structure implied by the design parameters.

    Resolved once per run from whether the within-cluster (residual) and
    between-cluster variances are equal across arms.
    """

    HETEROGENEOUS = "heterogeneous"
    """Residual and between-cluster variances both differ by arm."""

    HOMOGENEOUS_VARIANCE = "homogeneous_variance"
    """Equal residual variance, arm-specific between-cluster variance."""

    HOMOGENEOUS_EFFECT = "homogeneous_effect"
    """Equal between-cluster variance, arm-specific residual variance."""

    FULLY_HOMOGENEOUS = "fully_homogeneous"
    """Both variances equal across arms."""

    @classmethod
    def resolve(cls, sigma_sq: Sequence[float], sigma_b_sq: Sequence[float]) -> "ModelShape":
        equal_within = max(sigma_sq) == min(sigma_sq)
        equal_between = max(sigma_b_sq) == min(sigma_b_sq)
        if equal_within and equal_between:
            return cls.FULLY_HOMOGENEOUS
        if equal_within:
            return cls.HOMOGENEOUS_VARIANCE
        if equal_between:
            return cls.HOMOGENEOUS_EFFECT
        return cls.HETEROGENEOUS

    @property
    def arm_specific_between(self) -> bool:
        return self in (ModelShape.HETEROGENEOUS, ModelShape.HOMOGENEOUS_VARIANCE)

    @property
    def arm_specific_residual(self) -> bool:
        return self in (ModelShape.HETEROGENEOUS, ModelShape.HOMOGENEOUS_EFFECT)


@dataclass(frozen=True)
class ModelSpec:
    """What a fitter should fit for a given design.

    Attributes:
        family: ``"gaussian"`` or ``"binomial"``.
        formula: Fixed-effects formula (patsy syntax).
        target: Name of the coefficient carrying the treatment effect. With
            more than two arms this is the highest arm vs. control; the
            omnibus test over *arm_terms* decides significance.
        narms: Number of trial arms.
        shape: Variance structure (see ``ModelShape``).
        null_formula: Reduced model for an omnibus comparison, used when
            the design has more than two arms.
        arm_terms: Coefficients jointly tested against the null model.
    """

    family: str
    formula: str
    target: str
    narms: int = 2
    shape: ModelShape = ModelShape.FULLY_HOMOGENEOUS
    null_formula: Optional[str] = None
    arm_terms: Tuple[str, ...] = ()

    @property
    def needs_null_model(self) -> bool:
        return self.null_formula is not None


@runtime_checkable
class DatasetGenerator(Protocol):
    """Protocol every trial design implements."""

    label: str

    def model_spec(self) -> ModelSpec:
        """Return the model the fitters apply to this design's datasets."""
        ...

    def generate(self, rng: np.random.Generator) -> pd.DataFrame:
        """Draw one simulated dataset."""
        ...

    def auxiliary_estimates(self, dataset: pd.DataFrame) -> Dict[str, float]:
        """Design-specific per-iteration estimates (e.g. ICC estimators)."""
        ...

    def summary(self) -> Dict[str, Any]:
        """Design-level inputs reported alongside the power estimate."""
        ...


def _as_arm_tuple(value: Union[Number, Sequence[Number]], narms: int) -> Tuple[float, ...]:
    """Broadcast a scalar to one value per arm; leave vectors untouched."""
    if np.isscalar(value):
        return tuple(float(value) for _ in range(narms))
    return tuple(float(v) for v in value)


def _expit(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def _logit(p: float) -> float:
    return math.log(p / (1.0 - p))


def _cluster_labels(cluster_sizes: Sequence[int]) -> np.ndarray:
    """1-based cluster id for each observation: ``[1,1,1, 2,2, ...]``."""
    return np.repeat(np.arange(1, len(cluster_sizes) + 1), cluster_sizes)


# =============================================================================
# Multi-arm design, continuous outcome
# =============================================================================


@dataclass(frozen=True)
class MultiArmNormalDesign:
    """Multi-arm cluster-randomized trial with a normally distributed outcome.

    ``y_ij = mean[arm] + b_j + e_ij`` with ``b_j ~ N(0, sigma_b_sq[arm])``
    and ``e_ij ~ N(0, sigma_sq[arm])``. Two arms give the standard
    parallel design.

    Args:
        str_nsubjects: One sequence per arm holding the number of subjects
            in each of that arm's clusters.
        means: Expected outcome mean per arm.
        sigma_sq: Within-cluster variance, scalar or one per arm.
        sigma_b_sq: Between-cluster variance, scalar or one per arm.
        tdist: Draw cluster effects from a t distribution
            (df = total clusters - arms) scaled by ``sqrt(sigma_b_sq)``.

    Example:
        >>> design = MultiArmNormalDesign(
        ...     str_nsubjects=[[20] * 10, [20] * 10],
        ...     means=[0.0, 0.5], sigma_sq=1.0, sigma_b_sq=0.1)
    """

    str_nsubjects: Sequence[Sequence[int]]
    means: Sequence[float]
    sigma_sq: Union[float, Sequence[float]]
    sigma_b_sq: Union[float, Sequence[float]]
    tdist: bool = False

    def __post_init__(self):
        narms = len(self.str_nsubjects)
        _combine(
            [_validate_count(n, f"Cluster size in arm {arm}") for arm, sizes in enumerate(self.str_nsubjects, start=1) for n in sizes]
        ).raise_if_invalid()
        object.__setattr__(self, "str_nsubjects", tuple(tuple(int(n) for n in arm) for arm in self.str_nsubjects))
        object.__setattr__(self, "means", _as_arm_tuple(self.means, narms))
        object.__setattr__(self, "sigma_sq", _as_arm_tuple(self.sigma_sq, narms))
        object.__setattr__(self, "sigma_b_sq", _as_arm_tuple(self.sigma_b_sq, narms))
        self._validate().raise_if_invalid()

    @classmethod
    def balanced(
        cls,
        narms: int,
        nclusters: int,
        nsubjects: int,
        means: Sequence[float],
        sigma_sq: Union[float, Sequence[float]],
        sigma_b_sq: Union[float, Sequence[float]],
        tdist: bool = False,
    ) -> "MultiArmNormalDesign":
        """Equal number of equally sized clusters in every arm."""
        _combine([_validate_count(narms, "narms"), _validate_count(nclusters, "nclusters"), _validate_count(nsubjects, "nsubjects")]).raise_if_invalid()
        return cls(
            str_nsubjects=[[int(nsubjects)] * int(nclusters) for _ in range(int(narms))],
            means=means,
            sigma_sq=sigma_sq,
            sigma_b_sq=sigma_b_sq,
            tdist=tdist,
        )

    def _validate(self) -> _ValidationResult:
        narms = self.narms
        checks = [_validate_flag(self.tdist, "tdist")]
        if narms < 2:
            checks.append(_ValidationResult(False, [f"At least two arms are required, got {narms}"], []))
            return _combine(checks)
        for arm, sizes in enumerate(self.str_nsubjects, start=1):
            if len(sizes) == 0:
                checks.append(_ValidationResult(False, [f"Arm {arm} must contain at least one cluster"], []))
        if len(self.means) != narms or not np.all(np.isfinite(self.means)):
            checks.append(_ValidationResult(False, [f"means must be a vector of {narms} finite values, got {list(self.means)}"], []))
        checks.append(_validate_arm_vector(self.sigma_sq, "sigma_sq", narms, allow_zero=False))
        checks.append(_validate_arm_vector(self.sigma_b_sq, "sigma_b_sq", narms, allow_zero=True))
        if self.tdist and self.total_clusters - narms < 1:
            checks.append(_ValidationResult(False, ["tdist requires more clusters than arms"], []))
        return _combine(checks)

    @property
    def narms(self) -> int:
        return len(self.str_nsubjects)

    @property
    def nclusters(self) -> Tuple[int, ...]:
        return tuple(len(arm) for arm in self.str_nsubjects)

    @property
    def total_clusters(self) -> int:
        return sum(self.nclusters)

    @property
    def label(self) -> str:
        if self.narms == 2:
            return "Parallel Design, Continuous Outcome."
        return "Multi-Arm Design, Continuous Outcome."

    def model_spec(self) -> ModelSpec:
        shape = ModelShape.resolve(self.sigma_sq, self.sigma_b_sq)
        if self.narms == 2:
            return ModelSpec(family="gaussian", formula="y ~ C(trt)", target="C(trt)[T.2]", narms=2, shape=shape)
        arm_terms = tuple(f"C(trt)[T.{arm}]" for arm in range(2, self.narms + 1))
        return ModelSpec(
            family="gaussian",
            formula="y ~ C(trt)",
            target=arm_terms[-1],
            narms=self.narms,
            shape=shape,
            null_formula="y ~ 1",
            arm_terms=arm_terms,
        )

    def generate(self, rng: np.random.Generator) -> pd.DataFrame:
        sizes = [n for arm in self.str_nsubjects for n in arm]
        arm_of_cluster = np.repeat(np.arange(self.narms), self.nclusters)

        # Between-cluster effects first, arm by arm, then residuals
        cluster_effects = []
        for arm in range(self.narms):
            sd_b = math.sqrt(self.sigma_b_sq[arm])
            if self.tdist:
                draws = rng.standard_t(self.total_clusters - self.narms, size=self.nclusters[arm]) * sd_b
            else:
                draws = rng.normal(0.0, sd_b, size=self.nclusters[arm])
            cluster_effects.append(draws)
        b = np.concatenate(cluster_effects)

        residuals = []
        for arm in range(self.narms):
            n_arm = sum(self.str_nsubjects[arm])
            residuals.append(rng.normal(self.means[arm], math.sqrt(self.sigma_sq[arm]), size=n_arm))

        y = np.repeat(b, sizes) + np.concatenate(residuals)
        trt = np.repeat(arm_of_cluster + 1, sizes)
        return pd.DataFrame({"y": y, "trt": trt, "clust": _cluster_labels(sizes)})

    def auxiliary_estimates(self, dataset: pd.DataFrame) -> Dict[str, float]:
        return {"icc_anova": anova_icc(dataset, n_arms=self.narms)}

    def summary(self) -> Dict[str, Any]:
        return {
            "narms": self.narms,
            "n.clusters": list(self.nclusters),
            "cluster.sizes": [list(arm) for arm in self.str_nsubjects],
            "means": list(self.means),
            "sigma_sq": list(self.sigma_sq),
            "sigma_b_sq": list(self.sigma_b_sq),
            "ICC": [b / (b + w) for b, w in zip(self.sigma_b_sq, self.sigma_sq)],
            "tdist": self.tdist,
        }


def anova_icc(dataset: pd.DataFrame, n_arms: int = 1) -> float:
    """One-way ANOVA ICC estimator with clusters nested in arms.

    Cluster means are centred on their arm mean so that the treatment
    effect does not inflate the between-cluster mean square. Unequal
    cluster sizes use the usual ``n0`` adjustment.

    Returns:
        The ICC estimate, or NaN when the degrees of freedom run out.
    """
    y = dataset["y"].to_numpy(dtype=float)
    clusters = dataset.groupby("clust", sort=True)
    sizes = clusters.size().to_numpy(dtype=float)
    cluster_means = clusters["y"].mean()
    arm_of_cluster = clusters["trt"].first()
    arm_means = dataset.groupby("trt")["y"].mean()

    n_total = len(y)
    n_clusters = len(sizes)
    df_between = n_clusters - n_arms
    df_within = n_total - n_clusters
    if df_between < 1 or df_within < 1:
        return float("nan")

    centred = cluster_means.to_numpy() - arm_means.loc[arm_of_cluster.to_numpy()].to_numpy()
    ms_between = float(np.sum(sizes * centred**2) / df_between)
    within = y - cluster_means.loc[dataset["clust"].to_numpy()].to_numpy()
    ms_within = float(np.sum(within**2) / df_within)

    n0 = (n_total - np.sum(sizes**2) / n_total) / (n_clusters - 1)
    denom = ms_between + (n0 - 1.0) * ms_within
    if denom <= 0:
        return float("nan")
    return float((ms_between - ms_within) / denom)


# =============================================================================
# Difference-in-differences design, binary outcome
# =============================================================================


@dataclass(frozen=True)
class DidBinaryDesign:
    """Two-arm difference-in-differences trial with a binary outcome.

    Each cluster is observed at baseline (period 0) and follow-up
    (period 1). Cluster random intercepts are drawn independently per
    period from ``N(0, sigma_b_sq<period>[arm])`` on the logit scale.

    Args:
        nsubjects: Subjects per cluster: scalar, one per arm, or one per
            cluster.
        nclusters: Clusters per arm: scalar or a pair.
        p1t0: Outcome probability in arm 1 at baseline.
        p2t1: Outcome probability in arm 2 at follow-up.
        p2t0: Arm 2 at baseline; defaults to *p1t0*.
        p1t1: Arm 1 at follow-up; defaults to *p1t0*.
        sigma_b_sq0: Baseline between-cluster variance, scalar or per arm.
        sigma_b_sq1: Follow-up between-cluster variance; defaults to
            *sigma_b_sq0*.
        lmer_icc: Also estimate the ICC from a linear mixed model on each
            dataset (one extra fit per iteration).
    """

    nsubjects: Union[int, Sequence[int]]
    nclusters: Union[int, Sequence[int]]
    p1t0: float
    p2t1: float
    sigma_b_sq0: Union[float, Sequence[float]]
    p2t0: Optional[float] = None
    p1t1: Optional[float] = None
    sigma_b_sq1: Optional[Union[float, Sequence[float]]] = None
    lmer_icc: bool = True
    cluster_sizes: Tuple[int, ...] = field(init=False)

    label = "Difference in Difference Design, Binary Outcome."

    def __post_init__(self):
        errors = []
        nclusters = (self.nclusters,) if np.isscalar(self.nclusters) else tuple(self.nclusters)
        if len(nclusters) not in (1, 2):
            _ValidationResult(
                False,
                ["nclusters can only be a scalar (equal # of clusters per arm) or a vector of length 2 (unequal # of clusters per arm)"],
                [],
            ).raise_if_invalid()
        _combine([_validate_count(n, "nclusters") for n in nclusters]).raise_if_invalid()
        nclusters = tuple(int(n) for n in nclusters)
        if len(nclusters) == 1:
            nclusters = (nclusters[0], nclusters[0])
        object.__setattr__(self, "nclusters", nclusters)

        sizes = self._expand_cluster_sizes(self.nsubjects, nclusters, errors)
        object.__setattr__(self, "cluster_sizes", sizes)

        if self.p2t0 is None:
            object.__setattr__(self, "p2t0", self.p1t0)
        if self.p1t1 is None:
            object.__setattr__(self, "p1t1", self.p1t0)
        if self.sigma_b_sq1 is None:
            object.__setattr__(self, "sigma_b_sq1", self.sigma_b_sq0)
        object.__setattr__(self, "sigma_b_sq0", _as_arm_tuple(self.sigma_b_sq0, 2))
        object.__setattr__(self, "sigma_b_sq1", _as_arm_tuple(self.sigma_b_sq1, 2))

        checks = [_ValidationResult(not errors, errors, [])]
        for name in ("p1t0", "p2t0", "p1t1", "p2t1"):
            checks.append(_validate_probability(getattr(self, name), name))
        checks.append(_validate_arm_vector(self.sigma_b_sq0, "sigma_b_sq0", 2, allow_zero=True))
        checks.append(_validate_arm_vector(self.sigma_b_sq1, "sigma_b_sq1", 2, allow_zero=True))
        checks.append(_validate_flag(self.lmer_icc, "lmer_icc"))
        _combine(checks).raise_if_invalid()

    @staticmethod
    def _expand_cluster_sizes(nsubjects, nclusters: Tuple[int, int], errors) -> Tuple[int, ...]:
        total = sum(nclusters)
        sizes = (nsubjects,) if np.isscalar(nsubjects) else tuple(nsubjects)
        for size in sizes:
            result = _validate_count(size, "nsubjects")
            errors.extend(result.errors)
        if errors:
            return ()
        sizes = tuple(int(n) for n in sizes)
        if len(sizes) == 1:
            return sizes * total
        if len(sizes) == 2 and total != 2:
            return (sizes[0],) * nclusters[0] + (sizes[1],) * nclusters[1]
        if nclusters[0] == nclusters[1] and len(sizes) == nclusters[0] and total != len(sizes):
            return sizes * 2
        if len(sizes) != total:
            errors.append(
                "A cluster size must be specified for each cluster. If all cluster sizes are equal, please provide a single value for nsubjects"
            )
            return ()
        return sizes

    @classmethod
    def from_odds_ratios(
        cls,
        nsubjects: Union[int, Sequence[int]],
        nclusters: Union[int, Sequence[int]],
        sigma_b_sq0: Union[float, Sequence[float]],
        or1: Optional[float] = None,
        or2: Optional[float] = None,
        or_diff: Optional[float] = None,
        **kwargs,
    ) -> "DidBinaryDesign":
        """Build the design from odds (any two of *or1*, *or2*, *or_diff*).

        ``p1t0 = or1 / (1 + or1)`` and ``p2t1 = or2 / (1 + or2)``, with
        ``or_diff = or1 - or2``.
        """
        supplied = [v is not None for v in (or1, or2, or_diff)]
        if sum(supplied) < 2:
            _ValidationResult(False, ["At least two of the following terms must be specified: or1, or2, or_diff"], []).raise_if_invalid()
        if all(supplied) and not math.isclose(abs(or_diff), abs(or1 - or2)):
            _ValidationResult(False, ["At least one of the following terms has been misspecified: or1, or2, or_diff"], []).raise_if_invalid()
        if or1 is None:
            or1 = abs(or_diff - or2)
        if or2 is None:
            or2 = abs(or1 - or_diff)
        return cls(
            nsubjects=nsubjects,
            nclusters=nclusters,
            p1t0=or1 / (1.0 + or1),
            p2t1=or2 / (1.0 + or2),
            sigma_b_sq0=sigma_b_sq0,
            **kwargs,
        )

    @property
    def p_diff(self) -> float:
        """Expected difference in differences, ``(p1t1 - p1t0) - (p2t1 - p2t0)``."""
        return abs((self.p1t1 - self.p1t0) - (self.p2t1 - self.p2t0))

    @property
    def arm_sizes(self) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
        k1 = self.nclusters[0]
        return self.cluster_sizes[:k1], self.cluster_sizes[k1:]

    def model_spec(self) -> ModelSpec:
        shape = ModelShape.FULLY_HOMOGENEOUS
        if self.sigma_b_sq0[0] != self.sigma_b_sq0[1] or self.sigma_b_sq1[0] != self.sigma_b_sq1[1]:
            shape = ModelShape.HOMOGENEOUS_VARIANCE
        return ModelSpec(
            family="binomial",
            formula="y ~ C(trt) * C(period)",
            target="C(trt)[T.2]:C(period)[T.1]",
            narms=2,
            shape=shape,
        )

    def generate(self, rng: np.random.Generator) -> pd.DataFrame:
        probs = {(0, 0): self.p1t0, (0, 1): self.p2t0, (1, 0): self.p1t1, (1, 1): self.p2t1}
        variances = (self.sigma_b_sq0, self.sigma_b_sq1)
        blocks = []
        for period in (0, 1):
            for arm, sizes in enumerate(self.arm_sizes):
                randint = rng.normal(0.0, math.sqrt(variances[period][arm]), size=len(sizes))
                linpred = np.repeat(randint, sizes) + _logit(probs[(period, arm)])
                blocks.append(rng.binomial(1, _expit(linpred)))

        n_subjects = sum(self.cluster_sizes)
        trt = np.repeat([1, 2], [sum(s) for s in self.arm_sizes])
        return pd.DataFrame(
            {
                "y": np.concatenate(blocks),
                "trt": np.tile(trt, 2),
                "period": np.repeat([0, 1], n_subjects),
                "clust": np.tile(_cluster_labels(self.cluster_sizes), 2),
            }
        )

    def auxiliary_estimates(self, dataset: pd.DataFrame) -> Dict[str, float]:
        cell_means = dataset.groupby(["trt", "period"])["y"].mean()
        arm1 = (cell_means.loc[(1, 0)] + cell_means.loc[(1, 1)]) / 2.0
        arm2 = (cell_means.loc[(2, 0)] + cell_means.loc[(2, 1)]) / 2.0
        p1, p2 = self.p1t1, self.p2t1
        estimates = {
            "P_c": float((arm1 - p1) * (arm2 - p2) / math.sqrt(p1 * (1 - p1) * p2 * (1 - p2))),
        }
        if self.lmer_icc:
            estimates["lmer"] = _linear_mixed_icc(dataset, "y ~ C(trt) * C(period)")
        for (arm, period), value in cell_means.items():
            estimates[f"mean.arm{arm}.period{period}"] = float(value)
        return estimates

    def summary(self) -> Dict[str, Any]:
        def p_h(variances):
            return float(np.mean([s / (s + math.pi**2 / 3) for s in variances]))

        odds1 = self.p1t1 / (1 - self.p1t1)
        odds2 = self.p2t1 / (1 - self.p2t1)
        return {
            "n.clusters": list(self.nclusters),
            "cluster.sizes": [list(s) for s in self.arm_sizes],
            "probabilities": {"p1t0": self.p1t0, "p2t0": self.p2t0, "p1t1": self.p1t1, "p2t1": self.p2t1},
            "p.diff": self.p_diff,
            "odds.ratio": {"Arm.1": round(odds1 / odds2, 3), "Arm.2": round(odds2 / odds1, 3)},
            "sigma_b_sq": {"Time.Point.0": list(self.sigma_b_sq0), "Time.Point.1": list(self.sigma_b_sq1)},
            "ICC": {"P_h_0": p_h(self.sigma_b_sq0), "P_h_1": p_h(self.sigma_b_sq1)},
        }


def _linear_mixed_icc(dataset: pd.DataFrame, formula: str) -> float:
    """ICC from a random-intercept linear mixed model: tau^2 / (tau^2 + sigma^2)."""
    import statsmodels.formula.api as smf

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            result = smf.mixedlm(formula, dataset, groups=dataset["clust"]).fit(reml=True)
    except (np.linalg.LinAlgError, ValueError):
        return float("nan")

    tau_sq = float(np.asarray(result.cov_re).flat[0])
    total = tau_sq + float(result.scale)
    return tau_sq / total if total > 0 else float("nan")
