"""Generalized linear mixed-model (GLMM) analysis for cluster-randomized trials.

Gaussian outcomes are fit with statsmodels ``MixedLM`` by maximum
likelihood; the random-effect structure follows the design's
``ModelShape``:

* shared random intercept when between-cluster variance is equal across
  arms, otherwise one random intercept per arm with a diagonal
  covariance;
* when within-cluster variance differs by arm, each row is rescaled by
  the arm's pooled within-cluster standard deviation so that a single
  residual scale applies (weighted least squares inside the mixed model).

The optimizer starts from OLS fixed effects and an ANOVA variance ratio
and falls back through statsmodels' optimizer chain. Fixed-effect
covariance and log-likelihood are computed by generalized least squares
at the fitted variance components, so neither depends on inverting the
full Hessian. When ``MixedLM`` cannot return a usable fit, the variance
ratios are found by maximizing the profile likelihood directly.

Designs with more than two arms are tested with a likelihood-ratio test
against the intercept-only null model (df = arms - 1); per-arm Wald
tests of each contrast are reported alongside.

Binary outcomes are fit with ``BinomialBayesMixedGLM`` (variational
Bayes); the test statistic is the posterior mean over the posterior
standard deviation of the target coefficient.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .data_generation import ModelSpec, anova_icc
from .fitting import FitFailure, FitResult, arm_contrasts, capture_fit_warnings, finite_or_nan, wald_p_value, z_p_value

# Fixed-effect prior SD for the variational-Bayes binary fit
_BINARY_FE_PRIOR_SD = 10.0

# Standard errors beyond this multiple of the outcome SD mark a degenerate optimum
_MAX_SE_RATIO = 1e3

# Bounds on log(cluster variance / residual variance) in the profile fit
_LOG_RATIO_BOUNDS = (-20.0, 5.0)


def _arm_scale(dataset: pd.DataFrame) -> np.ndarray:
    """Per-row pooled within-cluster SD of the row's arm.

    Returns:
        Array aligned with *dataset* rows.

    Raises:
        FitFailure: If an arm has no within-cluster variation.
    """
    centred = dataset["y"] - dataset.groupby("clust")["y"].transform("mean")
    ss = (centred**2).groupby(dataset["trt"]).sum()
    n_obs = dataset.groupby("trt").size()
    n_clust = dataset.groupby("trt")["clust"].nunique()
    df = n_obs - n_clust
    if (df < 1).any() or (ss <= 0).any():
        raise FitFailure("No within-cluster variation to estimate arm-specific residual variance")
    sd = np.sqrt(ss / df)
    return sd.loc[dataset["trt"].to_numpy()].to_numpy(dtype=float)


def _variance_ratio(dataset: pd.DataFrame, narms: int) -> float:
    """Starting value for cluster variance / residual variance."""
    icc = anova_icc(dataset, n_arms=narms)
    if not math.isfinite(icc):
        icc = 0.05
    icc = min(max(icc, 0.01), 0.9)
    return icc / (1.0 - icc)


def _gls(model, cov_re_scaled: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float, float]:
    """GLS fixed effects at given (scale-free) random-effect covariance.

    Returns:
        (fixed effects, unscaled fixed-effect covariance, ML residual
        scale, profile log-likelihood)

    Raises:
        numpy.linalg.LinAlgError: If the fixed-effect information is singular.
    """
    k = model.k_fe
    info = np.zeros((k, k))
    xty = np.zeros(k)
    yty = 0.0
    logdet = 0.0
    nobs = 0
    for y, x, z in zip(model.endog_li, model.exog_li, model.exog_re_li):
        v = np.eye(len(y)) + z @ cov_re_scaled @ z.T
        vinv_x = np.linalg.solve(v, x)
        vinv_y = np.linalg.solve(v, y)
        info += x.T @ vinv_x
        xty += x.T @ vinv_y
        yty += float(y @ vinv_y)
        logdet += np.linalg.slogdet(v)[1]
        nobs += len(y)

    info_inv = np.linalg.inv(info)
    fe_params = info_inv @ xty
    scale = (yty - float(xty @ fe_params)) / nobs
    if scale <= 0:
        raise np.linalg.LinAlgError("Non-positive residual variance")
    llf = -0.5 * (nobs * (math.log(2.0 * math.pi * scale) + 1.0) + logdet)
    return fe_params, info_inv, scale, llf


@dataclass
class _GaussianFit:
    """Maximum-likelihood fit of one linear mixed model."""

    names: Sequence[str]
    fe_params: np.ndarray
    cov_fe: np.ndarray
    cov_re: np.ndarray
    scale: float
    llf: float
    converged: bool
    messages: List[str] = field(default_factory=list)

    def term(self, name: str) -> Tuple[float, float]:
        i = list(self.names).index(name)
        variance = self.cov_fe[i, i]
        return finite_or_nan(self.fe_params[i]), math.sqrt(variance) if variance > 0 else float("nan")

    def usable(self, outcome_sd: float) -> bool:
        """Finite, positive-definite and not absurdly wide fixed-effect covariance."""
        cov = self.cov_fe
        if not (np.all(np.isfinite(cov)) and math.isfinite(self.llf)):
            return False
        if np.linalg.eigvalsh(cov).min() <= 0:
            return False
        return float(np.sqrt(np.diag(cov)).max()) < _MAX_SE_RATIO * max(outcome_sd, 1e-12)


class GLMMFitter:
    """Fit the design's treatment-effect model as a GLMM.

    Args:
        maxiter: Iteration cap per optimizer for ``MixedLM.fit``.
        optimizers: Optimizers tried in turn by ``MixedLM.fit`` until one
            converges.
    """

    label = "GLMM"

    def __init__(self, maxiter: int = 200, optimizers: Sequence[str] = ("bfgs", "lbfgs", "cg")):
        self.maxiter = maxiter
        self.optimizers = tuple(optimizers)

    def fit(self, dataset: pd.DataFrame, spec: ModelSpec) -> FitResult:
        if spec.family == "binomial":
            return self._fit_binomial(dataset, spec)
        if spec.family == "gaussian":
            return self._fit_gaussian(dataset, spec)
        raise ValueError(f"Unsupported outcome family: {spec.family!r}")

    # ------------------------------------------------------------------
    # Gaussian
    # ------------------------------------------------------------------

    def _build_gaussian(self, dataset: pd.DataFrame, spec: ModelSpec, formula: str):
        """Construct the (possibly rescaled) MixedLM and its free-parameter mask."""
        import statsmodels.formula.api as smf
        from statsmodels.regression.mixed_linear_model import MixedLM, MixedLMParams

        base = smf.mixedlm(formula, dataset, groups=dataset["clust"])
        exog = pd.DataFrame(base.exog, columns=base.exog_names, index=dataset.index)
        endog = dataset["y"].astype(float)
        groups = dataset["clust"].to_numpy()

        if spec.shape.arm_specific_residual:
            weight = 1.0 / _arm_scale(dataset)
        else:
            weight = np.ones(len(dataset))

        if spec.shape.arm_specific_between:
            arms = np.sort(dataset["trt"].unique())
            exog_re = (dataset["trt"].to_numpy()[:, None] == arms[None, :]).astype(float)
        else:
            exog_re = np.ones((len(dataset), 1))

        model = MixedLM(endog * weight, exog.mul(weight, axis=0), groups, exog_re=exog_re * weight[:, None])
        free = None
        if exog_re.shape[1] > 1:
            # Independent per-arm intercepts: off-diagonal covariances fixed at zero
            free = MixedLMParams.from_components(fe_params=np.ones(exog.shape[1]), cov_re=np.eye(exog_re.shape[1]))
        return model, free

    def _fit_model(self, model, free, ratio: float) -> _GaussianFit:
        from statsmodels.regression.mixed_linear_model import MixedLMParams

        fe_start = np.linalg.lstsq(model.exog, model.endog, rcond=None)[0]
        start = MixedLMParams.from_components(fe_params=fe_start, cov_re=np.eye(model.k_re) * ratio)
        kwargs = {"reml": False, "method": list(self.optimizers), "maxiter": self.maxiter, "start_params": start}
        if free is not None:
            kwargs["free"] = free

        try:
            result, messages = capture_fit_warnings(model.fit, **kwargs)
            cov_re_scaled = np.asarray(result.cov_re, dtype=float) / float(result.scale)
            converged = bool(getattr(result, "converged", True)) and not messages
            if np.all(np.isfinite(cov_re_scaled)):
                fit = self._gls_fit(model, cov_re_scaled, converged, messages)
                if fit.usable(float(np.std(model.endog))):
                    return fit
        except np.linalg.LinAlgError:
            # Raised while inverting the Hessian; the likelihood itself is fine
            pass
        return self._profile_fit(model, ratio)

    def _profile_fit(self, model, ratio: float) -> _GaussianFit:
        """Maximize the ML profile likelihood over log variance ratios."""
        from scipy.optimize import minimize

        def objective(log_ratio):
            return -_gls(model, np.diag(np.exp(log_ratio)))[3]

        x0 = np.full(model.k_re, math.log(ratio))
        try:
            opt = minimize(objective, x0, method="L-BFGS-B", bounds=[_LOG_RATIO_BOUNDS] * model.k_re)
            messages = [] if opt.success else [f"Profile likelihood optimization did not converge: {opt.message}"]
            return self._gls_fit(model, np.diag(np.exp(opt.x)), bool(opt.success), messages)
        except np.linalg.LinAlgError as e:
            raise FitFailure(f"MixedLM fit failed: {e}") from e

    @staticmethod
    def _gls_fit(model, cov_re_scaled: np.ndarray, converged: bool, messages: List[str]) -> _GaussianFit:
        fe_params, info_inv, scale, llf = _gls(model, cov_re_scaled)
        return _GaussianFit(
            names=list(model.exog_names),
            fe_params=fe_params,
            cov_fe=scale * info_inv,
            cov_re=scale * cov_re_scaled,
            scale=scale,
            llf=llf,
            converged=converged,
            messages=list(messages),
        )

    def _fit_gaussian(self, dataset: pd.DataFrame, spec: ModelSpec) -> FitResult:
        ratio = _variance_ratio(dataset, spec.narms)
        model, free = self._build_gaussian(dataset, spec, spec.formula)
        fit = self._fit_model(model, free, ratio)
        messages = list(fit.messages)
        converged = fit.converged
        if not fit.usable(float(np.std(model.endog))):
            converged = False
            messages.append("Degenerate fixed-effect covariance")

        estimate, std_error = fit.term(spec.target)
        extra = self._gaussian_icc(fit, spec)

        if spec.needs_null_model:
            null_model, null_free = self._build_gaussian(dataset, spec, spec.null_formula)
            null_fit = self._fit_model(null_model, null_free, ratio)
            messages += null_fit.messages
            converged = converged and null_fit.converged
            statistic = finite_or_nan(2.0 * (fit.llf - null_fit.llf))
            p_value = wald_p_value(statistic, df=spec.narms - 1)
            terms = {name: fit.term(name) for name in spec.arm_terms}
            extra.update(
                arm_contrasts(spec, {n: t[0] for n, t in terms.items()}, {n: t[1] for n, t in terms.items()})
            )
        else:
            statistic = estimate / std_error if std_error > 0 else float("nan")
            p_value = z_p_value(statistic)

        if not math.isfinite(p_value):
            converged = False
            messages.append("Non-finite test statistic")
        elif not converged and not messages:
            messages.append("MixedLM optimizer did not converge")

        return FitResult(
            estimate=estimate,
            std_error=std_error,
            statistic=statistic,
            p_value=p_value,
            converged=converged and not messages,
            message="; ".join(messages),
            extra=extra,
        )

    @staticmethod
    def _gaussian_icc(fit: _GaussianFit, spec: ModelSpec) -> Dict[str, float]:
        # Residual scale is only on the outcome scale when rows were not rescaled
        if spec.shape.arm_specific_residual:
            return {}
        tau_sq = float(np.mean(np.diag(fit.cov_re)))
        total = tau_sq + fit.scale
        return {"icc_model": tau_sq / total if total > 0 else float("nan")}

    # ------------------------------------------------------------------
    # Binary
    # ------------------------------------------------------------------

    def _fit_binomial(self, dataset: pd.DataFrame, spec: ModelSpec) -> FitResult:
        from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

        if spec.needs_null_model:
            raise ValueError("Binary outcomes with more than two arms are not supported by the GLMM fitter")

        model = BinomialBayesMixedGLM.from_formula(
            spec.formula, {"clust": "0 + C(clust)"}, dataset, fe_p=_BINARY_FE_PRIOR_SD
        )
        try:
            result, messages = capture_fit_warnings(model.fit_vb)
        except np.linalg.LinAlgError as e:
            raise FitFailure(f"Variational Bayes fit failed: {e}") from e

        idx = model.fep_names.index(spec.target)
        estimate = finite_or_nan(result.fe_mean[idx])
        std_error = finite_or_nan(result.fe_sd[idx])
        statistic = estimate / std_error if std_error > 0 else float("nan")
        p_value = z_p_value(statistic)
        if not math.isfinite(p_value):
            messages.append("Non-finite test statistic")

        sigma_b_sq = math.exp(2.0 * float(result.vcp_mean[0]))
        return FitResult(
            estimate=estimate,
            std_error=std_error,
            statistic=statistic,
            p_value=p_value,
            converged=not messages,
            message="; ".join(messages),
            extra={"icc_model": sigma_b_sq / (sigma_b_sq + math.pi**2 / 3)},
        )
