"""
Generalized estimating equations (GEE) analysis.

Population-averaged treatment test with an exchangeable working
correlation within clusters and robust (sandwich) standard errors. The
reported statistic is a Wald chi-square: the squared z for a single
contrast, or the joint Wald statistic over all arm contrasts when the
design has more than two arms. Each arm contrast is also tested on its own
and reported in the fit diagnostics.
"""

import math

import numpy as np
import pandas as pd

from .data_generation import ModelSpec
from .fitting import FitFailure, FitResult, arm_contrasts, capture_fit_warnings, finite_or_nan, joint_wald, wald_p_value


class GEEFitter:
    """Fit the design's treatment-effect model by GEE.

    Args:
        maxiter: Iteration cap for the GEE fitting algorithm.
    """

    label = "GEE"

    def __init__(self, maxiter: int = 60):
        self.maxiter = maxiter

    def fit(self, dataset: pd.DataFrame, spec: ModelSpec) -> FitResult:
        import statsmodels.api as sm
        import statsmodels.formula.api as smf

        if spec.family == "binomial":
            family = sm.families.Binomial()
        elif spec.family == "gaussian":
            family = sm.families.Gaussian()
        else:
            raise ValueError(f"Unsupported outcome family: {spec.family!r}")

        model = smf.gee(spec.formula, groups="clust", data=dataset, family=family, cov_struct=sm.cov_struct.Exchangeable())
        try:
            result, messages = capture_fit_warnings(model.fit, maxiter=self.maxiter)
        except np.linalg.LinAlgError as e:
            raise FitFailure(f"GEE fit failed: {e}") from e

        estimate = finite_or_nan(result.params[spec.target])
        std_error = finite_or_nan(result.bse[spec.target])
        extra = {"working_correlation": finite_or_nan(np.ravel(result.model.cov_struct.dep_params)[0])}

        if spec.needs_null_model:
            terms = list(spec.arm_terms)
            cov = np.asarray(result.cov_params().loc[terms, terms], dtype=float)
            statistic, df = joint_wald(np.asarray(result.params[terms], dtype=float), cov)
            p_value = wald_p_value(statistic, df=df)
            extra.update(arm_contrasts(spec, result.params, result.bse))
        else:
            statistic = (estimate / std_error) ** 2 if std_error > 0 else float("nan")
            p_value = wald_p_value(statistic, df=1)

        if not math.isfinite(p_value):
            messages.append("Non-finite Wald statistic")

        return FitResult(
            estimate=estimate,
            std_error=std_error,
            statistic=finite_or_nan(statistic),
            p_value=p_value,
            converged=not messages,
            message="; ".join(messages),
            extra=extra,
        )
