"""
Tests for the GLMM and GEE fitters on simulated trials.

These run real statsmodels fits on small datasets; effects are large
enough that a single draw is significant.
"""

import math

import numpy as np
import pytest

from crtpower import DidBinaryDesign, FitFailure, FitResult, GEEFitter, GLMMFitter, ModelShape, ModelSpec, MultiArmNormalDesign
from tests.config import SEED

pytestmark = pytest.mark.slow


def _dataset(design, seed=SEED):
    return design.generate(np.random.default_rng(seed))


@pytest.fixture
def two_arm():
    return MultiArmNormalDesign.balanced(2, 15, 20, [0.0, 1.0], 1.0, 0.2)


@pytest.fixture
def three_arm():
    return MultiArmNormalDesign.balanced(3, 12, 15, [0.0, 0.5, 1.5], 1.0, 0.1)


@pytest.fixture
def did_design():
    return DidBinaryDesign(nsubjects=30, nclusters=15, p1t0=0.2, p2t1=0.6, sigma_b_sq0=0.1, lmer_icc=False)


def _assert_finite(fit: FitResult):
    for value in (fit.estimate, fit.std_error, fit.statistic, fit.p_value):
        assert math.isfinite(value)
    assert 0.0 <= fit.p_value <= 1.0
    assert fit.std_error > 0


class TestGLMMGaussian:
    def test_two_arm_effect(self, two_arm):
        fit = GLMMFitter().fit(_dataset(two_arm), two_arm.model_spec())
        _assert_finite(fit)
        assert fit.estimate == pytest.approx(1.0, abs=0.5)
        assert fit.statistic == pytest.approx(fit.estimate / fit.std_error)
        assert fit.p_value < 0.05
        assert 0.0 <= fit.extra["icc_model"] < 1.0

    def test_heterogeneous_variances(self):
        design = MultiArmNormalDesign.balanced(2, 15, 20, [0.0, 1.5], [1.0, 2.0], [0.1, 0.3])
        spec = design.model_spec()
        assert spec.shape is ModelShape.HETEROGENEOUS

        fit = GLMMFitter().fit(_dataset(design), spec)
        _assert_finite(fit)
        assert fit.p_value < 0.05
        # No ICC on the rescaled outcome
        assert "icc_model" not in fit.extra

    def test_arm_specific_between_variance(self):
        design = MultiArmNormalDesign.balanced(2, 15, 20, [0.0, 1.5], 1.0, [0.05, 0.4])
        fit = GLMMFitter().fit(_dataset(design), design.model_spec())
        _assert_finite(fit)
        assert fit.p_value < 0.05

    def test_multi_arm_likelihood_ratio(self, three_arm):
        fit = GLMMFitter().fit(_dataset(three_arm), three_arm.model_spec())
        _assert_finite(fit)
        assert fit.statistic > 0
        assert fit.p_value < 0.05

    def test_no_within_cluster_variation(self):
        design = MultiArmNormalDesign(str_nsubjects=[[1] * 6, [1] * 6], means=[0, 1], sigma_sq=[1.0, 2.0], sigma_b_sq=0.1)
        with pytest.raises(FitFailure, match="within-cluster"):
            GLMMFitter().fit(_dataset(design), design.model_spec())


class TestGLMMBinary:
    def test_did_effect(self, did_design):
        fit = GLMMFitter().fit(_dataset(did_design), did_design.model_spec())
        assert math.isfinite(fit.estimate)
        assert fit.estimate > 0
        assert fit.std_error > 0
        assert 0.0 < fit.extra["icc_model"] < 1.0
        if fit.converged:
            assert fit.p_value < 0.05

    def test_multi_arm_binary_rejected(self, did_design):
        spec = ModelSpec(family="binomial", formula="y ~ C(trt)", target="C(trt)[T.3]", narms=3, null_formula="y ~ 1")
        with pytest.raises(ValueError, match="more than two arms"):
            GLMMFitter().fit(_dataset(did_design), spec)


class TestGEE:
    def test_two_arm_effect(self, two_arm):
        fit = GEEFitter().fit(_dataset(two_arm), two_arm.model_spec())
        _assert_finite(fit)
        assert fit.converged
        assert fit.statistic == pytest.approx((fit.estimate / fit.std_error) ** 2)
        assert fit.p_value < 0.05
        assert math.isfinite(fit.extra["working_correlation"])

    def test_multi_arm_joint_wald(self, three_arm):
        fit = GEEFitter().fit(_dataset(three_arm), three_arm.model_spec())
        _assert_finite(fit)
        assert fit.p_value < 0.05

    def test_binary_did(self, did_design):
        fit = GEEFitter().fit(_dataset(did_design), did_design.model_spec())
        _assert_finite(fit)
        assert fit.estimate > 0
        assert fit.p_value < 0.05


@pytest.mark.parametrize("fitter", [GLMMFitter(), GEEFitter()], ids=["glmm", "gee"])
def test_unsupported_family(fitter, two_arm):
    spec = ModelSpec(family="poisson", formula="y ~ C(trt)", target="C(trt)[T.2]")
    with pytest.raises(ValueError, match="Unsupported outcome family"):
        fitter.fit(_dataset(two_arm), spec)


class TestGLMMFallbacks:
    def test_hessian_failure_falls_back_to_profile_likelihood(self, two_arm, monkeypatch):
        from statsmodels.regression.mixed_linear_model import MixedLM

        def singular(*args, **kwargs):
            raise np.linalg.LinAlgError("Singular matrix")

        monkeypatch.setattr(MixedLM, "fit", singular)
        fit = GLMMFitter().fit(_dataset(two_arm), two_arm.model_spec())
        _assert_finite(fit)
        assert fit.converged
        assert fit.p_value < 0.05
        assert fit.extra["icc_model"] > 0

    def test_null_model_fit_failure_does_not_fail_multi_arm(self, three_arm, monkeypatch):
        from statsmodels.regression.mixed_linear_model import MixedLM

        original = MixedLM.fit

        def fail_on_null(model, *args, **kwargs):
            if model.k_fe == 1:
                raise np.linalg.LinAlgError("Singular matrix")
            return original(model, *args, **kwargs)

        monkeypatch.setattr(MixedLM, "fit", fail_on_null)
        fit = GLMMFitter().fit(_dataset(three_arm), three_arm.model_spec())
        _assert_finite(fit)
        assert fit.converged
        assert fit.statistic > 0

    def test_degenerate_covariance_is_not_converged(self, two_arm, monkeypatch):
        from crtpower.stats.mixed_models import _GaussianFit

        def degenerate(self, model, free, ratio):
            k = model.k_fe
            return _GaussianFit(
                names=list(model.exog_names),
                fe_params=np.full(k, -0.1),
                cov_fe=np.eye(k) * 1e14,
                cov_re=np.eye(model.k_re),
                scale=1.0,
                llf=-100.0,
                converged=True,
            )

        monkeypatch.setattr(GLMMFitter, "_fit_model", degenerate)
        fit = GLMMFitter().fit(_dataset(two_arm), two_arm.model_spec())
        assert not fit.converged
        assert "Degenerate fixed-effect covariance" in fit.message


class TestGaussianFitUsable:
    def _fit(self, cov_fe, llf=-10.0):
        from crtpower.stats.mixed_models import _GaussianFit

        return _GaussianFit(
            names=["Intercept", "C(trt)[T.2]"],
            fe_params=np.zeros(2),
            cov_fe=np.asarray(cov_fe, dtype=float),
            cov_re=np.eye(1),
            scale=1.0,
            llf=llf,
            converged=True,
        )

    def test_regular(self):
        assert self._fit(np.diag([0.01, 0.02])).usable(1.0)

    @pytest.mark.parametrize(
        "cov_fe",
        [np.diag([0.01, 8.6e13]), np.diag([0.01, -0.01]), np.diag([np.nan, 0.01]), np.array([[1.0, 2.0], [2.0, 1.0]])],
        ids=["huge", "negative", "nan", "indefinite"],
    )
    def test_unusable(self, cov_fe):
        assert not self._fit(cov_fe).usable(1.0)

    def test_non_finite_likelihood(self):
        assert not self._fit(np.diag([0.01, 0.02]), llf=float("inf")).usable(1.0)

    def test_term(self):
        estimate, std_error = self._fit(np.diag([0.01, 0.04])).term("C(trt)[T.2]")
        assert estimate == 0.0
        assert std_error == pytest.approx(0.2)


class TestArmContrasts:
    @pytest.mark.parametrize("fitter", [GLMMFitter(), GEEFitter()], ids=["glmm", "gee"])
    def test_each_contrast_reported(self, fitter, three_arm):
        spec = three_arm.model_spec()
        fit = fitter.fit(_dataset(three_arm), spec)
        for arm in (2, 3):
            assert math.isfinite(fit.extra[f"arm{arm}.estimate"])
            assert fit.extra[f"arm{arm}.std_error"] > 0
            assert 0.0 <= fit.extra[f"arm{arm}.p_value"] <= 1.0
        # Row estimate is the target contrast, not the omnibus test
        assert fit.estimate == pytest.approx(fit.extra["arm3.estimate"])
        assert fit.std_error == pytest.approx(fit.extra["arm3.std_error"])
        assert fit.extra["arm3.estimate"] == pytest.approx(1.5, abs=0.6)
        assert fit.extra["arm3.p_value"] < 0.05

    def test_two_arm_has_no_contrast_keys(self, two_arm):
        fit = GEEFitter().fit(_dataset(two_arm), two_arm.model_spec())
        assert not any(key.startswith("arm") for key in fit.extra)
