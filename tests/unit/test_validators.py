"""
Tests for validation utilities.
"""

import multiprocessing as mp
from types import SimpleNamespace

import numpy as np
import pytest


class TestConfigurationError:
    def test_is_value_error(self):
        from crtpower.utils.validators import ConfigurationError

        assert issubclass(ConfigurationError, ValueError)

    def test_carries_all_messages(self):
        from crtpower.utils.validators import ConfigurationError

        exc = ConfigurationError(["first problem", "second problem"])
        assert exc.errors == ["first problem", "second problem"]
        assert "first problem" in str(exc)
        assert "second problem" in str(exc)

    def test_raise_if_invalid(self):
        from crtpower.utils.validators import ConfigurationError, _ValidationResult

        _ValidationResult(True, [], []).raise_if_invalid()
        with pytest.raises(ConfigurationError, match="broken"):
            _ValidationResult(False, ["broken"], []).raise_if_invalid()

    def test_merge(self):
        from crtpower.utils.validators import _ValidationResult

        merged = _ValidationResult(True, [], ["w"]).merge(_ValidationResult(False, ["e"], []))
        assert not merged.is_valid
        assert merged.errors == ["e"]
        assert merged.warnings == ["w"]


class TestValidateAlpha:
    """Test _validate_alpha function."""

    def test_valid_alpha(self):
        from crtpower.utils.validators import _validate_alpha

        assert _validate_alpha(0.05).is_valid

    @pytest.mark.parametrize("alpha", [0, 1, -0.1, 1.5])
    def test_alpha_outside_open_interval(self, alpha):
        from crtpower.utils.validators import _validate_alpha

        assert not _validate_alpha(alpha).is_valid

    @pytest.mark.parametrize("alpha", ["0.05", True, None])
    def test_alpha_wrong_type(self, alpha):
        from crtpower.utils.validators import _validate_alpha

        assert not _validate_alpha(alpha).is_valid

    def test_alpha_nan(self):
        from crtpower.utils.validators import _validate_alpha

        result = _validate_alpha(float("nan"))
        assert not result.is_valid
        assert "finite" in result.errors[0]


class TestValidateSimulations:
    """Test _validate_simulations function."""

    def test_zero_is_allowed(self):
        from crtpower.utils.validators import _validate_simulations

        nsim, result = _validate_simulations(0)
        assert nsim == 0
        assert result.is_valid
        assert result.warnings == []

    def test_negative_rejected(self):
        from crtpower.utils.validators import _validate_simulations

        _, result = _validate_simulations(-1)
        assert not result.is_valid

    def test_fractional_rejected(self):
        from crtpower.utils.validators import _validate_simulations

        _, result = _validate_simulations(10.5)
        assert not result.is_valid

    def test_whole_float_accepted(self):
        from crtpower.utils.validators import _validate_simulations

        nsim, result = _validate_simulations(200.0)
        assert result.is_valid
        assert nsim == 200
        assert isinstance(nsim, int)

    def test_low_count_warns(self):
        from crtpower.utils.validators import _validate_simulations

        nsim, result = _validate_simulations(20)
        assert result.is_valid
        assert nsim == 20
        assert len(result.warnings) == 1


class TestValidateSeed:
    @pytest.mark.parametrize("seed", [None, 0, 2137, np.int64(5), 3000000000])
    def test_valid(self, seed):
        from crtpower.utils.validators import _validate_seed

        assert _validate_seed(seed).is_valid

    @pytest.mark.parametrize("seed", [-1, 3000000001, 1.5, "42", True])
    def test_invalid(self, seed):
        from crtpower.utils.validators import _validate_seed

        assert not _validate_seed(seed).is_valid


class TestValidateParallelSettings:
    def test_none_is_sequential(self):
        from crtpower.utils.validators import _validate_parallel_settings

        workers, result = _validate_parallel_settings(None)
        assert result.is_valid
        assert workers == 1

    def test_all_cores(self):
        from crtpower.utils.validators import _validate_parallel_settings

        workers, result = _validate_parallel_settings(-1)
        assert result.is_valid
        assert workers == (mp.cpu_count() or 1)

    def test_capped_at_cpu_count(self):
        from crtpower.utils.validators import _validate_parallel_settings

        workers, result = _validate_parallel_settings(10**6)
        assert result.is_valid
        assert workers == (mp.cpu_count() or 1)

    @pytest.mark.parametrize("n_jobs", [0, -2, "2", 1.5, True])
    def test_invalid(self, n_jobs):
        from crtpower.utils.validators import _validate_parallel_settings

        _, result = _validate_parallel_settings(n_jobs)
        assert not result.is_valid


class TestSmallValidators:
    def test_method(self):
        from crtpower.utils.validators import _validate_method

        assert _validate_method("glmm", ["glmm", "gee"]).is_valid
        assert not _validate_method("ols", ["glmm", "gee"]).is_valid

    def test_flag(self):
        from crtpower.utils.validators import _validate_flag

        assert _validate_flag(False, "quiet").is_valid
        assert not _validate_flag(0, "quiet").is_valid

    @pytest.mark.parametrize("value,valid", [(1, True), (3.0, True), (0, False), (2.5, False), ("3", False)])
    def test_count(self, value, valid):
        from crtpower.utils.validators import _validate_count

        assert _validate_count(value, "nclusters").is_valid is valid

    @pytest.mark.parametrize("value,valid", [(0.3, True), (0.0, False), (1.0, False), (np.float64(0.5), True)])
    def test_probability(self, value, valid):
        from crtpower.utils.validators import _validate_probability

        assert _validate_probability(value, "p1t0").is_valid is valid


class TestValidateArmVector:
    def test_valid_vector(self):
        from crtpower.utils.validators import _validate_arm_vector

        assert _validate_arm_vector([0.0, 0.1], "sigma_b_sq", 2).is_valid

    def test_wrong_length(self):
        from crtpower.utils.validators import _validate_arm_vector

        result = _validate_arm_vector([0.1, 0.1], "sigma_b_sq", 3)
        assert not result.is_valid
        assert "length 3" in result.errors[0]

    def test_negative_rejected(self):
        from crtpower.utils.validators import _validate_arm_vector

        assert not _validate_arm_vector([0.1, -0.1], "sigma_b_sq", 2).is_valid

    def test_zero_rejected_when_not_allowed(self):
        from crtpower.utils.validators import _validate_arm_vector

        assert not _validate_arm_vector([1.0, 0.0], "sigma_sq", 2, allow_zero=False).is_valid

    def test_non_finite_rejected(self):
        from crtpower.utils.validators import _validate_arm_vector

        assert not _validate_arm_vector([1.0, np.inf], "sigma_sq", 2).is_valid


class TestValidateStopRules:
    def _rules(self, **overrides):
        values = dict(
            min_iterations=50,
            max_nonconvergence=0.25,
            power_check_every=10,
            min_power=0.5,
            time_check_iteration=10,
            time_limit_seconds=120.0,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_defaults_valid(self):
        from crtpower.utils.validators import _validate_stop_rules

        assert _validate_stop_rules(self._rules()).is_valid

    @pytest.mark.parametrize(
        "overrides",
        [
            {"min_iterations": 0},
            {"max_nonconvergence": 1.5},
            {"power_check_every": 0},
            {"min_power": -0.1},
            {"time_check_iteration": 2.5},
            {"time_limit_seconds": 0},
        ],
    )
    def test_invalid(self, overrides):
        from crtpower.utils.validators import _validate_stop_rules

        assert not _validate_stop_rules(self._rules(**overrides)).is_valid

    def test_collects_every_error(self):
        from crtpower.utils.validators import _validate_stop_rules

        result = _validate_stop_rules(self._rules(min_iterations=0, min_power=2))
        assert len(result.errors) == 2
