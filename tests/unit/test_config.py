"""
Tests for SimulationConfig and EarlyStopRules.
"""

import dataclasses
import warnings

import pytest

from crtpower import ConfigurationError, EarlyStopRules, FitMethod, SimulationConfig
from tests.helpers.stubs import StubDesign


class TestEarlyStopRules:
    def test_defaults(self):
        rules = EarlyStopRules()
        assert rules.min_iterations == 50
        assert rules.max_nonconvergence == 0.25
        assert rules.power_check_every == 10
        assert rules.min_power == 0.5
        assert rules.time_check_iteration == 10
        assert rules.time_limit_seconds == 120.0

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ConfigurationError, match="min_power"):
            EarlyStopRules(min_power=1.5)

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            EarlyStopRules().min_power = 0.1


class TestSimulationConfigDefaults:
    def test_defaults(self, stub_design):
        config = SimulationConfig(design=stub_design)
        assert config.nsim == 1000
        assert config.alpha == 0.05
        assert config.method is FitMethod.GLMM
        assert config.seed is None
        assert config.poor_fit_override is False
        assert config.low_power_override is False
        assert config.time_limit_override is True
        assert config.retain_all_datasets is False
        assert config.quiet is True
        assert config.workers == 1
        assert config.max_fit_attempts == 2
        assert config.stop_rules == EarlyStopRules()

    def test_method_string_converted(self, stub_design):
        config = SimulationConfig(design=stub_design, method="gee")
        assert config.method is FitMethod.GEE

    def test_nsim_whole_float_normalised(self, stub_design):
        config = SimulationConfig(design=stub_design, nsim=200.0)
        assert config.nsim == 200
        assert isinstance(config.nsim, int)

    def test_replace_revalidates(self, stub_design):
        config = SimulationConfig(design=stub_design, nsim=200)
        with pytest.raises(ConfigurationError):
            dataclasses.replace(config, alpha=2.0)


class TestSimulationConfigValidation:
    @pytest.mark.parametrize(
        "overrides,match",
        [
            ({"nsim": -5}, "nsim"),
            ({"nsim": 2.5}, "nsim"),
            ({"alpha": 0.0}, "alpha"),
            ({"alpha": 1.0}, "alpha"),
            ({"method": "ols"}, "method"),
            ({"seed": -1}, "seed"),
            ({"n_jobs": 0}, "n_jobs"),
            ({"quiet": "yes"}, "quiet"),
            ({"poor_fit_override": 1}, "poor_fit_override"),
            ({"max_fit_attempts": 0}, "max_fit_attempts"),
            ({"stop_rules": {"min_power": 0.5}}, "stop_rules"),
        ],
    )
    def test_rejected(self, stub_design, overrides, match):
        with pytest.raises(ConfigurationError, match=match):
            SimulationConfig(design=stub_design, **overrides)

    def test_design_must_be_generator(self):
        with pytest.raises(ConfigurationError, match="DatasetGenerator"):
            SimulationConfig(design=object(), nsim=200)

    def test_all_errors_reported_together(self, stub_design):
        with pytest.raises(ConfigurationError) as excinfo:
            SimulationConfig(design=stub_design, nsim=-1, alpha=5, method="x")
        assert len(excinfo.value.errors) == 3

    def test_low_nsim_warns(self, stub_design):
        with pytest.warns(UserWarning, match="Low simulation count"):
            SimulationConfig(design=stub_design, nsim=10)

    def test_zero_nsim_does_not_warn(self, stub_design):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            SimulationConfig(design=stub_design, nsim=0)

    def test_all_cores(self):
        config = SimulationConfig(design=StubDesign(), n_jobs=-1)
        assert config.workers >= 1
