"""
Shared pytest fixtures for CRTPower tests.
"""

import warnings

import pytest

from crtpower import MultiArmNormalDesign, SimulationConfig
from tests.config import SEED
from tests.helpers.stubs import StubDesign


@pytest.fixture
def stub_design():
    """Cheap two-arm design with no treatment effect."""
    return StubDesign()


@pytest.fixture
def normal_design():
    """Small two-arm continuous design with a clear treatment effect."""
    return MultiArmNormalDesign.balanced(
        narms=2, nclusters=8, nsubjects=10, means=[0.0, 1.0], sigma_sq=1.0, sigma_b_sq=0.2
    )


@pytest.fixture
def make_config(stub_design):
    """Factory for validated configs; low-nsim warnings are silenced."""

    def _make(**overrides):
        overrides.setdefault("design", stub_design)
        overrides.setdefault("seed", SEED)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return SimulationConfig(**overrides)

    return _make


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: runs real statsmodels fits")
