"""
Tests for parallel execution in CRTPower.
"""

import warnings

import pandas as pd
import pytest

from crtpower import GEEFitter, MultiArmNormalDesign, Termination, run_power_simulation
from crtpower.core.simulation import SimulationRunner
from tests.config import N_SIMS_POLICY
from tests.helpers.stubs import BrokenFitter, DifferenceFitter, SequenceFitter, StubDesign


def _joblib_available():
    """Check if joblib is available."""
    import importlib.util

    return importlib.util.find_spec("joblib") is not None


pytestmark = pytest.mark.skipif(not _joblib_available(), reason="joblib not installed")


def _run_threaded(config, fitter):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return SimulationRunner(config, fitter=fitter, backend="threading").run()


class TestParallelExecution:
    """Parallel runs see exactly the sequence a sequential run sees."""

    def test_parallel_results_match_sequential(self, make_config):
        design = StubDesign(effect=0.8)
        sequential = _run_threaded(make_config(nsim=40, design=design), DifferenceFitter())
        parallel = _run_threaded(make_config(nsim=40, design=design, n_jobs=2), DifferenceFitter())

        pd.testing.assert_frame_equal(sequential.estimates, parallel.estimates)
        assert sequential.power == parallel.power
        assert sequential.ci_lower == parallel.ci_lower

    def test_abort_point_matches_sequential(self, make_config):
        sequential = _run_threaded(make_config(nsim=N_SIMS_POLICY), SequenceFitter([1.0]))
        parallel = _run_threaded(make_config(nsim=N_SIMS_POLICY, n_jobs=2), SequenceFitter([1.0]))

        assert parallel.termination is Termination.LOW_POWER
        assert parallel.n_evaluated == sequential.n_evaluated == 60

    def test_results_in_iteration_order(self, make_config):
        report = _run_threaded(make_config(nsim=25, n_jobs=2), DifferenceFitter())
        assert [r.index for r in report.results] == list(range(1, 26))

    def test_fault_in_worker_raises(self, make_config):
        from crtpower import SimulationError

        with pytest.raises(SimulationError):
            _run_threaded(make_config(nsim=10, n_jobs=2), BrokenFitter())

    def test_loky_backend_with_real_design(self, make_config):
        """Designs and fitters shipped with the package survive process workers."""
        design = MultiArmNormalDesign.balanced(2, 6, 8, [0.0, 1.0], 1.0, 0.1)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            sequential = run_power_simulation(make_config(nsim=6, design=design, method="gee"))
            parallel = run_power_simulation(make_config(nsim=6, design=design, method="gee", n_jobs=2))

        assert isinstance(parallel.results[0].estimate, float)
        pd.testing.assert_frame_equal(sequential.estimates, parallel.estimates)
        assert GEEFitter.label == parallel.method
