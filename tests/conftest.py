"""
Shared pytest fixtures for MLMPower tests.
"""

import contextlib
import io

import numpy as np
import pytest

from tests.config import SCENARIO_DESIGN, SEED, SMALL_DESIGN


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running Monte Carlo calibration tests")
    config.addinivalue_line("markers", "lme: mixed-model fitting tests")


@pytest.fixture
def suppress_output():
    """Silence configuration prints while a test runs."""
    with contextlib.redirect_stdout(io.StringIO()):
        yield


@pytest.fixture
def small_params():
    """Fast design with no truncation."""
    from mlmpower import DesignParameters

    return DesignParameters(**SMALL_DESIGN)


@pytest.fixture
def scenario_params():
    """The 50 x 25 reference design."""
    from mlmpower import DesignParameters

    return DesignParameters(**SCENARIO_DESIGN)


@pytest.fixture
def small_skeleton(small_params):
    from mlmpower import generate_design

    return generate_design(small_params.subject_count, small_params.trial_count, small_params.group_proportions)


@pytest.fixture
def small_dataset(small_skeleton, small_params):
    """One synthesized dataset on the small design."""
    from mlmpower import synthesize

    return synthesize(small_skeleton, small_params, rng=np.random.default_rng(SEED))


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)
