"""
Pytest Configuration and Fixtures for metagrowth
================================================

Shared fixtures, configuration, and test utilities for the entire test suite.
"""

import tempfile
from pathlib import Path

import numpy as np
import pytest

from metagrowth.optimization.mcmc.config import MHSimulationParameters
from tests.factories.synthetic_data import (
    OUTPUT_TYPE,
    TRUE_PARAMETERS,
    build_metamodel,
    generate_growth_data,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for workflows")
    config.addinivalue_line("markers", "mcmc: MCMC statistical tests")
    config.addinivalue_line("markers", "slow: Slow tests (> 5 seconds)")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def temp_dir():
    """Temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(12345)


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def synthetic_data():
    """Five strata of six measurements drawn from the ground-truth curve."""
    return generate_growth_data()


@pytest.fixture
def true_parameters():
    return dict(TRUE_PARAMETERS)


@pytest.fixture
def small_mh_parameters():
    """Sampler settings small enough for unit tests."""
    return MHSimulationParameters(
        n_initial_grid=0,
        n_burn_in=500,
        n_accepted=300,
        max_iterations=100_000,
        adaptation_interval=50,
        log_interval=1000,
        seed=42,
    )


@pytest.fixture
def unfitted_metamodel(synthetic_data, small_mh_parameters):
    return build_metamodel(synthetic_data, small_mh_parameters)


@pytest.fixture(scope="session")
def fitted_metamodel(synthetic_data):
    """Meta-model fitted once per session on the synthetic data."""
    mh_parameters = MHSimulationParameters(
        n_initial_grid=0,
        n_burn_in=500,
        n_accepted=300,
        max_iterations=100_000,
        adaptation_interval=50,
        log_interval=1000,
        seed=42,
    )
    model = build_metamodel(synthetic_data, mh_parameters)
    model.fit(OUTPUT_TYPE)
    return model
