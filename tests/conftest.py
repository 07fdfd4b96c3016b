"""
Pytest configuration and shared fixtures for the Affect Dynamics test suite.
"""

import pytest
import numpy as np
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add src to path for testing
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from affect_dynamics.config import PLRNNConfig, KalmanFormerConfig, make_rng
from affect_dynamics.core import Connectivity, LatentState, PLRNNEngine, KalmanFormerEngine
from affect_dynamics.belief import BeliefState, BeliefMeta


@pytest.fixture(scope="session")
def test_seed():
    """Seed shared by all tests for reproducibility."""
    return 42


@pytest.fixture
def rng(test_seed):
    """Fresh generator per test."""
    return make_rng(test_seed)


@pytest.fixture
def start_time():
    """Fixed, timezone-aware reference time."""
    return datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def hourly_timestamps(start_time):
    """Factory for n hourly timestamps starting at ``start_time``."""
    def make(n):
        return [start_time + timedelta(hours=k) for k in range(n)]
    return make


@pytest.fixture
def small_plrnn_config(test_seed):
    """Small dense PLRNN without dendritic bases."""
    return PLRNNConfig(hidden_units=4, connectivity=Connectivity.FULL, random_seed=test_seed)


@pytest.fixture
def dendritic_plrnn_config(test_seed):
    """Small dendritic PLRNN."""
    return PLRNNConfig(hidden_units=6, connectivity=Connectivity.DENDRITIC, random_seed=test_seed)


@pytest.fixture
def small_kalman_former_config(test_seed):
    """Narrow KalmanFormer for fast tests."""
    return KalmanFormerConfig(embed_dim=16, num_heads=2, num_layers=1, context_window=8,
                              random_seed=test_seed)


@pytest.fixture
def plrnn_engine(small_plrnn_config):
    """Initialized dense PLRNN engine."""
    engine = PLRNNEngine(small_plrnn_config)
    engine.initialize()
    return engine


@pytest.fixture
def dendritic_engine(dendritic_plrnn_config):
    """Initialized dendritic PLRNN engine."""
    engine = PLRNNEngine(dendritic_plrnn_config)
    engine.initialize()
    return engine


@pytest.fixture
def kalman_former_engine(small_kalman_former_config):
    """Initialized KalmanFormer engine."""
    engine = KalmanFormerEngine(small_kalman_former_config)
    engine.initialize()
    return engine


@pytest.fixture
def latent_state(start_time):
    """Five-dimensional state near the middle of the scale."""
    return LatentState.from_observation([0.2, 0.5, 0.4, 0.1, 0.6], timestamp=start_time, uncertainty=0.05)


@pytest.fixture
def belief(start_time):
    """Belief state with distinct resource posteriors."""
    return BeliefState.from_means(
        "user-1",
        {'valence': 0.3, 'arousal': 0.6, 'dominance': 0.4, 'overall_risk': 0.2,
         'energy': 0.3, 'coping_capacity': 0.6, 'social_support': 0.9},
        variances={'energy': 0.09, 'coping_capacity': 0.04, 'social_support': 0.01},
        timestamp=start_time,
        meta=BeliefMeta(overall_confidence=0.7),
    )


class TestDataGenerator:
    """Helper class for generating test histories."""

    @staticmethod
    def rising_instability(n_steps: int = 50, n_dims: int = 1, seed: int = 42) -> np.ndarray:
        """AR(1) history whose coefficient and noise both rise over time.

        Mimics critical slowing down: lag-1 autocorrelation and variance
        increase steadily toward the end of the series.
        """
        rng = np.random.default_rng(seed)
        phi = np.linspace(0.1, 0.95, n_steps)
        sigma = np.linspace(0.1, 1.5, n_steps)
        x = np.zeros((n_steps, n_dims))
        for t in range(1, n_steps):
            x[t] = phi[t] * x[t - 1] + sigma[t] * rng.standard_normal(n_dims)
        return x

    @staticmethod
    def stationary_noise(n_steps: int = 50, n_dims: int = 1, seed: int = 42) -> np.ndarray:
        """White noise with constant variance."""
        rng = np.random.default_rng(seed)
        return 0.1 * rng.standard_normal((n_steps, n_dims))

    @staticmethod
    def linear_sequence(n_steps: int = 12, n_dims: int = 5, decay: float = 0.9, seed: int = 42) -> np.ndarray:
        """Decaying trajectory x_{t+1} = decay * x_t from a random start."""
        rng = np.random.default_rng(seed)
        x = np.zeros((n_steps, n_dims))
        x[0] = rng.uniform(0.2, 1.0, n_dims)
        for t in range(1, n_steps):
            x[t] = decay * x[t - 1]
        return x


@pytest.fixture
def test_data_generator():
    """Test data generator fixture."""
    return TestDataGenerator


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "visual: marks tests that render figures"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark slow, integration and visual tests."""
    for item in items:
        if "training" in item.nodeid or "large" in item.nodeid:
            item.add_marker(pytest.mark.slow)

        if "integration" in item.nodeid or "end_to_end" in item.nodeid:
            item.add_marker(pytest.mark.integration)

        if "test_viz" in item.nodeid:
            item.add_marker(pytest.mark.visual)
