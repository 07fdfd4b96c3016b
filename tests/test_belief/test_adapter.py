"""Tests for mapping belief states onto the engines and merging forecasts."""

from datetime import timedelta
from types import SimpleNamespace

import numpy as np
import numpy.testing as npt
import pytest

from affect_dynamics.belief import (
    BeliefState,
    BeliefStateAdapter,
    belief_state_to_kalman_former_state,
    belief_state_to_latent_state,
    belief_state_to_observation,
    belief_state_to_uncertainty,
    kalman_former_state_to_belief_update,
    latent_state_to_belief_update,
    merge_hybrid_predictions,
)
from affect_dynamics.config import AdapterConfig
from affect_dynamics.core import (
    STATE_DIMENSIONS,
    CausalNetwork,
    HorizonClass,
    InterventionType,
    LatentState,
    PrimaryEngine,
)
from affect_dynamics.core.exceptions import InvalidDimensionError


def fake_plrnn_prediction(mean, variance=0.1, confidence=0.5):
    mean = np.asarray(mean, dtype=float)
    return SimpleNamespace(mean=mean, variance=np.full_like(mean, variance),
                           confidence=confidence, early_warning_signals=[])


def fake_kalman_former_prediction(blended, variance=0.1, confidence=0.5):
    blended = np.asarray(blended, dtype=float)
    return SimpleNamespace(blended=blended, variance=np.full_like(blended, variance),
                           confidence=confidence, attention=None)


class TestBeliefMapping:
    """Test conversion of belief states into engine coordinates."""

    def test_observation_vector(self, belief):
        """Test the order of the five core dimensions."""
        npt.assert_allclose(belief_state_to_observation(belief), [0.3, 0.6, 0.4, 0.2, 0.6])

    def test_resource_variance(self, belief):
        """Test the variance of the equally weighted resource mean."""
        variance = belief_state_to_uncertainty(belief)

        assert variance[4] == pytest.approx(0.14 / 9)
        npt.assert_allclose(variance[:4], [0.1, 0.1, 0.1, 0.1])

    def test_custom_resource_weights(self, belief):
        """Test that resource weights are normalized and applied."""
        assert belief_state_to_observation(belief, (2.0, 0.0, 0.0))[4] == pytest.approx(0.3)
        assert belief_state_to_uncertainty(belief, (1.0, 0.0, 0.0))[4] == pytest.approx(0.09)

    def test_invalid_resource_weights(self, belief):
        """Test that negative or empty weights are rejected."""
        with pytest.raises(ValueError):
            belief_state_to_observation(belief, (-1.0, 1.0, 1.0))
        with pytest.raises(ValueError):
            belief_state_to_uncertainty(belief, (0.0, 0.0, 0.0))

    def test_latent_state(self, belief):
        """Test that the latent state carries means, variances and time."""
        state = belief_state_to_latent_state(belief, timestep=3)

        npt.assert_allclose(state.latent, belief_state_to_observation(belief))
        npt.assert_allclose(state.uncertainty, belief_state_to_uncertainty(belief))
        assert state.timestamp == belief.timestamp
        assert state.timestep == 3

    def test_kalman_former_state_keeps_confidence(self, belief, kalman_former_engine):
        """Test that the filter state takes the belief's overall confidence."""
        state = belief_state_to_kalman_former_state(belief, kalman_former_engine)

        assert state.confidence == pytest.approx(0.7)
        npt.assert_allclose(state.state_estimate, belief_state_to_observation(belief))
        npt.assert_allclose(np.diag(state.error_covariance), belief_state_to_uncertainty(belief))

    def test_defaults_for_missing_means(self, start_time):
        """Test the defaults of a sparse belief."""
        belief = BeliefState.from_means("u2", {'valence': 0.2}, timestamp=start_time)

        npt.assert_allclose(belief_state_to_observation(belief), [0.2, 0.5, 0.5, 0.1, 0.5])


class TestBeliefUpdates:
    """Test conversion of engine states back into belief updates."""

    def test_from_latent_state(self, start_time):
        """Test that observed values become proposed posteriors."""
        state = LatentState(latent=np.zeros(5), uncertainty=np.full(5, 0.2), timestamp=start_time,
                            observed=np.array([0.1, 0.2, 0.3, 0.4, 0.5]))

        updates = latent_state_to_belief_update(state)

        assert list(updates) == list(STATE_DIMENSIONS)
        assert updates['risk'].mean == pytest.approx(0.4)
        assert updates['resources'].variance == pytest.approx(0.2)

    def test_from_filter_state(self, kalman_former_engine, latent_state):
        """Test that filter estimates become proposed posteriors."""
        state = kalman_former_engine.from_plrnn_state(latent_state)

        updates = kalman_former_state_to_belief_update(state)

        assert updates['valence'].mean == pytest.approx(0.2)
        assert updates['arousal'].variance == pytest.approx(0.05)

    def test_too_few_dimensions(self, start_time):
        """Test that states smaller than the core space are rejected."""
        with pytest.raises(InvalidDimensionError):
            latent_state_to_belief_update(LatentState.from_observation([0.1, 0.2], timestamp=start_time))


class TestMergeHybridPredictions:
    """Test merging engine forecasts into one prediction."""

    def test_long_horizon_disagreement(self, belief):
        """Test prior-weighted merging with widened variance."""
        plrnn = fake_plrnn_prediction(np.ones((48, 5)))
        kalman_former = fake_kalman_former_prediction(np.zeros((48, 5)))

        merged = merge_hybrid_predictions(plrnn, kalman_former, 'long', belief)

        assert merged.weights == pytest.approx((0.8, 0.2))
        npt.assert_allclose(merged.trajectory, np.full((48, 5), 0.8))
        npt.assert_allclose(merged.variance, np.full((48, 5), 0.228))
        assert merged.disagreement.all()
        assert merged.primary_engine is PrimaryEngine.PLRNN
        assert merged.hours_ahead == 48.0
        assert merged.confidence == pytest.approx(0.5)

    def test_short_horizon_prefers_filter(self, belief):
        """Test that short horizons weight the filter engine higher."""
        plrnn = fake_plrnn_prediction(np.full((4, 5), 0.5))
        kalman_former = fake_kalman_former_prediction(np.full((4, 5), 0.55))

        merged = merge_hybrid_predictions(plrnn, kalman_former, HorizonClass.SHORT, belief)

        assert merged.weights == pytest.approx((0.3, 0.7))
        assert merged.primary_engine is PrimaryEngine.KALMANFORMER
        assert not merged.disagreement.any()
        npt.assert_allclose(merged.variance, np.full((4, 5), 0.09 * 0.1 + 0.49 * 0.1))

    def test_confidence_scales_weights(self, belief):
        """Test that engine confidence multiplies the horizon prior."""
        plrnn = fake_plrnn_prediction(np.zeros((12, 5)), confidence=0.9)
        kalman_former = fake_kalman_former_prediction(np.zeros((12, 5)), confidence=0.1)

        merged = merge_hybrid_predictions(plrnn, kalman_former, 'medium', belief)

        assert merged.weights == pytest.approx((0.9, 0.1))
        assert merged.confidence == pytest.approx(0.9 * 0.9 + 0.1 * 0.1)

    def test_zero_confidence_falls_back_to_prior(self, belief):
        """Test that zero confidences keep the horizon prior."""
        plrnn = fake_plrnn_prediction(np.zeros((12, 5)), confidence=0.0)
        kalman_former = fake_kalman_former_prediction(np.zeros((12, 5)), confidence=0.0)

        assert merge_hybrid_predictions(plrnn, kalman_former, 'medium', belief).weights == pytest.approx((0.5, 0.5))

    def test_single_engine(self, belief):
        """Test that one forecast passes through unchanged."""
        plrnn = fake_plrnn_prediction(np.full((12, 5), 0.4))

        merged = merge_hybrid_predictions(plrnn, None, 'medium', belief)

        assert merged.weights == (1.0, 0.0)
        assert merged.primary_engine is PrimaryEngine.PLRNN
        npt.assert_allclose(merged.final_prediction, np.full(5, 0.4))
        assert merged.disagreement is None

    def test_persistence_without_engines(self, belief):
        """Test the belief-only fallback forecast."""
        merged = merge_hybrid_predictions(None, None, 'short', belief)
        base = belief_state_to_uncertainty(belief)

        assert merged.primary_engine is PrimaryEngine.BAYESIAN
        npt.assert_allclose(merged.trajectory, np.tile(belief_state_to_observation(belief), (4, 1)))
        npt.assert_allclose(merged.variance[2], base + 0.05 * 3)
        assert merged.confidence == pytest.approx(0.7)

    def test_mismatched_shapes(self, belief):
        """Test that forecasts of different lengths are rejected."""
        with pytest.raises(InvalidDimensionError):
            merge_hybrid_predictions(fake_plrnn_prediction(np.zeros((12, 5))),
                                     fake_kalman_former_prediction(np.zeros((4, 5))), 'medium', belief)

    def test_custom_credible_level(self, belief):
        """Test that the credible level sets the interval width."""
        plrnn = fake_plrnn_prediction(np.zeros((12, 5)))
        narrow = merge_hybrid_predictions(plrnn, None, 'medium', belief, AdapterConfig(credible_level=0.5))
        wide = merge_hybrid_predictions(plrnn, None, 'medium', belief, AdapterConfig(credible_level=0.99))

        assert np.all(narrow.credible_interval.width < wide.credible_interval.width)


class TestBeliefStateAdapter:
    """Test the adapter with real engines."""

    @pytest.fixture
    def adapter(self, plrnn_engine, kalman_former_engine):
        return BeliefStateAdapter(plrnn=plrnn_engine, kalman_former=kalman_former_engine)

    @pytest.mark.parametrize("horizon, steps", [('short', 4), ('medium', 12), ('long', 48)])
    def test_predict_hybrid(self, adapter, belief, horizon, steps):
        """Test merged forecasts for every horizon class."""
        prediction = adapter.predict_hybrid(belief, horizon)

        assert prediction.trajectory.shape == (steps, 5)
        assert prediction.hours_ahead == float(steps)
        assert sum(prediction.weights) == pytest.approx(1.0)
        assert 0.0 <= prediction.confidence <= 1.0
        assert np.all(prediction.credible_interval.lower <= prediction.trajectory)
        assert prediction.attention is not None
        assert prediction.plrnn_prediction is not None

    def test_observe_accumulates(self, adapter, belief, start_time):
        """Test that successive beliefs update one filter state."""
        state = adapter.observe(belief)
        later = BeliefState.from_means("user-1", {'valence': 0.8}, timestamp=start_time + timedelta(hours=2))

        updated = adapter.observe(later, state)

        assert len(updated.history) == 2
        assert updated.timestamp == later.timestamp
        assert updated.state_estimate[0] > state.state_estimate[0]

        prediction = adapter.predict_hybrid(later, 'short', kalman_former_state=updated)
        npt.assert_allclose(prediction.kalman_former_prediction.kalman[0], updated.state_estimate)

    def test_interpretation(self, adapter, belief):
        """Test causal, intervention, explanation and warning pass-through."""
        assert isinstance(adapter.extract_causal_network(belief), CausalNetwork)

        simulation = adapter.simulate_intervention(belief, 'arousal', 'decrease', 0.2, horizon=6)
        assert simulation.target == 'arousal'
        assert simulation.intervention is InterventionType.DECREASE

        attention = adapter.explain_prediction(belief)
        assert attention.self_attention.shape == (1, 1)

        beliefs = [BeliefState.from_means("user-1", {'valence': 0.5 + 0.01 * k},
                                          timestamp=belief.timestamp + timedelta(hours=k)) for k in range(20)]
        assert isinstance(adapter.detect_early_warnings(beliefs, window_size=5), list)

    def test_without_engines(self, belief):
        """Test that engine operations return None when nothing is wired."""
        adapter = BeliefStateAdapter()

        assert adapter.observe(belief) is None
        assert adapter.to_kalman_former_state(belief) is None
        assert adapter.extract_causal_network(belief) is None
        assert adapter.simulate_intervention(belief, 'valence', 'increase', 0.1) is None
        assert adapter.explain_prediction(belief) is None
        assert adapter.detect_early_warnings([belief]) is None
        assert adapter.predict_hybrid(belief).primary_engine is PrimaryEngine.BAYESIAN

    def test_plrnn_only(self, plrnn_engine, belief):
        """Test a dynamics-only adapter."""
        adapter = BeliefStateAdapter(plrnn=plrnn_engine)
        prediction = adapter.predict_hybrid(belief, 'long')

        assert prediction.primary_engine is PrimaryEngine.PLRNN
        assert prediction.weights == (1.0, 0.0)
        assert prediction.attention is None

    def test_swap_engines(self, plrnn_engine, kalman_former_engine, belief):
        """Test wiring engines after construction."""
        adapter = BeliefStateAdapter()
        adapter.set_kalman_former_engine(kalman_former_engine)

        assert adapter.predict_hybrid(belief, 'short').primary_engine is PrimaryEngine.KALMANFORMER

        adapter.set_plrnn_engine(plrnn_engine)
        adapter.set_kalman_former_engine(None)
        assert adapter.predict_hybrid(belief, 'short').primary_engine is PrimaryEngine.PLRNN
