"""Tests for PLRNN training: gradients, online and batch updates."""

import logging
from unittest.mock import patch

import numpy as np
import numpy.testing as npt
import pytest

from affect_dynamics.config import PLRNNConfig
from affect_dynamics.core import Connectivity, LatentState, LearningRateSchedule, PLRNNEngine, TrainingSample
from affect_dynamics.core.plrnn import normalize_sample
from affect_dynamics.core.exceptions import InvalidDimensionError, TrainingError


def make_engine(test_seed, **overrides):
    """Initialized engine with deterministic teacher forcing and no L1 term."""
    options = dict(hidden_units=6, connectivity=Connectivity.DENDRITIC, teacher_forcing_ratio=1.0,
                   l1_regularization=0.0, learning_rate=1e-4, random_seed=test_seed)
    options.update(overrides)
    engine = PLRNNEngine(PLRNNConfig(**options))
    engine.initialize()
    return engine


def loss_with(engine, sample, name, index, delta):
    """Sample loss after nudging one parameter entry."""
    weights = engine.get_weights()
    getattr(weights, name)[index] += delta
    replica = PLRNNEngine(engine.config)
    replica.load_weights(weights)
    return replica.compute_gradients(sample)[1]


def numeric_gradient(engine, sample, name, index, eps=1e-6):
    return (loss_with(engine, sample, name, index, eps) - loss_with(engine, sample, name, index, -eps)) / (2 * eps)


GRADIENT_ENTRIES = [
    ('A', (1,)),
    ('W', (0, 2)),
    ('W', (3, 1)),
    ('B', (2, 4)),
    ('bias_latent', (4,)),
    ('bias_observed', (0,)),
    ('D', (2, 3)),
    ('dendritic_bias', (1,)),
    ('V', (3, 0)),
]


class TestGradients:
    """Test backpropagation through time against finite differences."""

    @pytest.mark.parametrize("name, index", GRADIENT_ENTRIES)
    def test_teacher_forced_gradients(self, test_seed, test_data_generator, name, index):
        """Test gradients when every step starts from the observation."""
        engine = make_engine(test_seed)
        sample = TrainingSample(test_data_generator.linear_sequence(n_steps=10))

        grads, _ = engine.compute_gradients(sample)

        npt.assert_allclose(grads[name][index], numeric_gradient(engine, sample, name, index),
                            rtol=1e-4, atol=1e-8)

    @pytest.mark.parametrize("name, index", GRADIENT_ENTRIES)
    def test_free_running_gradients(self, test_seed, test_data_generator, name, index):
        """Test gradients through a fully free-running rollout."""
        engine = make_engine(test_seed, teacher_forcing_ratio=0.0)
        sample = TrainingSample(test_data_generator.linear_sequence(n_steps=8))

        grads, _ = engine.compute_gradients(sample)

        npt.assert_allclose(grads[name][index], numeric_gradient(engine, sample, name, index),
                            rtol=1e-4, atol=1e-8)

    def test_input_gradient(self, test_seed, test_data_generator, rng):
        """Test the gradient of the external input matrix."""
        engine = make_engine(test_seed)
        obs = test_data_generator.linear_sequence(n_steps=10)
        sample = TrainingSample(obs, inputs=rng.normal(size=obs.shape))

        grads, _ = engine.compute_gradients(sample)

        npt.assert_allclose(grads['C'][1, 3], numeric_gradient(engine, sample, 'C', (1, 3)),
                            rtol=1e-4, atol=1e-8)

    def test_teacher_forced_loss_matches_evaluate(self, test_seed, test_data_generator):
        """Test that fully forced training loss equals one-step evaluation."""
        engine = make_engine(test_seed)
        sample = TrainingSample(test_data_generator.linear_sequence())

        _, loss = engine.compute_gradients(sample)

        assert loss == pytest.approx(engine.evaluate(sample))

    def test_l1_term_on_coupling(self, test_seed, test_data_generator):
        """Test that L1 adds sign(W) on unmasked couplings only."""
        plain = make_engine(test_seed)
        sparse = make_engine(test_seed, l1_regularization=0.5)
        sample = TrainingSample(test_data_generator.linear_sequence())

        difference = sparse.compute_gradients(sample)[0]['W'] - plain.compute_gradients(sample)[0]['W']
        weights = plain.get_weights()

        npt.assert_allclose(difference, 0.5 * np.sign(weights.W) * weights.mask, atol=1e-12)
        npt.assert_array_equal(np.diag(difference), np.zeros(5))

    def test_ground_truth_targets(self, test_seed, test_data_generator):
        """Test that ground truth replaces observations as targets."""
        engine = make_engine(test_seed)
        obs = test_data_generator.linear_sequence()
        with_truth = TrainingSample(obs, ground_truth=obs + 1.0)

        assert engine.compute_gradients(with_truth)[1] > engine.compute_gradients(TrainingSample(obs))[1]


class TestTrainOnline:
    """Test single-sequence online training."""

    def test_step_reduces_loss(self, test_seed, test_data_generator):
        """Test that one step lowers the one-step-ahead error."""
        engine = make_engine(test_seed)
        sample = TrainingSample(test_data_generator.linear_sequence())
        before = engine.evaluate(sample)

        result = engine.train_online(sample)

        assert result.loss == pytest.approx(before)
        assert result.skipped_steps == 0
        assert engine.evaluate(sample) < before

    def test_records_training_metadata(self, test_seed, test_data_generator):
        """Test baseline and sample bookkeeping after an update."""
        engine = make_engine(test_seed)
        obs = test_data_generator.linear_sequence()

        engine.train_online(TrainingSample(obs))
        weights = engine.get_weights()

        npt.assert_allclose(weights.baseline, obs.mean(axis=0))
        assert weights.baseline_count == obs.shape[0]
        assert weights.training_samples == 1
        assert weights.trained_at is not None
        assert weights.adam.step == 1

    def test_short_sample_rejected(self, test_seed):
        """Test that a single observation cannot be trained on."""
        engine = make_engine(test_seed)
        before = engine.get_weights()

        with pytest.raises(TrainingError):
            engine.train_online(TrainingSample(np.zeros((1, 5))))
        npt.assert_array_equal(engine.get_weights().W, before.W)

    def test_dimension_mismatch_rejected(self, test_seed):
        """Test that observations of the wrong width raise."""
        engine = make_engine(test_seed)

        with pytest.raises(InvalidDimensionError):
            engine.train_online(TrainingSample(np.zeros((5, 3))))
        with pytest.raises(InvalidDimensionError):
            engine.train_online(TrainingSample(np.zeros((5, 5)), inputs=np.zeros((4, 5))))

    def test_nan_sample_skipped(self, test_seed, test_data_generator, caplog):
        """Test that a non-finite loss skips the update without raising."""
        engine = make_engine(test_seed)
        obs = test_data_generator.linear_sequence()
        obs[4, 2] = np.nan
        before = engine.get_weights()

        with caplog.at_level(logging.WARNING, logger='affect_dynamics.core.plrnn'):
            result = engine.train_online(TrainingSample(obs))

        assert np.isnan(result.loss)
        assert result.skipped_steps == 1
        npt.assert_array_equal(engine.get_weights().W, before.W)
        npt.assert_array_equal(engine.get_weights().baseline, before.baseline)
        assert any('skipped' in record.getMessage() for record in caplog.records)

    def test_apply_gradients_rejects_non_finite(self, test_seed, test_data_generator):
        """Test that infinite gradients leave the weights untouched."""
        engine = make_engine(test_seed)
        grads, _ = engine.compute_gradients(TrainingSample(test_data_generator.linear_sequence()))
        grads['A'][0] = np.inf
        before = engine.get_weights()

        assert engine.apply_gradients(grads) is False
        npt.assert_array_equal(engine.get_weights().A, before.A)

    def test_mask_preserved(self, test_seed, test_data_generator):
        """Test that masked couplings stay zero after training."""
        engine = make_engine(test_seed, connectivity=Connectivity.SPARSE, sparse_density=0.5)
        engine.train_online(TrainingSample(test_data_generator.linear_sequence()))
        weights = engine.get_weights()

        npt.assert_array_equal(weights.W[weights.mask == 0], 0.0)


class TestTrainBatch:
    """Test full-batch training."""

    def test_empty_batch_rejected(self, test_seed):
        """Test that an empty batch raises TrainingError."""
        with pytest.raises(TrainingError):
            make_engine(test_seed).train_batch([])

    def test_non_positive_epochs_rejected(self, test_seed, test_data_generator):
        """Test that zero epochs raise TrainingError."""
        sample = TrainingSample(test_data_generator.linear_sequence())

        with pytest.raises(TrainingError):
            make_engine(test_seed).train_batch([sample], epochs=0)

    def test_loss_decreases(self, test_seed, test_data_generator):
        """Test that repeated epochs lower the training loss."""
        engine = make_engine(test_seed, learning_rate=1e-3)
        samples = [TrainingSample(test_data_generator.linear_sequence(seed=s)) for s in (1, 2)]

        result = engine.train_batch(samples, epochs=20, tolerance=0.0)

        assert result.epochs == 20
        assert len(result.loss_history) == 20
        assert result.loss_history[-1] < result.loss_history[0]
        assert result.best_epoch is not None
        assert result.samples == 2
        assert not result.converged

    def test_validation_loss(self, test_seed, test_data_generator):
        """Test that validation samples are evaluated after training."""
        engine = make_engine(test_seed)
        train = [TrainingSample(test_data_generator.linear_sequence(seed=1))]
        validation = [TrainingSample(test_data_generator.linear_sequence(seed=9))]

        result = engine.train_batch(train, epochs=2, validation_samples=validation)

        assert result.validation_loss == pytest.approx(engine.evaluate(validation[0]))
        assert engine.get_weights().validation_loss == result.validation_loss
        assert engine.get_weights().training_samples == 1

    def test_invalid_validation_sample_rejected(self, test_seed, test_data_generator):
        """Test that validation samples are checked before training."""
        engine = make_engine(test_seed)
        before = engine.get_weights()

        with pytest.raises(InvalidDimensionError):
            engine.train_batch([TrainingSample(test_data_generator.linear_sequence())],
                               validation_samples=[TrainingSample(np.zeros((4, 2)))])
        npt.assert_array_equal(engine.get_weights().A, before.A)

    def test_convergence_stops_early(self, test_seed, test_data_generator):
        """Test that a loose tolerance ends training after two epochs."""
        engine = make_engine(test_seed)
        sample = TrainingSample(test_data_generator.linear_sequence())

        result = engine.train_batch([sample], epochs=10, tolerance=1e3)

        assert result.converged
        assert result.epochs == 2

    def test_all_nan_batch(self, test_seed, test_data_generator):
        """Test that a batch of only non-finite samples reports NaN."""
        engine = make_engine(test_seed)
        obs = test_data_generator.linear_sequence()
        obs[3] = np.nan

        result = engine.train_batch([TrainingSample(obs)], epochs=2)

        assert np.isnan(result.loss)
        assert result.skipped_steps == 2
        assert engine.get_weights().training_samples == 0

    def test_prediction_after_training(self, test_seed, test_data_generator, start_time):
        """Test that trained weights forecast toward the learned baseline."""
        engine = make_engine(test_seed, learning_rate=1e-3)
        obs = test_data_generator.linear_sequence()
        engine.train_batch([TrainingSample(obs)], epochs=5)

        prediction = engine.predict(LatentState.from_observation(obs[-1], timestamp=start_time), 48)

        assert np.all(np.isfinite(prediction.mean))
        npt.assert_allclose(engine.get_weights().baseline, obs.mean(axis=0))


class TestLearningRateSchedule:
    """Test that batch training follows the configured schedule."""

    def test_step_schedule_recorded(self, test_seed, test_data_generator):
        """Test that per-epoch rates halve every decay step."""
        engine = make_engine(test_seed, learning_rate=1e-3, lr_schedule='step',
                             lr_decay_steps=2, lr_decay_factor=0.5)
        sample = TrainingSample(test_data_generator.linear_sequence())

        result = engine.train_batch([sample], epochs=4, tolerance=0.0)

        assert engine.config.lr_schedule is LearningRateSchedule.STEP
        assert result.learning_rates == pytest.approx([1e-3, 1e-3, 5e-4, 5e-4])

    def test_warmup_rates_reach_optimizer(self, test_seed, test_data_generator):
        """Test that warmup rates are passed to every gradient step."""
        engine = make_engine(test_seed, learning_rate=1e-3, warmup_epochs=4)
        sample = TrainingSample(test_data_generator.linear_sequence())

        with patch.object(engine, 'apply_gradients', wraps=engine.apply_gradients) as spy:
            result = engine.train_batch([sample], epochs=16, tolerance=0.0)

        applied = [call.kwargs['learning_rate'] for call in spy.call_args_list]
        assert applied == pytest.approx(result.learning_rates)
        assert applied[:5] == pytest.approx([2.5e-4, 5e-4, 7.5e-4, 1e-3, 1e-3])


class TestEarlyStopping:
    """Test patience-based early stopping."""

    def test_stops_without_validation_improvement(self, test_seed, test_data_generator):
        """Test that stalled validation loss stops training and restores the best epoch."""
        options = dict(learning_rate=1e-9, lr_min=0.0, early_stopping_patience=3, early_stopping_min_delta=1e-3)
        train = [TrainingSample(test_data_generator.linear_sequence(seed=1))]
        validation = [TrainingSample(test_data_generator.linear_sequence(seed=9))]
        engine = make_engine(test_seed, **options)

        result = engine.train_batch(train, epochs=20, validation_samples=validation, tolerance=0.0)

        assert result.epochs == 4
        assert result.converged
        assert result.best_epoch == 0
        assert "No improvement for 3 epochs" in result.stop_reason
        assert len(result.validation_history) == 4

        reference = make_engine(test_seed, **options)
        reference.train_batch(train, epochs=1, tolerance=0.0)
        npt.assert_allclose(engine.get_weights().A, reference.get_weights().A)
        assert engine.get_weights().adam.step == 1

    def test_monitors_training_loss_without_validation(self, test_seed, test_data_generator):
        """Test that the training loss is monitored when no validation set is given."""
        engine = make_engine(test_seed, learning_rate=1e-9, lr_min=0.0, early_stopping_patience=2)
        sample = TrainingSample(test_data_generator.linear_sequence())

        result = engine.train_batch([sample], epochs=20, tolerance=0.0)

        assert result.epochs == 3
        assert result.validation_history == []
        assert result.validation_loss is None

    def test_disabled_by_default(self, test_seed, test_data_generator):
        """Test that zero patience runs every epoch."""
        engine = make_engine(test_seed, learning_rate=1e-9, lr_min=0.0)
        sample = TrainingSample(test_data_generator.linear_sequence())

        result = engine.train_batch([sample], epochs=6, tolerance=0.0)

        assert result.epochs == 6
        assert result.stop_reason is None
        assert not result.converged


class TestSequenceNormalization:
    """Test per-sequence z-scoring."""

    def test_normalize_sample(self, test_data_generator):
        """Test zero mean, unit sample deviation and a constant dimension."""
        obs = test_data_generator.linear_sequence(n_steps=10)
        obs[:, 4] = 0.7
        truth = obs + 0.1
        normalized, stats = normalize_sample(TrainingSample(obs, ground_truth=truth))

        npt.assert_allclose(normalized.observations.mean(axis=0), 0.0, atol=1e-12)
        npt.assert_allclose(normalized.observations[:, :4].std(axis=0, ddof=1), 1.0)
        npt.assert_array_equal(normalized.observations[:, 4], 0.0)
        assert stats.stds[4] == 1.0
        npt.assert_allclose(normalized.ground_truth, stats.apply(truth))
        npt.assert_allclose(stats.invert(normalized.observations), obs)

    def test_training_on_normalized_sequences(self, test_seed, test_data_generator):
        """Test that normalized training reports statistics and keeps the baseline in raw units."""
        engine = make_engine(test_seed, learning_rate=1e-3, normalize_sequences=True)
        samples = [TrainingSample(test_data_generator.linear_sequence(seed=s)) for s in (1, 2)]

        result = engine.train_batch(samples, epochs=3, tolerance=0.0)

        assert np.isfinite(result.loss)
        assert len(result.normalization) == 2
        npt.assert_allclose(result.normalization[0].means, samples[0].observations.mean(axis=0))
        raw = np.vstack([s.observations for s in samples])
        npt.assert_allclose(engine.get_weights().baseline, raw.mean(axis=0))
