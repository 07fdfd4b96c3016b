"""Hybrid Kalman filter / attention engine (KalmanFormer).

A linear Kalman filter provides the state estimate. A small Transformer
encoder over a bounded window of recent observations modulates the Kalman
gain and produces an autoregressive continuation that is blended with the
Kalman forecast. The blend ratio rises when the filter's normalized
innovations are large or drifting, i.e. when the linear model is
underperforming.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.defaults import KalmanFormerConfig, count_kalman_former_parameters
from ..config.random_state import make_rng
from .attention import AttentionEncoder
from .exceptions import InvalidDimensionError, NotInitializedError, TrainingError
from .interfaces import FilterEngine
from .kalman import KalmanState, LinearKalmanFilter
from .linalg import sigmoid
from .optim import AdamOptimizer, AdamState, all_finite, clip_by_global_norm
from .plrnn import TrainingSample
from .state import (
    ConfidenceInterval,
    LatentState,
    TemporalPattern,
    dimension_labels,
    hours_between,
    utc_now,
)

logger = logging.getLogger(__name__)

HEAD_PARAMETERS = ('output_projection', 'output_bias', 'gain_weights', 'gain_bias')

# Per-step confidence decay of multi-step forecasts
FORECAST_CONFIDENCE_DECAY = 0.95
TOP_INFLUENTIAL = 5
UNIFORM_ENTROPY = 0.95
RECENCY_RATIO = 1.5


@dataclass(frozen=True)
class ContextEntry:
    """One observation in the attention window with its input projection."""
    observation: np.ndarray
    timestamp: datetime
    embedding: np.ndarray


@dataclass
class KalmanFormerState:
    """Filter state plus the attention context of one user.

    Attributes
    ----------
    kalman : KalmanState
        Linear filter state; its estimate is the engine's state estimate
    history : Tuple[ContextEntry, ...]
        Most recent observations, oldest first, at most ``context_window``
    context_encoding : Optional[np.ndarray], shape (embed_dim,)
        Encoder output at the newest observation
    learned_gain : Optional[np.ndarray], shape (state_dim,)
        Per-dimension multipliers applied to the standard Kalman gain
    current_blend_ratio : float
        Weight of the Transformer continuation in forecasts, in [0, 1]
    confidence : float
        Self-reported confidence in the current estimate, in [0, 1]
    residuals : Tuple[float, ...]
        Recent normalized innovations NIS / obs_dim
    """
    kalman: KalmanState
    history: Tuple[ContextEntry, ...]
    context_encoding: Optional[np.ndarray]
    learned_gain: Optional[np.ndarray]
    current_blend_ratio: float
    confidence: float
    timestamp: datetime
    residuals: Tuple[float, ...] = ()

    @property
    def state_estimate(self) -> np.ndarray:
        return self.kalman.state_estimate

    @property
    def error_covariance(self) -> np.ndarray:
        return self.kalman.error_covariance


@dataclass
class KalmanFormerWeights:
    """Kalman matrices, encoder and head parameters, optimizer state and metadata."""
    F: np.ndarray
    H: np.ndarray
    Q: np.ndarray
    R: np.ndarray
    encoder: Dict[str, np.ndarray]
    output_projection: np.ndarray
    output_bias: np.ndarray
    gain_weights: np.ndarray
    gain_bias: np.ndarray
    blend_ratio: float
    transformer_residual_variance: float
    adam: AdamState = field(default_factory=AdamState)
    trained_at: Optional[str] = None
    training_samples: int = 0
    validation_loss: Optional[float] = None
    config: Dict[str, Any] = field(default_factory=dict)

    ARRAY_FIELDS = ('F', 'H', 'Q', 'R') + HEAD_PARAMETERS

    def heads(self) -> Dict[str, np.ndarray]:
        return {name: getattr(self, name) for name in HEAD_PARAMETERS}

    def copy(self) -> 'KalmanFormerWeights':
        arrays = {name: getattr(self, name).copy() for name in self.ARRAY_FIELDS}
        return KalmanFormerWeights(**arrays,
                                   encoder={k: v.copy() for k, v in self.encoder.items()},
                                   blend_ratio=self.blend_ratio,
                                   transformer_residual_variance=self.transformer_residual_variance,
                                   adam=self.adam.copy(),
                                   trained_at=self.trained_at,
                                   training_samples=self.training_samples,
                                   validation_loss=self.validation_loss,
                                   config=dict(self.config))

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name).tolist() for name in self.ARRAY_FIELDS}
        data.update({
            'encoder': {k: v.tolist() for k, v in self.encoder.items()},
            'blend_ratio': self.blend_ratio,
            'transformer_residual_variance': self.transformer_residual_variance,
            'adam': self.adam.to_dict(),
            'trained_at': self.trained_at,
            'training_samples': self.training_samples,
            'validation_loss': self.validation_loss,
            'config': dict(self.config),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KalmanFormerWeights':
        arrays = {name: np.asarray(data[name], dtype=float) for name in cls.ARRAY_FIELDS}
        return cls(**arrays,
                   encoder={k: np.asarray(v, dtype=float) for k, v in data['encoder'].items()},
                   blend_ratio=float(data['blend_ratio']),
                   transformer_residual_variance=float(data['transformer_residual_variance']),
                   adam=AdamState.from_dict(data['adam']) if 'adam' in data else AdamState(),
                   trained_at=data.get('trained_at'),
                   training_samples=int(data.get('training_samples', 0)),
                   validation_loss=data.get('validation_loss'),
                   config=dict(data.get('config', {})))


@dataclass
class InfluentialObservation:
    index: int
    timestamp: datetime
    weight: float
    dimension: str


@dataclass
class AttentionWeights:
    """Explanation of which past observations drive the current estimate.

    ``self_attention`` is the last layer's head-averaged attention matrix of
    shape (L, L); row -1 is the attention of the newest observation.
    """
    self_attention: np.ndarray
    layers: List[np.ndarray]
    top_influential_observations: List[InfluentialObservation]
    temporal_pattern: TemporalPattern
    entropy: float = 0.0


@dataclass
class KalmanFormerPrediction:
    """Multi-step forecast; all arrays have shape (horizon, state_dim)."""
    kalman: np.ndarray
    transformer: np.ndarray
    blended: np.ndarray
    variance: np.ndarray
    confidence_interval: ConfidenceInterval
    attention: AttentionWeights
    horizon: int
    blend_ratio: float
    confidence: float
    timestamps: List[datetime] = field(default_factory=list)

    @property
    def state_estimate(self) -> Optional[np.ndarray]:
        return self.blended[-1] if self.horizon else None


@dataclass
class KalmanFormerTrainingResult:
    """Losses of a training call, averaged per observed step."""
    loss: float
    kalman_loss: float
    transformer_loss: float
    epochs: int
    samples: int
    training_time: float
    loss_history: List[float] = field(default_factory=list)
    skipped_steps: int = 0


class KalmanFormerEngine(FilterEngine):
    """Per-user Kalman filter with attention-based gain and forecast correction.

    Parameters
    ----------
    config : Optional[KalmanFormerConfig]
        Engine configuration; defaults are used when omitted
    rng : Optional[np.random.Generator]
        Generator for initialization and training dropout

    Notes
    -----
    ``update`` returns a new state and does not modify the weights; callers
    serialize updates per user. ``train`` and ``adapt_blend_ratio`` modify
    the weights.
    """

    def __init__(self,
                 config: Optional[KalmanFormerConfig] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else KalmanFormerConfig()
        self._rng = rng if rng is not None else make_rng(self.config.random_seed)
        self._optimizer = AdamOptimizer(learning_rate=self.config.learning_rate)
        self._weights: Optional[KalmanFormerWeights] = None
        self._filter: Optional[LinearKalmanFilter] = None
        self._encoder: Optional[AttentionEncoder] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._weights is not None

    def _build_encoder(self) -> AttentionEncoder:
        c = self.config
        return AttentionEncoder(input_dim=c.obs_dim,
                                embed_dim=c.embed_dim,
                                num_heads=c.num_heads,
                                num_layers=c.num_layers,
                                ffn_dim=c.ffn_multiplier * c.embed_dim,
                                time_embedding=c.time_embedding,
                                temperature=c.temperature,
                                rng=self._rng)

    def _build_filter(self, weights: KalmanFormerWeights) -> LinearKalmanFilter:
        c = self.config
        return LinearKalmanFilter(weights.F, weights.H, weights.Q, weights.R,
                                  ridge=c.ridge,
                                  outlier_detection=c.outlier_detection,
                                  outlier_confidence=c.outlier_confidence,
                                  outlier_gain_floor=c.outlier_gain_floor)

    def initialize(self, config: Optional[KalmanFormerConfig] = None) -> None:
        """Create fresh weights: identity dynamics, isotropic noise, zero heads."""
        if config is not None:
            self.config = config
            self._optimizer = AdamOptimizer(learning_rate=self.config.learning_rate)
        c = self.config
        n, m, d = c.state_dim, c.obs_dim, c.embed_dim

        self._encoder = self._build_encoder()
        weights = KalmanFormerWeights(
            F=np.eye(n),
            H=np.eye(m, n),
            Q=c.process_noise * np.eye(n),
            R=c.measurement_noise * np.eye(m),
            encoder=self._encoder.get_params(),
            output_projection=np.zeros((d, m)),
            output_bias=np.zeros(m),
            gain_weights=np.zeros((d, n)),
            gain_bias=np.zeros(n),
            blend_ratio=c.blend_ratio,
            transformer_residual_variance=max(c.measurement_noise, c.min_noise),
            config=c.to_dict(),
        )
        weights.adam = AdamState.zeros_like(weights.heads())
        self._weights = weights
        self._filter = self._build_filter(weights)
        logger.info("Initialized KalmanFormer (state_dim=%d, embed_dim=%d, heads=%d, layers=%d, %d parameters)",
                    n, d, c.num_heads, c.num_layers, count_kalman_former_parameters(c))

    def load_weights(self, weights: Union[KalmanFormerWeights, Dict[str, Any]]) -> None:
        """Install weights after checking them against the configuration."""
        if isinstance(weights, dict):
            weights = KalmanFormerWeights.from_dict(weights)
        c = self.config
        n, m, d = c.state_dim, c.obs_dim, c.embed_dim
        expected = {
            'F': (n, n), 'H': (m, n), 'Q': (n, n), 'R': (m, m),
            'output_projection': (d, m), 'output_bias': (m,),
            'gain_weights': (d, n), 'gain_bias': (n,),
        }
        for name, shape in expected.items():
            actual = getattr(weights, name).shape
            if actual != shape:
                raise InvalidDimensionError(name, shape, actual)
        if not 0.0 <= weights.blend_ratio <= 1.0:
            raise ValueError(f"blend_ratio must be in [0, 1], got {weights.blend_ratio}")

        encoder = self._build_encoder()
        encoder.set_params(weights.encoder)
        self._encoder = encoder
        self._weights = weights.copy()
        if not self._weights.adam.first_moment:
            self._weights.adam = AdamState.zeros_like(self._weights.heads())
        self._filter = self._build_filter(self._weights)

    def get_weights(self) -> KalmanFormerWeights:
        weights = self._require_weights().copy()
        weights.encoder = self._encoder.get_params()
        return weights

    def _require_weights(self) -> KalmanFormerWeights:
        if self._weights is None:
            raise NotInitializedError('KalmanFormerEngine')
        return self._weights

    def _check_observation(self, observation: np.ndarray) -> np.ndarray:
        z = np.asarray(observation, dtype=float)
        if z.shape != (self.config.obs_dim,):
            raise InvalidDimensionError('observation', self.config.obs_dim, z.shape)
        return z

    def _observation_to_state(self, observation: np.ndarray) -> np.ndarray:
        solution, *_ = np.linalg.lstsq(self._weights.H, observation, rcond=None)
        return solution

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _entry(self, observation: np.ndarray, timestamp: datetime) -> ContextEntry:
        return ContextEntry(observation=observation.copy(),
                            timestamp=timestamp,
                            embedding=self._encoder.project(observation))

    def _encode(self,
                history: Sequence[ContextEntry],
                dropout: float = 0.0,
                rng: Optional[np.random.Generator] = None) -> Tuple[np.ndarray, List[np.ndarray]]:
        newest = history[-1].timestamp
        hours_ago = np.array([hours_between(e.timestamp, newest) for e in history])
        embeddings = self._encoder.embed(np.array([e.embedding for e in history]), hours_ago)
        return self._encoder.encode(embeddings, dropout=dropout, rng=rng)

    def _gain_scale(self, context: np.ndarray) -> np.ndarray:
        """Per-state-dimension multipliers 2 * sigmoid(G c + g) on the standard gain.

        Only the rows of the optimal gain are rescaled; no full gain matrix
        is predicted. A zero head reproduces the optimal gain.
        """
        w = self._weights
        return 2.0 * sigmoid(context @ w.gain_weights + w.gain_bias)

    def _transformer_next(self, history: Sequence[ContextEntry], context: np.ndarray) -> np.ndarray:
        """Next observation as the newest one plus a learned correction."""
        w = self._weights
        return history[-1].observation + context @ w.output_projection + w.output_bias

    def _blend_ratio(self, residuals: Sequence[float]) -> float:
        base = float(np.clip(self._weights.blend_ratio, 1e-6, 1.0 - 1e-6))
        if not residuals:
            return self._weights.blend_ratio
        r = np.asarray(residuals)
        excess = float(np.clip(r.mean() - 1.0, -1.0, 3.0))
        nonstationarity = 0.0
        if r.size >= 4:
            half = r.size // 2
            early, late = r[:half].mean(), r[half:].mean()
            nonstationarity = abs(late - early) / (early + late + 1e-12)
        logit = np.log(base / (1.0 - base)) + excess + nonstationarity
        return float(np.clip(sigmoid(logit), 0.0, 1.0))

    @staticmethod
    def _confidence(kalman: KalmanState, obs_dim: int) -> float:
        fit = np.exp(-kalman.normalized_innovation_squared / obs_dim)
        spread = 1.0 / (1.0 + float(np.trace(kalman.error_covariance)))
        return float(np.clip(0.5 * fit + 0.5 * spread, 0.0, 1.0))

    def initial_state(self,
                      observation: np.ndarray,
                      timestamp: Optional[datetime] = None,
                      uncertainty: Optional[np.ndarray] = None) -> KalmanFormerState:
        """Start a filter at an observation with a fresh context window."""
        self._require_weights()
        z = self._check_observation(observation)
        timestamp = timestamp if timestamp is not None else utc_now()
        n = self.config.state_dim
        variance = np.full(n, self.config.initial_covariance) if uncertainty is None \
            else np.broadcast_to(np.asarray(uncertainty, dtype=float), (n,))
        kalman = self._filter.initial_state(self._observation_to_state(z), np.diag(variance), timestamp)
        history = (self._entry(z, timestamp),)
        context, _ = self._encode(history)
        return KalmanFormerState(kalman=kalman,
                                 history=history,
                                 context_encoding=context[-1],
                                 learned_gain=self._gain_scale(context[-1]) if self.config.learned_gain else None,
                                 current_blend_ratio=self._weights.blend_ratio,
                                 confidence=self._confidence(kalman, self.config.obs_dim),
                                 timestamp=timestamp)

    def update(self,
               state: KalmanFormerState,
               observation: np.ndarray,
               timestamp: Optional[datetime] = None) -> KalmanFormerState:
        """Incorporate one observation.

        Parameters
        ----------
        state : KalmanFormerState
            Previous state, left unmodified
        observation : np.ndarray, shape (obs_dim,)
            New measurement
        timestamp : Optional[datetime]
            Observation time; ``state.timestamp + dt`` when omitted

        Returns
        -------
        KalmanFormerState
            New state whose estimate is the filtered Kalman estimate

        Raises
        ------
        InvalidDimensionError
            If the observation length differs from ``obs_dim``
        ValueError
            If the timestamp precedes the state's timestamp
        """
        self._require_weights()
        z = self._check_observation(observation)
        c = self.config
        timestamp = timestamp if timestamp is not None else state.timestamp + timedelta(hours=c.dt)
        gap = hours_between(state.timestamp, timestamp)
        if gap < 0:
            raise ValueError(f"Observation at {timestamp} precedes the current state at {state.timestamp}")
        noise_scale = max(min(gap, c.max_time_gap), c.dt) / c.dt

        history = (state.history + (self._entry(z, timestamp),))[-c.context_window:]
        context, _ = self._encode(history)
        context = context[-1]
        gain_scale = self._gain_scale(context) if c.learned_gain else None

        kalman = self._filter.update(state.kalman, z, noise_scale=noise_scale,
                                     gain_scale=gain_scale, timestamp=timestamp)
        if kalman.is_outlier:
            logger.debug("Outlier observation at %s (NIS=%.2f, threshold=%.2f)",
                         timestamp, kalman.normalized_innovation_squared, self._filter.outlier_threshold)

        residuals = (state.residuals + (kalman.normalized_innovation_squared / c.obs_dim,))[-c.context_window:]
        return KalmanFormerState(kalman=kalman,
                                 history=history,
                                 context_encoding=context,
                                 learned_gain=gain_scale,
                                 current_blend_ratio=self._blend_ratio(residuals),
                                 confidence=self._confidence(kalman, c.obs_dim),
                                 timestamp=timestamp,
                                 residuals=residuals)

    # ------------------------------------------------------------------
    # Forecasting and explanation
    # ------------------------------------------------------------------

    def predict(self,
                state: KalmanFormerState,
                horizon: int,
                level: Optional[float] = None) -> KalmanFormerPrediction:
        """Blend a Kalman propagation with an autoregressive Transformer continuation.

        The variance at step k is (1 - beta)^2 diag(P_k) + beta^2 sigma_T^2 k,
        where beta is the state's blend ratio and sigma_T^2 the Transformer's
        one-step residual variance. The cross-covariance between the two
        paths is ignored.
        """
        w = self._require_weights()
        level = self.config.confidence_level if level is None else level
        horizon = int(horizon)
        if horizon < 0:
            raise ValueError(f"horizon must be non-negative, got {horizon}")
        n, dt = self.config.state_dim, self.config.dt
        beta = state.current_blend_ratio
        attention = self.explain(state)

        kalman_path, kalman_var, transformer_path, timestamps = [], [], [], []
        x, P = state.kalman.state_estimate, state.kalman.error_covariance
        history = list(state.history)
        for k in range(1, horizon + 1):
            x, P = self._filter.predict(x, P)
            kalman_path.append(x)
            kalman_var.append(np.clip(np.diag(P), 0.0, None))
            step_time = state.timestamp + timedelta(hours=k * dt)
            timestamps.append(step_time)
            if history:
                context, _ = self._encode(history)
                next_obs = self._transformer_next(history, context[-1])
                transformer_path.append(self._observation_to_state(next_obs))
                history = (history + [self._entry(next_obs, step_time)])[-self.config.context_window:]
            else:
                transformer_path.append(x)

        shape = (horizon, n)
        kalman_path = np.array(kalman_path).reshape(shape)
        kalman_var = np.array(kalman_var).reshape(shape)
        transformer_path = np.array(transformer_path).reshape(shape)
        blended = (1.0 - beta) * kalman_path + beta * transformer_path
        steps = np.arange(1, horizon + 1)[:, None]
        variance = (1.0 - beta) ** 2 * kalman_var + beta ** 2 * w.transformer_residual_variance * steps

        return KalmanFormerPrediction(kalman=kalman_path,
                                      transformer=transformer_path,
                                      blended=blended,
                                      variance=variance,
                                      confidence_interval=ConfidenceInterval.from_moments(blended, variance, level),
                                      attention=attention,
                                      horizon=horizon,
                                      blend_ratio=beta,
                                      confidence=state.confidence * FORECAST_CONFIDENCE_DECAY ** horizon,
                                      timestamps=timestamps)

    def explain(self, state: KalmanFormerState) -> AttentionWeights:
        """Attention of the newest observation over the context window.

        The temporal pattern is ``uniform`` when the attention entropy is
        close to its maximum, ``recency_bias`` when the last five positions
        receive on average more than 1.5 times the weight of the first five,
        and ``pattern_matching`` otherwise.
        """
        self._require_weights()
        history = state.history
        if not history:
            return AttentionWeights(self_attention=np.zeros((0, 0)), layers=[],
                                    top_influential_observations=[],
                                    temporal_pattern=TemporalPattern.UNIFORM)

        _, attentions = self._encode(history)
        layers = [a.mean(axis=0) for a in attentions]
        matrix = layers[-1]
        influence = matrix[-1]
        length = influence.shape[0]

        window = np.array([e.observation for e in history])
        labels = dimension_labels(self.config.obs_dim)
        deviation = np.abs(window - window.mean(axis=0))
        order = np.argsort(influence)[::-1][:TOP_INFLUENTIAL]
        top = [InfluentialObservation(index=int(i),
                                      timestamp=history[i].timestamp,
                                      weight=float(influence[i]),
                                      dimension=labels[int(np.argmax(deviation[i]))])
               for i in order]

        entropy = float(-np.sum(influence * np.log(influence + 1e-12)))
        normalized = entropy / np.log(length) if length > 1 else 1.0
        if length < 3 or normalized > UNIFORM_ENTROPY:
            pattern = TemporalPattern.UNIFORM
        elif influence[-TOP_INFLUENTIAL:].mean() > RECENCY_RATIO * influence[:TOP_INFLUENTIAL].mean():
            pattern = TemporalPattern.RECENCY_BIAS
        else:
            pattern = TemporalPattern.PATTERN_MATCHING

        return AttentionWeights(self_attention=matrix, layers=layers,
                                top_influential_observations=top,
                                temporal_pattern=pattern,
                                entropy=entropy)

    def adapt_blend_ratio(self,
                          predictions: Union[Mapping[str, np.ndarray], Sequence[KalmanFormerPrediction]],
                          actuals: np.ndarray) -> float:
        """Set the blend ratio by inverse-error weighting of the two paths.

        Parameters
        ----------
        predictions : Mapping or Sequence[KalmanFormerPrediction]
            Either a mapping with ``'kalman'`` and ``'transformer'`` arrays of
            shape (T, state_dim), or one-step-ahead forecasts whose first
            step is compared with the matching actual
        actuals : np.ndarray, shape (T, state_dim)
            Realized states

        Returns
        -------
        float
            New blend ratio e_K / (e_K + e_T) in [0, 1]; the configured
            default when there is nothing to compare
        """
        w = self._require_weights()
        if isinstance(predictions, Mapping):
            kalman = np.asarray(predictions.get('kalman', []), dtype=float)
            transformer = np.asarray(predictions.get('transformer', []), dtype=float)
        else:
            usable = [p for p in predictions if p.horizon > 0]
            kalman = np.array([p.kalman[0] for p in usable])
            transformer = np.array([p.transformer[0] for p in usable])
        actuals = np.asarray(actuals, dtype=float)

        if kalman.size == 0 or actuals.size == 0:
            return self.config.blend_ratio
        if kalman.shape != actuals.shape or transformer.shape != actuals.shape:
            raise InvalidDimensionError('predictions', actuals.shape, (kalman.shape, transformer.shape))

        kalman_error = float(np.mean((kalman - actuals) ** 2))
        transformer_error = float(np.mean((transformer - actuals) ** 2))
        total = kalman_error + transformer_error
        ratio = self.config.blend_ratio if total <= 0 else kalman_error / total
        w.blend_ratio = float(np.clip(ratio, 0.0, 1.0))
        logger.debug("Adapted blend ratio to %.3f (kalman mse=%.4g, transformer mse=%.4g)",
                     w.blend_ratio, kalman_error, transformer_error)
        return w.blend_ratio

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_plrnn_state(self, state: KalmanFormerState) -> LatentState:
        """Latent state from the filter estimate and covariance diagonal.

        Off-diagonal covariance and the attention context are dropped.
        """
        return LatentState(latent=state.kalman.state_estimate,
                           uncertainty=np.clip(np.diag(state.kalman.error_covariance), 0.0, None),
                           timestamp=state.timestamp,
                           timestep=state.kalman.timestep)

    def from_plrnn_state(self, state: LatentState) -> KalmanFormerState:
        """Filter state seeded from a latent state with diagonal covariance.

        The context window starts with the latent state's projection into
        observation space.
        """
        w = self._require_weights()
        if len(state) != self.config.state_dim:
            raise InvalidDimensionError('state', self.config.state_dim, len(state))
        kalman = self._filter.initial_state(state.latent, np.diag(state.uncertainty), state.timestamp)
        kalman.timestep = state.timestep
        history = (self._entry(w.H @ state.latent, state.timestamp),)
        context, _ = self._encode(history)
        return KalmanFormerState(kalman=kalman,
                                 history=history,
                                 context_encoding=context[-1],
                                 learned_gain=self._gain_scale(context[-1]) if self.config.learned_gain else None,
                                 current_blend_ratio=w.blend_ratio,
                                 confidence=float(1.0 / (1.0 + np.mean(state.uncertainty))),
                                 timestamp=state.timestamp)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _validate_sample(self, sample: TrainingSample) -> None:
        obs = sample.observations
        if obs.ndim != 2 or obs.shape[0] < 2:
            raise TrainingError(f"A training sample needs at least two observations, got shape {obs.shape}")
        if obs.shape[1] != self.config.obs_dim:
            raise InvalidDimensionError('observations', self.config.obs_dim, obs.shape[1])
        if sample.ground_truth is not None and sample.ground_truth.shape != obs.shape:
            raise InvalidDimensionError('ground_truth', obs.shape, sample.ground_truth.shape)
        if sample.timestamps is not None and len(sample.timestamps) != obs.shape[0]:
            raise InvalidDimensionError('timestamps', obs.shape[0], len(sample.timestamps))

    def _sample_timestamps(self, sample: TrainingSample) -> List[datetime]:
        if sample.timestamps is not None:
            return list(sample.timestamps)
        start = datetime(2000, 1, 1, tzinfo=timezone.utc)
        return [start + timedelta(hours=k * self.config.dt) for k in range(len(sample))]

    def _sample_gradients(self,
                          sample: TrainingSample,
                          grads: Dict[str, np.ndarray]) -> Optional[Tuple[float, float, float, int, float]]:
        """Run the filter over a sample, accumulating head gradients.

        Returns summed kalman, transformer and combined losses, the number
        of steps and the summed squared Transformer residual per dimension,
        or None when an observation, target or innovation is non-finite.
        The filter's Q and R may already have been adapted when None is
        returned; the caller restores them.
        """
        w = self._weights
        c = self.config
        m = c.obs_dim
        obs = sample.observations
        targets = sample.targets
        if not (np.all(np.isfinite(obs)) and np.all(np.isfinite(targets))):
            return None
        timestamps = self._sample_timestamps(sample)

        state = self.initial_state(obs[0], timestamps[0])
        kalman_total = transformer_total = combined_total = residual_total = 0.0
        steps = 0
        for t in range(1, obs.shape[0]):
            target = targets[t]
            beta = state.current_blend_ratio

            # One-step Transformer forecast from the window before obs[t]
            context, _ = self._encode(state.history, dropout=c.dropout, rng=self._rng)
            context = context[-1]
            transformer_pred = self._transformer_next(state.history, context)
            t_error = transformer_pred - target
            transformer_loss = float(t_error @ t_error) / m
            d_pred = beta * 2.0 * t_error / m
            grads['output_projection'] += np.outer(context, d_pred)
            grads['output_bias'] += d_pred

            state = self.update(state, obs[t], timestamps[t])
            kalman = state.kalman
            if kalman.innovation is not None and not np.all(np.isfinite(kalman.innovation)):
                return None
            k_error = w.H @ kalman.state_estimate - target
            kalman_loss = float(k_error @ k_error) / m

            if c.learned_gain and kalman.innovation is not None:
                gain = state.learned_gain
                correction = (kalman.kalman_gain @ kalman.innovation) / gain
                d_x = (1.0 - beta) * 2.0 * (w.H.T @ k_error) / m
                d_logit = d_x * correction * gain * (1.0 - 0.5 * gain)
                grads['gain_weights'] += np.outer(state.context_encoding, d_logit)
                grads['gain_bias'] += d_logit

            self._filter.adapt_noise(kalman, c.noise_adaptation_rate, c.min_noise)

            kalman_total += kalman_loss
            transformer_total += transformer_loss
            combined_total += (1.0 - beta) * kalman_loss + beta * transformer_loss
            residual_total += transformer_loss
            steps += 1
        return kalman_total, transformer_total, combined_total, steps, residual_total

    def _restore_noise(self, Q: np.ndarray, R: np.ndarray) -> None:
        self._filter.Q, self._filter.R = Q.copy(), R.copy()

    def train(self, samples: Sequence[TrainingSample], epochs: int = 1) -> KalmanFormerTrainingResult:
        """Supervised training over observation sequences.

        Each epoch filters every sample, accumulating gradients of the
        combined loss (1 - beta) * kalman + beta * transformer with respect
        to the Transformer readout and the gain head, then applies one
        clipped Adam step. Q and R are adapted by an exponential moving
        average of the innovation statistics along the way.

        A sample with non-finite observations, targets or innovations is
        skipped and its noise adaptation undone. An epoch without usable
        samples or with non-finite gradients leaves every weight, including
        the filter's Q and R, as it was at the start of the epoch.
        """
        start = time.perf_counter()
        w = self._require_weights()
        samples = list(samples)
        if not samples:
            raise TrainingError("train requires at least one sample")
        if epochs < 1:
            raise TrainingError(f"epochs must be positive, got {epochs}")
        for sample in samples:
            self._validate_sample(sample)

        history: List[float] = []
        skipped = 0
        kalman_loss = transformer_loss = float('nan')
        for epoch in range(epochs):
            epoch_Q, epoch_R = self._filter.Q.copy(), self._filter.R.copy()
            grads = {name: np.zeros_like(value) for name, value in w.heads().items()}
            kalman_sum = transformer_sum = combined_sum = residual_sum = 0.0
            count = 0
            for index, sample in enumerate(samples):
                sample_Q, sample_R = self._filter.Q.copy(), self._filter.R.copy()
                sample_grads = {name: np.zeros_like(value) for name, value in grads.items()}
                result = self._sample_gradients(sample, sample_grads)
                if result is None or not all_finite(sample_grads):
                    logger.warning("Epoch %d: sample %d contains non-finite values, skipped", epoch, index)
                    self._restore_noise(sample_Q, sample_R)
                    skipped += 1
                    continue
                k, t, comb, steps, residual = result
                for name, g in sample_grads.items():
                    grads[name] += g
                kalman_sum += k
                transformer_sum += t
                combined_sum += comb
                residual_sum += residual
                count += steps

            if count == 0:
                logger.warning("Epoch %d: no usable KalmanFormer samples, skipping update", epoch)
                self._restore_noise(epoch_Q, epoch_R)
                history.append(float('nan'))
                continue

            averaged = {name: g / count for name, g in grads.items()}
            if not all_finite(averaged) or not np.isfinite(combined_sum):
                logger.warning("Epoch %d: non-finite KalmanFormer gradients, skipping update", epoch)
                self._restore_noise(epoch_Q, epoch_R)
                skipped += 1
                history.append(float('nan'))
                continue

            clipped, _ = clip_by_global_norm(averaged, self.config.gradient_clip)
            params = w.heads()
            self._optimizer.step(params, clipped, w.adam)
            for name, value in params.items():
                setattr(w, name, value)
            w.Q, w.R = self._filter.Q.copy(), self._filter.R.copy()

            kalman_loss = kalman_sum / count
            transformer_loss = transformer_sum / count
            w.transformer_residual_variance = max(residual_sum / count, self.config.min_noise)
            history.append(combined_sum / count)
            logger.debug("Epoch %d: loss=%.6f (kalman=%.6f, transformer=%.6f)",
                         epoch, history[-1], kalman_loss, transformer_loss)

        finite = [h for h in history if np.isfinite(h)]
        if finite:
            w.training_samples += len(samples)
            w.trained_at = datetime.now(timezone.utc).isoformat()
            w.validation_loss = finite[-1]
        logger.info("KalmanFormer training: %d epoch(s), loss=%s", len(history), finite[-1] if finite else 'nan')

        return KalmanFormerTrainingResult(loss=finite[-1] if finite else float('nan'),
                                          kalman_loss=kalman_loss,
                                          transformer_loss=transformer_loss,
                                          epochs=len(history),
                                          samples=len(samples),
                                          training_time=time.perf_counter() - start,
                                          loss_history=history,
                                          skipped_steps=skipped)

    def complexity_metrics(self, state: Optional[KalmanFormerState] = None) -> Dict[str, float]:
        """Parameter counts and, given a state, the effective context length.

        The effective context length is exp(entropy) of the newest
        observation's attention, i.e. how many past observations it
        effectively averages over.
        """
        w = self._require_weights()
        metrics = {
            'encoder_parameters': float(self._encoder.parameter_count),
            'head_parameters': float(sum(p.size for p in w.heads().values())),
            'kalman_parameters': float(w.F.size + w.H.size + w.Q.size + w.R.size),
        }
        metrics['total_parameters'] = sum(metrics.values())
        if state is not None and state.history:
            metrics['effective_context_length'] = float(np.exp(self.explain(state).entropy))
        return metrics
