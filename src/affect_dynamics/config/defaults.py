"""Default configuration parameters for the forecasting engines and named presets."""

from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional, Tuple

from ..core.state import Connectivity, TimeEmbedding, HorizonClass, LearningRateSchedule


def _config_to_dict(config) -> Dict[str, Any]:
    """Plain-type dictionary of a config dataclass, dropping unset optionals."""
    data = {}
    for key, value in asdict(config).items():
        if value is None:
            continue
        if hasattr(value, 'value'):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        data[key] = value
    return data


def _config_from_dict(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**data)


@dataclass
class PLRNNConfig:
    """Configuration of the piecewise-linear recurrent dynamics engine."""

    # Architecture
    latent_dim: int = 5
    hidden_units: int = 16
    connectivity: Connectivity = Connectivity.DENDRITIC
    input_dim: int = 5
    sparse_density: float = 0.2

    # Optimization
    learning_rate: float = 0.001
    teacher_forcing_ratio: float = 0.5
    l1_regularization: float = 0.01
    gradient_clip: float = 1.0
    bptt_window: int = 0  # 0 = full sequence
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    adam_epsilon: float = 1e-8

    # Batch training schedule
    lr_schedule: LearningRateSchedule = LearningRateSchedule.CONSTANT
    lr_decay_factor: float = 0.5
    lr_decay_steps: int = 30
    lr_min: float = 1e-6
    warmup_epochs: int = 0
    early_stopping_patience: int = 0  # 0 = disabled
    early_stopping_min_delta: float = 1e-3
    normalize_sequences: bool = False

    # Forecasting
    prediction_horizon: int = 12
    dt: float = 1.0  # hours per step
    baseline_decay_tau: float = 24.0
    uncertainty_growth: float = 0.05
    process_variance: float = 0.01
    initial_uncertainty: float = 0.1
    confidence_level: float = 0.95

    # Interpretation
    causal_edge_threshold: float = 0.1
    intervention_horizon: int = 24
    intervention_epsilon: float = 0.01
    side_effect_threshold: float = 0.05

    random_seed: Optional[int] = None

    def __post_init__(self):
        self.connectivity = Connectivity(self.connectivity)
        self.lr_schedule = LearningRateSchedule(self.lr_schedule)
        if self.latent_dim < 1:
            raise ValueError(f"latent_dim must be positive, got {self.latent_dim}")
        if self.hidden_units < 1:
            raise ValueError(f"hidden_units must be positive, got {self.hidden_units}")
        if self.input_dim < 0:
            raise ValueError(f"input_dim must be non-negative, got {self.input_dim}")
        if not 0.0 <= self.teacher_forcing_ratio <= 1.0:
            raise ValueError(f"teacher_forcing_ratio must be in [0, 1], got {self.teacher_forcing_ratio}")
        if not 0.0 < self.sparse_density <= 1.0:
            raise ValueError(f"sparse_density must be in (0, 1], got {self.sparse_density}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.dt <= 0 or self.baseline_decay_tau <= 0:
            raise ValueError("dt and baseline_decay_tau must be positive")
        if self.uncertainty_growth < 0 or self.process_variance < 0 or self.initial_uncertainty < 0:
            raise ValueError("Uncertainty parameters must be non-negative")
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if not 0.0 < self.lr_decay_factor <= 1.0:
            raise ValueError(f"lr_decay_factor must be in (0, 1], got {self.lr_decay_factor}")
        if self.lr_decay_steps < 1:
            raise ValueError(f"lr_decay_steps must be positive, got {self.lr_decay_steps}")
        if not 0.0 <= self.lr_min <= self.learning_rate:
            raise ValueError(f"lr_min must be in [0, learning_rate], got {self.lr_min}")
        if self.warmup_epochs < 0 or self.early_stopping_patience < 0:
            raise ValueError("warmup_epochs and early_stopping_patience must be non-negative")
        if self.early_stopping_min_delta < 0:
            raise ValueError(f"early_stopping_min_delta must be non-negative, got {self.early_stopping_min_delta}")

    def to_dict(self) -> Dict[str, Any]:
        return _config_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PLRNNConfig':
        return _config_from_dict(cls, data)


@dataclass
class KalmanFormerConfig:
    """Configuration of the hybrid Kalman/attention engine."""

    # Dimensions
    state_dim: int = 5
    obs_dim: int = 5

    # Attention encoder
    embed_dim: int = 64
    num_heads: int = 4
    num_layers: int = 2
    ffn_multiplier: int = 2
    context_window: int = 24
    dropout: float = 0.1
    temperature: float = 1.0
    time_embedding: TimeEmbedding = TimeEmbedding.SINUSOIDAL

    # Hybrid behaviour
    blend_ratio: float = 0.5
    learned_gain: bool = True
    max_time_gap: float = 48.0  # hours
    dt: float = 1.0  # hours per step

    # Kalman noise model
    process_noise: float = 0.01
    measurement_noise: float = 0.1
    initial_covariance: float = 0.1
    noise_adaptation_rate: float = 0.05
    min_noise: float = 1e-6
    ridge: float = 1e-6

    # Outlier handling
    outlier_detection: bool = True
    outlier_confidence: float = 0.99
    outlier_gain_floor: float = 0.1

    # Optimization
    learning_rate: float = 0.001
    gradient_clip: float = 1.0
    confidence_level: float = 0.95

    random_seed: Optional[int] = None

    def __post_init__(self):
        self.time_embedding = TimeEmbedding(self.time_embedding)
        if self.embed_dim % self.num_heads != 0:
            raise ValueError(f"embed_dim ({self.embed_dim}) must be divisible by num_heads ({self.num_heads})")
        if self.state_dim < 1 or self.obs_dim < 1:
            raise ValueError("state_dim and obs_dim must be positive")
        if self.num_layers < 1 or self.context_window < 1:
            raise ValueError("num_layers and context_window must be positive")
        if not 0.0 <= self.blend_ratio <= 1.0:
            raise ValueError(f"blend_ratio must be in [0, 1], got {self.blend_ratio}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")
        if not 0.0 < self.outlier_confidence < 1.0:
            raise ValueError(f"outlier_confidence must be in (0, 1), got {self.outlier_confidence}")
        if not 0.0 < self.outlier_gain_floor <= 1.0:
            raise ValueError(f"outlier_gain_floor must be in (0, 1], got {self.outlier_gain_floor}")
        if self.temperature <= 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")
        if min(self.process_noise, self.measurement_noise, self.initial_covariance) < 0:
            raise ValueError("Noise and covariance scales must be non-negative")

    @property
    def head_dim(self) -> int:
        return self.embed_dim // self.num_heads

    def to_dict(self) -> Dict[str, Any]:
        return _config_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KalmanFormerConfig':
        return _config_from_dict(cls, data)


@dataclass
class EarlyWarningConfig:
    """Thresholds for critical-slowing-down indicators."""

    trend_threshold: float = 0.3  # minimum Kendall tau for a rising indicator
    flicker_threshold: float = 0.555  # bimodality coefficient of a uniform distribution
    full_confidence_samples: int = 50
    max_time_to_transition: float = 168.0  # hours
    min_window: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return _config_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EarlyWarningConfig':
        return _config_from_dict(cls, data)


@dataclass
class AdapterConfig:
    """Configuration of the belief-state bridge."""

    # energy, coping capacity, social support
    resource_weights: Tuple[float, float, float] = (1 / 3, 1 / 3, 1 / 3)
    disagreement_threshold: float = 0.1
    credible_level: float = 0.95
    persistence_variance_growth: float = 0.05
    # (plrnn, kalmanformer) prior weight per horizon class
    short_horizon_prior: Tuple[float, float] = (0.3, 0.7)
    medium_horizon_prior: Tuple[float, float] = (0.5, 0.5)
    long_horizon_prior: Tuple[float, float] = (0.8, 0.2)

    def __post_init__(self):
        self.resource_weights = tuple(float(w) for w in self.resource_weights)
        if len(self.resource_weights) != 3 or min(self.resource_weights) < 0 or sum(self.resource_weights) <= 0:
            raise ValueError(f"resource_weights must be three non-negative weights, got {self.resource_weights}")
        total = sum(self.resource_weights)
        self.resource_weights = tuple(w / total for w in self.resource_weights)
        for name in ('short_horizon_prior', 'medium_horizon_prior', 'long_horizon_prior'):
            setattr(self, name, tuple(float(w) for w in getattr(self, name)))

    def horizon_prior(self, horizon: HorizonClass) -> Tuple[float, float]:
        horizon = HorizonClass(horizon)
        if horizon is HorizonClass.SHORT:
            return self.short_horizon_prior
        if horizon is HorizonClass.MEDIUM:
            return self.medium_horizon_prior
        if horizon is HorizonClass.LONG:
            return self.long_horizon_prior
        raise ValueError(f"Unhandled horizon class {horizon!r}")

    def to_dict(self) -> Dict[str, Any]:
        return _config_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdapterConfig':
        return _config_from_dict(cls, data)


@dataclass
class ForecastPreset:
    """A named bundle of engine configurations."""
    description: str
    plrnn: PLRNNConfig = field(default_factory=PLRNNConfig)
    kalman_former: KalmanFormerConfig = field(default_factory=KalmanFormerConfig)
    early_warning: EarlyWarningConfig = field(default_factory=EarlyWarningConfig)
    adapter: AdapterConfig = field(default_factory=AdapterConfig)


# Production defaults: hourly observations, one-day context
DEFAULT_PRESET = ForecastPreset(description="Hourly check-ins with a one-day attention window")

# Small models for tests and constrained hosts
MINIMAL_PRESET = ForecastPreset(
    description="Small models for fast evaluation",
    plrnn=PLRNNConfig(hidden_units=4, connectivity=Connectivity.FULL, prediction_horizon=6),
    kalman_former=KalmanFormerConfig(embed_dim=16, num_heads=2, num_layers=1, context_window=12),
)

# Larger models for users with long, dense histories
HIGH_CAPACITY_PRESET = ForecastPreset(
    description="Wider attention and more dendritic bases for dense histories",
    plrnn=PLRNNConfig(hidden_units=32, prediction_horizon=24),
    kalman_former=KalmanFormerConfig(embed_dim=128, num_heads=8, num_layers=3, context_window=48),
)

PRESETS = {
    "default": DEFAULT_PRESET,
    "minimal": MINIMAL_PRESET,
    "high_capacity": HIGH_CAPACITY_PRESET,
}

# Practical limits
MAX_RECOMMENDED_LATENT_DIM = 32
MAX_RECOMMENDED_CONTEXT = 256
MAX_RECOMMENDED_LEARNING_RATE = 0.1


def count_plrnn_parameters(config: PLRNNConfig) -> int:
    """Number of trainable PLRNN parameters for a configuration."""
    n, h, m = config.latent_dim, config.hidden_units, config.input_dim
    total = n + n * n + n * n + n * m + n + n  # A, W, B, C, b_z, b_x
    if config.connectivity is Connectivity.DENDRITIC:
        total += h * n + h + n * h  # D, b_d, V
    return total


def count_kalman_former_parameters(config: KalmanFormerConfig) -> int:
    """Number of attention-encoder and head parameters for a configuration."""
    d, o, s = config.embed_dim, config.obs_dim, config.state_dim
    ffn = config.ffn_multiplier * d
    per_layer = 4 * (d * d + d) + (d * ffn + ffn) + (ffn * d + d) + 4 * d
    embedding = o * d + d
    if config.time_embedding is TimeEmbedding.LEARNED:
        embedding += d + d
    heads = (d * o + o) + (d * s + s)
    return embedding + config.num_layers * per_layer + heads


def validate_config(config) -> List[str]:
    """Validate a configuration object and return a list of warnings."""
    warnings = []

    if isinstance(config, PLRNNConfig):
        if config.latent_dim > MAX_RECOMMENDED_LATENT_DIM:
            warnings.append(f"latent_dim {config.latent_dim} is large, training may be slow")
        if config.learning_rate > MAX_RECOMMENDED_LEARNING_RATE:
            warnings.append(f"learning_rate {config.learning_rate} may make training unstable")
        if config.prediction_horizon > 48:
            warnings.append(f"prediction_horizon {config.prediction_horizon} exceeds two days of hourly steps")
        if config.gradient_clip <= 0:
            warnings.append("gradient_clip <= 0 disables gradient clipping")
        if config.latent_dim != 5:
            warnings.append(f"latent_dim {config.latent_dim} does not match the five belief dimensions")
    elif isinstance(config, KalmanFormerConfig):
        if config.context_window > MAX_RECOMMENDED_CONTEXT:
            warnings.append(f"context_window {config.context_window} makes attention quadratic cost large")
        if config.state_dim != config.obs_dim:
            warnings.append("state_dim differs from obs_dim, H will be a rectangular projection")
        if config.measurement_noise == 0 and config.process_noise == 0:
            warnings.append("Zero process and measurement noise makes the filter overconfident")
        if config.learning_rate > MAX_RECOMMENDED_LEARNING_RATE:
            warnings.append(f"learning_rate {config.learning_rate} may make training unstable")
    elif isinstance(config, EarlyWarningConfig):
        if not 0.0 < config.trend_threshold < 1.0:
            warnings.append(f"trend_threshold {config.trend_threshold} outside (0, 1) disables detection")
        if config.full_confidence_samples < 10:
            warnings.append("full_confidence_samples below 10 overstates early-warning confidence")
    elif isinstance(config, AdapterConfig):
        if config.disagreement_threshold < 0:
            warnings.append("Negative disagreement_threshold widens every interval")
    else:
        warnings.append(f"Unrecognized configuration type {type(config).__name__}")

    return warnings
