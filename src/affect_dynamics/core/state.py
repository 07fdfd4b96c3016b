"""Shared state containers and closed option sets for the forecasting engines.

The latent space is five-dimensional by default, one coordinate per
psychological dimension in ``STATE_DIMENSIONS``. Engines may be configured
with other sizes; labels beyond the named dimensions fall back to
``dim_<i>``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
from scipy import stats

from .exceptions import InvalidDimensionError


STATE_DIMENSIONS = ('valence', 'arousal', 'dominance', 'risk', 'resources')


class Connectivity(str, Enum):
    """Coupling structure of the PLRNN interaction matrix W."""
    SPARSE = 'sparse'
    FULL = 'full'
    DENDRITIC = 'dendritic'


class TimeEmbedding(str, Enum):
    """How observation timestamps enter the attention encoder."""
    SINUSOIDAL = 'sinusoidal'
    LEARNED = 'learned'
    NONE = 'none'


class LearningRateSchedule(str, Enum):
    """Per-epoch learning rate decay for batch training."""
    CONSTANT = 'constant'
    STEP = 'step'
    EXPONENTIAL = 'exponential'
    COSINE = 'cosine'


class InterventionType(str, Enum):
    INCREASE = 'increase'
    DECREASE = 'decrease'
    STABILIZE = 'stabilize'


class HorizonClass(str, Enum):
    """Coarse forecast horizons used by hybrid prediction."""
    SHORT = 'short'
    MEDIUM = 'medium'
    LONG = 'long'

    @property
    def steps(self) -> int:
        return HORIZON_STEPS[self]


HORIZON_STEPS = {
    HorizonClass.SHORT: 4,
    HorizonClass.MEDIUM: 12,
    HorizonClass.LONG: 48,
}


class EarlyWarningType(str, Enum):
    AUTOCORRELATION = 'autocorrelation'
    VARIANCE = 'variance'
    CONNECTIVITY = 'connectivity'
    FLICKERING = 'flickering'


class TemporalPattern(str, Enum):
    """Shape of the attention distribution over the context window."""
    RECENCY_BIAS = 'recency_bias'
    PATTERN_MATCHING = 'pattern_matching'
    UNIFORM = 'uniform'


class PrimaryEngine(str, Enum):
    PLRNN = 'plrnn'
    KALMANFORMER = 'kalmanformer'
    BAYESIAN = 'bayesian'


def dimension_labels(n: int) -> List[str]:
    """Return human-readable labels for an ``n``-dimensional state."""
    return [STATE_DIMENSIONS[i] if i < len(STATE_DIMENSIONS) else f'dim_{i}'
            for i in range(n)]


def resolve_dimension(target: Union[int, str], n: int) -> int:
    """Map a dimension label or index onto an index in ``range(n)``."""
    if isinstance(target, str):
        labels = dimension_labels(n)
        if target not in labels:
            raise ValueError(f"Unknown dimension '{target}'. Available: {labels}")
        return labels.index(target)
    index = int(target)
    if not 0 <= index < n:
        raise InvalidDimensionError('target index', f'0..{n - 1}', index)
    return index


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LatentState:
    """Latent state z of a single user at one point in time.

    Attributes
    ----------
    latent : np.ndarray, shape (n,)
        Latent coordinates z
    uncertainty : np.ndarray, shape (n,)
        Per-dimension variance, non-negative
    timestamp : datetime
        Wall-clock time of the state
    timestep : int
        Monotonically increasing step counter
    observed : np.ndarray, shape (n,)
        Observation-space projection B*z + b_x
    hidden : np.ndarray, shape (n,)
        Hidden-unit activations relu(z)
    """
    latent: np.ndarray
    uncertainty: np.ndarray
    timestamp: datetime = field(default_factory=utc_now)
    timestep: int = 0
    observed: Optional[np.ndarray] = None
    hidden: Optional[np.ndarray] = None

    def __post_init__(self):
        self.latent = np.asarray(self.latent, dtype=float).copy()
        self.uncertainty = np.asarray(self.uncertainty, dtype=float).copy()
        if self.latent.ndim != 1:
            raise ValueError(f"latent must be a vector, got shape {self.latent.shape}")
        if self.uncertainty.shape != self.latent.shape:
            raise InvalidDimensionError('uncertainty', self.latent.shape[0], self.uncertainty.shape[0]
                                        if self.uncertainty.ndim else 0)
        if np.any(self.uncertainty < 0):
            raise ValueError("uncertainty must be non-negative")
        if self.observed is None:
            self.observed = self.latent.copy()
        else:
            self.observed = np.asarray(self.observed, dtype=float).copy()
        if self.hidden is None:
            self.hidden = np.maximum(self.latent, 0.0)
        else:
            self.hidden = np.asarray(self.hidden, dtype=float).copy()

    def __len__(self) -> int:
        return self.latent.shape[0]

    @property
    def dim(self) -> int:
        return self.latent.shape[0]

    @classmethod
    def from_observation(cls,
                         observation: Sequence[float],
                         timestamp: Optional[datetime] = None,
                         uncertainty: Union[float, Sequence[float]] = 0.1,
                         timestep: int = 0) -> 'LatentState':
        """Create a state whose latent coordinates equal an observation."""
        latent = np.asarray(observation, dtype=float)
        variance = np.broadcast_to(np.asarray(uncertainty, dtype=float), latent.shape)
        return cls(latent=latent,
                   uncertainty=variance,
                   timestamp=timestamp if timestamp is not None else utc_now(),
                   timestep=timestep)

    def advance(self, hours: float) -> datetime:
        return self.timestamp + timedelta(hours=hours)

    def copy(self) -> 'LatentState':
        return LatentState(latent=self.latent, uncertainty=self.uncertainty,
                           timestamp=self.timestamp, timestep=self.timestep,
                           observed=self.observed, hidden=self.hidden)

    def as_dict(self) -> Dict[str, float]:
        return dict(zip(dimension_labels(self.dim), self.latent.tolist()))


@dataclass
class ConfidenceInterval:
    """Per-step symmetric Gaussian interval around a forecast mean.

    ``lower`` and ``upper`` have shape (horizon, n).
    """
    lower: np.ndarray
    upper: np.ndarray
    level: float

    @classmethod
    def from_moments(cls, mean: np.ndarray, variance: np.ndarray, level: float = 0.95) -> 'ConfidenceInterval':
        if not 0.0 < level < 1.0:
            raise ValueError(f"Confidence level must be in (0, 1), got {level}")
        z = stats.norm.ppf(0.5 + level / 2.0)
        std = np.sqrt(np.maximum(variance, 0.0))
        return cls(lower=mean - z * std, upper=mean + z * std, level=level)

    @property
    def width(self) -> np.ndarray:
        return self.upper - self.lower
