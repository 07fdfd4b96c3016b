"""Capability contracts implemented by the forecasting engines.

The belief adapter only depends on these two interfaces, so either engine can
be swapped for another implementation (or omitted) without touching it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence, Union

import numpy as np

from .state import HorizonClass, InterventionType, LatentState


class DynamicsEngine(ABC):
    """Learned nonlinear state dynamics with interpretation tools."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        ...

    @property
    @abstractmethod
    def latent_dim(self) -> int:
        ...

    @abstractmethod
    def initialize(self, config=None) -> None:
        ...

    @abstractmethod
    def load_weights(self, weights) -> None:
        ...

    @abstractmethod
    def get_weights(self):
        ...

    @abstractmethod
    def forward(self, state: LatentState, input: Optional[np.ndarray] = None) -> LatentState:
        ...

    @abstractmethod
    def predict(self, state: LatentState, horizon: Optional[int] = None, inputs=None, level: Optional[float] = None):
        ...

    @abstractmethod
    def hybrid_predict(self, state: LatentState, horizon: HorizonClass, level: Optional[float] = None):
        ...

    @abstractmethod
    def extract_causal_network(self, state: Optional[LatentState] = None):
        ...

    @abstractmethod
    def simulate_intervention(self, state: LatentState, target: Union[int, str],
                              intervention: InterventionType, magnitude: float,
                              horizon: Optional[int] = None):
        ...

    @abstractmethod
    def detect_early_warnings(self, history, window_size: int = 10):
        ...

    @abstractmethod
    def train_online(self, sample):
        ...

    @abstractmethod
    def train_batch(self, samples: Sequence, epochs: int = 1):
        ...

    @abstractmethod
    def calculate_loss(self, predicted: np.ndarray, actual: np.ndarray) -> float:
        ...


class FilterEngine(ABC):
    """Online state estimation from noisy observations with short-term forecasts."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        ...

    @abstractmethod
    def initialize(self, config=None) -> None:
        ...

    @abstractmethod
    def load_weights(self, weights) -> None:
        ...

    @abstractmethod
    def get_weights(self):
        ...

    @abstractmethod
    def initial_state(self, observation: np.ndarray, timestamp: Optional[datetime] = None,
                      uncertainty: Optional[np.ndarray] = None):
        ...

    @abstractmethod
    def update(self, state, observation: np.ndarray, timestamp: datetime):
        ...

    @abstractmethod
    def predict(self, state, horizon: int, level: Optional[float] = None):
        ...

    @abstractmethod
    def explain(self, state):
        ...

    @abstractmethod
    def adapt_blend_ratio(self, predictions, actuals) -> float:
        ...

    @abstractmethod
    def train(self, samples: Sequence, epochs: int = 1):
        ...

    @abstractmethod
    def to_plrnn_state(self, state) -> LatentState:
        ...

    @abstractmethod
    def from_plrnn_state(self, state: LatentState):
        ...
