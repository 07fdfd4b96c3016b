"""
Affect Dynamics - latent psychological-state forecasting.

Combines a piecewise-linear recurrent dynamics model with a hybrid
Kalman/attention filter and bridges both to an external Bayesian belief state.
"""

__version__ = "0.1.0"

from .core import (
    PLRNNEngine,
    KalmanFormerEngine,
    LatentState,
    HorizonClass,
    InterventionType,
)
from .belief import BeliefStateAdapter, EngineRegistry

__all__ = [
    'PLRNNEngine',
    'KalmanFormerEngine',
    'LatentState',
    'HorizonClass',
    'InterventionType',
    'BeliefStateAdapter',
    'EngineRegistry',
]
