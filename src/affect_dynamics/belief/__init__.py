"""Bridge between Bayesian belief states and the forecasting engines."""

from .types import (
    Posterior,
    DimensionBelief,
    EmotionalBeliefs,
    RiskBeliefs,
    ResourceBeliefs,
    BeliefMeta,
    BeliefState,
    BeliefUpdate,
)
from .adapter import (
    BeliefStateAdapter,
    HybridPrediction,
    belief_state_to_observation,
    belief_state_to_uncertainty,
    belief_state_to_latent_state,
    belief_state_to_kalman_former_state,
    latent_state_to_belief_update,
    kalman_former_state_to_belief_update,
    merge_hybrid_predictions,
)
from .registry import EngineRegistry, UserEngines

__all__ = [
    'Posterior',
    'DimensionBelief',
    'EmotionalBeliefs',
    'RiskBeliefs',
    'ResourceBeliefs',
    'BeliefMeta',
    'BeliefState',
    'BeliefUpdate',
    'BeliefStateAdapter',
    'HybridPrediction',
    'belief_state_to_observation',
    'belief_state_to_uncertainty',
    'belief_state_to_latent_state',
    'belief_state_to_kalman_former_state',
    'latent_state_to_belief_update',
    'kalman_former_state_to_belief_update',
    'merge_hybrid_predictions',
    'EngineRegistry',
    'UserEngines',
]
