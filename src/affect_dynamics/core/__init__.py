"""Core forecasting algorithms for affect dynamics.

This module contains the numerical components:
- Shared state containers and option enums
- Kalman filtering with outlier down-weighting and RTS smoothing
- Piecewise-linear recurrent dynamics (PLRNN) with BPTT training
- Hybrid Kalman/attention filtering (KalmanFormer)
- Causal network extraction and early-warning detection
"""

from .exceptions import AffectDynamicsError, InvalidDimensionError, NotInitializedError, TrainingError
from .state import (
    STATE_DIMENSIONS,
    Connectivity,
    TimeEmbedding,
    LearningRateSchedule,
    InterventionType,
    HorizonClass,
    EarlyWarningType,
    TemporalPattern,
    PrimaryEngine,
    LatentState,
    ConfidenceInterval,
    dimension_labels,
)
from .kalman import KalmanState, LinearKalmanFilter
from .causal import CausalNetwork, CausalNode, CausalEdge, FeedbackLoop, extract_causal_network
from .early_warning import EarlyWarningSignal, detect_early_warnings
from .interfaces import DynamicsEngine, FilterEngine
from .plrnn import (
    PLRNNEngine,
    PLRNNWeights,
    PLRNNPrediction,
    TrainingSample,
    TrainingResult,
    InterventionSimulation,
)
from .kalmanformer import (
    KalmanFormerEngine,
    KalmanFormerState,
    KalmanFormerWeights,
    KalmanFormerPrediction,
    KalmanFormerTrainingResult,
    AttentionWeights,
    ContextEntry,
)

__all__ = [
    # Errors
    'AffectDynamicsError',
    'InvalidDimensionError',
    'NotInitializedError',
    'TrainingError',

    # State
    'STATE_DIMENSIONS',
    'Connectivity',
    'TimeEmbedding',
    'LearningRateSchedule',
    'InterventionType',
    'HorizonClass',
    'EarlyWarningType',
    'TemporalPattern',
    'PrimaryEngine',
    'LatentState',
    'ConfidenceInterval',
    'dimension_labels',

    # Kalman filtering
    'KalmanState',
    'LinearKalmanFilter',

    # Interpretation
    'CausalNetwork',
    'CausalNode',
    'CausalEdge',
    'FeedbackLoop',
    'extract_causal_network',
    'EarlyWarningSignal',
    'detect_early_warnings',

    # Engines
    'DynamicsEngine',
    'FilterEngine',
    'PLRNNEngine',
    'PLRNNWeights',
    'PLRNNPrediction',
    'TrainingSample',
    'TrainingResult',
    'InterventionSimulation',
    'KalmanFormerEngine',
    'KalmanFormerState',
    'KalmanFormerWeights',
    'KalmanFormerPrediction',
    'KalmanFormerTrainingResult',
    'AttentionWeights',
    'ContextEntry',
]
