"""Bridge between the Bayesian belief state and the forecasting engines.

The belief state carries dozens of Gaussian posteriors; the engines work in
a fixed five-dimensional space (valence, arousal, dominance, risk,
resources). Valence, arousal, dominance and overall risk map directly. The
resources coordinate is a weighted mean of the energy, coping-capacity and
social-support posteriors; for independent posteriors its variance is
sum(w_i^2 * sigma_i^2).
"""

from dataclasses import dataclass, field, replace
import logging
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.defaults import AdapterConfig
from ..core.causal import CausalNetwork
from ..core.early_warning import EarlyWarningSignal
from ..core.exceptions import InvalidDimensionError
from ..core.interfaces import DynamicsEngine, FilterEngine
from ..core.state import (
    STATE_DIMENSIONS,
    ConfidenceInterval,
    HorizonClass,
    InterventionType,
    LatentState,
    PrimaryEngine,
)
from .types import BeliefState, BeliefUpdate, BeliefUpdates

logger = logging.getLogger(__name__)

DEFAULT_RESOURCE_WEIGHTS = AdapterConfig().resource_weights


def _resource_weights(weights: Optional[Sequence[float]]) -> np.ndarray:
    w = np.asarray(DEFAULT_RESOURCE_WEIGHTS if weights is None else weights, dtype=float)
    if w.shape != (3,) or np.any(w < 0) or w.sum() <= 0:
        raise ValueError(f"resource weights must be three non-negative numbers, got {weights}")
    return w / w.sum()


def belief_state_to_observation(belief: BeliefState,
                                resource_weights: Optional[Sequence[float]] = None) -> np.ndarray:
    """Posterior means as a [valence, arousal, dominance, risk, resources] vector."""
    w = _resource_weights(resource_weights)
    resources = belief.resources
    resource_means = np.array([resources.energy.posterior.mean,
                               resources.coping_capacity.posterior.mean,
                               resources.social_support.posterior.mean])
    return np.array([belief.emotional.valence.posterior.mean,
                     belief.emotional.arousal.posterior.mean,
                     belief.emotional.dominance.posterior.mean,
                     belief.risk.overall_risk.posterior.mean,
                     float(w @ resource_means)])


def belief_state_to_uncertainty(belief: BeliefState,
                                resource_weights: Optional[Sequence[float]] = None) -> np.ndarray:
    """Posterior variances matching ``belief_state_to_observation``."""
    w = _resource_weights(resource_weights)
    resources = belief.resources
    resource_vars = np.array([resources.energy.posterior.variance,
                              resources.coping_capacity.posterior.variance,
                              resources.social_support.posterior.variance])
    return np.array([belief.emotional.valence.posterior.variance,
                     belief.emotional.arousal.posterior.variance,
                     belief.emotional.dominance.posterior.variance,
                     belief.risk.overall_risk.posterior.variance,
                     float((w * w) @ resource_vars)])


def belief_state_to_latent_state(belief: BeliefState,
                                 timestep: int = 0,
                                 resource_weights: Optional[Sequence[float]] = None) -> LatentState:
    """Latent state whose coordinates are the belief's posterior means."""
    return LatentState(latent=belief_state_to_observation(belief, resource_weights),
                       uncertainty=belief_state_to_uncertainty(belief, resource_weights),
                       timestamp=belief.timestamp,
                       timestep=timestep)


def belief_state_to_kalman_former_state(belief: BeliefState,
                                        engine: FilterEngine,
                                        resource_weights: Optional[Sequence[float]] = None):
    """Filter state seeded from the belief, carrying the belief's overall confidence."""
    state = engine.from_plrnn_state(belief_state_to_latent_state(belief, resource_weights=resource_weights))
    return replace(state, confidence=float(belief.meta.overall_confidence))


def _updates(means: np.ndarray, variances: np.ndarray) -> BeliefUpdates:
    if means.shape[0] < len(STATE_DIMENSIONS):
        raise InvalidDimensionError('state', len(STATE_DIMENSIONS), means.shape[0])
    return {name: BeliefUpdate(mean=float(means[i]), variance=float(max(variances[i], 0.0)))
            for i, name in enumerate(STATE_DIMENSIONS)}


def latent_state_to_belief_update(state: LatentState) -> BeliefUpdates:
    """Proposed posterior per core dimension from a latent state's observed values."""
    return _updates(state.observed, state.uncertainty)


def kalman_former_state_to_belief_update(state) -> BeliefUpdates:
    """Proposed posterior per core dimension from a filter state."""
    return _updates(state.kalman.state_estimate, np.diag(state.kalman.error_covariance))


@dataclass
class HybridPrediction:
    """Merged forecast of both engines; arrays have shape (steps, 5).

    ``weights`` holds the (plrnn, kalmanformer) merge weights. ``disagreement``
    marks the entries where the two engines differed by more than the
    configured threshold and the variance was widened.
    """
    trajectory: np.ndarray
    variance: np.ndarray
    credible_interval: ConfidenceInterval
    final_prediction: np.ndarray
    horizon: HorizonClass
    hours_ahead: float
    confidence: float
    primary_engine: PrimaryEngine
    weights: Tuple[float, float] = (0.0, 0.0)
    early_warning_signals: List[EarlyWarningSignal] = field(default_factory=list)
    attention: Optional[object] = None
    disagreement: Optional[np.ndarray] = None
    plrnn_prediction: Optional[object] = None
    kalman_former_prediction: Optional[object] = None


def merge_hybrid_predictions(plrnn_prediction,
                             kalman_former_prediction,
                             horizon: Union[HorizonClass, str],
                             belief: BeliefState,
                             config: Optional[AdapterConfig] = None,
                             dt: float = 1.0) -> HybridPrediction:
    """Merge engine forecasts into one trajectory with credible intervals.

    Parameters
    ----------
    plrnn_prediction : Optional[PLRNNPrediction]
        Forecast of the dynamics engine
    kalman_former_prediction : Optional[KalmanFormerPrediction]
        Forecast of the filter engine, same number of steps
    horizon : HorizonClass
        Horizon class the forecasts were made for
    belief : BeliefState
        Belief the forecasts start from; used alone when no engine forecast
        is available
    config : Optional[AdapterConfig]
        Merge settings
    dt : float, default=1.0
        Hours per step

    Returns
    -------
    HybridPrediction
        With two forecasts, weights are proportional to each engine's
        confidence times the horizon prior. The variance is
        w_p^2 v_p + w_k^2 v_k, plus w_p w_k delta^2 wherever the engines
        disagree by more than ``disagreement_threshold``. With no forecast a
        persistence forecast of the belief is returned.
    """
    config = config if config is not None else AdapterConfig()
    horizon = HorizonClass(horizon)
    steps = horizon.steps

    if plrnn_prediction is None and kalman_former_prediction is None:
        mean = np.tile(belief_state_to_observation(belief, config.resource_weights), (steps, 1))
        base = belief_state_to_uncertainty(belief, config.resource_weights)
        growth = config.persistence_variance_growth * np.arange(1, steps + 1)[:, None]
        variance = base + growth
        return HybridPrediction(trajectory=mean,
                                variance=variance,
                                credible_interval=ConfidenceInterval.from_moments(mean, variance,
                                                                                  config.credible_level),
                                final_prediction=mean[-1].copy(),
                                horizon=horizon,
                                hours_ahead=steps * dt,
                                confidence=float(belief.meta.overall_confidence),
                                primary_engine=PrimaryEngine.BAYESIAN)

    prior_p, prior_k = config.horizon_prior(horizon)
    if plrnn_prediction is not None and kalman_former_prediction is not None:
        mean_p, var_p = plrnn_prediction.mean, plrnn_prediction.variance
        mean_k, var_k = kalman_former_prediction.blended, kalman_former_prediction.variance
        if mean_p.shape != mean_k.shape:
            raise InvalidDimensionError('kalman_former_prediction', mean_p.shape, mean_k.shape)
        conf_p, conf_k = plrnn_prediction.confidence, kalman_former_prediction.confidence
        raw = np.array([conf_p * prior_p, conf_k * prior_k])
        if raw.sum() <= 0:
            raw = np.array([prior_p, prior_k])
        w_p, w_k = raw / raw.sum()
        delta = mean_p - mean_k
        disagreement = np.abs(delta) > config.disagreement_threshold
        mean = w_p * mean_p + w_k * mean_k
        variance = w_p ** 2 * var_p + w_k ** 2 * var_k + np.where(disagreement, w_p * w_k * delta ** 2, 0.0)
        confidence = w_p * conf_p + w_k * conf_k
        if disagreement.any():
            logger.debug("Engines disagree on %d of %d entries, widening intervals",
                         int(disagreement.sum()), disagreement.size)
    elif plrnn_prediction is not None:
        w_p, w_k = 1.0, 0.0
        mean, variance = plrnn_prediction.mean, plrnn_prediction.variance
        confidence = plrnn_prediction.confidence
        disagreement = None
    else:
        w_p, w_k = 0.0, 1.0
        mean, variance = kalman_former_prediction.blended, kalman_former_prediction.variance
        confidence = kalman_former_prediction.confidence
        disagreement = None

    return HybridPrediction(trajectory=mean,
                            variance=variance,
                            credible_interval=ConfidenceInterval.from_moments(mean, variance, config.credible_level),
                            final_prediction=mean[-1].copy() if mean.shape[0] else np.zeros(mean.shape[1]),
                            horizon=horizon,
                            hours_ahead=steps * dt,
                            confidence=float(np.clip(confidence, 0.0, 1.0)),
                            primary_engine=PrimaryEngine.PLRNN if w_p >= w_k else PrimaryEngine.KALMANFORMER,
                            weights=(float(w_p), float(w_k)),
                            early_warning_signals=list(plrnn_prediction.early_warning_signals)
                            if plrnn_prediction is not None else [],
                            attention=kalman_former_prediction.attention
                            if kalman_former_prediction is not None else None,
                            disagreement=disagreement,
                            plrnn_prediction=plrnn_prediction,
                            kalman_former_prediction=kalman_former_prediction)


class BeliefStateAdapter:
    """Dispatches belief states to whichever engines are wired.

    Parameters
    ----------
    plrnn : Optional[DynamicsEngine]
        Nonlinear dynamics engine
    kalman_former : Optional[FilterEngine]
        Filter engine
    config : Optional[AdapterConfig]
        Mapping and merge settings

    Notes
    -----
    Any combination of engines works. Operations that need a missing engine
    return None, except ``predict_hybrid`` which falls back to a
    persistence forecast.
    """

    def __init__(self,
                 plrnn: Optional[DynamicsEngine] = None,
                 kalman_former: Optional[FilterEngine] = None,
                 config: Optional[AdapterConfig] = None):
        self.plrnn = plrnn
        self.kalman_former = kalman_former
        self.config = config if config is not None else AdapterConfig()

    def set_plrnn_engine(self, engine: Optional[DynamicsEngine]) -> None:
        self.plrnn = engine

    def set_kalman_former_engine(self, engine: Optional[FilterEngine]) -> None:
        self.kalman_former = engine

    def to_latent_state(self, belief: BeliefState) -> LatentState:
        return belief_state_to_latent_state(belief, resource_weights=self.config.resource_weights)

    def to_kalman_former_state(self, belief: BeliefState):
        if self.kalman_former is None:
            return None
        return belief_state_to_kalman_former_state(belief, self.kalman_former, self.config.resource_weights)

    def observe(self, belief: BeliefState, state=None):
        """Feed a belief update to the filter engine.

        Starts a new filter state from the belief when ``state`` is None,
        otherwise runs one update with the belief's means as the
        observation. Returns None when no filter engine is wired.
        """
        if self.kalman_former is None:
            return None
        if state is None:
            return self.to_kalman_former_state(belief)
        observation = belief_state_to_observation(belief, self.config.resource_weights)
        return self.kalman_former.update(state, observation, belief.timestamp)

    def predict_hybrid(self,
                       belief: BeliefState,
                       horizon: Union[HorizonClass, str] = HorizonClass.MEDIUM,
                       kalman_former_state=None) -> HybridPrediction:
        """Forecast from a belief with every wired engine and merge the results.

        ``kalman_former_state`` lets callers forecast from an accumulated
        filter state instead of one seeded from the belief alone.
        """
        horizon = HorizonClass(horizon)
        steps = horizon.steps

        plrnn_prediction = None
        if self.plrnn is not None:
            plrnn_prediction = self.plrnn.predict(self.to_latent_state(belief), steps,
                                                  level=self.config.credible_level)

        kalman_former_prediction = None
        if self.kalman_former is not None:
            state = kalman_former_state if kalman_former_state is not None \
                else self.to_kalman_former_state(belief)
            kalman_former_prediction = self.kalman_former.predict(state, steps, level=self.config.credible_level)

        dt = getattr(getattr(self.plrnn, 'config', None), 'dt', 1.0)
        return merge_hybrid_predictions(plrnn_prediction, kalman_former_prediction, horizon, belief,
                                        self.config, dt=dt)

    def extract_causal_network(self, belief: BeliefState) -> Optional[CausalNetwork]:
        if self.plrnn is None:
            return None
        return self.plrnn.extract_causal_network(self.to_latent_state(belief))

    def simulate_intervention(self,
                              belief: BeliefState,
                              target: Union[int, str],
                              intervention: Union[InterventionType, str],
                              magnitude: float,
                              horizon: Optional[int] = None):
        if self.plrnn is None:
            return None
        return self.plrnn.simulate_intervention(self.to_latent_state(belief), target,
                                                InterventionType(intervention), magnitude, horizon)

    def explain_prediction(self, belief: BeliefState, kalman_former_state=None):
        if self.kalman_former is None:
            return None
        state = kalman_former_state if kalman_former_state is not None else self.to_kalman_former_state(belief)
        return self.kalman_former.explain(state)

    def detect_early_warnings(self, beliefs: Sequence[BeliefState], window_size: int = 10):
        """Early-warning signals over a chronological sequence of beliefs."""
        if self.plrnn is None:
            return None
        history = np.array([belief_state_to_observation(b, self.config.resource_weights) for b in beliefs])
        return self.plrnn.detect_early_warnings(history, window_size)
