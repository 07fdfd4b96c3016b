"""Piecewise-linear recurrent neural network (PLRNN) dynamics engine.

Latent dynamics follow

    z_{t+1} = A * z_t + W relu(z_t) + C s_t + b_z  [+ V relu(D z_t + b_d)]
    x_{t+1} = B z_{t+1} + b_x

where A is a diagonal autoregression, W an off-diagonal coupling matrix,
s_t an optional external input and the bracketed term a bank of dendritic
ReLU bases used when ``connectivity == 'dendritic'``. Training uses
backpropagation through time with teacher forcing and Adam.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.defaults import EarlyWarningConfig, PLRNNConfig, count_plrnn_parameters
from ..config.random_state import make_rng
from .causal import CausalNetwork, extract_causal_network
from .early_warning import EarlyWarningSignal, detect_early_warnings
from .exceptions import InvalidDimensionError, NotInitializedError, TrainingError
from .interfaces import DynamicsEngine, FilterEngine
from .linalg import relu, relu_grad, spectral_radius
from .optim import AdamOptimizer, AdamState, all_finite, clip_by_global_norm, scheduled_learning_rate
from .state import (
    ConfidenceInterval,
    Connectivity,
    HorizonClass,
    InterventionType,
    LatentState,
    PrimaryEngine,
    dimension_labels,
    resolve_dimension,
)

logger = logging.getLogger(__name__)

DENDRITIC_PARAMETERS = ('D', 'dendritic_bias', 'V')
CORE_PARAMETERS = ('A', 'W', 'B', 'C', 'bias_latent', 'bias_observed')

# |z| beyond which a state is considered off the training manifold
MANIFOLD_RADIUS = 2.0


@dataclass
class PLRNNWeights:
    """Learned PLRNN parameters with optimizer state and training metadata.

    Attributes
    ----------
    A : np.ndarray, shape (n,)
        Diagonal autoregressive weights
    W : np.ndarray, shape (n, n)
        Coupling matrix; entry W[i, j] is the effect of relu(z_j) on z_i
    B : np.ndarray, shape (n, n)
        Observation matrix
    C : np.ndarray, shape (n, m)
        External input matrix
    bias_latent, bias_observed : np.ndarray, shape (n,)
        Latent and observation biases
    D : np.ndarray, shape (h, n)
        Dendritic basis weights
    dendritic_bias : np.ndarray, shape (h,)
        Dendritic basis thresholds
    V : np.ndarray, shape (n, h)
        Dendritic read-out
    mask : np.ndarray, shape (n, n)
        0/1 structural mask on W (zero diagonal)
    baseline : np.ndarray, shape (n,)
        Historical mean of the observations seen in training
    """
    A: np.ndarray
    W: np.ndarray
    B: np.ndarray
    C: np.ndarray
    bias_latent: np.ndarray
    bias_observed: np.ndarray
    D: np.ndarray
    dendritic_bias: np.ndarray
    V: np.ndarray
    mask: np.ndarray
    baseline: np.ndarray
    baseline_count: int = 0
    adam: AdamState = field(default_factory=AdamState)
    trained_at: Optional[str] = None
    training_samples: int = 0
    validation_loss: Optional[float] = None
    config: Dict[str, Any] = field(default_factory=dict)

    ARRAY_FIELDS = CORE_PARAMETERS + DENDRITIC_PARAMETERS + ('mask', 'baseline')

    def parameters(self, dendritic: bool = True) -> Dict[str, np.ndarray]:
        names = CORE_PARAMETERS + (DENDRITIC_PARAMETERS if dendritic else ())
        return {name: getattr(self, name) for name in names}

    def set_parameters(self, params: Dict[str, np.ndarray]) -> None:
        for name, value in params.items():
            setattr(self, name, value)

    def copy(self) -> 'PLRNNWeights':
        arrays = {name: getattr(self, name).copy() for name in self.ARRAY_FIELDS}
        return PLRNNWeights(**arrays,
                            baseline_count=self.baseline_count,
                            adam=self.adam.copy(),
                            trained_at=self.trained_at,
                            training_samples=self.training_samples,
                            validation_loss=self.validation_loss,
                            config=dict(self.config))

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name).tolist() for name in self.ARRAY_FIELDS}
        data.update({
            'baseline_count': self.baseline_count,
            'adam': self.adam.to_dict(),
            'trained_at': self.trained_at,
            'training_samples': self.training_samples,
            'validation_loss': self.validation_loss,
            'config': dict(self.config),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PLRNNWeights':
        arrays = {name: np.asarray(data[name], dtype=float) for name in cls.ARRAY_FIELDS}
        return cls(**arrays,
                   baseline_count=int(data.get('baseline_count', 0)),
                   adam=AdamState.from_dict(data['adam']) if 'adam' in data else AdamState(),
                   trained_at=data.get('trained_at'),
                   training_samples=int(data.get('training_samples', 0)),
                   validation_loss=data.get('validation_loss'),
                   config=dict(data.get('config', {})))


@dataclass
class TrainingSample:
    """One observed sequence for training.

    Attributes
    ----------
    observations : np.ndarray, shape (T, n)
        Chronological observations, T >= 2
    inputs : Optional[np.ndarray], shape (T, m)
        External inputs aligned with observations
    ground_truth : Optional[np.ndarray], shape (T, n)
        Targets, if they differ from the observations
    """
    observations: np.ndarray
    inputs: Optional[np.ndarray] = None
    ground_truth: Optional[np.ndarray] = None
    timestamps: Optional[List[datetime]] = None

    def __post_init__(self):
        self.observations = np.asarray(self.observations, dtype=float)
        if self.inputs is not None:
            self.inputs = np.asarray(self.inputs, dtype=float)
        if self.ground_truth is not None:
            self.ground_truth = np.asarray(self.ground_truth, dtype=float)

    @property
    def targets(self) -> np.ndarray:
        return self.ground_truth if self.ground_truth is not None else self.observations

    def __len__(self) -> int:
        return self.observations.shape[0] if self.observations.ndim else 0


@dataclass
class NormalizationStats:
    """Per-dimension mean and standard deviation of one training sequence."""
    means: np.ndarray
    stds: np.ndarray

    def apply(self, values: np.ndarray) -> np.ndarray:
        return (np.asarray(values, dtype=float) - self.means) / self.stds

    def invert(self, values: np.ndarray) -> np.ndarray:
        return np.asarray(values, dtype=float) * self.stds + self.means


def normalize_sample(sample: TrainingSample) -> Tuple[TrainingSample, NormalizationStats]:
    """Z-score a sample's observations (and ground truth) by its own statistics.

    Uses the sample standard deviation (ddof=1); constant dimensions get a
    standard deviation of one. Inputs and timestamps are carried over.
    """
    obs = sample.observations
    means = obs.mean(axis=0)
    stds = obs.std(axis=0, ddof=1) if obs.shape[0] > 1 else np.zeros(obs.shape[1])
    stds = np.where(np.isfinite(stds) & (stds > 0), stds, 1.0)
    stats = NormalizationStats(means=means, stds=stds)
    normalized = TrainingSample(observations=stats.apply(obs),
                                inputs=sample.inputs,
                                ground_truth=None if sample.ground_truth is None else stats.apply(sample.ground_truth),
                                timestamps=sample.timestamps)
    return normalized, stats


@dataclass
class TrainingResult:
    """Outcome of a training call. ``loss`` is NaN when every step was skipped."""
    loss: float
    epochs: int
    samples: int
    training_time: float
    loss_history: List[float] = field(default_factory=list)
    validation_loss: Optional[float] = None
    skipped_steps: int = 0
    converged: bool = False
    best_epoch: Optional[int] = None
    validation_history: List[float] = field(default_factory=list)
    learning_rates: List[float] = field(default_factory=list)
    stop_reason: Optional[str] = None
    normalization: List[NormalizationStats] = field(default_factory=list)


@dataclass
class PLRNNPrediction:
    """Multi-step forecast.

    ``mean`` and ``variance`` have shape (horizon, n); ``trajectory`` holds one
    LatentState per step whose ``observed`` field is the blended mean.
    """
    trajectory: List[LatentState]
    mean: np.ndarray
    variance: np.ndarray
    confidence_interval: ConfidenceInterval
    mean_prediction: np.ndarray
    horizon: int
    confidence: float
    early_warning_signals: List[EarlyWarningSignal] = field(default_factory=list)
    baseline_weight: Optional[np.ndarray] = None
    source: PrimaryEngine = PrimaryEngine.PLRNN


@dataclass
class InterventionSimulation:
    """Counterfactual comparison of an intervention against no intervention.

    ``counterfactual`` and ``intervened`` have shape (horizon + 1, n) and
    include the starting point. Times are in hours.
    """
    target: str
    intervention: InterventionType
    magnitude: float
    horizon: int
    expected_change: Dict[str, float]
    time_to_peak: float
    duration: float
    side_effects: Dict[str, float]
    confidence: float
    counterfactual: np.ndarray
    intervened: np.ndarray


class PLRNNEngine(DynamicsEngine):
    """Per-user PLRNN forecasting engine.

    Parameters
    ----------
    config : Optional[PLRNNConfig]
        Engine configuration; defaults are used when omitted
    early_warning_config : Optional[EarlyWarningConfig]
        Thresholds for early-warning detection
    rng : Optional[np.random.Generator]
        Generator for initialization and teacher forcing. Built from
        ``config.random_seed`` when omitted.

    Notes
    -----
    Read operations (forward, predict, causal extraction, intervention
    simulation) never modify the weights. Training calls modify weights and
    optimizer state and must not run concurrently on the same instance.
    """

    def __init__(self,
                 config: Optional[PLRNNConfig] = None,
                 early_warning_config: Optional[EarlyWarningConfig] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else PLRNNConfig()
        self.early_warning_config = early_warning_config if early_warning_config is not None \
            else EarlyWarningConfig()
        self._rng = rng if rng is not None else make_rng(self.config.random_seed)
        self._optimizer = self._build_optimizer()
        self._weights: Optional[PLRNNWeights] = None
        self._companion: Optional[FilterEngine] = None

    def _build_optimizer(self) -> AdamOptimizer:
        return AdamOptimizer(learning_rate=self.config.learning_rate,
                             beta1=self.config.adam_beta1,
                             beta2=self.config.adam_beta2,
                             epsilon=self.config.adam_epsilon)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._weights is not None

    @property
    def latent_dim(self) -> int:
        return self.config.latent_dim

    @property
    def dendritic(self) -> bool:
        return self.config.connectivity is Connectivity.DENDRITIC

    def initialize(self, config: Optional[PLRNNConfig] = None) -> None:
        """Create fresh weights and reset the optimizer state."""
        if config is not None:
            self.config = config
            self._optimizer = self._build_optimizer()

        n, h, m = self.config.latent_dim, self.config.hidden_units, self.config.input_dim
        rng = self._rng

        mask = np.ones((n, n)) - np.eye(n)
        if self.config.connectivity is Connectivity.SPARSE:
            mask *= rng.random((n, n)) < self.config.sparse_density
        elif self.config.connectivity not in (Connectivity.FULL, Connectivity.DENDRITIC):
            raise ValueError(f"Unhandled connectivity {self.config.connectivity!r}")

        A = rng.uniform(0.9, 1.0, size=n)
        scale = np.sqrt(1.0 / n)
        W = rng.uniform(-scale, scale, size=(n, n)) * mask
        # Keep the all-active linearization contracting
        for _ in range(50):
            if spectral_radius(np.diag(A) + W) < 1.0:
                break
            W *= 0.5

        weights = PLRNNWeights(
            A=A,
            W=W,
            B=np.eye(n),
            C=rng.normal(0.0, 0.01, size=(n, m)),
            bias_latent=rng.uniform(-0.05, 0.05, size=n),
            bias_observed=rng.uniform(-0.05, 0.05, size=n),
            D=rng.uniform(-1.0, 1.0, size=(h, n)) * np.sqrt(6.0 / (n + h)),
            dendritic_bias=rng.uniform(-0.5, 0.5, size=h),
            V=rng.normal(0.0, 0.01, size=(n, h)) if self.dendritic else np.zeros((n, h)),
            mask=mask,
            baseline=np.zeros(n),
            config=self.config.to_dict(),
        )
        weights.adam = AdamState.zeros_like(weights.parameters(self.dendritic))
        self._weights = weights
        logger.info("Initialized PLRNN (latent_dim=%d, hidden_units=%d, connectivity=%s)",
                    n, h, self.config.connectivity.value)

    def load_weights(self, weights: Union[PLRNNWeights, Dict[str, Any]]) -> None:
        """Install weights after checking every shape against the configuration."""
        if isinstance(weights, dict):
            weights = PLRNNWeights.from_dict(weights)
        n, h, m = self.config.latent_dim, self.config.hidden_units, self.config.input_dim
        expected = {
            'A': (n,), 'W': (n, n), 'B': (n, n), 'C': (n, m),
            'bias_latent': (n,), 'bias_observed': (n,),
            'D': (h, n), 'dendritic_bias': (h,), 'V': (n, h),
            'mask': (n, n), 'baseline': (n,),
        }
        for name, shape in expected.items():
            actual = getattr(weights, name).shape
            if actual != shape:
                raise InvalidDimensionError(name, shape, actual)

        self._weights = weights.copy()
        if not self._weights.adam.first_moment:
            self._weights.adam = AdamState.zeros_like(self._weights.parameters(self.dendritic))

    def get_weights(self) -> PLRNNWeights:
        return self._require_weights().copy()

    def reset_optimizer(self) -> None:
        w = self._require_weights()
        w.adam = AdamState.zeros_like(w.parameters(self.dendritic))

    def pair_with(self, engine: Optional[FilterEngine]) -> None:
        """Route short-horizon hybrid predictions through a filter engine."""
        self._companion = engine

    def _require_weights(self) -> PLRNNWeights:
        if self._weights is None:
            raise NotInitializedError('PLRNNEngine')
        return self._weights

    # ------------------------------------------------------------------
    # Dynamics
    # ------------------------------------------------------------------

    def _check_state(self, state: LatentState) -> None:
        if len(state) != self.config.latent_dim:
            raise InvalidDimensionError('state', self.config.latent_dim, len(state))

    def _check_input(self, input: Optional[np.ndarray]) -> np.ndarray:
        if input is None:
            return np.zeros(self.config.input_dim)
        s = np.asarray(input, dtype=float)
        if s.shape != (self.config.input_dim,):
            raise InvalidDimensionError('input', self.config.input_dim, s.shape)
        return s

    def _step(self, z: np.ndarray, s: np.ndarray, w: PLRNNWeights) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        phi = relu(z)
        z_next = w.A * z + (w.W * w.mask) @ phi + w.C @ s + w.bias_latent
        cache = {'z': z, 'phi': phi, 's': s}
        if self.dendritic:
            u = w.D @ z + w.dendritic_bias
            g = relu(u)
            z_next = z_next + w.V @ g
            cache.update(u=u, g=g)
        return z_next, cache

    def _step_backward(self, delta: np.ndarray, cache: Dict[str, np.ndarray],
                       w: PLRNNWeights, grads: Dict[str, np.ndarray]) -> np.ndarray:
        """Accumulate parameter gradients of one step; return dL/dz_t."""
        z = cache['z']
        grads['A'] += delta * z
        grads['W'] += np.outer(delta, cache['phi'])
        grads['C'] += np.outer(delta, cache['s'])
        grads['bias_latent'] += delta
        dz = w.A * delta + ((w.W * w.mask).T @ delta) * relu_grad(z)
        if self.dendritic:
            grads['V'] += np.outer(delta, cache['g'])
            du = (w.V.T @ delta) * relu_grad(cache['u'])
            grads['D'] += np.outer(du, z)
            grads['dendritic_bias'] += du
            dz = dz + w.D.T @ du
        return dz

    def _observe(self, z: np.ndarray, w: PLRNNWeights) -> np.ndarray:
        return w.B @ z + w.bias_observed

    def _propagate_uncertainty(self, variance: np.ndarray, z: np.ndarray) -> np.ndarray:
        off_manifold = np.maximum(np.abs(z) - MANIFOLD_RADIUS, 0.0)
        return variance * (1.0 + self.config.uncertainty_growth) \
            + self.config.process_variance * (1.0 + off_manifold)

    def forward(self, state: LatentState, input: Optional[np.ndarray] = None) -> LatentState:
        """Advance one step of length ``dt`` hours.

        Raises
        ------
        NotInitializedError
            If no weights are loaded
        InvalidDimensionError
            If the state or input has the wrong length
        """
        w = self._require_weights()
        self._check_state(state)
        s = self._check_input(input)

        z_next, _ = self._step(state.latent, s, w)
        return LatentState(latent=z_next,
                           uncertainty=self._propagate_uncertainty(state.uncertainty, z_next),
                           timestamp=state.advance(self.config.dt),
                           timestep=state.timestep + 1,
                           observed=self._observe(z_next, w),
                           hidden=relu(z_next))

    def predict(self,
                state: LatentState,
                horizon: Optional[int] = None,
                inputs: Optional[np.ndarray] = None,
                level: Optional[float] = None) -> PLRNNPrediction:
        """Free-running forecast blended toward the historical baseline.

        Parameters
        ----------
        state : LatentState
            Starting state
        horizon : Optional[int]
            Number of steps, ``config.prediction_horizon`` by default
        inputs : Optional[np.ndarray], shape (horizon, m)
            External inputs per step
        level : Optional[float]
            Confidence level of the interval, ``config.confidence_level`` by default

        Returns
        -------
        PLRNNPrediction
            Exactly ``horizon`` steps with non-decreasing variance

        Notes
        -----
        The mean at step k is (1 - lambda_k) x_raw(k) + lambda_k * baseline
        with lambda_k = 1 - exp(-k / tau), so long horizons revert to the
        user's historical mean instead of following the recurrent map into
        regions it was never trained on.
        """
        w = self._require_weights()
        self._check_state(state)
        horizon = self.config.prediction_horizon if horizon is None else int(horizon)
        level = self.config.confidence_level if level is None else level
        if horizon < 0:
            raise ValueError(f"horizon must be non-negative, got {horizon}")
        n = self.config.latent_dim
        if inputs is not None:
            inputs = np.asarray(inputs, dtype=float)
            if inputs.shape != (horizon, self.config.input_dim):
                raise InvalidDimensionError('inputs', (horizon, self.config.input_dim), inputs.shape)

        if horizon == 0:
            empty = np.zeros((0, n))
            return PLRNNPrediction(trajectory=[], mean=empty, variance=empty.copy(),
                                   confidence_interval=ConfidenceInterval(empty.copy(), empty.copy(), level),
                                   mean_prediction=state.observed.copy(), horizon=0,
                                   confidence=self._confidence(state.uncertainty),
                                   baseline_weight=np.zeros(0))

        steps = np.arange(1, horizon + 1)
        lam = 1.0 - np.exp(-steps / self.config.baseline_decay_tau)

        raw_states = []
        current = state
        for k in range(horizon):
            current = self.forward(current, None if inputs is None else inputs[k])
            raw_states.append(current)

        raw = np.array([s.observed for s in raw_states])
        mean = (1.0 - lam)[:, None] * raw + lam[:, None] * w.baseline
        variance = np.array([s.uncertainty for s in raw_states])

        trajectory = [LatentState(latent=s.latent, uncertainty=s.uncertainty, timestamp=s.timestamp,
                                  timestep=s.timestep, observed=mean[k], hidden=s.hidden)
                      for k, s in enumerate(raw_states)]

        window = max(self.early_warning_config.min_window, horizon // 4)
        signals = detect_early_warnings(mean, window, self.early_warning_config, dt=self.config.dt) \
            if horizon >= 2 * window else []

        return PLRNNPrediction(trajectory=trajectory,
                               mean=mean,
                               variance=variance,
                               confidence_interval=ConfidenceInterval.from_moments(mean, variance, level),
                               mean_prediction=mean[-1].copy(),
                               horizon=horizon,
                               confidence=self._confidence(variance[-1]),
                               early_warning_signals=signals,
                               baseline_weight=lam)

    @staticmethod
    def _confidence(variance: np.ndarray) -> float:
        return float(1.0 / (1.0 + np.mean(variance)))

    def hybrid_predict(self,
                       state: LatentState,
                       horizon: Union[HorizonClass, str],
                       level: Optional[float] = None) -> PLRNNPrediction:
        """Forecast for a horizon class.

        Short horizons go through the paired filter engine when one is
        wired with ``pair_with``; medium and long horizons always use the
        recurrent dynamics.
        """
        horizon = HorizonClass(horizon)
        steps = horizon.steps
        if horizon is not HorizonClass.SHORT or self._companion is None:
            return self.predict(state, steps, level=level)

        self._check_state(state)
        companion_prediction = self._companion.predict(self._companion.from_plrnn_state(state), steps, level=level)
        mean = companion_prediction.blended
        variance = companion_prediction.variance
        trajectory = []
        for k in range(steps):
            trajectory.append(LatentState(latent=mean[k], uncertainty=variance[k],
                                          timestamp=state.advance((k + 1) * self.config.dt),
                                          timestep=state.timestep + k + 1))
        return PLRNNPrediction(trajectory=trajectory,
                               mean=mean,
                               variance=variance,
                               confidence_interval=companion_prediction.confidence_interval,
                               mean_prediction=mean[-1].copy(),
                               horizon=steps,
                               confidence=companion_prediction.confidence,
                               source=PrimaryEngine.KALMANFORMER)

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    def extract_causal_network(self, state: Optional[LatentState] = None) -> CausalNetwork:
        """Causal graph from A (self weights) and the masked coupling W.

        Node values are the state's observed values when a state is given,
        otherwise the historical baseline.
        """
        w = self._require_weights()
        if state is not None:
            self._check_state(state)
        values = state.observed if state is not None else w.baseline
        return extract_causal_network(self_weights=w.A,
                                      coupling=w.W * w.mask,
                                      values=values,
                                      lag=self.config.dt,
                                      threshold=self.config.causal_edge_threshold,
                                      labels=dimension_labels(self.config.latent_dim))

    def _latent_baseline(self, w: PLRNNWeights) -> np.ndarray:
        solution, *_ = np.linalg.lstsq(w.B, w.baseline - w.bias_observed, rcond=None)
        return solution

    def simulate_intervention(self,
                              state: LatentState,
                              target: Union[int, str],
                              intervention: Union[InterventionType, str],
                              magnitude: float,
                              horizon: Optional[int] = None) -> InterventionSimulation:
        """Compare the trajectory under an intervention against no intervention.

        ``increase``/``decrease`` shift the target dimension by ``magnitude``
        at the start. ``stabilize`` pulls the target toward its historical
        mean by the fraction ``clip(magnitude, 0, 1)`` of its deviation at
        every step.

        Returns
        -------
        InterventionSimulation
            Mean per-dimension change over the horizon, time to the first
            local peak of |change| on the target, time until that change
            falls below ``intervention_epsilon``, and side effects on the
            other dimensions.
        """
        w = self._require_weights()
        self._check_state(state)
        intervention = InterventionType(intervention)
        horizon = self.config.intervention_horizon if horizon is None else int(horizon)
        if horizon < 1:
            raise ValueError(f"horizon must be positive, got {horizon}")
        n = self.config.latent_dim
        idx = resolve_dimension(target, n)
        labels = dimension_labels(n)
        no_input = np.zeros(self.config.input_dim)
        latent_baseline = self._latent_baseline(w)
        pull = float(np.clip(magnitude, 0.0, 1.0))

        def apply(z: np.ndarray, first: bool) -> np.ndarray:
            z = z.copy()
            if intervention is InterventionType.STABILIZE:
                z[idx] += pull * (latent_baseline[idx] - z[idx])
            elif first and intervention is InterventionType.INCREASE:
                z[idx] += magnitude
            elif first and intervention is InterventionType.DECREASE:
                z[idx] -= magnitude
            elif intervention not in (InterventionType.INCREASE, InterventionType.DECREASE):
                raise ValueError(f"Unhandled intervention {intervention!r}")
            return z

        z_cf = state.latent.copy()
        z_iv = apply(state.latent, first=True)
        counterfactual = [self._observe(z_cf, w)]
        intervened = [self._observe(z_iv, w)]
        variance = state.uncertainty.copy()
        for _ in range(horizon):
            z_cf, _ = self._step(z_cf, no_input, w)
            z_iv, _ = self._step(z_iv, no_input, w)
            z_iv = apply(z_iv, first=False)
            variance = self._propagate_uncertainty(variance, z_iv)
            counterfactual.append(self._observe(z_cf, w))
            intervened.append(self._observe(z_iv, w))
        counterfactual = np.array(counterfactual)
        intervened = np.array(intervened)

        delta = intervened - counterfactual
        expected = delta[1:].mean(axis=0)
        effect = np.abs(delta[:, idx])

        peak = int(np.argmax(effect))
        for t in range(1, horizon):
            if effect[t] >= effect[t - 1] and effect[t] > effect[t + 1]:
                peak = t
                break

        end = horizon
        for t in range(peak + 1, horizon + 1):
            if effect[t] < self.config.intervention_epsilon:
                end = t
                break

        side_effects = {labels[j]: float(expected[j]) for j in range(n)
                        if j != idx and abs(expected[j]) > self.config.side_effect_threshold}

        logger.debug("Simulated %s on %s (magnitude=%.3f, horizon=%d): peak at step %d",
                     intervention.value, labels[idx], magnitude, horizon, peak)

        return InterventionSimulation(target=labels[idx],
                                      intervention=intervention,
                                      magnitude=float(magnitude),
                                      horizon=horizon,
                                      expected_change=dict(zip(labels, expected.tolist())),
                                      time_to_peak=peak * self.config.dt,
                                      duration=end * self.config.dt,
                                      side_effects=side_effects,
                                      confidence=self._confidence(variance),
                                      counterfactual=counterfactual,
                                      intervened=intervened)

    def detect_early_warnings(self, history, window_size: int = 10) -> List[EarlyWarningSignal]:
        """Early-warning signals in a history of states or observations."""
        return detect_early_warnings(history, window_size, self.early_warning_config,
                                     dt=self.config.dt, labels=dimension_labels(self.config.latent_dim))

    def complexity_metrics(self) -> Dict[str, float]:
        """Summary statistics of the learned dynamics.

        Returns
        -------
        Dict[str, float]
            ``effective_dimensionality`` (participation ratio of the singular
            values of the all-units-active Jacobian), ``sparsity`` (fraction
            of near-zero couplings), ``lyapunov_exponent`` (log spectral
            radius of that Jacobian; negative means contracting) and
            ``parameter_count``.
        """
        w = self._require_weights()
        n = self.config.latent_dim
        jacobian = np.diag(w.A) + w.W * w.mask
        if self.dendritic:
            jacobian = jacobian + w.V @ w.D
        singular = np.linalg.svd(jacobian, compute_uv=False)
        participation = float(singular.sum() ** 2 / np.sum(singular ** 2)) if np.any(singular) else 0.0
        off_diagonal = ~np.eye(n, dtype=bool)
        sparsity = float(np.mean(np.abs((w.W * w.mask)[off_diagonal]) < 1e-3)) if n > 1 else 1.0
        radius = spectral_radius(jacobian)
        return {
            'effective_dimensionality': participation,
            'sparsity': sparsity,
            'lyapunov_exponent': float(np.log(max(radius, 1e-12))),
            'parameter_count': float(count_plrnn_parameters(self.config)),
        }

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def calculate_loss(self, predicted: np.ndarray, actual: np.ndarray) -> float:
        """Mean squared error between equally shaped arrays."""
        predicted = np.asarray(predicted, dtype=float)
        actual = np.asarray(actual, dtype=float)
        if predicted.shape != actual.shape:
            raise InvalidDimensionError('predicted', actual.shape, predicted.shape)
        if predicted.size == 0:
            return 0.0
        return float(np.mean((predicted - actual) ** 2))

    def _validate_sample(self, sample: TrainingSample) -> None:
        n, m = self.config.latent_dim, self.config.input_dim
        obs = sample.observations
        if obs.ndim != 2 or obs.shape[0] < 2:
            raise TrainingError(f"A training sample needs at least two observations, got shape {obs.shape}")
        if obs.shape[1] != n:
            raise InvalidDimensionError('observations', n, obs.shape[1])
        if sample.inputs is not None and sample.inputs.shape != (obs.shape[0], m):
            raise InvalidDimensionError('inputs', (obs.shape[0], m), sample.inputs.shape)
        if sample.ground_truth is not None and sample.ground_truth.shape != obs.shape:
            raise InvalidDimensionError('ground_truth', obs.shape, sample.ground_truth.shape)

    def evaluate(self, sample: TrainingSample) -> float:
        """One-step-ahead loss with every step started from the observation."""
        w = self._require_weights()
        self._validate_sample(sample)
        obs, targets = sample.observations, sample.targets
        predictions = []
        for t in range(obs.shape[0] - 1):
            s = self._check_input(None if sample.inputs is None else sample.inputs[t])
            z_next, _ = self._step(obs[t], s, w)
            predictions.append(self._observe(z_next, w))
        return self.calculate_loss(np.array(predictions), targets[1:])

    def compute_gradients(self, sample: TrainingSample) -> Tuple[Dict[str, np.ndarray], float]:
        """Backpropagation through time over one sample.

        With probability ``teacher_forcing_ratio`` the next step starts from
        the observation instead of the model's own prediction; gradients do
        not flow back through a forced step. ``bptt_window > 0`` truncates
        the backward pass to windows of that many steps.

        Returns
        -------
        Tuple[Dict[str, np.ndarray], float]
            Gradients per trainable parameter (including the L1 term on W)
            and the mean squared prediction error
        """
        w = self._require_weights()
        self._validate_sample(sample)
        obs, targets = sample.observations, sample.targets
        steps = obs.shape[0] - 1
        n = self.config.latent_dim
        scale = 2.0 / (steps * n)

        z = obs[0].copy()
        caches = []
        squared_error = 0.0
        for t in range(steps):
            s = self._check_input(None if sample.inputs is None else sample.inputs[t])
            z_next, cache = self._step(z, s, w)
            error = self._observe(z_next, w) - targets[t + 1]
            squared_error += float(error @ error)
            forced = self._rng.random() < self.config.teacher_forcing_ratio
            caches.append((cache, z_next, error, forced))
            z = obs[t + 1].copy() if forced else z_next
        loss = squared_error / (steps * n)

        params = w.parameters(self.dendritic)
        grads = {name: np.zeros_like(value) for name, value in params.items()}
        window = self.config.bptt_window
        carried = np.zeros(n)
        for t in range(steps - 1, -1, -1):
            cache, z_next, error, forced = caches[t]
            dx = scale * error
            grads['B'] += np.outer(dx, z_next)
            grads['bias_observed'] += dx
            delta = w.B.T @ dx
            if not forced:
                delta = delta + carried
            carried = self._step_backward(delta, cache, w, grads)
            if window > 0 and t % window == 0:
                carried = np.zeros(n)

        grads['W'] = (grads['W'] + self.config.l1_regularization * np.sign(w.W)) * w.mask
        return grads, loss

    def apply_gradients(self, grads: Dict[str, np.ndarray], learning_rate: Optional[float] = None) -> bool:
        """Clip and apply gradients with Adam.

        Returns False, leaving the weights untouched, when any gradient is
        non-finite.
        """
        w = self._require_weights()
        if not all_finite(grads):
            logger.warning("Skipping PLRNN update: non-finite gradients")
            return False
        clipped, norm = clip_by_global_norm(grads, self.config.gradient_clip)
        params = w.parameters(self.dendritic)
        self._optimizer.step(params, clipped, w.adam, learning_rate=learning_rate, masks={'W': w.mask})
        w.set_parameters(params)
        logger.debug("Applied PLRNN gradients (norm=%.4g, step=%d)", norm, w.adam.step)
        return True

    def update_baseline(self, observations: np.ndarray) -> None:
        """Fold observations into the running historical mean."""
        w = self._require_weights()
        observations = np.asarray(observations, dtype=float)
        if observations.ndim != 2 or observations.shape[1] != self.config.latent_dim:
            raise InvalidDimensionError('observations', self.config.latent_dim, observations.shape)
        count = observations.shape[0]
        if count == 0:
            return
        total = w.baseline_count + count
        w.baseline = (w.baseline * w.baseline_count + observations.sum(axis=0)) / total
        w.baseline_count = total

    def _mark_trained(self, samples: int, validation_loss: Optional[float] = None) -> None:
        w = self._require_weights()
        w.training_samples += samples
        w.trained_at = datetime.now(timezone.utc).isoformat()
        if validation_loss is not None:
            w.validation_loss = validation_loss

    def train_online(self, sample: TrainingSample) -> TrainingResult:
        """One gradient step on a single sequence.

        Invalid samples are rejected before anything is modified. A step
        with non-finite loss or gradients is skipped and reported with a NaN
        loss.
        """
        start = time.perf_counter()
        self._require_weights()
        self._validate_sample(sample)

        grads, loss = self.compute_gradients(sample)
        if not np.isfinite(loss) or not self.apply_gradients(grads):
            logger.warning("Online PLRNN training step skipped (loss=%s)", loss)
            return TrainingResult(loss=float('nan'), epochs=1, samples=1,
                                  training_time=time.perf_counter() - start,
                                  loss_history=[float('nan')], skipped_steps=1)

        self.update_baseline(sample.observations)
        self._mark_trained(1)
        return TrainingResult(loss=loss, epochs=1, samples=1,
                              training_time=time.perf_counter() - start,
                              loss_history=[loss])

    def train_batch(self,
                    samples: Sequence[TrainingSample],
                    epochs: int = 1,
                    validation_samples: Optional[Sequence[TrainingSample]] = None,
                    tolerance: float = 1e-6) -> TrainingResult:
        """Full-batch training for up to ``epochs`` epochs.

        Each epoch averages the gradients of all samples and applies one
        Adam step at the rate given by ``config.lr_schedule``. Training
        stops when the epoch loss changes by less than ``tolerance``.

        With ``config.early_stopping_patience > 0`` the monitored loss (the
        validation loss when validation samples are given, otherwise the
        training loss) must improve by ``early_stopping_min_delta`` within
        that many epochs; on stopping, the weights of the best epoch are
        restored. With ``config.normalize_sequences`` every sample is
        z-scored by its own statistics before training; the baseline keeps
        the original units.
        """
        start = time.perf_counter()
        self._require_weights()
        c = self.config
        samples = list(samples)
        validation_samples = list(validation_samples or [])
        if not samples:
            raise TrainingError("train_batch requires at least one sample")
        if epochs < 1:
            raise TrainingError(f"epochs must be positive, got {epochs}")
        for sample in samples + validation_samples:
            self._validate_sample(sample)

        raw_samples = samples
        normalization: List[NormalizationStats] = []
        if c.normalize_sequences:
            samples, normalization = (list(x) for x in zip(*(normalize_sample(s) for s in samples)))
            validation_samples = [normalize_sample(s)[0] for s in validation_samples]

        patience = c.early_stopping_patience
        min_delta = c.early_stopping_min_delta if patience > 0 else 0.0
        history: List[float] = []
        validation_history: List[float] = []
        learning_rates: List[float] = []
        skipped = 0
        converged = False
        stop_reason = None
        best_epoch, best_loss, best_weights = None, np.inf, None
        stale = 0
        for epoch in range(epochs):
            lr = scheduled_learning_rate(epoch, epochs, c.learning_rate, c.lr_schedule,
                                         decay_factor=c.lr_decay_factor, decay_steps=c.lr_decay_steps,
                                         lr_min=c.lr_min, warmup_epochs=c.warmup_epochs)
            learning_rates.append(lr)

            total = None
            losses = []
            for sample in samples:
                grads, loss = self.compute_gradients(sample)
                if not np.isfinite(loss) or not all_finite(grads):
                    skipped += 1
                    continue
                losses.append(loss)
                total = grads if total is None else {k: total[k] + grads[k] for k in total}

            if total is None:
                logger.warning("Epoch %d: every sample produced non-finite gradients, skipping", epoch)
                history.append(float('nan'))
                continue

            averaged = {k: v / len(losses) for k, v in total.items()}
            self.apply_gradients(averaged, learning_rate=lr)
            epoch_loss = float(np.mean(losses))
            history.append(epoch_loss)

            monitored = epoch_loss
            if validation_samples:
                monitored = float(np.mean([self.evaluate(s) for s in validation_samples]))
                validation_history.append(monitored)
            logger.debug("Epoch %d: loss=%.6f, monitored=%.6f, lr=%.3g", epoch, epoch_loss, monitored, lr)

            if monitored < best_loss - min_delta:
                best_epoch, best_loss = epoch, monitored
                stale = 0
                if patience > 0:
                    best_weights = self.get_weights()
            else:
                stale += 1

            if len(history) >= 2 and np.isfinite(history[-2]) and abs(history[-2] - epoch_loss) < tolerance:
                converged = True
                stop_reason = f"Loss change below tolerance {tolerance}"
                break
            if patience > 0 and stale >= patience:
                converged = True
                stop_reason = f"No improvement for {patience} epochs"
                logger.info("Early stopping at epoch %d: %s", epoch, stop_reason)
                break

        if best_weights is not None and best_epoch != len(history) - 1:
            self.load_weights(best_weights)

        validation_loss = None
        if validation_samples:
            validation_loss = float(np.mean([self.evaluate(s) for s in validation_samples]))

        finite = [h for h in history if np.isfinite(h)]
        if finite:
            for sample in raw_samples:
                self.update_baseline(sample.observations)
            self._mark_trained(len(samples), validation_loss)

        logger.info("PLRNN batch training: %d epoch(s), loss=%s, validation=%s",
                    len(history), finite[-1] if finite else 'nan', validation_loss)

        return TrainingResult(loss=finite[-1] if finite else float('nan'),
                              epochs=len(history),
                              samples=len(samples),
                              training_time=time.perf_counter() - start,
                              loss_history=history,
                              validation_loss=validation_loss,
                              skipped_steps=skipped,
                              converged=converged,
                              best_epoch=best_epoch,
                              validation_history=validation_history,
                              learning_rates=learning_rates,
                              stop_reason=stop_reason,
                              normalization=normalization)
