"""Linear Kalman filtering for noisy, irregularly timed state observations.

Implements predict/update with a Joseph-form covariance update, a
normalized-innovation-squared (NIS) outlier test, innovation-based noise
adaptation and Rauch-Tung-Striebel (RTS) backward smoothing.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
import warnings

import numpy as np
from scipy import linalg, stats

from .exceptions import InvalidDimensionError
from .linalg import mat_inverse, nearest_psd, symmetrize


@dataclass
class KalmanState:
    """Container for Kalman filter state variables.

    Attributes
    ----------
    state_estimate : np.ndarray, shape (n,)
        Filtered state mean x_{k|k}
    error_covariance : np.ndarray, shape (n, n)
        Filtered state covariance P_{k|k}
    predicted_state : np.ndarray, shape (n,)
        Predicted state mean x_{k|k-1}
    predicted_covariance : np.ndarray, shape (n, n)
        Predicted state covariance P_{k|k-1}
    innovation : Optional[np.ndarray], shape (m,)
        Measurement residual y_k = z_k - H x_{k|k-1}
    innovation_covariance : Optional[np.ndarray], shape (m, m)
        S_k = H P_{k|k-1} H^T + R
    kalman_gain : Optional[np.ndarray], shape (n, m)
        Effective gain applied at this step (after outlier and learned scaling)
    normalized_innovation_squared : float
        y_k^T S_k^{-1} y_k
    is_outlier : bool
        Whether the NIS exceeded the chi-square threshold
    smoothed_state, smoothed_covariance : Optional[np.ndarray]
        RTS estimates x_{k|K}, P_{k|K}
    """
    state_estimate: np.ndarray
    error_covariance: np.ndarray
    predicted_state: np.ndarray
    predicted_covariance: np.ndarray
    innovation: Optional[np.ndarray] = None
    innovation_covariance: Optional[np.ndarray] = None
    kalman_gain: Optional[np.ndarray] = None
    normalized_innovation_squared: float = 0.0
    is_outlier: bool = False
    timestep: int = 0
    timestamp: Optional[datetime] = None
    smoothed_state: Optional[np.ndarray] = None
    smoothed_covariance: Optional[np.ndarray] = None

    def copy(self) -> 'KalmanState':
        copied = {}
        for key, value in self.__dict__.items():
            copied[key] = value.copy() if isinstance(value, np.ndarray) else value
        return KalmanState(**copied)


class LinearKalmanFilter:
    """Linear-Gaussian Kalman filter x_k = F x_{k-1} + w, z_k = H x_k + v.

    Parameters
    ----------
    F : np.ndarray, shape (n, n)
        State transition matrix
    H : np.ndarray, shape (m, n)
        Observation matrix
    Q : np.ndarray, shape (n, n)
        Process noise covariance per nominal step
    R : np.ndarray, shape (m, m)
        Measurement noise covariance
    ridge : float, default=1e-6
        Diagonal load for singular innovation covariances
    outlier_detection : bool, default=True
        Enable the NIS outlier test
    outlier_confidence : float, default=0.99
        Chi-square quantile used as the NIS threshold
    outlier_gain_floor : float, default=0.1
        Smallest fraction of the gain applied to an outlier

    Notes
    -----
    Outliers are down-weighted, never dropped: the gain is multiplied by
    max(floor, sqrt(threshold / NIS)), which equals 1 at the threshold.
    The covariance update uses the Joseph form
    P = (I - K H) P^- (I - K H)^T + K R K^T, which stays symmetric PSD for
    any gain K, including the scaled ones.
    """

    def __init__(self,
                 F: np.ndarray,
                 H: np.ndarray,
                 Q: np.ndarray,
                 R: np.ndarray,
                 ridge: float = 1e-6,
                 outlier_detection: bool = True,
                 outlier_confidence: float = 0.99,
                 outlier_gain_floor: float = 0.1):
        F, H, Q, R = (np.asarray(M, dtype=float) for M in (F, H, Q, R))
        self.state_dim = F.shape[0]
        self.obs_dim = H.shape[0]
        self._validate_parameters(F, H, Q, R)

        self.F = F.copy()
        self.H = H.copy()
        self.Q = Q.copy()
        self.R = R.copy()
        self.ridge = ridge
        self.outlier_detection = outlier_detection
        self.outlier_confidence = outlier_confidence
        self.outlier_gain_floor = outlier_gain_floor

        # Storage for sequence filtering
        self.states: List[KalmanState] = []

    def _validate_parameters(self, F: np.ndarray, H: np.ndarray, Q: np.ndarray, R: np.ndarray) -> None:
        """Validate parameter dimensions and properties."""
        n, m = self.state_dim, self.obs_dim

        if F.shape != (n, n):
            raise InvalidDimensionError('F', (n, n), F.shape)
        if H.shape != (m, n):
            raise InvalidDimensionError('H', (m, n), H.shape)
        if Q.shape != (n, n):
            raise InvalidDimensionError('Q', (n, n), Q.shape)
        if R.shape != (m, m):
            raise InvalidDimensionError('R', (m, m), R.shape)

        # Q and R may legitimately be zero; only negative eigenvalues are a problem
        for name, M in (('Q', Q), ('R', R)):
            if np.min(np.linalg.eigvalsh(symmetrize(M))) < -1e-10:
                warnings.warn(f"{name} is not positive semi-definite")

    @property
    def outlier_threshold(self) -> float:
        """Chi-square NIS threshold with obs_dim degrees of freedom."""
        return float(stats.chi2.ppf(self.outlier_confidence, df=self.obs_dim))

    def initial_state(self,
                      x0: np.ndarray,
                      P0: np.ndarray,
                      timestamp: Optional[datetime] = None) -> KalmanState:
        x0 = np.asarray(x0, dtype=float)
        P0 = np.asarray(P0, dtype=float)
        if x0.shape != (self.state_dim,):
            raise InvalidDimensionError('x0', self.state_dim, x0.shape)
        if P0.shape != (self.state_dim, self.state_dim):
            raise InvalidDimensionError('P0', (self.state_dim, self.state_dim), P0.shape)
        return KalmanState(state_estimate=x0.copy(),
                           error_covariance=P0.copy(),
                           predicted_state=x0.copy(),
                           predicted_covariance=P0.copy(),
                           timestamp=timestamp)

    def predict(self, x: np.ndarray, P: np.ndarray, noise_scale: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
        """Propagate mean and covariance one step without an observation.

        ``noise_scale`` multiplies Q, e.g. by the elapsed number of nominal
        steps for irregularly timed observations.
        """
        x_pred = self.F @ x
        P_pred = symmetrize(self.F @ P @ self.F.T + noise_scale * self.Q)
        return x_pred, P_pred

    def update(self,
               state: KalmanState,
               observation: np.ndarray,
               noise_scale: float = 1.0,
               gain_scale: Optional[np.ndarray] = None,
               timestamp: Optional[datetime] = None) -> KalmanState:
        """Run one predict/update cycle and return the new filter state.

        Parameters
        ----------
        state : KalmanState
            Previous filtered state
        observation : np.ndarray, shape (m,)
            New measurement z_k
        noise_scale : float, default=1.0
            Multiplier on Q for this step
        gain_scale : Optional[np.ndarray], shape (n,)
            Per-state-dimension multiplier on the standard gain
        timestamp : Optional[datetime]
            Time of the observation

        Returns
        -------
        KalmanState
            Posterior state with innovation diagnostics

        Notes
        -----
        With R = 0 and Q = 0 the innovation covariance is singular and only
        the ridge keeps S invertible, so the NIS no longer measures surprise
        and the outlier test should be disabled for noiseless models.
        """
        z = np.asarray(observation, dtype=float)
        if z.shape != (self.obs_dim,):
            raise InvalidDimensionError('observation', self.obs_dim, z.shape)

        x_pred, P_pred = self.predict(state.state_estimate, state.error_covariance, noise_scale)

        innovation = z - self.H @ x_pred
        S = symmetrize(self.H @ P_pred @ self.H.T + self.R)
        S_inv = mat_inverse(S, ridge=self.ridge)
        K = P_pred @ self.H.T @ S_inv

        nis = float(innovation @ S_inv @ innovation)
        is_outlier = bool(self.outlier_detection and nis > self.outlier_threshold)
        if is_outlier:
            K = K * max(self.outlier_gain_floor, np.sqrt(self.outlier_threshold / nis))
        if gain_scale is not None:
            gain_scale = np.asarray(gain_scale, dtype=float)
            if gain_scale.shape != (self.state_dim,):
                raise InvalidDimensionError('gain_scale', self.state_dim, gain_scale.shape)
            K = gain_scale[:, None] * K

        x_post = x_pred + K @ innovation

        # Joseph form
        I_KH = np.eye(self.state_dim) - K @ self.H
        P_post = symmetrize(I_KH @ P_pred @ I_KH.T + K @ self.R @ K.T)

        return KalmanState(state_estimate=x_post,
                           error_covariance=P_post,
                           predicted_state=x_pred,
                           predicted_covariance=P_pred,
                           innovation=innovation,
                           innovation_covariance=S,
                           kalman_gain=K,
                           normalized_innovation_squared=nis,
                           is_outlier=is_outlier,
                           timestep=state.timestep + 1,
                           timestamp=timestamp)

    def forward_filter(self,
                       observations: Sequence[np.ndarray],
                       x0: np.ndarray,
                       P0: np.ndarray) -> List[KalmanState]:
        """Filter a whole observation sequence, storing states for smoothing.

        Parameters
        ----------
        observations : Sequence[np.ndarray]
            K measurements, each of shape (m,)
        x0 : np.ndarray, shape (n,)
            Prior mean before the first observation
        P0 : np.ndarray, shape (n, n)
            Prior covariance

        Returns
        -------
        List[KalmanState]
            Filtered states for k=1,...,K
        """
        state = self.initial_state(x0, P0)
        self.states = []
        for z in observations:
            state = self.update(state, z)
            self.states.append(state)
        return self.states

    def rts_smoother(self) -> List[KalmanState]:
        """RTS backward smoothing for filtered states.

        Must be called after forward_filter().

        Returns
        -------
        List[KalmanState]
            States with smoothed_state and smoothed_covariance filled in

        Notes
        -----
        - Smoother gain: G_k = P_{k|k} F^T (P_{k+1|k})^{-1}
        - Smoothed mean: x_{k|K} = x_{k|k} + G_k (x_{k+1|K} - x_{k+1|k})
        - Smoothed cov: P_{k|K} = P_{k|k} + G_k (P_{k+1|K} - P_{k+1|k}) G_k^T
        """
        if not self.states:
            raise RuntimeError("Must run forward_filter() before smoothing")

        last = self.states[-1]
        last.smoothed_state = last.state_estimate.copy()
        last.smoothed_covariance = last.error_covariance.copy()

        for k in range(len(self.states) - 2, -1, -1):
            current, following = self.states[k], self.states[k + 1]
            try:
                P_next_inv = linalg.inv(following.predicted_covariance)
            except linalg.LinAlgError:
                P_next_inv = linalg.pinv(following.predicted_covariance)
                warnings.warn(f"Singular P_{{k+1|k}} at k={k}, using pseudoinverse")

            G = current.error_covariance @ self.F.T @ P_next_inv
            current.smoothed_state = current.state_estimate + G @ (following.smoothed_state - following.predicted_state)
            current.smoothed_covariance = symmetrize(
                current.error_covariance
                + G @ (following.smoothed_covariance - following.predicted_covariance) @ G.T
            )

        return self.states

    def get_smoothed_estimates(self) -> Tuple[np.ndarray, np.ndarray]:
        """Stack smoothed means (K, n) and covariances (K, n, n)."""
        if not self.states or any(s.smoothed_state is None for s in self.states):
            raise RuntimeError("Must run rts_smoother() before extracting estimates")
        means = np.array([s.smoothed_state for s in self.states])
        covariances = np.array([s.smoothed_covariance for s in self.states])
        return means, covariances

    def adapt_noise(self, state: KalmanState, rate: float, min_noise: float = 1e-6) -> Tuple[np.ndarray, np.ndarray]:
        """Update Q and R from one step's innovation statistics.

        Innovation-based estimates R ~ y y^T - H P^- H^T and Q ~ K y y^T K^T
        are blended into the current matrices with an exponential moving
        average of weight ``rate`` and projected back onto the PSD cone.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            The adapted (Q, R)
        """
        if state.innovation is None or state.kalman_gain is None:
            return self.Q, self.R
        if not np.all(np.isfinite(state.innovation)):
            warnings.warn("Non-finite innovation; Q and R left unchanged", RuntimeWarning)
            return self.Q, self.R
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"rate must be in [0, 1], got {rate}")

        C = np.outer(state.innovation, state.innovation)
        R_hat = C - self.H @ state.predicted_covariance @ self.H.T
        Q_hat = state.kalman_gain @ C @ state.kalman_gain.T

        self.R = nearest_psd((1.0 - rate) * self.R + rate * R_hat, min_eigenvalue=min_noise)
        self.Q = nearest_psd((1.0 - rate) * self.Q + rate * Q_hat, min_eigenvalue=min_noise)
        return self.Q, self.R

    def reset(self) -> None:
        """Reset stored sequence states."""
        self.states = []
