"""Early-warning signals of critical transitions in a state history.

Approaching a tipping point, a system recovers more slowly from small
perturbations ("critical slowing down"). This shows up in sliding windows as
rising lag-1 autocorrelation and variance, as flickering between
alternative states, and as rising cross-dimension correlation. Each
indicator's trend is measured with Kendall's tau and extrapolated linearly
to estimate the time left before the transition.
"""

from dataclasses import dataclass
import logging
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import stats

from ..config.defaults import EarlyWarningConfig
from .state import EarlyWarningType, LatentState, dimension_labels

logger = logging.getLogger(__name__)

RECOMMENDATIONS = {
    EarlyWarningType.AUTOCORRELATION: (
        "Recovery from small mood shifts is slowing down; consider a check-in "
        "and reinforcing stabilizing routines."
    ),
    EarlyWarningType.VARIANCE: (
        "Fluctuations are growing; monitor more frequently and review recent stressors."
    ),
    EarlyWarningType.FLICKERING: (
        "The state alternates between distinct levels; a shift to a new "
        "regime may be close."
    ),
    EarlyWarningType.CONNECTIVITY: (
        "Dimensions are moving in lockstep; a change in one area is likely to spread to others."
    ),
}


@dataclass
class EarlyWarningSignal:
    """One detected early-warning indicator.

    ``estimated_time_to_transition`` is in hours, or None when the
    extrapolated crossing lies beyond the configured maximum.
    """
    type: EarlyWarningType
    dimension: str
    strength: float
    estimated_time_to_transition: Optional[float]
    confidence: float
    recommendation: str
    trend: float = 0.0


def as_history_array(history: Union[np.ndarray, Sequence[LatentState], Sequence[Sequence[float]]]) -> np.ndarray:
    """Stack a history of states or vectors into a (T, n) array."""
    if isinstance(history, np.ndarray):
        array = history.astype(float)
    elif len(history) == 0:
        return np.zeros((0, 0))
    elif isinstance(history[0], LatentState):
        array = np.array([s.latent for s in history], dtype=float)
    else:
        array = np.asarray(history, dtype=float)
    if array.ndim == 1:
        array = array[:, None]
    if array.ndim != 2:
        raise ValueError(f"history must be 2-D (time, dimension), got shape {array.shape}")
    return array


def lag1_autocorrelation(x: np.ndarray) -> float:
    centered = x - x.mean()
    denom = float(centered @ centered)
    if denom <= 0:
        return 0.0
    return float(centered[1:] @ centered[:-1] / denom)


def bimodality_coefficient(x: np.ndarray) -> float:
    """Sample bimodality coefficient; values above 5/9 suggest bimodality."""
    n = x.shape[0]
    if n < 4 or np.var(x) == 0:
        return 0.0
    g = stats.skew(x, bias=False)
    k = stats.kurtosis(x, bias=False)
    denom = k + 3.0 * (n - 1) ** 2 / ((n - 2) * (n - 3))
    if denom <= 0:
        return 0.0
    return float((g * g + 1.0) / denom)


def mean_crossing_rate(x: np.ndarray) -> float:
    if x.shape[0] < 2:
        return 0.0
    signs = np.sign(x - x.mean())
    return float(np.count_nonzero(signs[1:] * signs[:-1] < 0) / (x.shape[0] - 1))


def rolling_indicator(series: np.ndarray, window: int, indicator) -> np.ndarray:
    return np.array([indicator(w) for w in sliding_window_view(series, window)])


def rolling_connectivity(history: np.ndarray, window: int) -> np.ndarray:
    """Mean absolute pairwise correlation inside each window."""
    n = history.shape[1]
    values = []
    for start in range(history.shape[0] - window + 1):
        block = history[start:start + window]
        std = block.std(axis=0)
        active = std > 0
        if np.count_nonzero(active) < 2:
            values.append(0.0)
            continue
        corr = np.corrcoef(block[:, active], rowvar=False)
        off = ~np.eye(corr.shape[0], dtype=bool)
        values.append(float(np.mean(np.abs(corr[off]))))
    return np.array(values) if n > 1 else np.zeros(0)


def fit_trend(indicator: np.ndarray) -> Tuple[float, float, float, float]:
    """Kendall tau, slope, last fitted value and r^2 of an indicator series."""
    if indicator.shape[0] < 3 or np.ptp(indicator) == 0:
        return 0.0, 0.0, float(indicator[-1]) if indicator.size else 0.0, 0.0
    t = np.arange(indicator.shape[0])
    tau, _ = stats.kendalltau(t, indicator)
    fit = stats.linregress(t, indicator)
    fitted_last = fit.intercept + fit.slope * t[-1]
    tau = 0.0 if not np.isfinite(tau) else float(tau)
    return tau, float(fit.slope), float(fitted_last), float(fit.rvalue ** 2)


def _time_to_transition(signal_type: EarlyWarningType, slope: float, fitted_last: float,
                        dt: float, max_hours: float) -> Optional[float]:
    if slope <= 0:
        return None
    if signal_type is EarlyWarningType.VARIANCE:
        # No absolute critical variance: use the time for it to double
        if fitted_last <= 0:
            return None
        steps = fitted_last / slope
    elif signal_type in (EarlyWarningType.AUTOCORRELATION,
                         EarlyWarningType.FLICKERING,
                         EarlyWarningType.CONNECTIVITY):
        steps = max(0.0, (1.0 - fitted_last) / slope)
    else:
        raise ValueError(f"Unhandled early-warning type {signal_type!r}")
    hours = steps * dt
    return hours if hours <= max_hours else None


def detect_early_warnings(history: Union[np.ndarray, Sequence[LatentState]],
                          window_size: int,
                          config: Optional[EarlyWarningConfig] = None,
                          dt: float = 1.0,
                          labels: Optional[Sequence[str]] = None) -> List[EarlyWarningSignal]:
    """Detect critical-slowing-down indicators in a state history.

    Parameters
    ----------
    history : Union[np.ndarray, Sequence[LatentState]]
        Chronological states, or an array of shape (T, n)
    window_size : int
        Sliding-window length in steps
    config : Optional[EarlyWarningConfig]
        Detection thresholds
    dt : float, default=1.0
        Hours per step, used for time-to-transition
    labels : Optional[Sequence[str]]
        Dimension labels

    Returns
    -------
    List[EarlyWarningSignal]
        Signals sorted by strength, strongest first. Empty when the history
        is shorter than two windows.

    Notes
    -----
    A signal is emitted when the indicator's Kendall tau against time is at
    least ``trend_threshold`` with a positive slope. Flickering additionally
    requires the last window's bimodality coefficient to exceed
    ``flicker_threshold``. Confidence grows with the number of samples (up
    to ``full_confidence_samples``) and with the r^2 of the linear trend.
    """
    config = config if config is not None else EarlyWarningConfig()
    if window_size < config.min_window:
        raise ValueError(f"window_size must be at least {config.min_window}, got {window_size}")

    data = as_history_array(history)
    if data.shape[0] < 2 * window_size:
        logger.debug("History of %d steps is too short for window %d", data.shape[0], window_size)
        return []

    n = data.shape[1]
    labels = list(labels) if labels is not None else dimension_labels(n)
    sample_factor = min(1.0, data.shape[0] / config.full_confidence_samples)

    candidates = []
    for i in range(n):
        series = data[:, i]
        flicker_scores = rolling_indicator(
            series, window_size, lambda w: 0.5 * (bimodality_coefficient(w) + mean_crossing_rate(w)))
        candidates.extend([
            (EarlyWarningType.AUTOCORRELATION, labels[i],
             rolling_indicator(series, window_size, lag1_autocorrelation), True),
            (EarlyWarningType.VARIANCE, labels[i],
             rolling_indicator(series, window_size, lambda w: float(np.var(w, ddof=1))), True),
            (EarlyWarningType.FLICKERING, labels[i], flicker_scores,
             bimodality_coefficient(series[-window_size:]) > config.flicker_threshold),
        ])
    if n > 1:
        candidates.append((EarlyWarningType.CONNECTIVITY, 'network',
                           rolling_connectivity(data, window_size), True))

    signals = []
    for signal_type, dimension, indicator, eligible in candidates:
        if not eligible or indicator.size < 3:
            continue
        tau, slope, fitted_last, r2 = fit_trend(indicator)
        if tau < config.trend_threshold or slope <= 0:
            continue
        signals.append(EarlyWarningSignal(
            type=signal_type,
            dimension=dimension,
            strength=float(np.clip(tau, 0.0, 1.0)),
            estimated_time_to_transition=_time_to_transition(
                signal_type, slope, fitted_last, dt, config.max_time_to_transition),
            confidence=float(np.clip(sample_factor * r2, 0.0, 1.0)),
            recommendation=RECOMMENDATIONS[signal_type],
            trend=tau,
        ))

    signals.sort(key=lambda s: s.strength, reverse=True)
    if signals:
        logger.info("Detected %d early-warning signal(s), strongest: %s on %s",
                    len(signals), signals[0].type.value, signals[0].dimension)
    return signals
