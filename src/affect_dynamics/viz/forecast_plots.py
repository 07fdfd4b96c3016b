"""
Forecast, causal-network and early-warning visualization.

Static matplotlib/seaborn figures for inspecting engine output: forecast
trajectories with credible bands, the learned coupling structure, and the
rolling indicators behind early-warning signals.
"""

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from typing import List, Optional, Sequence, Tuple, Union
from pathlib import Path
from dataclasses import dataclass

from ..core.causal import CausalNetwork
from ..core.early_warning import (
    EarlyWarningSignal,
    as_history_array,
    lag1_autocorrelation,
    rolling_indicator,
)
from ..core.state import dimension_labels

plt.style.use('seaborn-v0_8-paper')


@dataclass
class ForecastPlotConfig:
    """Configuration for forecast visualization."""
    figure_size: Tuple[float, float] = (12, 8)
    dpi: int = 150
    color_palette: str = 'Set2'
    band_alpha: float = 0.25
    line_width: float = 1.5


def _forecast_arrays(prediction) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Mean, lower and upper arrays of any engine or hybrid forecast."""
    if hasattr(prediction, 'credible_interval'):
        interval = prediction.credible_interval
        mean = prediction.trajectory
    elif hasattr(prediction, 'blended'):
        interval = prediction.confidence_interval
        mean = prediction.blended
    elif hasattr(prediction, 'mean'):
        interval = prediction.confidence_interval
        mean = prediction.mean
    else:
        raise TypeError(f"Unsupported prediction type {type(prediction).__name__}")
    return np.asarray(mean), np.asarray(interval.lower), np.asarray(interval.upper)


def plot_forecast(prediction,
                  history: Optional[np.ndarray] = None,
                  labels: Optional[Sequence[str]] = None,
                  config: Optional[ForecastPlotConfig] = None) -> plt.Figure:
    """
    Plot a forecast trajectory with its credible band, one panel per dimension.

    Parameters
    ----------
    prediction : PLRNNPrediction, KalmanFormerPrediction or HybridPrediction
        Forecast to draw
    history : Optional[np.ndarray], shape (T, n)
        Observations preceding the forecast, drawn at negative steps
    labels : Optional[Sequence[str]]
        Dimension names
    config : Optional[ForecastPlotConfig]
        Visualization configuration

    Returns
    -------
    plt.Figure
        Figure with n stacked panels
    """
    config = config if config is not None else ForecastPlotConfig()
    mean, lower, upper = _forecast_arrays(prediction)
    n = mean.shape[1]
    labels = list(labels) if labels is not None else dimension_labels(n)
    colors = sns.color_palette(config.color_palette, n)

    fig, axes = plt.subplots(n, 1, figsize=config.figure_size, sharex=True, squeeze=False)
    steps = np.arange(1, mean.shape[0] + 1)
    for i, ax in enumerate(axes[:, 0]):
        if history is not None:
            past = np.asarray(history)[:, i]
            ax.plot(np.arange(-past.shape[0] + 1, 1), past, color='gray', linewidth=config.line_width,
                    label='observed')
        ax.plot(steps, mean[:, i], color=colors[i], linewidth=config.line_width, label='forecast')
        ax.fill_between(steps, lower[:, i], upper[:, i], color=colors[i], alpha=config.band_alpha)
        ax.set_ylabel(labels[i])
        ax.grid(True, alpha=0.3)
    axes[0, 0].legend(loc='upper left')
    axes[-1, 0].set_xlabel('Step')
    fig.tight_layout()
    return fig


def plot_causal_network(network: CausalNetwork,
                        config: Optional[ForecastPlotConfig] = None) -> plt.Figure:
    """
    Plot the coupling matrix as a heatmap next to node centralities.

    Rows of the heatmap are targets and columns sources, matching
    ``CausalNetwork.adjacency``.
    """
    config = config if config is not None else ForecastPlotConfig()
    labels = [node.label for node in network.nodes]
    adjacency = network.adjacency()
    limit = max(float(np.max(np.abs(adjacency))), 1e-6)

    fig, (ax_heat, ax_bar) = plt.subplots(1, 2, figsize=config.figure_size,
                                          gridspec_kw={'width_ratios': [3, 2]})
    sns.heatmap(adjacency, ax=ax_heat, cmap='RdBu_r', center=0.0, vmin=-limit, vmax=limit,
                annot=True, fmt='.2f', square=True, xticklabels=labels, yticklabels=labels,
                cbar_kws={'label': 'coupling weight'})
    ax_heat.set_xlabel('Source')
    ax_heat.set_ylabel('Target')
    ax_heat.set_title(f'Causal edges (density {network.density:.2f})')

    centrality = [node.centrality for node in network.nodes]
    sns.barplot(x=labels, y=centrality, ax=ax_bar, hue=labels, palette=config.color_palette, legend=False)
    ax_bar.set_ylabel('Centrality')
    ax_bar.set_ylim(0, 1.05)
    ax_bar.set_title(f'Central node: {network.central_node or "none"}')
    ax_bar.tick_params(axis='x', rotation=45)

    fig.tight_layout()
    return fig


def plot_early_warning_indicators(history: Union[np.ndarray, Sequence],
                                  window_size: int,
                                  signals: Optional[List[EarlyWarningSignal]] = None,
                                  labels: Optional[Sequence[str]] = None,
                                  config: Optional[ForecastPlotConfig] = None) -> plt.Figure:
    """
    Plot rolling lag-1 autocorrelation and variance per dimension.

    Dimensions with a detected signal are titled with the signal types.
    """
    config = config if config is not None else ForecastPlotConfig()
    data = as_history_array(history)
    if data.shape[0] < window_size:
        raise ValueError(f"History of {data.shape[0]} steps is shorter than the window ({window_size})")
    n = data.shape[1]
    labels = list(labels) if labels is not None else dimension_labels(n)
    colors = sns.color_palette(config.color_palette, 2)
    flagged = {}
    for signal in signals or []:
        flagged.setdefault(signal.dimension, []).append(signal.type.value)

    fig, axes = plt.subplots(n, 2, figsize=config.figure_size, sharex=True, squeeze=False)
    steps = np.arange(window_size - 1, data.shape[0])
    for i in range(n):
        series = data[:, i]
        ac = rolling_indicator(series, window_size, lag1_autocorrelation)
        var = rolling_indicator(series, window_size, lambda w: float(np.var(w, ddof=1)))
        axes[i, 0].plot(steps, ac, color=colors[0], linewidth=config.line_width)
        axes[i, 1].plot(steps, var, color=colors[1], linewidth=config.line_width)
        axes[i, 0].set_ylabel(labels[i])
        if labels[i] in flagged:
            axes[i, 0].set_title(', '.join(flagged[labels[i]]), fontsize=9, color='firebrick')
        for ax in axes[i]:
            ax.grid(True, alpha=0.3)
    axes[0, 0].set_title('Lag-1 autocorrelation' + (f"\n{axes[0, 0].get_title()}" if labels[0] in flagged else ''))
    axes[0, 1].set_title('Variance')
    axes[-1, 0].set_xlabel('Step')
    axes[-1, 1].set_xlabel('Step')
    fig.tight_layout()
    return fig


def save_figure(fig: plt.Figure, path: Union[str, Path], dpi: int = 150) -> Path:
    """Save a figure, creating parent directories, and close it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    return path
