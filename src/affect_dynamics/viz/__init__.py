"""
Affect Dynamics Visualization Module.

Static figures for forecasts, learned causal structure and early-warning
indicators.
"""

from .forecast_plots import (
    ForecastPlotConfig,
    plot_forecast,
    plot_causal_network,
    plot_early_warning_indicators,
    save_figure,
)

__all__ = [
    'ForecastPlotConfig',
    'plot_forecast',
    'plot_causal_network',
    'plot_early_warning_indicators',
    'save_figure',
]
