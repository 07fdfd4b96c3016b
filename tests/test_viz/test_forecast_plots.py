"""Tests for forecast, causal-network and early-warning figures."""

import matplotlib
matplotlib.use('Agg')

import numpy as np
import matplotlib.pyplot as plt
import pytest
from unittest.mock import patch

from affect_dynamics.belief import BeliefStateAdapter
from affect_dynamics.core import detect_early_warnings
from affect_dynamics.viz import (
    ForecastPlotConfig,
    plot_causal_network,
    plot_early_warning_indicators,
    plot_forecast,
    save_figure,
)


class TestPlotForecast:
    """Test suite for plot_forecast."""

    @patch('matplotlib.pyplot.show')
    def test_plrnn_forecast(self, mock_show, plrnn_engine, latent_state, test_data_generator):
        """Test a dynamics forecast with preceding history."""
        prediction = plrnn_engine.predict(latent_state, 12)
        history = test_data_generator.linear_sequence(n_steps=10)

        fig = plot_forecast(prediction, history=history)

        assert isinstance(fig, plt.Figure)
        assert len(fig.axes) == 5
        assert fig.axes[0].get_ylabel() == 'valence'
        plt.close(fig)

    def test_filter_forecast(self, kalman_former_engine, latent_state):
        """Test a blended filter forecast."""
        state = kalman_former_engine.from_plrnn_state(latent_state)
        fig = plot_forecast(kalman_former_engine.predict(state, 4))

        assert len(fig.axes) == 5
        plt.close(fig)

    def test_hybrid_forecast_with_labels(self, plrnn_engine, kalman_former_engine, belief):
        """Test a merged forecast with custom labels and config."""
        adapter = BeliefStateAdapter(plrnn=plrnn_engine, kalman_former=kalman_former_engine)
        prediction = adapter.predict_hybrid(belief, 'medium')
        labels = ['v', 'a', 'd', 'r', 'res']

        fig = plot_forecast(prediction, labels=labels, config=ForecastPlotConfig(figure_size=(6, 6)))

        assert [ax.get_ylabel() for ax in fig.axes] == labels
        assert tuple(fig.get_size_inches()) == pytest.approx((6, 6))
        plt.close(fig)

    def test_unsupported_prediction(self):
        """Test that arbitrary objects are rejected."""
        with pytest.raises(TypeError):
            plot_forecast(object())


class TestPlotCausalNetwork:
    """Test suite for plot_causal_network."""

    def test_network_figure(self, dendritic_engine):
        """Test the heatmap and centrality panels."""
        fig = plot_causal_network(dendritic_engine.extract_causal_network())

        assert isinstance(fig, plt.Figure)
        assert len(fig.axes) >= 2
        assert fig.axes[0].get_xlabel() == 'Source'
        plt.close(fig)

    def test_empty_network(self, plrnn_engine):
        """Test a network without edges."""
        weights = plrnn_engine.get_weights()
        weights.W[:] = 0.0
        plrnn_engine.load_weights(weights)

        fig = plot_causal_network(plrnn_engine.extract_causal_network())

        assert 'none' in fig.axes[1].get_title()
        plt.close(fig)


class TestPlotEarlyWarningIndicators:
    """Test suite for plot_early_warning_indicators."""

    def test_indicator_grid(self, test_data_generator):
        """Test one row of indicator panels per dimension."""
        history = test_data_generator.rising_instability(n_steps=60, n_dims=3)
        signals = detect_early_warnings(history, 10)

        fig = plot_early_warning_indicators(history, 10, signals=signals)

        assert len(fig.axes) == 6
        assert fig.axes[1].get_title() == 'Variance'
        plt.close(fig)

    def test_history_shorter_than_window(self, test_data_generator):
        """Test that a too-short history raises."""
        with pytest.raises(ValueError):
            plot_early_warning_indicators(test_data_generator.stationary_noise(n_steps=5), 10)


class TestSaveFigure:
    """Test suite for save_figure."""

    def test_creates_parent_directories(self, tmp_path, plrnn_engine, latent_state):
        """Test that figures are written into new directories."""
        fig = plot_forecast(plrnn_engine.predict(latent_state, 4))
        path = save_figure(fig, tmp_path / 'figures' / 'forecast.png', dpi=50)

        assert path.exists()
        assert path.stat().st_size > 0
        assert not plt.fignum_exists(fig.number)
