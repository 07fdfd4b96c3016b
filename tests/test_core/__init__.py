"""
Core algorithm tests for Affect Dynamics.

Tests for the forecasting engines and their building blocks:
- Linear algebra, optimization and attention primitives
- Kalman filtering and smoothing
- PLRNN dynamics, training and interpretation
- KalmanFormer hybrid filtering
- Causal networks and early-warning detection
"""
