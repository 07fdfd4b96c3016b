"""Configuration management for affect_dynamics.

Provides engine configuration dataclasses, presets, TOML settings and
per-user random generator construction.
"""

from .defaults import (
    PLRNNConfig,
    KalmanFormerConfig,
    EarlyWarningConfig,
    AdapterConfig,
    ForecastPreset,
    PRESETS,
    validate_config,
)
from .settings import Settings, load_settings
from .random_state import make_rng, create_deterministic_seed, seed_for_user, get_environment_seed
from .logging_setup import configure_logging

__all__ = [
    'PLRNNConfig',
    'KalmanFormerConfig',
    'EarlyWarningConfig',
    'AdapterConfig',
    'ForecastPreset',
    'PRESETS',
    'validate_config',
    'Settings',
    'load_settings',
    'make_rng',
    'create_deterministic_seed',
    'seed_for_user',
    'get_environment_seed',
    'configure_logging',
]
