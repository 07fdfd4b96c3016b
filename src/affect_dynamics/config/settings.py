"""Top-level settings with TOML loading support."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union
from pathlib import Path
import copy
import logging

try:
    import tomllib  # Python 3.11+
except ImportError:
    try:
        import tomli as tomllib  # Fallback for older Python
    except ImportError:
        tomllib = None

try:
    import tomli_w
except ImportError:
    tomli_w = None

from .defaults import (
    PRESETS,
    AdapterConfig,
    EarlyWarningConfig,
    KalmanFormerConfig,
    PLRNNConfig,
    validate_config,
)

logger = logging.getLogger(__name__)

SECTIONS = {
    'plrnn': PLRNNConfig,
    'kalman_former': KalmanFormerConfig,
    'early_warning': EarlyWarningConfig,
    'adapter': AdapterConfig,
}


@dataclass
class Settings:
    """Settings for a forecasting deployment.

    Bundles the per-engine configurations with reproducibility and logging
    options. Can be loaded from TOML files with one table per engine
    (``[plrnn]``, ``[kalman_former]``, ``[early_warning]``, ``[adapter]``)
    plus an ``[advanced]`` table for the scalar options below.
    """

    plrnn: PLRNNConfig = field(default_factory=PLRNNConfig)
    kalman_former: KalmanFormerConfig = field(default_factory=KalmanFormerConfig)
    early_warning: EarlyWarningConfig = field(default_factory=EarlyWarningConfig)
    adapter: AdapterConfig = field(default_factory=AdapterConfig)

    # Reproducibility
    random_seed: Optional[int] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    verbose: bool = False

    def __post_init__(self):
        """Validate settings after initialization."""
        for name, cls in SECTIONS.items():
            value = getattr(self, name)
            if isinstance(value, dict):
                setattr(self, name, cls.from_dict(value))

        if self.plrnn.latent_dim != self.kalman_former.state_dim:
            raise ValueError(
                f"plrnn.latent_dim ({self.plrnn.latent_dim}) must equal "
                f"kalman_former.state_dim ({self.kalman_former.state_dim})"
            )

        if self.verbose:
            for name in SECTIONS:
                for warning in validate_config(getattr(self, name)):
                    logger.warning("Configuration warning [%s]: %s", name, warning)

    @classmethod
    def from_preset(cls, preset: str) -> 'Settings':
        """Create settings from a preset configuration.

        Parameters
        ----------
        preset : str
            Preset name ('default', 'minimal', 'high_capacity')

        Returns
        -------
        Settings
            Settings object with preset values
        """
        if preset not in PRESETS:
            raise ValueError(f"Unknown preset '{preset}'. Available: {list(PRESETS.keys())}")

        bundle = PRESETS[preset]
        return cls(
            plrnn=copy.deepcopy(bundle.plrnn),
            kalman_former=copy.deepcopy(bundle.kalman_former),
            early_warning=copy.deepcopy(bundle.early_warning),
            adapter=copy.deepcopy(bundle.adapter),
        )

    @classmethod
    def from_toml(cls, toml_path: Union[str, Path]) -> 'Settings':
        """Load settings from TOML file.

        Parameters
        ----------
        toml_path : Union[str, Path]
            Path to TOML configuration file

        Returns
        -------
        Settings
            Settings object with values from TOML file

        Raises
        ------
        ImportError
            If tomllib is not available
        FileNotFoundError
            If TOML file doesn't exist
        """
        if tomllib is None:
            raise ImportError("tomllib not available. Install tomli for Python < 3.11")

        toml_path = Path(toml_path)
        if not toml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {toml_path}")

        with open(toml_path, 'rb') as f:
            config_data = tomllib.load(f)

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'Settings':
        """Build settings from a nested dictionary shaped like the TOML file."""
        preset = config_data.get('preset')
        base = cls.from_preset(preset) if preset is not None else cls()

        kwargs: Dict[str, Any] = {}
        for name, section_cls in SECTIONS.items():
            if name in config_data:
                merged = getattr(base, name).to_dict()
                merged.update(config_data[name])
                kwargs[name] = section_cls.from_dict(merged)
            else:
                kwargs[name] = getattr(base, name)

        if 'advanced' in config_data:
            kwargs.update(config_data['advanced'])

        # Also handle flat structure
        for key, value in config_data.items():
            if key != 'preset' and not isinstance(value, dict):
                kwargs[key] = value

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        advanced = {
            'log_level': self.log_level,
            'verbose': self.verbose,
        }
        # TOML has no null value
        if self.random_seed is not None:
            advanced['random_seed'] = self.random_seed
        if self.log_file is not None:
            advanced['log_file'] = self.log_file

        config_data = {name: getattr(self, name).to_dict() for name in SECTIONS}
        config_data['advanced'] = advanced
        return config_data

    def to_toml(self, toml_path: Union[str, Path]) -> None:
        """Save settings to TOML file.

        Parameters
        ----------
        toml_path : Union[str, Path]
            Path where to save TOML configuration file

        Raises
        ------
        ImportError
            If tomli_w is not available
        """
        if tomli_w is None:
            raise ImportError("tomli_w not available. Install tomli-w for TOML writing")

        toml_path = Path(toml_path)
        with open(toml_path, 'wb') as f:
            tomli_w.dump(self.to_dict(), f)

    def update(self, **kwargs) -> 'Settings':
        """Create new Settings with updated values.

        Parameters
        ----------
        **kwargs
            Settings fields to update. Engine sections accept either a config
            object or a dictionary of overrides.

        Returns
        -------
        Settings
            New Settings object with updated values
        """
        changes = {}
        for key, value in kwargs.items():
            if key in SECTIONS and isinstance(value, dict):
                merged = getattr(self, key).to_dict()
                merged.update(value)
                value = SECTIONS[key].from_dict(merged)
            changes[key] = value
        return replace(copy.deepcopy(self), **changes)


DEFAULT_CONFIG_PATHS = (
    'affect_dynamics.toml',
    'config.toml',
    Path.home() / '.affect_dynamics.toml',
    Path('config') / 'affect_dynamics.toml',
)


def load_settings(config_path: Optional[Union[str, Path]] = None,
                  preset: Optional[str] = None) -> Settings:
    """Load settings for a new deployment.

    Unlike a process-wide configuration object, every call returns a fresh
    ``Settings`` instance owned by the caller.

    Parameters
    ----------
    config_path : Optional[Union[str, Path]]
        Path to TOML configuration file. If None, looks for default locations.
    preset : Optional[str]
        Preset configuration name ('default', 'minimal', 'high_capacity').
        Used when no configuration file is found.

    Returns
    -------
    Settings
        Loaded configuration settings
    """
    if config_path is not None:
        return Settings.from_toml(config_path)

    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            try:
                return Settings.from_toml(path)
            except (ValueError, TypeError, OSError) as e:
                logger.warning("Could not load config from %s: %s", path, e)

    return Settings.from_preset(preset if preset is not None else 'default')
