"""
Configuration for the SLAM engine.

Options live in a flat dataclass. YAML files may inherit from a parent
file through an ``inherit_from`` key; the child's values win.
"""

import dataclasses
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from vislam.errors import ConfigError


@dataclass
class SLAMConfig:
    """Recognized SLAM options. Durations are seconds unless noted."""

    # Keyframe policy
    min_keyframe_translation: float = 0.1  # meters
    min_keyframe_rotation: float = 0.2  # radians
    min_keyframe_interval: float = 0.2  # seconds
    max_keyframes: int = 100

    # Tracking
    max_features: int = 500
    min_feature_tracked: int = 50
    min_observations: int = 3
    max_reprojection_error: float = 3.0  # pixels

    # Inertial
    use_imu: bool = False
    imu_frequency: float = 200.0  # Hz
    accelerometer_noise: float = 0.1
    gyroscope_noise: float = 0.01

    # Loop closure
    enable_loop_closure: bool = False
    loop_closure_min_interval: int = 100  # frames
    loop_closure_threshold: float = 0.75
    vocabulary_path: Optional[str] = None

    # Persistence
    enable_persistence: bool = False
    autosave_interval: float = 30.0
    max_map_size: int = 10 * 1024 * 1024  # bytes
    storage_dir: Optional[str] = None
    map_name: str = 'SLAM Map'

    # Mapping
    max_mapping_time: float = 20.0  # milliseconds
    local_mapping_threads: int = 1
    enable_triangulation: bool = True

    # Camera
    camera_fov: float = 60.0  # degrees, used when no intrinsics are given

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigError if any value is out of range."""
        positive = [
            'min_keyframe_translation', 'min_keyframe_rotation', 'max_keyframes',
            'max_features', 'min_feature_tracked', 'min_observations',
            'max_reprojection_error', 'imu_frequency', 'loop_closure_min_interval',
            'autosave_interval', 'max_map_size', 'max_mapping_time',
            'local_mapping_threads', 'camera_fov',
        ]
        for name in positive:
            value = getattr(self, name)
            if value is None or value <= 0:
                raise ConfigError(f"'{name}' must be positive, got {value!r}")
        if self.min_keyframe_interval < 0:
            raise ConfigError("'min_keyframe_interval' must not be negative")
        if not 0.0 < self.loop_closure_threshold <= 1.0:
            raise ConfigError("'loop_closure_threshold' must be in (0, 1]")
        if self.accelerometer_noise < 0 or self.gyroscope_noise < 0:
            raise ConfigError("IMU noise parameters must not be negative")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'SLAMConfig':
        """
        Build a config from a plain dictionary.

        Args:
            values: Option name -> value. Missing options keep their defaults.

        Returns:
            SLAMConfig instance

        Raises:
            ConfigError: If an option name is not recognized.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration options: {', '.join(unknown)}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> 'SLAMConfig':
        """Return a copy with some options changed."""
        return dataclasses.replace(self, **changes)


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two config dictionaries, the override winning."""
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def _load_yaml(config_path: Path, visited=None) -> Dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    resolved = config_path.resolve()
    visited = set() if visited is None else visited
    if resolved in visited:
        raise ConfigError(f"Circular inherit_from chain at {config_path}")
    visited.add(resolved)

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

    if 'inherit_from' in config:
        parent_path = config_path.parent / config.pop('inherit_from')
        config = merge_configs(_load_yaml(parent_path, visited), config)

    return config


def load_config(config_path) -> SLAMConfig:
    """
    Load a YAML configuration file.

    Args:
        config_path: Path to the YAML file

    Returns:
        config: Parsed SLAMConfig
    """
    return SLAMConfig.from_dict(_load_yaml(Path(config_path)))


def save_config(config: SLAMConfig, save_path):
    """Write a config to a YAML file."""
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, 'w', encoding='utf-8') as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
