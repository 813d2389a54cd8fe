"""
Configuration Module

Loads the YAML configuration file and merges it over the built-in defaults.
Components receive the whole dictionary and read their own section.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    'face_detection': {
        'method': 'deepface',
        'detector_backend': 'opencv',
        'min_face_size': 80
    },
    'capture': {
        'detection_confidence_gate': 0.8,
        'crop_padding_px': 20,
        'jpeg_quality': 80,
        'poll_interval_ms': 100
    },
    'acquisition': {
        'required_face_count': 10,
        'capture_retry_delay_ms': 300,
        'max_attempts_per_slot': 50
    },
    'verification': {
        'match_threshold': 0.92,
        'min_floor': 0.85,
        'max_failed_attempts': 3
    },
    'similarity': {
        'method': 'pixel',
        'model_name': 'Facenet',
        'image_size': 64,
        'cache_size': 256
    },
    'camera': {
        'device': 0,
        'width': 640,
        'height': 480
    },
    'storage': {
        'database_file': 'data/enrollments.pkl'
    },
    'logging': {
        'level': 'INFO',
        'file': 'face_auth.log'
    }
}


def get_default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default configuration."""
    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Recursively merge overrides into a copy of base.

    Args:
        base: Configuration to start from
        overrides: Values that replace entries in base

    Returns:
        Merged configuration dictionary
    """
    merged = copy.deepcopy(base)
    if not overrides:
        return merged

    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file on top of the defaults.

    A missing file falls back to the defaults; a malformed one raises.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated configuration dictionary
    """
    if config_path is None or not os.path.exists(config_path):
        if config_path is not None:
            logger.warning(f"Config file {config_path} not found, using defaults")
        return validate_config(get_default_config())

    try:
        with open(config_path, 'r') as f:
            overrides = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {config_path}: {e}") from e

    if not isinstance(overrides, dict):
        raise ConfigError(f"Config {config_path} must contain a mapping")

    logger.info(f"Configuration loaded from {config_path}")
    return validate_config(merge_config(DEFAULT_CONFIG, overrides))


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Check value ranges of the options the pipeline depends on."""
    capture = config.get('capture', {})
    acquisition = config.get('acquisition', {})
    verification = config.get('verification', {})

    for name, value in (
        ('capture.detection_confidence_gate', capture.get('detection_confidence_gate', 0.8)),
        ('verification.match_threshold', verification.get('match_threshold', 0.92)),
        ('verification.min_floor', verification.get('min_floor', 0.85)),
    ):
        if not 0.0 <= float(value) <= 1.0:
            raise ConfigError(f"{name} must be in [0, 1], got {value}")

    if int(acquisition.get('required_face_count', 10)) < 1:
        raise ConfigError("acquisition.required_face_count must be at least 1")
    if int(acquisition.get('max_attempts_per_slot', 50)) < 0:
        raise ConfigError("acquisition.max_attempts_per_slot must not be negative")
    if float(acquisition.get('capture_retry_delay_ms', 300)) < 0:
        raise ConfigError("acquisition.capture_retry_delay_ms must not be negative")
    if int(capture.get('crop_padding_px', 20)) < 0:
        raise ConfigError("capture.crop_padding_px must not be negative")
    if int(verification.get('max_failed_attempts', 3)) < 1:
        raise ConfigError("verification.max_failed_attempts must be at least 1")

    return config
