"""Configuration for library builds.

Settings come from an optional YAML file deep-merged over the defaults.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path

import yaml

from .merge import DEFAULT_MERGE_BATCH_SIZE
from .peak_codec import DEFAULT_COMPRESSION_LEVEL
from .schema import DEFAULT_AUTHORITY, DEFAULT_CACHE_SIZE_MB

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'library': {
        'authority': DEFAULT_AUTHORITY,
        'library_id': None,  # Defaults to the file name
        'redundant': True,
        'cache_size_mb': DEFAULT_CACHE_SIZE_MB,
        'compression_level': DEFAULT_COMPRESSION_LEVEL,
    },
    'merge': {
        'batch_size': DEFAULT_MERGE_BATCH_SIZE,
    },
}


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        if not isinstance(user_config, dict):
            raise ValueError(f"Configuration file {config_path} must contain a mapping")
        config = _deep_merge(config, user_config)
        logger.debug(f"Loaded configuration from {config_path}")
    elif config_path:
        logger.warning(f"Configuration file not found: {config_path}, using defaults")

    return config


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def library_kwargs(config: dict) -> dict:
    """Keyword arguments for ``BlibLibrary`` from a loaded configuration."""
    lib = config['library']
    return {
        'authority': lib['authority'],
        'library_id': lib.get('library_id'),
        'redundant': bool(lib['redundant']),
        'cache_size_mb': int(lib['cache_size_mb']),
        'compression_level': int(lib['compression_level']),
        'merge_batch_size': int(config['merge']['batch_size']),
    }
