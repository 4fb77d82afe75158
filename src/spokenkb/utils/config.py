"""
Configuration utilities for loading and managing config files.

This module provides centralized configuration loading with:
- YAML config file parsing
- Environment variable substitution (${VAR} syntax)
- Automatic .env file loading
- Per-section defaults deep-merged under whatever the file provides

Usage:
    from spokenkb.utils.config import load_config, get_pipeline_config

    config = load_config()  # Loads config with env substitution
    pipeline = get_pipeline_config(config)  # Section with defaults filled in
"""
from pathlib import Path
import copy
import yaml
import os
import re
from typing import Dict, Optional, Any
import logging
from dotenv import load_dotenv

# Use standard logging to avoid circular import
logger = logging.getLogger(__name__)

# Track if .env has been loaded
_env_loaded = False


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'database': {
        'url': 'sqlite:///spokenkb.db',
        'echo': False,
        'pool': {
            'size': 5,
            'max_overflow': 10,
            'recycle': 3600,
            'pre_ping': True,
        },
    },
    'storage': {
        'backend': 'local',
        'local': {
            'base_path': 'data/artifacts',
        },
        's3': {
            'endpoint_url': '${S3_ENDPOINT}',
            'access_key': '${S3_ACCESS_KEY}',
            'secret_key': '${S3_SECRET_KEY}',
            'bucket_name': '${S3_BUCKET}',
            'use_ssl': False,
            'multipart_threshold_mb': 16,
            'max_attempts': 5,
            'connect_timeout': 5,
            'read_timeout': 30,
        },
    },
    'pipeline': {
        'max_attempts': 5,
        'backoff_base_seconds': 60,
        'backoff_max_seconds': 60 * 60 * 6,
        'claim_timeout_seconds': 60 * 60,
        'call_timeout_seconds': 600,
        'staging_dir': 'data/staging',
        'workers': 4,
        'poll_interval_seconds': 30,
    },
    'prosody': {
        'sample_rate': 16000,
        'frame_length': 1024,
        'hop_length': 256,
        'fmin': 65.0,
        'fmax': 500.0,
        'pause_threshold': 0.3,
        'min_segment_duration': 1.0,
        'energy_floor': 1e-5,
        'max_dynamic_range_db': 120.0,
    },
    'emphasis': {
        'weights': {
            'pitch_range': 0.4,
            'energy_range': 0.35,
            'final_lengthening': 0.25,
        },
    },
    'segmentation': {
        'max_window_seconds': 15.0,
        'sentence_end_chars': '.?!…',
    },
    'retrieval': {
        'weights': {
            'lexical': 0.4,
            'vector': 0.45,
            'emphasis': 0.15,
            'low_confidence_discount': 0.5,
        },
        'vector_top_k': 50,
        'lexical_top_k': 200,
        'min_lexical_score': 0.1,
        'max_results': 50,
        'default_results': 10,
        'min_query_chars': 2,
        'max_query_chars': 500,
        'max_query_terms': 40,
        'bm25_k1': 1.5,
        'bm25_b': 0.75,
        'embed_timeout_seconds': 10,
    },
    'error_handling': {
        'policies': {},
    },
    'logging': {
        'base_path': 'logs',
        'level': 'INFO',
    },
}


def _ensure_env_loaded():
    """Ensure .env file is loaded (once)."""
    global _env_loaded
    if not _env_loaded:
        from .paths import get_env_path
        env_path = get_env_path()
        if env_path.exists():
            load_dotenv(env_path, override=True)
            logger.debug(f"Loaded environment from {env_path}")
        _env_loaded = True


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment variables."""
    if isinstance(value, str):
        # Match ${VAR} pattern
        pattern = r'\$\{([^}]+)\}'
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.getenv(var_name, '')
            value = value.replace(f'${{{var_name}}}', env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_config(config_path: Optional[Path] = None, substitute_env: bool = True) -> Dict:
    """Load configuration from yaml file with optional env variable substitution.

    Args:
        config_path: Optional path to config file. If not provided, will look in default location.
        substitute_env: If True, substitute ${VAR} patterns with environment variables.

    Returns:
        Dict containing configuration settings with env vars substituted.
        A missing default config file yields an empty dict so section
        getters fall back to DEFAULTS.
    """
    # Ensure .env is loaded before reading config
    _ensure_env_loaded()

    if config_path is None:
        from .paths import get_config_path
        config_path = get_config_path()
        if not Path(config_path).exists():
            logger.warning(f"Config file {config_path} not found, using defaults")
            return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if substitute_env:
        config = _substitute_env_vars(config)

    return config


def get_credential(name: str, default: Optional[str] = None) -> Optional[str]:
    """Get a credential from environment variables.

    This is the preferred way to access credentials. It ensures .env is loaded.

    Args:
        name: Environment variable name (e.g., 'S3_SECRET_KEY')
        default: Default value if not found

    Returns:
        Credential value or default
    """
    _ensure_env_loaded()
    return os.getenv(name, default)


def _deep_merge(default: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = copy.deepcopy(default)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def get_section(section: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get one config section with defaults filled in.

    Args:
        section: Top-level key (e.g. 'pipeline', 'retrieval')
        config: Already loaded config; loaded from disk when omitted

    Returns:
        Deep-merged section dict
    """
    if config is None:
        config = load_config()
    defaults = DEFAULTS.get(section, {})
    merged = _deep_merge(defaults, config.get(section) or {})
    if section == 'storage':
        merged = _substitute_env_vars(merged)
    return merged


def get_database_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get database configuration."""
    return get_section('database', config)


def get_storage_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get artifact storage configuration."""
    return get_section('storage', config)


def get_pipeline_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get orchestrator retry/backoff/worker configuration."""
    return get_section('pipeline', config)


def get_prosody_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get prosody extraction configuration."""
    return get_section('prosody', config)


def get_emphasis_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get emphasis weighting configuration."""
    return get_section('emphasis', config)


def get_segmentation_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get segmenter configuration."""
    return get_section('segmentation', config)


def get_retrieval_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get retrieval/rerank configuration."""
    return get_section('retrieval', config)
