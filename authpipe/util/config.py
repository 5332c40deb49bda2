# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Configuration helpers: environment lookup, durations and config files.
"""

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

ENV_PREFIX = "AUTHPIPE_"

_DURATION_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?$')
_DURATION_UNITS = {
    'ms': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
}
_VARIABLE_PATTERN = re.compile(r'\$\{([^}]+)\}')
_TRUE_VALUES = ('true', '1', 'yes', 'on')


def get_config_value(key: str, default: Any = None,
                     cast_type: Optional[type] = None,
                     env_prefix: str = ENV_PREFIX) -> Any:
    """
    Read ``{env_prefix}{KEY}`` from the environment.

    The raw string is cast with ``cast_type`` when given. A value that cannot
    be cast is a configuration error, not a silent fallback to ``default``.
    """
    env_key = f"{env_prefix}{key.upper()}"
    value = os.environ.get(env_key)
    if value is None:
        return default
    if cast_type is None:
        return value

    if cast_type == bool:
        return value.strip().lower() in _TRUE_VALUES
    if cast_type == list:
        return [item.strip() for item in value.split(',') if item.strip()]
    if cast_type == timedelta:
        return parse_duration_string(value)
    try:
        return cast_type(value)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid value for {env_key}")


def get_bool_config(key: str, default: bool = False,
                    env_prefix: str = ENV_PREFIX) -> bool:
    """Get boolean configuration value."""
    return get_config_value(key, default, bool, env_prefix)


def get_float_config(key: str, default: float = 0.0,
                     env_prefix: str = ENV_PREFIX) -> float:
    """Get float configuration value."""
    return get_config_value(key, default, float, env_prefix)


def get_list_config(key: str, default: Optional[List[str]] = None,
                    env_prefix: str = ENV_PREFIX) -> List[str]:
    """Get list configuration value (comma-separated)."""
    return get_config_value(key, list(default or []), list, env_prefix)


def get_duration_config(key: str, default: timedelta,
                        env_prefix: str = ENV_PREFIX) -> timedelta:
    """Get a duration such as ``10m`` or ``8h``."""
    return get_config_value(key, default, timedelta, env_prefix)


def parse_duration_string(duration: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse ``'250ms'``, ``'30s'``, ``'5m'``, ``'2h'`` or ``'1d'`` into a timedelta.

    A bare number is taken as seconds.
    """
    if isinstance(duration, timedelta):
        return duration
    if isinstance(duration, bool):
        raise ValueError("Duration must be a string or a number")
    if isinstance(duration, (int, float)):
        return timedelta(seconds=duration)
    if not isinstance(duration, str):
        raise ValueError("Duration must be a string or a number")

    match = _DURATION_PATTERN.match(duration.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration format: {duration}")
    value, unit = match.groups()
    return float(value) * _DURATION_UNITS[unit or 's']


def expand_config_variables(config: Any,
                            variables: Optional[Mapping[str, str]] = None) -> Any:
    """
    Replace ``${VAR_NAME}`` in string values with environment variables.

    Unknown variables are left untouched.
    """
    if variables is None:
        variables = os.environ

    def replace_var(match):
        return variables.get(match.group(1), match.group(0))

    if isinstance(config, str):
        return _VARIABLE_PATTERN.sub(replace_var, config)
    if isinstance(config, dict):
        return {k: expand_config_variables(v, variables) for k, v in config.items()}
    if isinstance(config, list):
        return [expand_config_variables(item, variables) for item in config]
    return config


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """Load configuration from a JSON or YAML file."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    with open(path, 'r', encoding='utf-8') as f:
        if suffix == '.json':
            data = json.load(f)
        elif suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(f)
        else:
            raise ValueError(f"Unsupported configuration file format: {suffix}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping")
    return data
