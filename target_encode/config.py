"""Configuration management for target-encode."""

import os
from pathlib import Path
from typing import Optional, Dict, Any


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from .env file."""
    if env_path is None:
        # Look for .env in current directory, then in package directory
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip()] = value.strip()

    return env_vars


def _lookup(env_vars: Dict[str, str], key: str, default: str) -> str:
    return env_vars.get(key, os.getenv(key.upper(), default))


def _optional_float(value: str) -> Optional[float]:
    if value == '' or value.lower() in ('none', 'off', '0'):
        return None
    return float(value)


def get_config(env_path: Optional[Path] = None) -> Dict[str, Any]:
    """Get configuration from environment variables and .env file.

    Keys in the .env file are lower case; the matching environment variables
    are upper case (``target_score`` / ``TARGET_SCORE``).
    """
    env_vars = load_env_file(env_path)

    config = {
        'encoder': _lookup(env_vars, 'encoder', 'svt-av1'),
        'target_score': float(_lookup(env_vars, 'target_score', '80.0')),
        'tolerance': float(_lookup(env_vars, 'tolerance', '1.0')),
        'workers': int(_lookup(env_vars, 'workers', str(max(1, (os.cpu_count() or 4) // 4)))),
        'encoder_workers': int(_lookup(env_vars, 'encoder_workers', str(os.cpu_count() or 4))),
        'max_iterations': int(_lookup(env_vars, 'max_iterations', '8')),
        'max_retries': int(_lookup(env_vars, 'max_retries', '1')),
        'metric_cycle': int(_lookup(env_vars, 'metric_cycle', '10')),
        'photon_noise': int(_lookup(env_vars, 'photon_noise', '400')),
        'grain_synthesis': _lookup(env_vars, 'grain_synthesis', 'true').lower() in ('true', '1', 'yes'),
        'trial_timeout': _optional_float(_lookup(env_vars, 'trial_timeout', '7200')),
        'score_timeout': _optional_float(_lookup(env_vars, 'score_timeout', '3600')),
        'encode_timeout': _optional_float(_lookup(env_vars, 'encode_timeout', 'none')),
        'mux_timeout': _optional_float(_lookup(env_vars, 'mux_timeout', '1800')),
        'keep_temp': _lookup(env_vars, 'keep_temp', 'false').lower() in ('true', '1', 'yes'),
        'debug': _lookup(env_vars, 'debug', 'false').lower() in ('true', '1', 'yes'),
    }

    return config
