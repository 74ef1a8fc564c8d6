"""
Target Encode - batch AV1 encoding to a target SSIMULACRA2 score.
"""

__version__ = "1.0.0"

from .config import get_config, load_env_file

__all__ = [
    "get_config",
    "load_env_file",
]
