"""
System utilities for target_encode.

This module provides system-level utilities including:
- External tool detection
- Intermediate file naming next to the source
- Temporary file tracking and cleanup
"""

import atexit
import shutil
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..errors import ToolMissingError
from ....utils.logging import get_logger

logger = get_logger("system_utils")

# Kept across runs until the job is done, so an interrupted batch can resume
SCENES_SUFFIX = "_scenes.json"
SEARCH_RECORD_SUFFIX = "_search.json"

# Trial encodes and their chunk directories; removed on normal cleanup and at exit
TEMP_FILES: set = set()
_TEMP_LOCK = threading.Lock()


def find_tools(tools: Iterable[str]) -> Dict[str, Optional[str]]:
    """Resolve each tool name to its absolute path (None when missing)."""
    return {tool: shutil.which(tool) for tool in tools}


def check_required_tools(tools: Iterable[str]) -> Dict[str, str]:
    """Ensure every tool is available, raising ToolMissingError listing the missing ones."""
    found = find_tools(tools)
    missing = [tool for tool, path in found.items() if path is None]
    if missing:
        raise ToolMissingError(missing)
    return {tool: path for tool, path in found.items() if path}


def temp_path(file_path: Path, suffix: str) -> Path:
    """Intermediate path beside the source: ``ep01.mkv`` + ``_enc.mkv`` -> ``ep01.mkv_enc.mkv``.

    Keyed on the full file name so ``ep01.mkv`` and ``ep01.mp4`` never share
    intermediates.
    """
    return file_path.parent / f"{file_path.name}{suffix}"


def register_temp_path(path: Union[str, Path]):
    with _TEMP_LOCK:
        TEMP_FILES.add(str(path))


def remove_path(path: Union[str, Path]) -> bool:
    """Delete a file or directory tree if it exists. Returns True if something was removed."""
    p = Path(path)
    removed = False
    try:
        if p.is_dir():
            shutil.rmtree(p)
            removed = True
        elif p.exists():
            p.unlink()
            removed = True
    except OSError as e:
        logger.warn(f"Could not remove {p}: {e}")
    with _TEMP_LOCK:
        TEMP_FILES.discard(str(path))
    return removed


def cleanup_temp_files() -> List[str]:
    """Remove every tracked temporary path."""
    with _TEMP_LOCK:
        pending = sorted(TEMP_FILES)
    removed = [p for p in pending if remove_path(p)]
    for p in removed:
        logger.cleanup(f"removed {p}")
    return removed


atexit.register(cleanup_temp_files)


def format_size(bytes_size: int) -> str:
    """Convert bytes to human readable format ("500 B", "1.50 KB", "2.00 MB")."""
    negative = bytes_size < 0
    size = float(abs(bytes_size))
    units = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']
    unit_index = 0
    while unit_index < len(units) - 1 and size >= 1024.0:
        size /= 1024.0
        unit_index += 1
    unit = units[unit_index]
    if unit == 'B':
        formatted = f"{int(size)} {unit}"
    else:
        formatted = f"{size:.2f} {unit}"
    return f"-{formatted}" if negative else formatted
