"""
Centralized logging utilities for target_encode

Provides consistent logging patterns with configurable debug levels:
- [INFO] for general information
- [WARN] for warnings
- [ERROR] for errors
- [RESULT] for final results
- [DEBUG] for debug information
- [SEARCH] / [TRIAL] for quality search messages
- [WORKER] for worker slot messages
- [ASSEMBLY] for encode, grain and mux steps
- [CLEANUP] for cleanup operations

Usage:
    from target_encode.utils.logging import get_logger, set_debug_mode

    set_debug_mode(True)  # Enable debug messages

    logger = get_logger("quality_search")
    logger.info("This is an info message")
    logger.search("Bracket narrowed")
"""

import os
import threading
from enum import Enum
from typing import Optional

from tqdm import tqdm

# Global logging configuration
_DEBUG_ENABLED = False
_QUIET_MODE = False

# Worker slots log concurrently; tqdm.write keeps lines clear of progress bars
_OUTPUT_LOCK = threading.Lock()


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


def _init_debug_mode():
    global _DEBUG_ENABLED
    if os.getenv('DEBUG', '').lower() in ('1', 'true', 'yes'):
        _DEBUG_ENABLED = True

_init_debug_mode()


def set_debug_mode(enabled: bool):
    """Enable or disable debug mode globally"""
    global _DEBUG_ENABLED
    _DEBUG_ENABLED = enabled


def set_quiet_mode(enabled: bool):
    """Enable or disable quiet mode (suppress INFO and progress messages; results still print)"""
    global _QUIET_MODE
    _QUIET_MODE = enabled


def _emit(line: str):
    with _OUTPUT_LOCK:
        tqdm.write(line)


class Logger:
    """Centralized logger with consistent formatting and configurable output"""

    def __init__(self, module_name: str = ""):
        self.module_name = module_name
        self.prefix = f"[{module_name}] " if module_name else ""

    def _should_log(self, level: LogLevel) -> bool:
        """Check if message should be logged based on current settings"""
        if level == LogLevel.DEBUG:
            return _DEBUG_ENABLED
        return not (_QUIET_MODE and level == LogLevel.INFO)

    def _log(self, level: str, message: str):
        log_level = LogLevel.INFO
        if level == "DEBUG":
            log_level = LogLevel.DEBUG
        elif level == "WARN":
            log_level = LogLevel.WARN
        elif level == "ERROR":
            log_level = LogLevel.ERROR

        if not self._should_log(log_level):
            return

        _emit(f"[{level}] {self.prefix}{message}")

    def _tagged(self, tag: str, message: str, level: LogLevel = LogLevel.INFO):
        if self._should_log(level):
            _emit(f"[{tag}] {message}")

    def debug(self, message: str):
        """Log debug message (only if debug mode enabled)"""
        if _DEBUG_ENABLED:
            self._log("DEBUG", message)

    def info(self, message: str):
        """Log informational message"""
        self._log("INFO", message)

    def warn(self, message: str):
        """Log warning message"""
        self._log("WARN", message)

    def error(self, message: str):
        """Log error message"""
        self._log("ERROR", message)

    def result(self, message: str):
        """Log result message"""
        self._tagged("RESULT", f"{self.prefix}{message}", LogLevel.WARN)

    # Domain-specific logging methods
    def search(self, message: str):
        """Log quality search message"""
        self._tagged("SEARCH", message)

    def trial(self, message: str):
        """Log a single search trial"""
        self._tagged("TRIAL", message)

    def worker(self, message: str):
        """Log worker slot message"""
        self._tagged("WORKER", message)

    def assembly(self, message: str):
        """Log encode/grain/mux step message"""
        self._tagged("ASSEMBLY", message)

    def cleanup(self, message: str):
        """Log cleanup operation"""
        self._tagged("CLEANUP", message)

    def cmd(self, message: str):
        """Log command execution message"""
        self._tagged("CMD", message, LogLevel.DEBUG)


def get_logger(module_name: str = "") -> Logger:
    """Get a logger instance for a module"""
    return Logger(module_name)


def create_progress_bar(total: Optional[int] = None, desc: str = "", unit: str = "it",
                        position: Optional[int] = None, leave: bool = True) -> tqdm:
    """Create a progress bar with consistent styling"""
    return tqdm(total=total, desc=desc, unit=unit, position=position, leave=leave)


def print_section_header(title: str, width: int = 90):
    """Print a section header with consistent formatting"""
    _emit("=" * width)
    _emit(title)
    _emit("=" * width)


def print_separator(width: int = 90):
    """Print a separator line"""
    _emit("-" * width)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to a human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"
