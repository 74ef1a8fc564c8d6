"""Batch orchestration and command-line entry point."""

from .orchestrator import build_scheduler, run_batch

__all__ = ["build_scheduler", "run_batch"]
