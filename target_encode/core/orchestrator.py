"""
Batch orchestration for target_encode.

Wires the modular components into one batch run:
- preflight check for every external tool
- process supervisor shared by all worker slots
- quality search (trial encoder + metric scorer)
- assembly pipeline
- worker pool scheduler
"""

import threading
from typing import Optional, Sequence

from .modules.analysis.metric_scorer import MetricScorer
from .modules.optimization.quality_search import QualitySearchEngine, TrialEncoder
from .modules.processing.assembly_pipeline import AssemblyPipeline
from .modules.processing.encoder_config import EncodeSettings
from .modules.processing.job import Job
from .modules.processing.scheduler import BatchResult, ProgressCallback, WorkerPoolScheduler
from .modules.system.process_supervisor import ProcessSupervisor
from .modules.system.system_utils import check_required_tools
from ..utils.logging import get_logger

logger = get_logger("orchestrator")


def build_scheduler(settings: EncodeSettings, supervisor: Optional[ProcessSupervisor] = None,
                    progress_callback: Optional[ProgressCallback] = None,
                    cancel_event: Optional[threading.Event] = None) -> WorkerPoolScheduler:
    """Assemble the search engine, assembly pipeline and scheduler around one supervisor."""
    supervisor = supervisor or ProcessSupervisor()
    scorer = MetricScorer(supervisor, settings)
    engine = QualitySearchEngine(TrialEncoder(supervisor, settings), scorer, settings, keep_records=True)
    assembly = AssemblyPipeline(supervisor, settings)
    return WorkerPoolScheduler(engine, assembly, supervisor,
                               progress_callback=progress_callback, cancel_event=cancel_event)


def run_batch(jobs: Sequence[Job], worker_count: int, settings: EncodeSettings,
              progress_callback: Optional[ProgressCallback] = None,
              cancel_event: Optional[threading.Event] = None,
              supervisor: Optional[ProcessSupervisor] = None,
              check_tools: bool = True) -> BatchResult:
    """Run every job to a terminal state on ``worker_count`` concurrent slots.

    Raises ToolMissingError before any job starts when an external tool is not
    on PATH. Every other failure is recorded against its job in the returned
    BatchResult, which holds exactly one entry per job.
    """
    if check_tools:
        tools = check_required_tools(settings.required_tools())
        for name, path in tools.items():
            logger.debug(f"{name}: {path}")

    scheduler = build_scheduler(settings, supervisor, progress_callback, cancel_event)
    return scheduler.run_batch(jobs, worker_count)
