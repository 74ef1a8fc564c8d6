"""
Command-line batch runner for target_encode.

Discovers the sources in an input directory, runs the quality-targeted
encode batch on a pool of worker slots and prints a per-job report.

Exit codes: 0 when every job is done, 1 when any job failed or was
cancelled, 2 when a required external tool is missing.
"""

import argparse
import sys
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from ..config import get_config
from .orchestrator import run_batch
from .modules.errors import ToolMissingError
from .modules.processing.encoder_config import ENCODER_PROFILES, EncodeSettings
from .modules.processing.file_manager import DEFAULT_EXTENSIONS, FileManager
from .modules.processing.job import JobState, ProgressEvent
from .modules.processing.scheduler import BatchResult
from .modules.system.interrupt_manager import InterruptManager
from .modules.system.system_utils import cleanup_temp_files, format_size
from ..utils.logging import (
    create_progress_bar, format_duration, get_logger, print_section_header,
    print_separator, set_debug_mode, set_quiet_mode,
)

logger = get_logger("main")

EXIT_OK = 0
EXIT_JOB_FAILURES = 1
EXIT_TOOL_MISSING = 2


def parse_quantizer_range(value: str) -> Tuple[float, float]:
    """Parse ``LOW-HIGH`` or ``LOW,HIGH`` into a bounded range."""
    separator = "," if "," in value else "-"
    parts = value.split(separator)
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"expected LOW-HIGH, got {value!r}")
    try:
        low, high = float(parts[0]), float(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected numeric bounds, got {value!r}")
    if not low <= high:
        raise argparse.ArgumentTypeError(f"empty range {value!r}")
    return low, high


def build_parser(config: dict) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Target Encode - AV1 batch encoding to a target SSIMULACRA2 score")

    # Input/output
    parser.add_argument("-i", "--input", required=True, help="Directory of source videos")
    parser.add_argument("-o", "--output", required=True, help="Directory for encoded .mkv files")

    # Quality settings
    parser.add_argument("--target-quality", type=float, default=config['target_score'],
                        help=f"Target SSIMULACRA2 score (default: {config['target_score']:g})")
    parser.add_argument("--tolerance", type=float, default=config['tolerance'],
                        help=f"Accepted distance from the target score (default: {config['tolerance']:g})")

    # Encoder settings
    parser.add_argument("--encoder", choices=sorted(ENCODER_PROFILES), default=config['encoder'],
                        help=f"AV1 encoder (default: {config['encoder']})")
    parser.add_argument("--quantizer-range", type=parse_quantizer_range, metavar="LOW-HIGH",
                        help="Quantizer search range (default: encoder specific)")
    parser.add_argument("--no-grain", action="store_true",
                        help="Skip photon-noise grain synthesis")
    parser.add_argument("--photon-noise", type=int, default=config['photon_noise'],
                        help=f"grav1synth ISO strength (default: {config['photon_noise']})")

    # Processing options
    parser.add_argument("-w", "--workers", type=int, default=config['workers'],
                        help=f"Number of concurrent jobs (default: {config['workers']})")
    parser.add_argument("--extensions", default=DEFAULT_EXTENSIONS,
                        help=f"Comma-separated source extensions (default: {DEFAULT_EXTENSIONS})")
    parser.add_argument("--keep-temp", action="store_true", default=config['keep_temp'],
                        help="Keep trial encodes and intermediate files")
    parser.add_argument("--report", type=Path, help="Write a JSON batch report to this path")
    parser.add_argument("--debug", action="store_true", default=config['debug'],
                        help="Enable debug output")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only print warnings, errors and the final report")
    return parser


def print_report(result: BatchResult):
    """Per-job table followed by state counts."""
    print_section_header("BATCH REPORT")
    for r in result.results():
        name = Path(r.source).name
        parameter = "-" if r.parameter is None else f"{r.parameter:g}"
        score = "-" if r.score is None else f"{r.score:.2f}"
        line = f"{name:<40} {r.state.value:<16} q={parameter:<7} score={score:<7} trials={r.trials}"
        if r.output_path and Path(r.output_path).exists():
            line += f" size={format_size(Path(r.output_path).stat().st_size)}"
        if r.out_of_range:
            line += " (target out of range)"
        if r.error_message and not r.succeeded:
            line += f"\n    {r.error_kind.value if r.error_kind else 'error'}: {r.error_message}"
        logger.result(line)
    print_separator()
    counts = ", ".join(f"{state}: {count}" for state, count in sorted(result.summary().items()))
    elapsed = (result.finished_at or result.started_at) - result.started_at
    logger.result(f"{len(result)} jobs in {format_duration(elapsed)} ({counts})")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the batch encoder."""
    config = get_config()
    args = build_parser(config).parse_args(argv)

    if args.debug:
        set_debug_mode(True)
    if args.quiet:
        set_quiet_mode(True)

    if args.workers < 1:
        logger.error("--workers must be at least 1")
        return EXIT_JOB_FAILURES

    try:
        settings = EncodeSettings.from_config(
            config,
            encoder=args.encoder,
            target_score=args.target_quality,
            tolerance=args.tolerance,
            quantizer_range=args.quantizer_range,
            photon_noise=args.photon_noise,
            grain_synthesis=False if args.no_grain else None,
            keep_temp=args.keep_temp,
        )
        discovery = FileManager(settings, debug=args.debug).discover_jobs(
            Path(args.input), Path(args.output), args.extensions)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_JOB_FAILURES

    jobs = discovery.jobs
    if not jobs:
        logger.info("No video files to encode")
        return EXIT_OK

    low, high = settings.parameter_range
    logger.info(f"Encoder: {settings.encoder}, target {settings.target_score:g} ±{settings.tolerance:g}, "
                f"quantizer [{low:g}, {high:g}], {args.workers} workers")

    cancel_event = threading.Event()
    interrupts = InterruptManager(cancel_event)
    progress = create_progress_bar(total=len(jobs), desc="Batch", unit="job")
    progress_lock = threading.Lock()

    def on_progress(event: ProgressEvent):
        logger.debug(f"{Path(event.source).name}: {event.state.value} (slot {event.slot_index})")
        if event.state.terminal:
            with progress_lock:
                progress.update(1)

    try:
        result = run_batch(jobs, args.workers, settings,
                           progress_callback=on_progress, cancel_event=cancel_event)
    except ToolMissingError as e:
        logger.error(str(e))
        return EXIT_TOOL_MISSING
    finally:
        progress.close()
        interrupts.restore()
        if not settings.keep_temp:
            cleanup_temp_files()

    print_report(result)
    if args.report:
        result.save(args.report)
        logger.info(f"Report written to {args.report}")

    if all(r.state is JobState.DONE for r in result.results()) and len(result) == len(jobs):
        return EXIT_OK
    return EXIT_JOB_FAILURES


if __name__ == "__main__":
    sys.exit(main())
