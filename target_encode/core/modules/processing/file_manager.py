"""
File discovery for target_encode.

Turns an input directory into an ordered list of Jobs:
- video extension filtering
- hidden file and intermediate artifact filtering (trial encodes, full
  encodes and grain passes left behind by an interrupted run)
- skipping sources whose output already exists, so a rerun only picks up
  unfinished work
- skipping sources whose output name is already taken by an earlier source
  (``ep01.mkv`` and ``ep01.mp4`` both map to ``ep01.mkv``)
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from .encoder_config import EncodeSettings
from .job import Job
from ....utils.logging import get_logger

logger = get_logger("file_manager")

DEFAULT_EXTENSIONS = "mkv,mp4,mov,ts,m2ts,webm"

# Videos the pipeline writes next to sources: <source name>_<kind>_<parameter>.mkv
_ARTIFACT_PATTERN = re.compile(r"\.[a-z0-9]+_(trial|enc|grained)_\d+(\.\d+)?\.mkv$")


@dataclass
class FileDiscoveryResult:
    """Result of file discovery operation."""
    jobs: List[Job] = field(default_factory=list)
    skipped_files: List[Tuple[Path, str]] = field(default_factory=list)  # (file, reason)
    hidden_files_skipped: int = 0
    total_files_found: int = 0


class FileManager:
    """Discovers source files and builds jobs for a batch."""

    def __init__(self, settings: EncodeSettings, debug: bool = False):
        self.settings = settings
        self.debug = debug

    def discover_jobs(self, input_dir: Path, output_dir: Path,
                      extensions: str = DEFAULT_EXTENSIONS) -> FileDiscoveryResult:
        """
        Discover video files and create one pending Job per source.

        Args:
            input_dir: Directory holding the sources
            output_dir: Directory receiving ``<stem>.mkv`` outputs
            extensions: Comma-separated list of extensions

        Returns:
            FileDiscoveryResult with jobs in name order and skipped files
        """
        input_dir = Path(input_dir)
        output_dir = Path(output_dir)
        if not input_dir.is_dir():
            raise ValueError(f"Input directory not found: {input_dir}")

        suffixes = {f".{ext.strip().lower().lstrip('.')}" for ext in extensions.split(",") if ext.strip()}
        files: List[Path] = sorted((f for f in input_dir.iterdir() if f.is_file() and f.suffix.lower() in suffixes),
                                   key=lambda f: str(f).lower())
        result = FileDiscoveryResult(total_files_found=len(files))

        visible = [f for f in files if not f.name.startswith('.')]
        result.hidden_files_skipped = len(files) - len(visible)

        low, high = self.settings.parameter_range
        claimed: Dict[Path, Path] = {}  # output path -> source that owns it
        for source in visible:
            if self.is_artifact(source):
                result.skipped_files.append((source, "intermediate file"))
                continue
            output = self.output_path_for(source, output_dir)
            key = output.resolve()
            if key == source.resolve():
                result.skipped_files.append((source, "output would overwrite source"))
                continue
            if output.exists():
                result.skipped_files.append((source, "output exists"))
                continue
            if key in claimed:
                logger.warn(f"{source.name}: output {output.name} already taken by {claimed[key].name}, skipping")
                result.skipped_files.append((source, f"output name taken by {claimed[key].name}"))
                continue
            claimed[key] = source
            result.jobs.append(Job(
                index=len(result.jobs),
                source=source,
                output_path=output,
                target_score=self.settings.target_score,
                tolerance=self.settings.tolerance,
                parameter_min=low,
                parameter_max=high,
            ))

        if self.debug:
            for path, reason in result.skipped_files:
                logger.debug(f"SKIP: {path.name} ({reason})")
        logger.info(f"Found {len(result.jobs)} sources to encode "
                    f"({len(result.skipped_files)} skipped, {result.hidden_files_skipped} hidden)")
        return result

    @staticmethod
    def output_path_for(source: Path, output_dir: Path) -> Path:
        return output_dir / f"{source.stem}.mkv"

    @staticmethod
    def is_artifact(file_path: Path) -> bool:
        """Check if a file is an intermediate written by a previous run."""
        name = file_path.name.lower()
        return name.endswith(".partial") or _ARTIFACT_PATTERN.search(name) is not None
