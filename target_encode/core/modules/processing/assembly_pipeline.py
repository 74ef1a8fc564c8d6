"""
Assembly pipeline for target_encode.

Once a job's parameter has converged, turns the source into the final
deliverable through a fixed sequence of named stages:

1. encode   - full chunked av1an encode at the converged parameter (resumable)
2. grain    - optional grav1synth photon-noise grain synthesis
3. mux      - tags XML + mkvmerge of the new video with the source's audio,
              subtitles, chapters and attachments into ``<output>.partial``
4. finalize - atomic rename of the partial file onto the output path

Each stage moves the job to its state before running. A stage whose output
file is already present from an interrupted run is not repeated. Transient
tool failures are retried per stage; anything else raises AssemblyError and
the partial output is removed so the destination never holds a half-written
file.
"""

import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .encoder_config import EncodeSettings, EncoderConfigBuilder
from .job import Job, JobState
from ..errors import AssemblyError, ErrorKind, JobCancelled, ToolError
from ..system.process_supervisor import ProcessSupervisor, require_success
from ..system.system_utils import SCENES_SUFFIX, SEARCH_RECORD_SUFFIX, remove_path, temp_path
from ....utils.logging import get_logger, format_duration

logger = get_logger("assembly")

Transition = Callable[[Job, JobState], None]


@dataclass
class AssemblyStage:
    """One named step of the pipeline and the job state it runs under."""
    name: str
    state: JobState
    run: Callable[[Job, 'AssemblyContext'], None]
    enabled: bool = True
    output: Optional[str] = None  # AssemblyContext attribute holding the video this stage writes


@dataclass
class AssemblyContext:
    """Per-job intermediate paths; private to the slot running the job."""
    parameter: float
    encoded: Path
    encode_temp: Path
    grained: Path
    tags: Path
    scenes: Path
    search_record: Path
    partial: Path
    video: Optional[Path] = None
    cancel_event: Optional[threading.Event] = None
    durations: Dict[str, float] = field(default_factory=dict)

    def intermediates(self) -> List[Path]:
        return [self.encoded, self.encode_temp, self.grained, self.tags, self.scenes, self.search_record]


class AssemblyPipeline:
    """Full encode, optional grain re-synthesis and mux for converged jobs."""

    def __init__(self, supervisor: ProcessSupervisor, settings: EncodeSettings):
        self.supervisor = supervisor
        self.settings = settings
        self.builder = EncoderConfigBuilder(settings)

    def stages(self) -> List[AssemblyStage]:
        return [
            AssemblyStage("encode", JobState.ENCODING, self._encode, output="encoded"),
            AssemblyStage("grain", JobState.GRAIN_REAPPLYING, self._reapply_grain,
                          enabled=self.settings.grain_synthesis, output="grained"),
            AssemblyStage("mux", JobState.MUXING, self._mux),
            AssemblyStage("finalize", JobState.MUXED, self._finalize),
        ]

    def context_for(self, job: Job, parameter: float,
                    cancel_event: Optional[threading.Event] = None) -> AssemblyContext:
        # parameter in the names so a rerun at another parameter never reuses a stale encode
        tag = self.settings.profile.format_parameter(parameter)
        return AssemblyContext(
            parameter=parameter,
            encoded=temp_path(job.source, f"_enc_{tag}.mkv"),
            encode_temp=temp_path(job.source, f"_enc_{tag}"),
            grained=temp_path(job.source, f"_grained_{tag}.mkv"),
            tags=temp_path(job.source, "_tags.xml"),
            scenes=temp_path(job.source, SCENES_SUFFIX),
            search_record=temp_path(job.source, SEARCH_RECORD_SUFFIX),
            partial=job.output_path.with_name(job.output_path.name + ".partial"),
            cancel_event=cancel_event,
        )

    def assemble(self, job: Job, parameter: float, transition: Transition,
                 cancel_event: Optional[threading.Event] = None) -> Path:
        """Run every enabled stage in order; returns the final output path."""
        ctx = self.context_for(job, parameter, cancel_event)
        current: Optional[AssemblyStage] = None
        try:
            for stage in self.stages():
                if not stage.enabled:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    raise JobCancelled(f"assembly of {job.name} cancelled before {stage.name}")
                transition(job, stage.state)
                if self._reuse_output(job, stage, ctx):
                    continue
                current = stage
                started = time.monotonic()
                self._run_stage(job, stage, ctx)
                current = None
                ctx.durations[stage.name] = time.monotonic() - started
                logger.assembly(f"{job.name}: {stage.name} done in {format_duration(ctx.durations[stage.name])}")
        except BaseException:
            if current is not None and current.output:
                # a stage killed mid-write must not look finished to the next run
                remove_path(getattr(ctx, current.output))
            self._discard_partial(ctx)
            raise

        transition(job, JobState.DONE)
        if not self.settings.keep_temp:
            for path in ctx.intermediates():
                remove_path(path)
        return job.output_path

    def _reuse_output(self, job: Job, stage: AssemblyStage, ctx: AssemblyContext) -> bool:
        """Pick up a stage output left by an earlier run of the same job."""
        if not stage.output:
            return False
        path: Path = getattr(ctx, stage.output)
        if not path.is_file() or path.stat().st_size == 0:
            return False
        ctx.video = path
        logger.assembly(f"{job.name}: {stage.name} output {path.name} exists, reusing it")
        return True

    def _run_stage(self, job: Job, stage: AssemblyStage, ctx: AssemblyContext):
        attempts = 0
        while True:
            attempts += 1
            try:
                stage.run(job, ctx)
                return
            except ToolError as e:
                if e.kind is ErrorKind.CANCELLED:
                    raise JobCancelled(f"{stage.name} of {job.name} cancelled") from e
                if e.kind.transient and attempts <= self.settings.max_retries:
                    logger.warn(f"{job.name}: {stage.name} failed ({e}); retrying")
                    continue
                raise AssemblyError(f"{job.name}: {stage.name} failed: {e}", stage.name, e.kind) from e
            except OSError as e:
                raise AssemblyError(f"{job.name}: {stage.name} failed: {e}", stage.name) from e

    def _tool(self, cmd: List[str], timeout: Optional[float], ctx: AssemblyContext):
        outcome = self.supervisor.run(cmd[0], cmd[1:], timeout=timeout,
                                      cancel_event=ctx.cancel_event)
        return require_success(outcome, cmd[0])

    def _expect_file(self, path: Path, tool: str):
        if not path.exists() or path.stat().st_size == 0:
            raise ToolError(f"{tool} produced no output file: {path.name}", ErrorKind.TOOL_CRASHED)

    def _encode(self, job: Job, ctx: AssemblyContext):
        cmd = self.builder.build_full_cmd(job.reference_media, ctx.encoded, ctx.encode_temp,
                                          ctx.parameter, ctx.scenes)
        self._tool(cmd, self.settings.encode_timeout, ctx)
        self._expect_file(ctx.encoded, cmd[0])
        ctx.video = ctx.encoded

    def _reapply_grain(self, job: Job, ctx: AssemblyContext):
        cmd = self.builder.build_grain_cmd(ctx.encoded, ctx.grained)
        self._tool(cmd, self.settings.grain_timeout, ctx)
        self._expect_file(ctx.grained, cmd[0])
        ctx.video = ctx.grained

    def _mux(self, job: Job, ctx: AssemblyContext):
        ctx.tags.write_text(self.builder.build_tags_xml(ctx.parameter), encoding="utf-8")
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        video = ctx.video or ctx.encoded
        cmd = self.builder.build_mux_cmd(video, job.source, ctx.partial, tags=ctx.tags)
        outcome = self.supervisor.run(cmd[0], cmd[1:], timeout=self.settings.mux_timeout,
                                      cancel_event=ctx.cancel_event)
        # mkvmerge exits 1 for warnings with a complete output file
        if getattr(outcome, "exit_code", None) == 1 and ctx.partial.exists():
            logger.warn(f"{job.name}: mkvmerge finished with warnings")
        else:
            require_success(outcome, cmd[0])
        self._expect_file(ctx.partial, cmd[0])

    def _finalize(self, job: Job, ctx: AssemblyContext):
        os.replace(ctx.partial, job.output_path)
        logger.result(f"{job.name} -> {job.output_path}")

    def _discard_partial(self, ctx: AssemblyContext):
        if remove_path(ctx.partial):
            logger.cleanup(f"removed partial output {ctx.partial.name}")
