"""
EncoderConfigBuilder: Centralized external command construction

Builds the argument lists for every external tool the orchestrator drives:
- av1an chunked encodes (fast trial encodes and the final full encode)
- ssimulacra2 scoring
- grav1synth film-grain synthesis
- mkvmerge final mux

Also holds the per-encoder profiles (quantizer range, resolvable step,
trial/final speed) and the ``EncodeSettings`` for a batch.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class EncoderProfile:
    """Encoder-specific constants for the quality search and encodes."""
    name: str
    binary: str
    quantizer_flag: str
    speed_flag: str
    quantizer_range: Tuple[float, float]
    parameter_step: float
    trial_speed: int
    final_speed: int
    extra_params: Tuple[str, ...] = ()

    def format_parameter(self, value: float) -> str:
        if self.parameter_step >= 1:
            return str(int(round(value)))
        return f"{value:g}"


ENCODER_PROFILES: Dict[str, EncoderProfile] = {
    "svt-av1": EncoderProfile(
        name="svt-av1",
        binary="SvtAv1EncApp",
        quantizer_flag="--crf",
        speed_flag="--preset",
        quantizer_range=(25.0, 55.0),
        parameter_step=0.25,
        trial_speed=8,
        final_speed=4,
        extra_params=("--tune", "3", "--sharpness", "2", "--variance-boost-strength", "4",
                      "--variance-octile", "4", "--frame-luma-bias", "100", "--keyint", "0",
                      "--enable-dlf", "2", "--enable-cdef", "0", "--enable-restoration", "0",
                      "--enable-tf", "0"),
    ),
    "rav1e": EncoderProfile(
        name="rav1e",
        binary="rav1e",
        quantizer_flag="--quantizer",
        speed_flag="-s",
        quantizer_range=(40.0, 160.0),
        parameter_step=1.0,
        trial_speed=10,
        final_speed=2,
        extra_params=("--tiles", "8", "--keyint", "0", "--no-scene-detection"),
    ),
}


def get_encoder_profile(encoder: str) -> EncoderProfile:
    try:
        return ENCODER_PROFILES[encoder]
    except KeyError:
        raise ValueError(f"Unsupported encoder: {encoder} (choose from {', '.join(ENCODER_PROFILES)})")


@dataclass
class EncodeSettings:
    """Batch-wide settings shared by search, assembly and scheduling."""
    encoder: str = "svt-av1"
    target_score: float = 80.0
    tolerance: float = 1.0
    quantizer_range: Optional[Tuple[float, float]] = None
    score_decreases_with_parameter: bool = True
    max_iterations: int = 8
    max_retries: int = 1
    encoder_workers: int = field(default_factory=lambda: os.cpu_count() or 4)
    source_filter: str = "bestsource"
    pixel_format: str = "yuv420p10le"
    metric_tool: str = "ssimulacra2_rs"
    metric_cycle: int = 10
    score_range: Tuple[float, float] = (0.0, 100.0)
    grain_synthesis: bool = True
    photon_noise: int = 400
    track_name: str = "BD"
    trial_timeout: Optional[float] = 7200.0
    score_timeout: Optional[float] = 3600.0
    encode_timeout: Optional[float] = None
    grain_timeout: Optional[float] = 1800.0
    mux_timeout: Optional[float] = 1800.0
    keep_temp: bool = False

    def __post_init__(self):
        get_encoder_profile(self.encoder)
        if self.quantizer_range is not None:
            low, high = self.quantizer_range
            if not low <= high:
                raise ValueError(f"Empty quantizer range [{low}, {high}]")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @property
    def profile(self) -> EncoderProfile:
        return get_encoder_profile(self.encoder)

    @property
    def parameter_range(self) -> Tuple[float, float]:
        return self.quantizer_range or self.profile.quantizer_range

    @property
    def parameter_step(self) -> float:
        return self.profile.parameter_step

    def required_tools(self) -> List[str]:
        tools = ["av1an", self.profile.binary, self.metric_tool, "mkvmerge"]
        if self.grain_synthesis:
            tools.append("grav1synth")
        return tools

    @classmethod
    def from_config(cls, config: Dict[str, Any], **overrides) -> 'EncodeSettings':
        """Build settings from ``target_encode.config.get_config()`` output."""
        keys = {
            'encoder', 'target_score', 'tolerance', 'max_iterations', 'max_retries',
            'encoder_workers', 'metric_cycle', 'photon_noise', 'grain_synthesis',
            'trial_timeout', 'score_timeout', 'encode_timeout', 'mux_timeout', 'keep_temp',
        }
        values = {k: v for k, v in config.items() if k in keys}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class EncoderConfigBuilder:
    """Builds external tool commands with consistent configuration across all stages."""

    def __init__(self, settings: EncodeSettings):
        self.settings = settings
        self.profile = settings.profile

    def video_params(self, parameter: float, speed: int) -> str:
        """Encoder parameter string passed to av1an with ``-v``."""
        parts = [
            self.profile.quantizer_flag, self.profile.format_parameter(parameter),
            self.profile.speed_flag, str(speed),
            *self.profile.extra_params,
        ]
        return " ".join(parts)

    def _av1an_cmd(self, source: Path, output: Path, temp_dir: Path, parameter: float,
                   speed: int, resume: bool, scenes: Optional[Path] = None) -> List[str]:
        cmd = [
            "av1an",
            "-i", str(source),
            "-o", str(output),
            "--temp", str(temp_dir),
            "--verbose",
            "-w", str(self.settings.encoder_workers),
        ]
        if scenes is not None:
            cmd += ["--scenes", str(scenes)]
        cmd += [
            "--sc-downscale-height", "360",
            "-e", self.profile.name,
            "-v", self.video_params(parameter, speed),
            "-m", self.settings.source_filter,
            "-c", "mkvmerge",
            "--pix-format", self.settings.pixel_format,
            "-y",
        ]
        if resume:
            cmd.append("--resume")
        return cmd

    def build_scene_cmd(self, source: Path, scenes: Path, temp_dir: Path) -> List[str]:
        """Scene detection only; trials and the full encode reuse the scenes file."""
        return [
            "av1an",
            "-i", str(source),
            "--temp", str(temp_dir),
            "--verbose",
            "--scenes", str(scenes),
            "--sc-only",
            "--sc-downscale-height", "360",
            "-e", self.profile.name,
            "-m", self.settings.source_filter,
            "-y",
        ]

    def build_trial_cmd(self, source: Path, output: Path, temp_dir: Path, parameter: float,
                        scenes: Optional[Path] = None) -> List[str]:
        """Fast-preset trial encode used during the quality search."""
        return self._av1an_cmd(source, output, temp_dir, parameter, self.profile.trial_speed,
                               resume=False, scenes=scenes)

    def build_full_cmd(self, source: Path, output: Path, temp_dir: Path, parameter: float,
                       scenes: Optional[Path] = None) -> List[str]:
        """Full-quality chunked encode at the converged parameter; resumable."""
        return self._av1an_cmd(source, output, temp_dir, parameter, self.profile.final_speed,
                               resume=True, scenes=scenes)

    def build_score_cmd(self, reference: Path, candidate: Path) -> List[str]:
        return [
            self.settings.metric_tool, "video",
            str(reference), str(candidate),
            "--increment", str(self.settings.metric_cycle),
        ]

    def build_grain_cmd(self, encoded: Path, grained: Path) -> List[str]:
        return [
            "grav1synth", "generate", str(encoded),
            "-o", str(grained),
            "--iso", str(self.settings.photon_noise),
        ]

    def build_mux_cmd(self, video: Path, source: Path, output: Path, tags: Optional[Path] = None) -> List[str]:
        """Encoded video first, then every non-video track of the source in source order.

        mkvmerge copies chapters, attachments and global tags from the source input
        and keeps track languages, names and flags.
        """
        cmd = ["mkvmerge", "--output", str(output)]
        cmd += ["--language", "0:und", "--track-name", f"0:{self.settings.track_name}"]
        if tags is not None:
            cmd += ["--tags", f"0:{tags}"]
        cmd += ["--no-audio", "--no-subtitles", "--no-chapters", str(video)]
        cmd += ["--no-video", str(source)]
        return cmd

    def describe_encoder_settings(self, parameter: Optional[float] = None) -> str:
        """Human-readable encoder settings for the output tags."""
        if parameter is None:
            low, high = self.settings.parameter_range
            quantizer = f"{low:.1f}-{high:.1f}"
        else:
            quantizer = self.profile.format_parameter(parameter)
        parts = [self.profile.quantizer_flag, quantizer, self.profile.speed_flag,
                 str(self.profile.final_speed), *self.profile.extra_params]
        return f"{self.profile.name}: \"{' '.join(parts)}\""

    def build_tags_xml(self, parameter: Optional[float]) -> str:
        """Matroska global tags describing how the video was produced."""
        entries = [
            ("Target SSIMULACRA 2", f"Mean: {self.settings.target_score:g}"),
            ("Encoder settings", self.describe_encoder_settings(parameter)),
        ]
        if self.settings.grain_synthesis:
            entries.append(("Film grain synthesis settings", f"grav1synth: --iso {self.settings.photon_noise}"))

        lines = ["<Tags>"]
        for name, value in entries:
            lines += [
                "  <Tag>",
                "    <Simple>",
                f"      <Name>{_xml_escape(name)}</Name>",
                f"      <String>{_xml_escape(value)}</String>",
                "    </Simple>",
                "  </Tag>",
            ]
        lines.append("</Tags>")
        return "\n".join(lines) + "\n"


def _xml_escape(text: str) -> str:
    return (text.replace("&", "&amp;").replace("<", "&lt;")
            .replace(">", "&gt;").replace('"', "&quot;"))
