from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Tuple

logger = logging.getLogger(__name__)

CPU = "none"


@dataclass(frozen=True)
class CodecProfile:
    """Encoder flags for one acceleration mode.

    ``quality_flags`` are per-output-stream option names; each gets the
    rung's quality value (e.g. ``-crf:v:1 23``). ``options`` are passed to
    ``ffmpeg.output`` as keyword arguments.
    """

    name: str
    encoder: str
    quality_flags: Tuple[str, ...]
    options: Mapping[str, str] = field(default_factory=dict)

    def stream_quality_options(self, stream_index: int, quality: int) -> Dict[str, int]:
        return {f"{flag}:v:{stream_index}": quality for flag in self.quality_flags}


PROFILES: Dict[str, CodecProfile] = {
    CPU: CodecProfile(
        name=CPU,
        encoder="libx264",
        quality_flags=("crf",),
        options={"preset": "veryfast", "profile:v": "main", "level": "4.0", "pix_fmt": "yuv420p"},
    ),
    "nvenc": CodecProfile(
        name="nvenc",
        encoder="h264_nvenc",
        quality_flags=("cq",),
        options={"preset": "p4", "rc": "vbr", "profile:v": "main", "pix_fmt": "yuv420p"},
    ),
    "qsv": CodecProfile(
        name="qsv",
        encoder="h264_qsv",
        quality_flags=("global_quality",),
        options={"preset": "veryfast", "profile:v": "main"},
    ),
    "amf": CodecProfile(
        name="amf",
        encoder="h264_amf",
        quality_flags=("qp_i", "qp_p"),
        options={"rc": "cqp", "quality": "speed", "profile:v": "main"},
    ),
}


def detect_nvidia_gpus() -> List[int]:
    try:
        out = subprocess.check_output([
            "nvidia-smi",
            "--query-gpu=index",
            "--format=csv,noheader"
        ], stderr=subprocess.DEVNULL, text=True)
        return [int(x.strip()) for x in out.strip().splitlines() if x.strip().isdigit()]
    except (OSError, subprocess.CalledProcessError):
        return []


def normalize_mode(hw: str) -> str:
    """Map a configured selector to a known mode; unknown values mean CPU."""
    hw = (hw or CPU).strip().lower()
    if hw in ("", "cpu", "off", "software"):
        return CPU
    if hw == "auto":
        return "nvenc" if detect_nvidia_gpus() else CPU
    if hw not in PROFILES:
        logger.warning("Unknown hwaccel %r, using CPU encoding", hw)
        return CPU
    return hw


def profile_for(hw: str) -> CodecProfile:
    return PROFILES[normalize_mode(hw)]
