from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_TIME = 6
DEFAULT_CONCURRENCY = 2
DEFAULT_FONT = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"
MIN_SESSION_SEGMENT_TIME = 2


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %d", name, raw, default)
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class PipelineConfig:
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    tmp_dir: Path = Path("tmp")
    media_dir: Path = Path("media")
    upload_dir: Path = Path("uploads/original")
    fallback_dir: Path = Path("uploads")
    hls_root: Path = Path("hls_tmp")
    hls_segment_seconds: int = DEFAULT_SEGMENT_TIME
    watermark_font: Path = Path(DEFAULT_FONT)
    hwaccel: str = "none"
    concurrency: int = DEFAULT_CONCURRENCY
    assumed_fps: float = 30.0
    session_ttl_seconds: int = 3600
    playlist_wait_seconds: float = 30.0
    probe_cache_ttl: float = 300.0
    metrics_port: int = 0

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        env = os.environ if env is None else env
        return PipelineConfig(
            ffmpeg_bin=env.get("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=env.get("FFPROBE_BIN", "ffprobe"),
            tmp_dir=Path(env.get("TMP_DIR", "tmp")),
            media_dir=Path(env.get("MEDIA_DIR", "media")),
            upload_dir=Path(env.get("UPLOAD_DIR", "uploads/original")),
            fallback_dir=Path(env.get("UPLOAD_FALLBACK_DIR", "uploads")),
            hls_root=Path(env.get("HLS_ROOT", "hls_tmp")),
            hls_segment_seconds=_env_int(env, "HLS_SEGMENT_SECONDS", DEFAULT_SEGMENT_TIME),
            watermark_font=Path(env.get("WATERMARK_FONT", DEFAULT_FONT)),
            hwaccel=env.get("HWACCEL", "none"),
            concurrency=_env_int(env, "TRANSCODE_CONCURRENCY", DEFAULT_CONCURRENCY),
            assumed_fps=_env_float(env, "ASSUMED_FPS", 30.0),
            session_ttl_seconds=_env_int(env, "HLS_SESSION_TTL", 3600),
            playlist_wait_seconds=_env_float(env, "HLS_PLAYLIST_WAIT", 30.0),
            probe_cache_ttl=_env_float(env, "PROBE_CACHE_TTL", 300.0),
            metrics_port=_env_int(env, "METRICS_PORT", 0),
        )

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with every non-None override applied (CLI flags)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    @property
    def worker_count(self) -> int:
        return max(1, int(self.concurrency))

    @property
    def session_segment_seconds(self) -> int:
        return max(MIN_SESSION_SEGMENT_TIME, int(self.hls_segment_seconds))

    def video_hls_dir(self, video_id: str) -> Path:
        return self.media_dir / video_id

    def scratch_path(self, video_id: str) -> Path:
        return self.tmp_dir / f"{video_id}.faststart.mp4"
