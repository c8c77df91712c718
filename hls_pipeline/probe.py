from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Optional

import ffmpeg

from .cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaInfo:
    height: Optional[int]
    has_audio: bool
    duration: Optional[float] = None
    fps: Optional[float] = None


UNKNOWN = MediaInfo(height=None, has_audio=False)


def parse_fps(stream: Dict[str, Any]) -> Optional[float]:
    """Best-effort FPS from avg_frame_rate or r_frame_rate."""
    fps_str = stream.get("avg_frame_rate") or stream.get("r_frame_rate") or "0/1"
    if not fps_str or fps_str == "N/A":
        return None
    try:
        num, den = str(fps_str).split("/")
        den_i = int(den or 1)
        if den_i == 0:
            return None
        value = float(Fraction(int(num or 0), den_i))
    except ValueError:
        return None
    return value or None


def media_info_from_probe(probe: Dict[str, Any]) -> MediaInfo:
    streams = probe.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)
    duration: Optional[float]
    try:
        duration = float(probe.get("format", {}).get("duration", 0)) or None
    except (TypeError, ValueError):
        duration = None
    if video is None:
        return MediaInfo(height=None, has_audio=has_audio, duration=duration)
    height = int(video.get("height", 0)) or None
    return MediaInfo(height=height, has_audio=has_audio, duration=duration, fps=parse_fps(video))


class Prober:
    """ffprobe wrapper with an injected result cache.

    Sessions probe the same source on every playback request, so results are
    keyed by path, mtime and size and kept for the cache's TTL.
    """

    def __init__(self, ffprobe_bin: str = "ffprobe", cache: Optional[TTLCache] = None) -> None:
        self.ffprobe_bin = ffprobe_bin
        self.cache = cache

    def probe_sync(self, input_path: Path) -> MediaInfo:
        try:
            probe = ffmpeg.probe(str(input_path), cmd=self.ffprobe_bin)
        except ffmpeg.Error as e:
            logger.warning(
                "ffprobe failed for %s: %s", input_path, e.stderr.decode() if e.stderr else str(e)
            )
            return UNKNOWN
        except OSError as e:
            logger.warning("ffprobe unavailable (%s): %s", self.ffprobe_bin, e)
            return UNKNOWN
        return media_info_from_probe(probe)

    async def probe(self, input_path: Path) -> MediaInfo:
        key = None
        if self.cache is not None:
            try:
                st = Path(input_path).stat()
                key = (str(Path(input_path).resolve()), st.st_mtime_ns, st.st_size)
            except OSError:
                key = None
        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        info = await asyncio.to_thread(self.probe_sync, Path(input_path))
        if key is not None and info is not UNKNOWN:
            self.cache.set(key, info)
        return info
