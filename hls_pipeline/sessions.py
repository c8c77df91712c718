from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .config import PipelineConfig
from .errors import (
    ConfigError,
    DirectoryError,
    InvalidPath,
    PipelineError,
    SessionStartTimeout,
    SourceNotFound,
)
from .filtergraph import MASTER_PLAYLIST, build_watermark_invocation
from .hwaccel import profile_for
from .monitoring import Metrics, default_metrics
from .probe import Prober
from .worker import MediaProber, Runner

logger = logging.getLogger(__name__)

WATERMARK_FILE = "wm.txt"
PLAYLIST_POLL_INTERVAL = 0.25

CONTENT_TYPES: Mapping[str, str] = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
}

_SAFE_TOKEN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_safe_token(value: str) -> bool:
    return bool(value) and _SAFE_TOKEN.match(value) is not None


def is_safe_file(name: str) -> bool:
    return (
        bool(name)
        and "/" not in name
        and "\\" not in name
        and ".." not in name
        and Path(name).suffix.lower() in CONTENT_TYPES
    )


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def watermark_text(viewer: str) -> str:
    # %-macros are expanded by the encoder on every frame; colons must stay escaped
    viewer = viewer.replace("%", "%%")
    return f"• @{viewer} • %Y-%m-%d %H\\:%M\\:%S"


def search_paths(name: str, config: PipelineConfig) -> List[Path]:
    """Candidate locations for a stored source, highest priority first."""
    candidates: List[Path] = []
    p = Path(name)
    if p.is_absolute():
        candidates.append(p)
    if str(config.upload_dir).strip():
        candidates.append(config.upload_dir / name)
    candidates.append(config.media_dir / name)
    candidates.append(config.fallback_dir / name)
    candidates.append(Path.cwd() / name)
    return candidates


def resolve_input_path(name: str, config: PipelineConfig) -> Path:
    searched = search_paths(name, config)
    for candidate in searched:
        if candidate.is_file():
            return candidate.absolute()
    raise SourceNotFound(name, searched)


@dataclass(frozen=True)
class PlaybackSession:
    session_id: str
    video_id: str
    directory: Path
    watermark_text: str
    created_at: float


@dataclass
class SessionHandle:
    session: PlaybackSession
    playlist: str
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def directory(self) -> Path:
        return self.session.directory


@dataclass(frozen=True)
class ServedFile:
    body: bytes
    content_type: str
    headers: Mapping[str, str]


class SessionManager:
    """Per-viewer watermarked HLS sessions.

    Each session owns ``hls_root/<session_id>``; its encoder writes an
    event playlist there which grows while the viewer watches.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: Runner,
        prober: Optional[MediaProber] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.prober = prober if prober is not None else Prober(config.ffprobe_bin)
        self.metrics = metrics if metrics is not None else default_metrics()
        self.profile = profile_for(config.hwaccel)
        self._running: Dict[str, "asyncio.Task[None]"] = {}

    @property
    def root(self) -> Path:
        return self.config.hls_root.absolute()

    def _create_session_dir(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DirectoryError(self.root, e.strerror or str(e)) from e
        session_id = uuid.uuid4().hex
        directory = self.root / session_id
        try:
            directory.mkdir()
        except OSError as e:
            raise DirectoryError(directory, e.strerror or str(e)) from e
        return directory

    async def start_session(
        self, video_id: str, viewer: str, source_name: Optional[str] = None
    ) -> SessionHandle:
        """Start a watermarked encode and return once its playlist exists.

        ``source_name`` is the stored filename of the video (defaults to
        ``video_id``). The caller is expected to have authorized ``viewer``
        already. The encode keeps running in ``handle.task`` after this
        returns.
        """
        # fail on config and source problems before touching the filesystem
        input_path = resolve_input_path(source_name or video_id, self.config)
        if not self.config.watermark_font.is_file():
            raise ConfigError(f"watermark font not found: {self.config.watermark_font}")

        directory = self._create_session_dir()
        session = PlaybackSession(
            directory.name, video_id, directory, watermark_text(viewer), time.time()
        )
        textfile = directory / WATERMARK_FILE
        textfile.write_text(session.watermark_text, encoding="utf-8")
        info = await self.prober.probe(input_path)

        invocation = build_watermark_invocation(
            input_path,
            session.directory,
            self.config.watermark_font,
            textfile,
            self.config.session_segment_seconds,
            self.profile,
            info.fps or self.config.assumed_fps,
        )
        logger.info(
            "Session %s: video %s (%s) for @%s", session.session_id, video_id, input_path.name, viewer
        )
        task = asyncio.create_task(
            self.runner.run(invocation.args, invocation.workdir),
            name=f"session-{session.session_id}",
        )
        self._running[session.session_id] = task
        task.add_done_callback(lambda t, sid=session.session_id: self._on_done(sid, t))

        await self._wait_for_playlist(session, task)
        self.metrics.inc_sessions()
        return SessionHandle(session, f"{session.session_id}/{MASTER_PLAYLIST}", task)

    def _on_done(self, session_id: str, task: "asyncio.Task[None]") -> None:
        self._running.pop(session_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session %s encode failed: %s", session_id, exc)
        else:
            logger.info("Session %s encode finished", session_id)

    async def _wait_for_playlist(self, session: PlaybackSession, task: "asyncio.Task[None]") -> None:
        playlist = session.directory / MASTER_PLAYLIST
        deadline = time.monotonic() + self.config.playlist_wait_seconds
        while not playlist.exists():
            if task.done():
                # raises the runner's EncodeError/SpawnError, if any
                task.result()
                raise PipelineError(f"session {session.session_id}: encoder exited without a playlist")
            if time.monotonic() >= deadline:
                task.cancel()
                raise SessionStartTimeout(session.session_id, self.config.playlist_wait_seconds)
            await asyncio.wait({task}, timeout=PLAYLIST_POLL_INTERVAL)

    def open_file(self, session_id: str, filename: str) -> ServedFile:
        if not is_safe_token(session_id) or not is_safe_file(filename):
            raise InvalidPath(f"invalid path: {session_id}/{filename}")
        body = (self.root / session_id / filename).read_bytes()
        return ServedFile(
            body=body,
            content_type=content_type_for(filename),
            headers={"Cache-Control": "no-store"},
        )

    def purge_expired(self, now: Optional[float] = None) -> List[str]:
        """Delete session directories older than the configured TTL."""
        if not self.root.is_dir():
            return []
        now = time.time() if now is None else now
        removed: List[str] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not is_safe_token(entry.name):
                continue
            if entry.name in self._running:
                continue
            age = now - entry.stat().st_mtime
            if age < self.config.session_ttl_seconds:
                continue
            shutil.rmtree(entry)
            removed.append(entry.name)
        if removed:
            logger.info("Purged %d expired session(s)", len(removed))
        return removed

    async def close(self) -> None:
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
