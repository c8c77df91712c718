from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Sequence, Set, Union

from .config import PipelineConfig
from .errors import DirectoryError, PipelineError, QueueClosed
from .filtergraph import (
    MASTER_PLAYLIST,
    EncodeInvocation,
    build_abr_invocation,
    build_faststart_invocation,
)
from .hwaccel import profile_for
from .ladder import DEFAULT_LADDER, DEFAULT_SOURCE_HEIGHT, plan
from .monitoring import Metrics, default_metrics
from .probe import MediaInfo, Prober

logger = logging.getLogger(__name__)


class ProcessingState(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class TranscodeJob:
    video_id: str
    input_path: Path
    output_dir: Path


class Runner(Protocol):
    async def run(self, args: Sequence[str], workdir: Union[str, Path]) -> None: ...


class MediaProber(Protocol):
    async def probe(self, input_path: Path) -> MediaInfo: ...


class StatusSink(Protocol):
    """Persistence collaborator that owns the video record."""

    async def record(
        self,
        video_id: str,
        state: ProcessingState,
        *,
        hls_master: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> None: ...


class JsonStatusSink:
    """Writes one ``<video_id>.json`` status document per video."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    async def record(
        self,
        video_id: str,
        state: ProcessingState,
        *,
        hls_master: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(self._write, video_id, state, hls_master, last_error)

    def _write(
        self,
        video_id: str,
        state: ProcessingState,
        hls_master: Optional[str],
        last_error: Optional[str],
    ) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{video_id}.json"
        doc: Dict[str, Optional[str]] = {"video_id": video_id, "processing_state": state.value}
        if hls_master is not None:
            doc["hls_master"] = hls_master
        if last_error is not None:
            doc["last_error"] = last_error
        path.write_text(json.dumps(doc, indent=2) + "\n", encoding="utf-8")

    def read(self, video_id: str) -> Dict[str, Optional[str]]:
        return json.loads((self.directory / f"{video_id}.json").read_text(encoding="utf-8"))


def _mkdir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DirectoryError(path, e.strerror or str(e)) from e


class TranscodeQueue:
    """FIFO transcode queue drained by at most ``concurrency`` workers.

    Jobs leave the queue in submission order; each holds one semaphore permit
    from remux to final status, so completion order is not guaranteed.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: Runner,
        sink: StatusSink,
        prober: Optional[MediaProber] = None,
        metrics: Optional[Metrics] = None,
        ladder: Sequence[int] = DEFAULT_LADDER,
    ) -> None:
        self.config = config
        self.runner = runner
        self.sink = sink
        self.prober = prober if prober is not None else Prober(config.ffprobe_bin)
        self.metrics = metrics if metrics is not None else default_metrics()
        self.ladder = tuple(ladder)
        self.profile = profile_for(config.hwaccel)
        self._queue: "asyncio.Queue[Optional[TranscodeJob]]" = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(config.worker_count)
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._dispatcher: Optional["asyncio.Task[None]"] = None
        self._closed = False
        # jobs whose ready/error status has been written
        self._terminal: Set[str] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch(), name="transcode-dispatcher")
            logger.info(
                "Transcode queue started: concurrency=%d hwaccel=%s",
                self.config.worker_count, self.profile.name,
            )

    async def enqueue(self, job: TranscodeJob) -> None:
        if self._closed:
            raise QueueClosed()
        await self._queue.put(job)
        logger.info("Queued video %s (%s)", job.video_id, job.input_path)

    def close(self) -> None:
        """Stop accepting jobs; already-queued jobs still run."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def join(self) -> None:
        """Wait for every job submitted so far to reach a terminal state."""
        await self._queue.join()
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def shutdown(self) -> None:
        self.close()
        if self._dispatcher is not None:
            await self._dispatcher
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        logger.info("Transcode queue stopped")

    async def _dispatch(self) -> None:
        while True:
            job = await self._queue.get()
            if job is None:
                self._queue.task_done()
                return
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_with_permit(job), name=f"transcode-{job.video_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self._queue.task_done()

    async def _run_with_permit(self, job: TranscodeJob) -> None:
        started = time.monotonic()
        self.metrics.jobs_in_flight.inc()
        state = ProcessingState.ERROR
        try:
            state = await self.process_job(job)
        except Exception as e:
            logger.exception("Unhandled failure in transcode job %s", job.video_id)
            if job.video_id not in self._terminal:
                try:
                    await self._fail(job, f"unexpected: {e}")
                except Exception:
                    logger.exception("Could not record failure of job %s", job.video_id)
        finally:
            self._terminal.discard(job.video_id)
            self.metrics.jobs_in_flight.dec()
            self.metrics.job_finished(state.value, time.monotonic() - started)
            self._semaphore.release()

    async def process_job(self, job: TranscodeJob) -> ProcessingState:
        await self.sink.record(job.video_id, ProcessingState.PROCESSING)
        logger.info("Processing video %s", job.video_id)

        scratch = self.config.scratch_path(job.video_id).absolute()
        try:
            _mkdir(scratch.parent)
            await self._invoke(build_faststart_invocation(Path(job.input_path).absolute(), scratch))
        except PipelineError as e:
            scratch.unlink(missing_ok=True)
            return await self._fail(job, f"faststart: {e}")

        try:
            output_dir = Path(job.output_dir)
            _mkdir(output_dir)
            info = await self.prober.probe(scratch)
            ladder = plan(info.height or DEFAULT_SOURCE_HEIGHT, self.ladder)
            logger.info(
                "Video %s: source %sp, ladder %s, audio=%s",
                job.video_id, info.height or "?", ladder, info.has_audio,
            )
            invocation = build_abr_invocation(
                scratch,
                output_dir,
                ladder,
                info.has_audio,
                self.config.hls_segment_seconds,
                self.profile,
                self.config.assumed_fps,
            )
            await self._invoke(invocation)
        except PipelineError as e:
            # scratch is kept for diagnosis
            return await self._fail(job, f"encode: {e}")

        master = (output_dir / MASTER_PLAYLIST).resolve()
        await self.sink.record(job.video_id, ProcessingState.READY, hls_master=str(master))
        self._terminal.add(job.video_id)
        scratch.unlink(missing_ok=True)
        logger.info("Transcode done: video_id=%s, master=%s", job.video_id, master)
        return ProcessingState.READY

    async def _invoke(self, invocation: EncodeInvocation) -> None:
        await self.runner.run(invocation.args, invocation.workdir)

    async def _fail(self, job: TranscodeJob, message: str) -> ProcessingState:
        logger.error("Transcode job failed: video_id=%s: %s", job.video_id, message)
        await self.sink.record(job.video_id, ProcessingState.ERROR, last_error=message)
        self._terminal.add(job.video_id)
        return ProcessingState.ERROR
