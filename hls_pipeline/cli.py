from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

from .cache import TTLCache
from .config import PipelineConfig
from .discovery import expand_sources, video_id_for
from .errors import PipelineError
from .ladder import DEFAULT_LADDER, parse_resolution_list
from .monitoring import default_metrics
from .probe import Prober
from .runner import ProcessRunner
from .sessions import SessionManager
from .worker import JsonStatusSink, ProcessingState, TranscodeJob, TranscodeQueue

logger = logging.getLogger(__name__)


# ------------------------------
# Timer decorator
# ------------------------------
def timer(func):
    def wrapper(*args, **kwargs):
        start = time.time()
        result = func(*args, **kwargs)
        end = time.time()
        logger.info(f"{func.__name__} took {end - start:.2f} seconds")
        return result
    return wrapper


# ------------------------------
# Logging
# ------------------------------
def configure_logging(log_level: str = "INFO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# ------------------------------
# CLI
# ------------------------------
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hls-pipeline",
        description="Transcode uploads into ABR HLS and serve watermarked playback sessions.",
    )
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    parser.add_argument("--metrics-port", type=int, default=None,
                        help="Expose Prometheus metrics on this port (env METRICS_PORT)")
    parser.add_argument("--hwaccel", type=str, default=None,
                        help="none | nvenc | qsv | amf | auto (env HWACCEL)")
    parser.add_argument("--segment-time", "-t", type=int, default=None,
                        help="HLS segment duration in seconds (env HLS_SEGMENT_SECONDS)")
    sub = parser.add_subparsers(dest="command", required=True)

    tr = sub.add_parser("transcode", help="Package source files as ABR HLS")
    tr.add_argument("sources", nargs="+", type=Path,
                    help="Source files or directories to scan")
    tr.add_argument("--dest", "-d", type=Path, default=None,
                    help="Media directory receiving <video_id>/master.m3u8 (env MEDIA_DIR)")
    tr.add_argument("--concurrency", "-w", type=int, default=None,
                    help="Concurrent encodes (env TRANSCODE_CONCURRENCY)")
    tr.add_argument("--resolutions", "-r", type=str, default=",".join(map(str, DEFAULT_LADDER)),
                    help="Comma-separated candidate rung heights")
    tr.add_argument("--status-dir", type=Path, default=Path("status"),
                    help="Where per-video status JSON is written")

    play = sub.add_parser("play", help="Start a watermarked playback session")
    play.add_argument("video_id", help="Video id (or stored source filename)")
    play.add_argument("viewer", help="Viewer identity rendered into the watermark")
    play.add_argument("--source", default=None, help="Stored source filename, if not the video id")

    sub.add_parser("purge", help="Delete playback sessions older than HLS_SESSION_TTL")
    return parser.parse_args(argv)


def _unique_ids(sources: List[Path]) -> Dict[str, Path]:
    jobs: Dict[str, Path] = {}
    for src in sources:
        base = video_id_for(src)
        vid, n = base, 1
        while vid in jobs:
            n += 1
            vid = f"{base}-{n}"
        jobs[vid] = src
    return jobs


async def run_transcode(config: PipelineConfig, args: argparse.Namespace) -> int:
    sources = expand_sources(args.sources)
    if not sources:
        logger.info("No media files found in %s", ", ".join(map(str, args.sources)))
        return 0
    ladder = parse_resolution_list(args.resolutions) or list(DEFAULT_LADDER)
    sink = JsonStatusSink(args.status_dir)
    prober = Prober(config.ffprobe_bin, TTLCache(config.probe_cache_ttl))
    queue = TranscodeQueue(config, ProcessRunner(config.ffmpeg_bin), sink, prober, ladder=ladder)
    queue.start()
    jobs = _unique_ids(sources)
    for vid, src in jobs.items():
        await sink.record(vid, ProcessingState.QUEUED)
        await queue.enqueue(TranscodeJob(vid, src, config.video_hls_dir(vid)))
    await queue.shutdown()

    failed = [vid for vid in jobs if sink.read(vid).get("processing_state") == ProcessingState.ERROR.value]
    logger.info("Finished %d video(s), %d failed", len(jobs), len(failed))
    return 1 if failed else 0


async def run_play(config: PipelineConfig, args: argparse.Namespace) -> int:
    prober = Prober(config.ffprobe_bin, TTLCache(config.probe_cache_ttl))
    manager = SessionManager(config, ProcessRunner(config.ffmpeg_bin), prober)
    handle = await manager.start_session(args.video_id, args.viewer, args.source)
    print(json.dumps({
        "ok": True,
        "session": handle.session_id,
        "playlist": handle.playlist,
        "directory": str(handle.directory),
        "segment_seconds": config.session_segment_seconds,
    }))
    sys.stdout.flush()
    # the encode lives as long as this process; wait for the full event playlist
    try:
        if handle.task is not None:
            await handle.task
    finally:
        await manager.close()
    return 0


@timer
def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config = PipelineConfig.from_env().with_overrides(
        hwaccel=args.hwaccel,
        hls_segment_seconds=args.segment_time,
        metrics_port=args.metrics_port,
        media_dir=getattr(args, "dest", None),
        concurrency=getattr(args, "concurrency", None),
    )
    if config.metrics_port:
        default_metrics().start_server(config.metrics_port)

    try:
        if args.command == "transcode":
            return asyncio.run(run_transcode(config, args))
        if args.command == "play":
            return asyncio.run(run_play(config, args))
        manager = SessionManager(config, ProcessRunner(config.ffmpeg_bin))
        removed = manager.purge_expired()
        print(json.dumps({"ok": True, "removed": removed}))
        return 0
    except PipelineError as e:
        logger.error("%s", e)
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1


if __name__ == "__main__":
    sys.exit(main())
