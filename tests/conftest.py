import asyncio
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pytest
from prometheus_client import CollectorRegistry

from hls_pipeline.config import PipelineConfig
from hls_pipeline.errors import EncodeError
from hls_pipeline.monitoring import Metrics
from hls_pipeline.probe import MediaInfo


class StubRunner:
    """Stands in for the encoder: records calls and fakes the files it writes."""

    def __init__(self, fail: Optional[Callable[[Sequence[str]], Optional[int]]] = None, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.calls: List[Tuple[Tuple[str, ...], Path]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, args, workdir):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append((tuple(args), Path(workdir)))
            await asyncio.sleep(self.delay)
            if "+faststart" in args:
                scratch = next(a for a in args if a.endswith(".faststart.mp4"))
                Path(scratch).write_bytes(b"remuxed")
            elif "-master_pl_name" in args:
                Path(workdir, "master.m3u8").write_text("#EXTM3U\n")
                Path(workdir, "stream_0.m3u8").write_text("#EXTM3U\n")
            elif "event" in args:
                Path(workdir, "master.m3u8").write_text("#EXTM3U\n#EXT-X-PLAYLIST-TYPE:EVENT\n")
                Path(workdir, "seg_00000.ts").write_bytes(b"\x47")
            code = self.fail(args) if self.fail else None
            if code is not None:
                raise EncodeError(code, " ".join(args), "stub failure")
        finally:
            self.active -= 1


class StubProber:
    def __init__(self, info: MediaInfo = MediaInfo(height=1080, has_audio=True, fps=30.0)):
        self.info = info
        self.paths: List[Path] = []

    async def probe(self, input_path):
        self.paths.append(Path(input_path))
        return self.info


class RecordingSink:
    def __init__(self):
        self.writes = []

    async def record(self, video_id, state, *, hls_master=None, last_error=None):
        self.writes.append((video_id, state.value, hls_master, last_error))

    def for_video(self, video_id):
        return [w for w in self.writes if w[0] == video_id]


@pytest.fixture
def metrics():
    return Metrics(CollectorRegistry())


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        tmp_dir=tmp_path / "tmp",
        media_dir=tmp_path / "media",
        upload_dir=tmp_path / "uploads" / "original",
        fallback_dir=tmp_path / "uploads",
        hls_root=tmp_path / "hls",
        concurrency=2,
        playlist_wait_seconds=5,
    )
