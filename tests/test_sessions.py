import asyncio
import os
import time
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import StubProber, StubRunner
from hls_pipeline.errors import ConfigError, EncodeError, InvalidPath, SessionStartTimeout, SourceNotFound
from hls_pipeline.sessions import (
    SessionManager,
    content_type_for,
    is_safe_file,
    is_safe_token,
    resolve_input_path,
    watermark_text,
)


@pytest.fixture
def font(tmp_path):
    p = tmp_path / "DejaVuSans.ttf"
    p.write_bytes(b"\x00")
    return p


@pytest.fixture
def session_config(config, font):
    return replace(config, watermark_font=font)


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00")
    return path


def test_resolution_prefers_upload_dir(config):
    _touch(config.media_dir / "a.mp4")
    expected = _touch(config.upload_dir / "a.mp4")
    assert resolve_input_path("a.mp4", config) == expected.absolute()


def test_resolution_falls_through_to_fallback_tier(config):
    expected = _touch(config.fallback_dir / "only-here.mp4")
    assert resolve_input_path("only-here.mp4", config) == expected.absolute()


def test_resolution_absolute_path_and_cwd(tmp_path, config, monkeypatch):
    absolute = _touch(tmp_path / "elsewhere" / "x.mp4")
    assert resolve_input_path(str(absolute), config) == absolute

    monkeypatch.chdir(_touch(tmp_path / "cwd" / "y.mp4").parent)
    assert resolve_input_path("y.mp4", config) == (tmp_path / "cwd" / "y.mp4").absolute()


def test_resolution_not_found_lists_tiers(config):
    with pytest.raises(SourceNotFound) as ei:
        resolve_input_path("missing.mp4", config)
    assert len(ei.value.searched) == 4


def test_safe_names():
    assert is_safe_token("0f3c9a_b-1")
    assert not is_safe_token("")
    assert not is_safe_token("../etc")
    assert is_safe_file("seg_00001.ts")
    assert is_safe_file("master.m3u8")
    for bad in ("", "../master.m3u8", "a/b.ts", "a\\b.ts", "wm.txt", "..ts"):
        assert not is_safe_file(bad)
    assert content_type_for("master.m3u8") == "application/vnd.apple.mpegurl"
    assert content_type_for("seg.ts") == "video/mp2t"


def test_watermark_text_keeps_time_macros():
    assert watermark_text("alice") == "• @alice • %Y-%m-%d %H\\:%M\\:%S"


def test_watermark_text_escapes_percent_in_viewer():
    text = watermark_text("100%Y")
    assert text.startswith("• @100%%Y • ")
    assert text.endswith("%Y-%m-%d %H\\:%M\\:%S")


async def test_start_session_returns_after_playlist(session_config, metrics):
    _touch(session_config.upload_dir / "movie.mp4")
    runner = StubRunner()
    manager = SessionManager(session_config, runner, StubProber(), metrics)

    handle = await manager.start_session("vid-9", "alice", "movie.mp4")

    assert is_safe_token(handle.session_id)
    assert handle.playlist == f"{handle.session_id}/master.m3u8"
    assert handle.directory == session_config.hls_root.absolute() / handle.session_id
    assert (handle.directory / "wm.txt").read_text(encoding="utf-8") == watermark_text("alice")
    assert handle.session.video_id == "vid-9"
    (args, workdir), = runner.calls
    assert workdir == handle.directory
    assert args[args.index("-hls_playlist_type") + 1] == "event"
    assert str(session_config.upload_dir.absolute() / "movie.mp4") in args
    assert metrics.registry.get_sample_value("hls_sessions_started_total") == 1
    await handle.task


async def test_sessions_get_distinct_directories(session_config, metrics):
    _touch(session_config.media_dir / "m.mp4")
    manager = SessionManager(session_config, StubRunner(), StubProber(), metrics)
    a = await manager.start_session("m.mp4", "alice")
    b = await manager.start_session("m.mp4", "bob")
    assert a.session_id != b.session_id
    assert a.directory != b.directory
    await asyncio.gather(a.task, b.task)


async def test_missing_font_fails_before_any_encode(session_config, tmp_path, metrics):
    cfg = replace(session_config, watermark_font=tmp_path / "nope.ttf")
    _touch(cfg.upload_dir / "m.mp4")
    runner = StubRunner()
    manager = SessionManager(cfg, runner, StubProber(), metrics)
    with pytest.raises(ConfigError):
        await manager.start_session("m.mp4", "alice")
    assert runner.calls == []
    assert not cfg.hls_root.exists()


async def test_missing_source_raises(session_config, metrics):
    manager = SessionManager(session_config, StubRunner(), StubProber(), metrics)
    with pytest.raises(SourceNotFound):
        await manager.start_session("ghost.mp4", "alice")


async def test_encoder_failure_before_playlist_is_raised(session_config, metrics):
    _touch(session_config.upload_dir / "m.mp4")

    class FailingRunner:
        async def run(self, args, workdir):
            raise EncodeError(1, " ".join(args), "Invalid data found when processing input")

    manager = SessionManager(session_config, FailingRunner(), StubProber(), metrics)
    with pytest.raises(EncodeError) as ei:
        await manager.start_session("m.mp4", "alice")
    assert ei.value.exit_code == 1


async def test_playlist_timeout_cancels_encode(session_config, metrics):
    cfg = replace(session_config, playlist_wait_seconds=0.3)
    _touch(cfg.upload_dir / "m.mp4")
    cancelled = asyncio.Event()

    class SilentRunner:
        async def run(self, args, workdir):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

    manager = SessionManager(cfg, SilentRunner(), StubProber(), metrics)
    with pytest.raises(SessionStartTimeout):
        await manager.start_session("m.mp4", "alice")
    await asyncio.wait_for(cancelled.wait(), timeout=5)


async def test_open_file_serves_no_store(session_config, metrics):
    _touch(session_config.upload_dir / "m.mp4")
    manager = SessionManager(session_config, StubRunner(), StubProber(), metrics)
    handle = await manager.start_session("m.mp4", "alice")
    await handle.task

    served = manager.open_file(handle.session_id, "master.m3u8")
    assert served.body.startswith(b"#EXTM3U")
    assert served.content_type == "application/vnd.apple.mpegurl"
    assert served.headers["Cache-Control"] == "no-store"
    assert manager.open_file(handle.session_id, "seg_00000.ts").content_type == "video/mp2t"

    with pytest.raises(InvalidPath):
        manager.open_file(handle.session_id, "wm.txt")
    with pytest.raises(InvalidPath):
        manager.open_file("..", "master.m3u8")
    with pytest.raises(FileNotFoundError):
        manager.open_file(handle.session_id, "seg_99999.ts")


async def test_purge_expired_sessions(session_config, metrics):
    _touch(session_config.upload_dir / "m.mp4")
    manager = SessionManager(session_config, StubRunner(), StubProber(), metrics)
    old = await manager.start_session("m.mp4", "alice")
    fresh = await manager.start_session("m.mp4", "bob")
    await asyncio.gather(old.task, fresh.task)

    past = time.time() - session_config.session_ttl_seconds - 10
    os.utime(old.directory, (past, past))
    (session_config.hls_root / "not a session").mkdir()

    assert manager.purge_expired() == [old.session_id]
    assert not old.directory.exists()
    assert fresh.directory.exists()


async def test_purge_skips_running_sessions(session_config, metrics):
    _touch(session_config.upload_dir / "m.mp4")
    release = asyncio.Event()

    class SlowRunner(StubRunner):
        async def run(self, args, workdir):
            await super().run(args, workdir)
            await release.wait()

    manager = SessionManager(session_config, SlowRunner(), StubProber(), metrics)
    handle = await manager.start_session("m.mp4", "alice")
    later = time.time() + session_config.session_ttl_seconds + 10
    assert manager.purge_expired(now=later) == []
    release.set()
    await handle.task
    assert manager.purge_expired(now=later) == [handle.session_id]
    await manager.close()
