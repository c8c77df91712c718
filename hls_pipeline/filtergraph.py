"""Encoder invocations for every ffmpeg run the pipeline makes.

Graphs are built with ffmpeg-python and compiled to an argument list, which
the async runner executes. Filter option escaping is left to the library;
callers only ever pass plain values: paths, heights and durations.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import ffmpeg

from .errors import ConfigError
from .hwaccel import CodecProfile
from .ladder import bitrate_for, crf_for

MASTER_PLAYLIST = "master.m3u8"
ABR_VARIANT_PLAYLIST = "stream_%v.m3u8"
ABR_SEGMENT_PATTERN = "stream_%v_%05d.ts"
SESSION_SEGMENT_PATTERN = "seg_%05d.ts"

SILENT_AUDIO_RATE = 48000
SILENT_AUDIO_SOURCE = f"anullsrc=channel_layout=stereo:sample_rate={SILENT_AUDIO_RATE}"
AUDIO_BITRATE = "128k"

WATERMARK_INTERVAL = 5
WATERMARK_PADDING = 20
WATERMARK_FONT_SIZE = 20
WATERMARK_SHADOW_OFFSET = 10

GLOBAL_ARGS: Tuple[str, ...] = ("-hide_banner", "-loglevel", "error")

_UNESCAPED_COMMA = re.compile(r"(?<!\\),")


@dataclass(frozen=True)
class EncodeInvocation:
    args: Tuple[str, ...]
    workdir: Path

    @property
    def filter_graph(self) -> str:
        if "-filter_complex" not in self.args:
            return ""
        return self.args[self.args.index("-filter_complex") + 1]


@dataclass(frozen=True)
class Rendition:
    index: int
    height: int
    kbps: int
    quality: int

    def scale(self, stream):
        # -2 keeps the aspect ratio with an even width
        return stream.filter("scale", w=-2, h=self.height, eval="frame")

    def output_options(self, profile: CodecProfile) -> Dict[str, Any]:
        opts: Dict[str, Any] = dict(profile.stream_quality_options(self.index, self.quality))
        opts[f"maxrate:v:{self.index}"] = f"{self.kbps}k"
        opts[f"bufsize:v:{self.index}"] = f"{self.kbps * 2}k"
        return opts


def renditions_for(ladder: Sequence[int]) -> List[Rendition]:
    return [
        Rendition(index=i, height=h, kbps=bitrate_for(h), quality=crf_for(i))
        for i, h in enumerate(ladder)
    ]


def gop_size(fps: float, segment_seconds: int) -> int:
    return max(1, int(round(fps * segment_seconds)))


def assert_escaped(graph: str) -> str:
    """Fail if any comma in a filter graph would split a filter's options."""
    if _UNESCAPED_COMMA.search(graph):
        raise ValueError(f"unescaped comma in filter graph: {graph!r}")
    return graph


def compile_args(stream) -> Tuple[str, ...]:
    """Compile an output stream to ffmpeg arguments (without the binary)."""
    stream = ffmpeg.overwrite_output(stream.global_args(*GLOBAL_ARGS))
    return tuple(ffmpeg.get_args(stream))


def _invocation(stream, workdir: Path) -> EncodeInvocation:
    invocation = EncodeInvocation(compile_args(stream), workdir)
    assert_escaped(invocation.filter_graph)
    return invocation


def _video_options(profile: CodecProfile, gop: int) -> Dict[str, Any]:
    return {
        "c:v": profile.encoder,
        **profile.options,
        "g": gop,
        "keyint_min": gop,
        "sc_threshold": 0,
    }


# ------------------------------
# Fast-start remux
# ------------------------------
def build_faststart_invocation(input_path: Path, scratch_path: Path) -> EncodeInvocation:
    stream = ffmpeg.input(str(input_path)).output(
        str(scratch_path), map="0", c="copy", movflags="+faststart"
    )
    return _invocation(stream, scratch_path.parent)


# ------------------------------
# Batch ABR
# ------------------------------
def var_stream_map(renditions: Sequence[Rendition]) -> str:
    return " ".join(f"v:{r.index},a:{r.index},name:{r.height}" for r in renditions)


def build_abr_invocation(
    input_path: Path,
    output_dir: Path,
    ladder: Sequence[int],
    has_audio: bool,
    segment_seconds: int,
    profile: CodecProfile,
    fps: float,
) -> EncodeInvocation:
    """One encoder run producing every rung plus the master playlist.

    Without a source audio track a silent stereo input is added and mapped
    to each rung; ``-shortest`` ends the output with the video.
    """
    renditions = renditions_for(ladder)
    if not renditions:
        raise ValueError("at least one rendition is required")

    source = ffmpeg.input(str(input_path))
    split = source.video.filter_multi_output("split")
    audio = source["a:0"] if has_audio else ffmpeg.input(SILENT_AUDIO_SOURCE, f="lavfi")["a:0"]

    streams = []
    for r in renditions:
        streams += [r.scale(split.stream(r.index)), audio]

    gop = gop_size(fps, segment_seconds)
    output_args: Dict[str, Any] = _video_options(profile, gop)
    for r in renditions:
        output_args.update(r.output_options(profile))
    output_args.update({
        "c:a": "aac",
        "ac": 2,
        "ar": SILENT_AUDIO_RATE,
        "b:a": AUDIO_BITRATE,
        "hls_time": segment_seconds,
        "hls_playlist_type": "vod",
        "hls_flags": "independent_segments",
        "hls_segment_filename": ABR_SEGMENT_PATTERN,
        "master_pl_name": MASTER_PLAYLIST,
        "var_stream_map": var_stream_map(renditions),
    })
    if not has_audio:
        output_args["shortest"] = None

    stream = ffmpeg.output(*streams, ABR_VARIANT_PLAYLIST, f="hls", **output_args)
    return _invocation(stream, output_dir)


# ------------------------------
# On-demand watermark
# ------------------------------
def watermark_position(
    axis: str, interval: int = WATERMARK_INTERVAL, padding: int = WATERMARK_PADDING
) -> str:
    """Pseudo-random offset that jumps every ``interval`` seconds.

    Deterministic in ``floor(t/interval)`` so every frame inside one interval
    agrees.
    """
    if interval <= 0:
        raise ValueError("watermark interval must be positive")
    if axis == "x":
        return (
            f"{padding} + (w-tw-{padding * 2})"
            f"*mod(abs(sin(floor(t/{interval})*12.9898)*43758.5453),1)"
        )
    if axis == "y":
        return (
            f"{padding} + (h-th-{padding * 2})"
            f"*mod(abs(sin((floor(t/{interval})+1)*78.233)*12345.6789),1)"
        )
    raise ValueError(f"unknown axis {axis!r}")


def build_watermark_filters(
    stream, font_path: Path, textfile: Path, interval: int = WATERMARK_INTERVAL
):
    """Stack a faint offset shadow and the boxed main text on ``stream``."""
    if not Path(font_path).is_file():
        raise ConfigError(f"watermark font not found: {font_path}")
    x = watermark_position("x", interval)
    y = watermark_position("y", interval)
    common = {
        "fontfile": str(font_path),
        "textfile": str(textfile),
        "expansion": "strftime",
        "fontsize": WATERMARK_FONT_SIZE,
    }
    shadow = stream.drawtext(
        x=f"{x}+{WATERMARK_SHADOW_OFFSET}",
        y=f"{y}+{WATERMARK_SHADOW_OFFSET}",
        fontcolor="white@0.15",
        box=0,
        **common,
    )
    return shadow.drawtext(
        x=x,
        y=y,
        fontcolor="white",
        box=1,
        boxcolor="black@0.35",
        boxborderw=8,
        **common,
    )


def build_watermark_invocation(
    input_path: Path,
    session_dir: Path,
    font_path: Path,
    textfile: Path,
    segment_seconds: int,
    profile: CodecProfile,
    fps: float,
    interval: int = WATERMARK_INTERVAL,
) -> EncodeInvocation:
    source = ffmpeg.input(str(input_path))
    marked = build_watermark_filters(source["v:0"], font_path, textfile, interval)
    gop = gop_size(fps, segment_seconds)
    output_args: Dict[str, Any] = _video_options(profile, gop)
    output_args.update(profile.stream_quality_options(0, crf_for(0)))
    output_args.update({
        "c:a": "aac",
        "ac": 2,
        "b:a": AUDIO_BITRATE,
        "start_number": 0,
        "hls_time": segment_seconds,
        "hls_playlist_type": "event",
        # segments never leave an event playlist; disk is reclaimed by session purge
        "hls_flags": "independent_segments+delete_segments",
        "hls_list_size": 0,
        "hls_segment_filename": SESSION_SEGMENT_PATTERN,
    })
    stream = ffmpeg.output(marked, source["a:0?"], MASTER_PLAYLIST, f="hls", **output_args)
    return _invocation(stream, session_dir)
