import os
from pathlib import Path
import shutil
import tempfile

from hls_pipeline.discovery import discover_sources, expand_sources, video_id_for


def test_discover_sources_nested_structure():
    tmp = tempfile.mkdtemp()
    try:
        movies = Path(tmp) / "movies" / "Film1" / "1080"
        movies.mkdir(parents=True, exist_ok=True)
        sample = movies / "Film1.mkv"
        sample.write_bytes(b"\x00")
        (movies / "notes.txt").write_text("x")
        other = Path(tmp) / "movies" / "a.MP4"
        other.write_bytes(b"\x00")
        found = discover_sources(Path(tmp) / "movies")
        assert found == [other, sample]
    finally:
        shutil.rmtree(tmp)


def test_expand_sources_keeps_files(tmp_path):
    f = tmp_path / "clip.mov"
    f.write_bytes(b"\x00")
    d = tmp_path / "dir"
    d.mkdir()
    (d / "x.webm").write_bytes(b"\x00")
    assert expand_sources([f, d]) == [f, d / "x.webm"]


def test_video_id_is_directory_safe():
    assert video_id_for(Path("/a/My Film (2020).mp4")) == "My-Film-2020"
    assert video_id_for(Path("../..mp4")) == "video"
    assert os.sep not in video_id_for(Path("x/y/z.mkv"))
