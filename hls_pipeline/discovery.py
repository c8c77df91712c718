from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, List

SUPPORTED_EXTENSIONS = {".mp4", ".mkv", ".avi", ".mov", ".m4v", ".webm", ".ts", ".m2ts"}

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def is_media_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS


def discover_sources(source_dir: Path) -> List[Path]:
    """Media files anywhere under ``source_dir``, in stable path order."""
    found: List[Path] = []
    for root, dirs, files in os.walk(source_dir):
        dirs.sort()
        for entry in sorted(files):
            p = Path(root) / entry
            if is_media_file(p):
                found.append(p)
    return found


def expand_sources(paths: Iterable[Path]) -> List[Path]:
    """Files are taken as-is, directories are walked."""
    out: List[Path] = []
    for p in paths:
        if p.is_dir():
            out.extend(discover_sources(p))
        else:
            out.append(p)
    return out


def video_id_for(path: Path) -> str:
    """Directory-safe id from a file stem; it names the output directory."""
    vid = _UNSAFE_ID_CHARS.sub("-", path.stem).strip("-")
    return vid or "video"
