from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for every failure raised by the transcoding pipeline."""


class SpawnError(PipelineError):
    def __init__(self, binary: str, reason: str) -> None:
        self.binary = binary
        self.reason = reason
        super().__init__(f"spawn {binary}: {reason}")


class EncodeError(PipelineError):
    """The encoder ran and exited unsuccessfully.

    stderr is carried verbatim so operators can read the encoder's own words.
    """

    def __init__(self, exit_code: Optional[int], args_joined: str, stderr: str) -> None:
        self.exit_code = exit_code
        self.args_joined = args_joined
        self.stderr = stderr
        super().__init__(f"ffmpeg exit code {exit_code}. stderr:\n{stderr}")


class SourceNotFound(PipelineError):
    def __init__(self, name: str, searched: Sequence[Path] = ()) -> None:
        self.name = name
        self.searched = list(searched)
        super().__init__(f"source file not found: {name}")


class QueueClosed(PipelineError):
    def __init__(self) -> None:
        super().__init__("transcode queue is closed")


class DirectoryError(PipelineError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"cannot create directory {path}: {reason}")


class ConfigError(PipelineError):
    pass


class InvalidPath(PipelineError):
    pass


class SessionStartTimeout(PipelineError):
    def __init__(self, session_id: str, seconds: float) -> None:
        self.session_id = session_id
        self.seconds = seconds
        super().__init__(f"session {session_id}: no playlist after {seconds:.0f}s")
