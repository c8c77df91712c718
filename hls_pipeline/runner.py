from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Sequence, Union

from .errors import EncodeError, SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK = 8192


async def _drain(stream: asyncio.StreamReader) -> bytes:
    buf = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


class ProcessRunner:
    """Run one external encoder process per call.

    stdout and stderr are read by their own tasks while the exit status is
    awaited; both are joined before returning so a chatty encoder can never
    block on a full pipe.
    """

    def __init__(self, binary: str = "ffmpeg") -> None:
        self.binary = binary

    async def run(self, args: Sequence[str], workdir: Union[str, Path]) -> None:
        argv = [self.binary, *args]
        args_joined = shlex.join(argv)
        logger.debug("exec (cwd=%s): %s", workdir, args_joined)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SpawnError(self.binary, f"not found ({e.strerror or e})") from e
        except PermissionError as e:
            raise SpawnError(self.binary, f"permission denied ({e.strerror or e})") from e
        except OSError as e:
            raise SpawnError(self.binary, str(e)) from e

        assert proc.stdout is not None and proc.stderr is not None
        out_task = asyncio.ensure_future(_drain(proc.stdout))
        err_task = asyncio.ensure_future(_drain(proc.stderr))
        try:
            returncode = await proc.wait()
            _, err_bytes = await asyncio.gather(out_task, err_task)
        except asyncio.CancelledError:
            if proc.returncode is None:
                logger.info("Killing %s (pid %s) after cancellation", self.binary, proc.pid)
                proc.kill()
                await proc.wait()
            out_task.cancel()
            err_task.cancel()
            raise

        if returncode != 0:
            stderr = err_bytes.decode("utf-8", errors="replace")
            # Negative codes are signal deaths; there is no real exit status.
            exit_code = returncode if returncode >= 0 else None
            raise EncodeError(exit_code, args_joined, stderr)
