"""Subprocess execution with hard deadlines.

Every external tool (engines, converters, svgo, version probes) goes through
:func:`run_command`.  The child is killed on timeout *and* on cancellation of
the awaiting task, so a cancelled render never leaves a TeX process behind.
Spawn failures are reported in the result instead of raised.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


@dataclass
class CommandResult:
    """Outcome of a single external command."""
    cmd: list[str]
    returncode: int | None
    output: str = ""
    timed_out: bool = False
    elapsed: float = 0.0
    spawn_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.spawn_error is None


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


async def run_command(
    cmd: list[str],
    *,
    timeout: float,
    cwd: str | Path | None = None,
) -> CommandResult:
    """Run *cmd* with combined stdout/stderr and a wall-clock *timeout* in seconds.

    Output read before a timeout is kept in the result.  If the awaiting task
    is cancelled the child is killed and ``CancelledError`` propagates.
    """
    start = time.monotonic()
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.debug("Could not start %s: %s", cmd[0], e)
        return CommandResult(
            cmd=cmd,
            returncode=None,
            elapsed=time.monotonic() - start,
            spawn_error=str(e),
        )

    chunks: list[bytes] = []

    async def _drain() -> None:
        assert proc.stdout is not None
        while True:
            data = await proc.stdout.read(_READ_CHUNK)
            if not data:
                break
            chunks.append(data)
        await proc.wait()

    timed_out = False
    try:
        await asyncio.wait_for(_drain(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("%s timed out after %.1fs, killing", cmd[0], timeout)
    finally:
        await _kill(proc)

    output = b"".join(chunks).decode("utf-8", errors="replace")
    return CommandResult(
        cmd=cmd,
        returncode=None if timed_out else proc.returncode,
        output=output,
        timed_out=timed_out,
        elapsed=time.monotonic() - start,
    )
