import asyncio
import json
import logging
from collections import deque
from typing import Callable

from errors import (
    ProcessExitError,
    ProcessOutputError,
    ProcessSpawnError,
    ProcessTimeoutError,
)

logger = logging.getLogger(__name__)

# Lines of stderr kept for the error message of a failed command.
STDERR_TAIL_LINES = 5
# yt-dlp can emit very long single-line JSON and progress output.
STREAM_LIMIT = 4 * 1024 * 1024


async def _spawn(command: str, args: list[str]) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        raise ProcessSpawnError(f"{command} failed to start: {e}") from e


async def _kill(proc: asyncio.subprocess.Process):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _pump(stream: asyncio.StreamReader, tag: str, on_line, tail: deque | None):
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        if tail is not None:
            tail.append(line)
        if on_line:
            on_line(f"[{tag}] {line}")


async def run_command(
    command: str,
    args: list[str],
    on_line: Callable[[str], None] | None = None,
    timeout: float | None = None,
) -> None:
    """
    Run an external command, forwarding each output line to on_line as it arrives.
    Lines are prefixed with the stream they came from ("[stdout]" / "[stderr]").
    Raises ProcessSpawnError, ProcessExitError or ProcessTimeoutError.
    """
    proc = await _spawn(command, args)
    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    async def _communicate() -> int:
        await asyncio.gather(
            _pump(proc.stdout, "stdout", on_line, None),
            _pump(proc.stderr, "stderr", on_line, stderr_tail),
        )
        return await proc.wait()

    try:
        code = await asyncio.wait_for(_communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ProcessTimeoutError(f"{command} timed out after {timeout:g}s")
    except BaseException:
        # Cancellation or a failing on_line callback; the child must not outlive us.
        await _kill(proc)
        raise

    if code != 0:
        detail = f": {' | '.join(stderr_tail)}" if stderr_tail else ""
        raise ProcessExitError(f"{command} exited with code {code}{detail}", code)


async def run_json(command: str, args: list[str], timeout: float | None = None):
    """Run a command that prints a single JSON document and return it parsed."""
    proc = await _spawn(command, args)
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ProcessTimeoutError(f"{command} timed out after {timeout:g}s")
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise ProcessExitError(message or f"{command} exited with code {proc.returncode}", proc.returncode)

    text = stdout.decode("utf-8", errors="replace")
    try:
        return json.loads(text or "{}")
    except json.JSONDecodeError as e:
        logger.debug(f"Unparseable output from {command}: {text[:200]!r}")
        raise ProcessOutputError(f"Unable to parse {command} output: {e}") from e
