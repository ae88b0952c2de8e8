import asyncio
import os
import sys
import time

import pytest

from errors import ProcessExitError, ProcessOutputError, ProcessSpawnError, ProcessTimeoutError
from process import run_command, run_json


def _script(*lines: str) -> list[str]:
    return ["-c", "\n".join(lines)]


def test_run_command_tags_lines_with_their_stream():
    lines = []
    args = _script(
        "import sys",
        "print('one', flush=True)",
        "print('two', file=sys.stderr, flush=True)",
        "print('three', flush=True)",
    )

    asyncio.run(run_command(sys.executable, args, on_line=lines.append))

    assert "[stdout] one" in lines
    assert "[stderr] two" in lines
    assert "[stdout] three" in lines
    assert lines.index("[stdout] one") < lines.index("[stdout] three")


def test_run_command_forwards_lines_before_exit(tmp_path):
    # The child only finishes once the callback has seen its first line.
    marker = tmp_path / "seen"
    args = _script(
        "import os, sys, time",
        "print('ready', flush=True)",
        "deadline = time.time() + 10",
        "while not os.path.exists(sys.argv[1]) and time.time() < deadline:",
        "    time.sleep(0.01)",
        "print('done' if os.path.exists(sys.argv[1]) else 'timeout', flush=True)",
    ) + [str(marker)]
    lines = []

    def on_line(line):
        lines.append(line)
        if line == "[stdout] ready":
            marker.touch()

    asyncio.run(run_command(sys.executable, args, on_line=on_line))

    assert lines == ["[stdout] ready", "[stdout] done"]


def test_run_command_drops_blank_lines():
    lines = []
    asyncio.run(run_command(sys.executable, _script("print('a')", "print()", "print('  ')", "print('b')"), lines.append))
    assert lines == ["[stdout] a", "[stdout] b"]


def test_run_command_nonzero_exit_raises_with_code_and_stderr():
    args = _script("import sys", "print('Sign in to confirm you are not a bot', file=sys.stderr)", "sys.exit(3)")

    with pytest.raises(ProcessExitError) as excinfo:
        asyncio.run(run_command(sys.executable, args))

    assert excinfo.value.code == 3
    assert "code 3" in str(excinfo.value)
    assert "not a bot" in str(excinfo.value)


def test_run_command_missing_executable_is_spawn_error(tmp_path):
    with pytest.raises(ProcessSpawnError):
        asyncio.run(run_command(str(tmp_path / "no-such-tool"), ["--version"]))


def test_run_command_timeout_kills_process():
    with pytest.raises(ProcessTimeoutError):
        asyncio.run(run_command(sys.executable, _script("import time", "time.sleep(10)"), timeout=0.3))


def test_run_json_parses_stdout():
    args = _script("import json", "print(json.dumps({'id': 'abc', 'duration': 12.5}))")
    assert asyncio.run(run_json(sys.executable, args)) == {"id": "abc", "duration": 12.5}


def test_run_json_rejects_invalid_output_even_on_success():
    with pytest.raises(ProcessOutputError):
        asyncio.run(run_json(sys.executable, _script("print('definitely not json')")))


def test_run_json_nonzero_exit_uses_stderr_as_message():
    args = _script("import sys", "print('ERROR: video unavailable', file=sys.stderr)", "sys.exit(1)")
    with pytest.raises(ProcessExitError, match="video unavailable"):
        asyncio.run(run_json(sys.executable, args))


def test_run_command_kills_process_when_callback_fails(tmp_path):
    pid_file = tmp_path / "pid"
    args = _script(
        "import os, sys, time",
        "open(sys.argv[1], 'w').write(str(os.getpid()))",
        "print('first', flush=True)",
        "time.sleep(30)",
    ) + [str(pid_file)]

    def on_line(line):
        raise RuntimeError("callback broke")

    async def scenario():
        started = time.monotonic()
        with pytest.raises(RuntimeError, match="callback broke"):
            await run_command(sys.executable, args, on_line=on_line)
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())

    assert elapsed < 10
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
