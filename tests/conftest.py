"""Shared fakes for agent subprocess tests."""

import asyncio
import json
from pathlib import Path
import stat
import sys
from typing import Callable

import pytest


def jsonl(*events: dict) -> bytes:
    """Encode events as newline-delimited JSON, the agent's stdout format."""
    return b"".join(
        (json.dumps(e, ensure_ascii=False) + "\n").encode("utf-8") for e in events
    )


class _FakeStdout:
    """Byte stream fed by the test. ``read()`` blocks until data or EOF."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False

    def push(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        if self._eof:
            return b""
        data = await self._queue.get()
        if not data:
            self._eof = True
        return data


class _FakeStderr:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = list(lines)

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0)
        return b""


class _FakeStdin:
    """With ``blocked`` set, ``drain()`` waits like a full pipe nobody reads."""

    def __init__(self, *, blocked: bool = False) -> None:
        self.data = b""
        self.closed = False
        self.blocked = blocked
        self._gone = asyncio.Event()

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        if not self.blocked:
            return
        await self._gone.wait()
        raise ConnectionResetError("Connection lost")

    def reader_gone(self) -> None:
        self._gone.set()

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for asyncio.subprocess.Process.

    ``chunks`` are delivered on stdout as-is. With ``exit_code`` set the
    process exits right after them; with ``exit_code=None`` it keeps
    running until ``finish()`` or ``kill()``. With ``stdin_blocked`` the
    prompt write stalls until the process goes away.
    """

    def __init__(
        self,
        chunks: list[bytes] | None = None,
        *,
        exit_code: int | None = 0,
        stderr: list[bytes] | None = None,
        stdin_blocked: bool = False,
    ) -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.killed = False
        self.stdin = _FakeStdin(blocked=stdin_blocked)
        self.stdout = _FakeStdout()
        self.stderr = _FakeStderr(stderr or [])
        self._exited = asyncio.Event()
        for chunk in chunks or []:
            self.stdout.push(chunk)
        if exit_code is not None:
            self.finish(exit_code)

    def push(self, data: bytes) -> None:
        self.stdout.push(data)

    def finish(self, code: int = 0) -> None:
        self.stdout.close()
        self.stdin.reader_gone()
        self._pending_code = code
        self._exited.set()

    def kill(self) -> None:
        if self._exited.is_set():
            return
        self.killed = True
        self.stdout.close()
        self.stdin.reader_gone()
        self._pending_code = -9
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        if self.returncode is None:
            self.returncode = self._pending_code
        return self.returncode

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        out = b""
        while True:
            chunk = await self.stdout.read()
            if not chunk:
                break
            out += chunk
        err = b""
        while True:
            line = await self.stderr.readline()
            if not line:
                break
            err += line
        await self.wait()
        return out, err


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec handing out FakeProcesses."""

    def __init__(self, *processes: FakeProcess) -> None:
        self.processes = list(processes)
        self.calls: list[list[str]] = []
        self.spawned: list[FakeProcess] = []

    async def __call__(self, *cmd: str, **kwargs) -> FakeProcess:
        self.calls.append(list(cmd))
        proc = self.processes.pop(0)
        self.spawned.append(proc)
        return proc


@pytest.fixture
def agent_script(tmp_path: Path) -> Callable[[str], str]:
    """Write an executable Python script standing in for the agent CLI."""
    counter = {"n": 0}

    def _write(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"fake-agent-{counter['n']}"
        path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write
