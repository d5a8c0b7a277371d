"""Session backend over local asyncio subprocesses."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path

from agentshell.services.backend import EventEmitter

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


@dataclass
class LocalSession:
    name: str
    shell_path: str
    cwd: str | None = None
    env: dict[str, str] | None = None
    integration: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class LocalExecution:
    session: LocalSession
    command: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    exit_code: int | None = None
    consumed: bool = False


def shell_argv(shell_path: str, command: str) -> list[str]:
    """Argument vector that makes ``shell_path`` run a single command."""
    name = Path(shell_path).stem.lower()
    if name == "cmd":
        return [shell_path, "/d", "/s", "/c", command]
    if name in ("powershell", "pwsh"):
        return [shell_path, "-NoProfile", "-Command", command]
    if name == "wsl":
        return [shell_path, "bash", "-c", command]
    return [shell_path, "-c", command]


class LocalShellBackend:
    """Runs each command in a fresh shell process; sessions carry shell, cwd and env.

    stdout and stderr are merged and decoded incrementally as UTF-8. The
    completion protocol is available as soon as a session is spawned.
    """

    def __init__(self) -> None:
        self.on_execution_end = EventEmitter()
        self.on_session_closed = EventEmitter()
        self._sessions: dict[str, LocalSession] = {}
        self._tasks: set[asyncio.Task] = set()

    async def spawn(
        self,
        name: str,
        shell_path: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> LocalSession:
        session = LocalSession(name=name, shell_path=shell_path, cwd=cwd, env=env)
        session.integration.set()
        self._sessions[name] = session
        logger.debug("Spawned session %s (%s)", name, shell_path)
        return session

    def find(self, name: str) -> LocalSession | None:
        return self._sessions.get(name)

    def live_sessions(self) -> list[str]:
        return list(self._sessions)

    def has_integration(self, handle: LocalSession) -> bool:
        return handle.integration.is_set()

    async def wait_for_integration(self, handle: LocalSession) -> None:
        await handle.integration.wait()

    def _process_env(self, session: LocalSession) -> dict[str, str] | None:
        if not session.env:
            return None
        return {**os.environ, **session.env}

    async def execute_command(self, handle: LocalSession, command: str) -> LocalExecution:
        execution = LocalExecution(session=handle, command=command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *shell_argv(handle.shell_path, command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=handle.cwd,
                env=self._process_env(handle),
            )
        except OSError as e:
            logger.error("Failed to start %s: %s", handle.shell_path, e)
            execution.queue.put_nowait(f"{e}\n")
            execution.queue.put_nowait(None)
            execution.exit_code = 127
            asyncio.get_running_loop().call_soon(self.on_execution_end.emit, execution, 127)
            return execution

        task = asyncio.create_task(self._pump(execution, proc))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return execution

    async def _pump(self, execution: LocalExecution, proc: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        assert proc.stdout is not None
        try:
            while chunk := await proc.stdout.read(READ_CHUNK_SIZE):
                if text := decoder.decode(chunk):
                    execution.queue.put_nowait(text)
            if tail := decoder.decode(b"", final=True):
                execution.queue.put_nowait(tail)
        finally:
            execution.queue.put_nowait(None)

        returncode = await proc.wait()
        # Killed by signal N -> 128 + N, as shells report it
        execution.exit_code = 128 - returncode if returncode < 0 else returncode
        self.on_execution_end.emit(execution, execution.exit_code)

    async def read(self, execution: LocalExecution) -> AsyncIterator[str]:
        if execution.consumed:
            raise RuntimeError("output stream already consumed")
        execution.consumed = True
        while (chunk := await execution.queue.get()) is not None:
            yield chunk

    async def send_text(self, handle: LocalSession, text: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            *shell_argv(handle.shell_path, text),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=handle.cwd,
            env=self._process_env(handle),
        )
        task = asyncio.create_task(proc.wait())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self, name: str) -> None:
        """Forget a session and announce that it closed."""
        if self._sessions.pop(name, None) is not None:
            self.on_session_closed.emit(name)

    async def wait_idle(self) -> None:
        """Wait for every running command of this backend to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
