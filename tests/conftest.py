"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from agentshell.config import AppConfig, ExecutionConfig, HistoryConfig, LoggingConfig, SandboxConfig, ShellConfig
from agentshell.services.backend import EventEmitter
from agentshell.services.channel import APPROVED


@pytest.fixture
def app_config(tmp_path):
    """Create a test configuration."""
    return AppConfig(
        execution=ExecutionConfig(
            timeout_ms=2000,
            require_approval=False,
            max_output_chars=4096,
            prefilter_max_chars=2048,
            progress_interval_ms=0,
            drain_timeout_ms=200,
        ),
        shell=ShellConfig(default_shell="bash", working_directory=str(tmp_path), handshake_timeout_ms=100),
        sandbox=SandboxConfig(),
        history=HistoryConfig(),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )


@dataclass
class Script:
    """What the fake backend does when a command is issued."""

    chunks: list[str] = field(default_factory=list)
    exit_code: int = 0
    # None keeps the command running until ``FakeBackend.finish`` is called.
    delay: float | None = 0.0


@dataclass
class FakeHandle:
    name: str
    shell_path: str
    cwd: str | None = None
    env: dict[str, str] | None = None


@dataclass
class FakeExecution:
    handle: FakeHandle
    command: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


class FakeBackend:
    """In-process session backend driven by per-command scripts."""

    def __init__(self, integration: bool = True, integration_delay: float | None = None) -> None:
        self.on_execution_end = EventEmitter()
        self.on_session_closed = EventEmitter()
        self.integration = integration
        self.integration_delay = integration_delay
        self.scripts: dict[str, Script] = {}
        self.sessions: dict[str, FakeHandle] = {}
        self.spawned: list[str] = []
        self.executed: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.executions: list[FakeExecution] = []
        self._tasks: set[asyncio.Task] = set()

    def script(self, command: str, *chunks: str, exit_code: int = 0, delay: float | None = 0.0) -> None:
        self.scripts[command] = Script(list(chunks), exit_code, delay)

    async def spawn(self, name, shell_path, cwd=None, env=None):
        handle = FakeHandle(name, shell_path, cwd, env)
        self.sessions[name] = handle
        self.spawned.append(name)
        return handle

    def find(self, name):
        return self.sessions.get(name)

    def live_sessions(self):
        return list(self.sessions)

    def has_integration(self, handle):
        return self.integration and self.integration_delay is None

    async def wait_for_integration(self, handle):
        if not self.integration:
            await asyncio.Event().wait()
        await asyncio.sleep(self.integration_delay or 0)

    async def execute_command(self, handle, command):
        execution = FakeExecution(handle, command)
        self.executions.append(execution)
        self.executed.append(command)
        script = self.scripts.get(command, Script())
        task = asyncio.create_task(self._play(execution, script))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return execution

    async def _play(self, execution: FakeExecution, script: Script) -> None:
        for chunk in script.chunks:
            execution.queue.put_nowait(chunk)
            await asyncio.sleep(0)
        if script.delay is None:
            return
        await asyncio.sleep(script.delay)
        self.finish(execution, script.exit_code)

    def feed(self, execution: FakeExecution, chunk: str) -> None:
        execution.queue.put_nowait(chunk)

    def finish(self, execution: FakeExecution, exit_code: int) -> None:
        execution.queue.put_nowait(None)
        self.on_execution_end.emit(execution, exit_code)

    async def read(self, execution):
        while (chunk := await execution.queue.get()) is not None:
            yield chunk

    async def send_text(self, handle, text):
        self.sent.append((handle.name, text))

    def close(self, name: str) -> None:
        if self.sessions.pop(name, None) is not None:
            self.on_session_closed.emit(name)


class RecordingChannel:
    """Status channel that records every call and answers with ``answer``."""

    def __init__(self, answer: str = APPROVED) -> None:
        self.answer = answer
        self.asks: list[dict[str, Any]] = []
        self.updates: list[dict[str, Any]] = []
        self.messages: list[tuple[str, str]] = []

    async def ask(self, kind, payload):
        self.asks.append(payload)
        return self.answer

    async def update_ask(self, kind, payload):
        self.updates.append(payload)

    async def say(self, kind, message):
        self.messages.append((kind, message))

    @property
    def states(self) -> list[str]:
        return [update["state"] for update in self.updates]

    @property
    def terminal_states(self) -> list[str]:
        return [s for s in self.states if s in ("rejected", "success", "error", "timeout-monitoring")]


class FakeResolver:
    """Shell resolver with a fixed set of installed shells."""

    def __init__(self, shells: dict[str, str] | None = None, default: str = "bash") -> None:
        self.shells = shells if shells is not None else {"bash": "/bin/bash", "sh": "/bin/sh"}
        self.default = default

    def default_shell(self):
        return self.default

    def resolve(self, shell):
        if not shell or shell == "auto":
            shell = self.default
        if shell.startswith("/"):
            return shell if shell in self.shells.values() else None
        return self.shells.get(shell)

    def available(self):
        return list(self.shells)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def resolver():
    return FakeResolver()
