"""Session backend protocol and the event plumbing it uses."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``EventEmitter.subscribe``; ``dispose()`` detaches it."""

    def __init__(self, emitter: EventEmitter, listener: Callable[..., Any]) -> None:
        self._emitter = emitter
        self._listener = listener
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._emitter._remove(self._listener)


class EventEmitter:
    """Minimal synchronous event source."""

    def __init__(self) -> None:
        self._listeners: list[Callable[..., Any]] = []

    def subscribe(self, listener: Callable[..., Any]) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Event listener failed")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _remove(self, listener: Callable[..., Any]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass


class SessionBackend(Protocol):
    """Capability that spawns, drives and observes shell sessions.

    Implementations:
    - LocalShellBackend: one asyncio subprocess per command
    - test doubles driven by the test suite

    ``on_execution_end`` fires once per execution with ``(execution, exit_code)``.
    ``on_session_closed`` fires with the session name when its process goes away.
    """

    on_execution_end: EventEmitter
    on_session_closed: EventEmitter

    async def spawn(
        self,
        name: str,
        shell_path: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Any:
        """Create a named session and return its opaque handle."""
        ...

    def find(self, name: str) -> Any | None:
        """Return the live session handle with this name, if any."""
        ...

    def live_sessions(self) -> list[str]:
        """Names of all sessions currently alive."""
        ...

    def has_integration(self, handle: Any) -> bool:
        """Whether the rich completion protocol is already active."""
        ...

    async def wait_for_integration(self, handle: Any) -> None:
        """Resolve once the session announces the completion protocol."""
        ...

    async def execute_command(self, handle: Any, command: str) -> Any:
        """Issue a command through the completion protocol; returns an execution."""
        ...

    def read(self, execution: Any) -> AsyncIterator[str]:
        """Finite, single-consumption stream of raw output chunks."""
        ...

    async def send_text(self, handle: Any, text: str) -> None:
        """Inject command text without a completion channel."""
        ...
