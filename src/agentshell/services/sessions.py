"""Session registry: named sessions, their status and last command."""

from __future__ import annotations

import itertools
import logging
import os
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from agentshell.storage.models import SessionInfo, SessionStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    """In-memory map of session name -> ``SessionInfo``.

    Every mutation is a single synchronous step, so interleaved coroutines
    never observe a half-applied update.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._sessions: dict[str, SessionInfo] = {}
        self._counter = itertools.count(1)

    def register(
        self,
        name: str,
        status: SessionStatus,
        command: str | None = None,
        exit_code: int | None = None,
        handle: Any = None,
    ) -> SessionInfo:
        """Create or update a session entry.

        ``created_at`` of an existing entry is kept. ``command``, ``exit_code``
        and ``handle`` keep their previous values when passed as ``None``.
        """
        now = self._clock()
        existing = self._sessions.get(name)
        created_at = existing.created_at if existing else now
        info = SessionInfo(
            name=name,
            status=SessionStatus(status),
            created_at=created_at,
            last_active_at=max(now, created_at),
            last_command=command if command is not None else (existing.last_command if existing else None),
            last_exit_code=exit_code if exit_code is not None else (existing.last_exit_code if existing else None),
            handle=handle if handle is not None else (existing.handle if existing else None),
        )
        self._sessions[name] = info
        return info

    def get(self, name: str) -> SessionInfo | None:
        return self._sessions.get(name)

    def list(self, live_names: Iterable[str] | None = None) -> list[SessionInfo]:
        """List sessions.

        With ``live_names`` the result follows the live session set: entries
        without registry metadata are reported with status ``unknown``, and
        registry entries whose session is gone are left out.
        """
        if live_names is None:
            return list(self._sessions.values())

        now = self._clock()
        result = []
        for name in live_names:
            info = self._sessions.get(name)
            if info is None:
                info = SessionInfo(name=name, status=SessionStatus.UNKNOWN, created_at=now, last_active_at=now)
            result.append(info)
        return result

    def remove(self, name: str) -> bool:
        removed = self._sessions.pop(name, None) is not None
        if removed:
            logger.debug("Session %s removed from registry", name)
        return removed

    def clear(self) -> None:
        self._sessions.clear()
        self._counter = itertools.count(1)

    def generate_name(self, command: str, shell: str, working_directory: str | None = None) -> str:
        """Semantic name such as ``npm-3`` or ``myproject-bash-4``."""
        number = next(self._counter)
        words = command.strip().split()
        first_word = re.sub(r"[^a-zA-Z0-9-]", "", os.path.basename(words[0])) if words else ""
        if first_word:
            return f"{first_word}-{number}"
        project = os.path.basename(os.path.abspath(working_directory or os.getcwd())) or "session"
        return f"{project}-{shell}-{number}"

    def unique_name(self, name: str, taken: Iterable[str]) -> str:
        """``name``, or ``name-2``, ``name-3``... if it is already taken."""
        taken = set(taken) | set(self._sessions)
        if name not in taken:
            return name
        suffix = 2
        while f"{name}-{suffix}" in taken:
            suffix += 1
        return f"{name}-{suffix}"

    def __contains__(self, name: object) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


_registry: SessionRegistry | None = None


def get_session_registry() -> SessionRegistry:
    """Process-wide session registry."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry


def reset_session_registry() -> None:
    """Clear the process-wide registry (for testing)."""
    if _registry is not None:
        _registry.clear()
