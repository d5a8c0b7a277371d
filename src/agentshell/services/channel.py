"""Approval / status-update channel used to report execution state."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

APPROVED = "yesButtonTapped"
DECLINED = "noButtonTapped"


class StatusState(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    RUNNING = "running"
    REJECTED = "rejected"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT_MONITORING = "timeout-monitoring"


TERMINAL_STATES = frozenset(
    {StatusState.REJECTED, StatusState.SUCCESS, StatusState.ERROR, StatusState.TIMEOUT_MONITORING}
)


class StatusChannel(Protocol):
    """Host-side channel for approval prompts and status updates.

    ``ask`` blocks until the human answers; the answer ``"yesButtonTapped"``
    approves. ``update_ask`` and ``say`` are fire-and-forget reports.
    """

    async def ask(self, kind: str, payload: dict[str, Any]) -> str: ...

    async def update_ask(self, kind: str, payload: dict[str, Any]) -> None: ...

    async def say(self, kind: str, message: str) -> None: ...


class AutoApproveChannel:
    """Channel that approves everything and logs every update."""

    async def ask(self, kind: str, payload: dict[str, Any]) -> str:
        logger.debug("Auto-approving %s request: %s", kind, payload.get("command", ""))
        return APPROVED

    async def update_ask(self, kind: str, payload: dict[str, Any]) -> None:
        logger.debug("Status %s: %s", payload.get("state"), payload.get("command", ""))

    async def say(self, kind: str, message: str) -> None:
        log = logger.warning if kind == "error" else logger.info
        log("%s: %s", kind, message)
