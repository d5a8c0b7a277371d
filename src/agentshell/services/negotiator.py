"""Protocol negotiation with a time-bounded per-shell support cache."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agentshell.services.backend import SessionBackend

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300.0
DEFAULT_HANDSHAKE_TIMEOUT = 3.0


class NegotiationState(str, Enum):
    CACHE_HIT_SUPPORTED = "cache-hit-supported"
    CACHE_HIT_UNSUPPORTED = "cache-hit-unsupported"
    NEGOTIATED_SUPPORTED = "negotiated-supported"
    NEGOTIATION_TIMED_OUT = "negotiation-timed-out"
    ALREADY_ACTIVE = "already-active"


@dataclass
class CacheEntry:
    key: str
    supported: bool
    last_checked: float


@dataclass
class NegotiationOutcome:
    supported: bool
    state: NegotiationState
    reason: str = ""


def cache_key(shell_kind: str, shell_path: str) -> str:
    return f"{shell_kind}:{shell_path}"


class ProtocolSupportCache:
    """Remembers whether a shell configuration supports the completion protocol.

    Entries older than ``ttl`` seconds are treated as absent. ``clock`` is a
    monotonic seconds source, injectable for tests.
    """

    def __init__(self, ttl: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, shell_kind: str, shell_path: str) -> CacheEntry | None:
        entry = self._entries.get(cache_key(shell_kind, shell_path))
        if entry is None:
            return None
        if self._clock() - entry.last_checked > self.ttl:
            return None
        return entry

    def record(self, shell_kind: str, shell_path: str, supported: bool) -> CacheEntry:
        key = cache_key(shell_kind, shell_path)
        entry = CacheEntry(key=key, supported=supported, last_checked=self._clock())
        self._entries[key] = entry
        return entry

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ProtocolNegotiator:
    """Decides per session whether the rich completion protocol is usable."""

    def __init__(
        self,
        cache: ProtocolSupportCache,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ) -> None:
        self.cache = cache
        self.handshake_timeout = handshake_timeout

    async def negotiate(
        self,
        backend: SessionBackend,
        handle: Any,
        shell_kind: str,
        shell_path: str,
    ) -> NegotiationOutcome:
        if backend.has_integration(handle):
            self.cache.record(shell_kind, shell_path, True)
            return NegotiationOutcome(True, NegotiationState.ALREADY_ACTIVE)

        entry = self.cache.get(shell_kind, shell_path)
        if entry is not None and not entry.supported:
            logger.debug("Protocol cache hit (unsupported) for %s", entry.key)
            return NegotiationOutcome(False, NegotiationState.CACHE_HIT_UNSUPPORTED, "cached_not_supported")
        if entry is not None:
            # Supported shells still announce the protocol per session.
            logger.debug("Protocol cache hit (supported) for %s", entry.key)
        else:
            logger.debug("Protocol cache miss for %s", cache_key(shell_kind, shell_path))

        try:
            await asyncio.wait_for(backend.wait_for_integration(handle), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            self.cache.record(shell_kind, shell_path, False)
            seconds = f"{self.handshake_timeout:g}"
            logger.info("Completion protocol not available for %s (timed out after %ss)", shell_path, seconds)
            return NegotiationOutcome(False, NegotiationState.NEGOTIATION_TIMED_OUT, f"timeout_after_{seconds}s")

        self.cache.record(shell_kind, shell_path, True)
        logger.info("Completion protocol negotiated for %s", shell_path)
        state = NegotiationState.CACHE_HIT_SUPPORTED if entry is not None else NegotiationState.NEGOTIATED_SUPPORTED
        return NegotiationOutcome(True, state)


_cache: ProtocolSupportCache | None = None


def get_protocol_cache() -> ProtocolSupportCache:
    """Process-wide protocol support cache."""
    global _cache
    if _cache is None:
        _cache = ProtocolSupportCache()
    return _cache


def reset_protocol_cache() -> None:
    """Clear the process-wide cache (for testing)."""
    if _cache is not None:
        _cache.clear()
