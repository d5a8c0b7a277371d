"""Monitoring of commands that outlived their execution timeout.

A command whose timeout elapsed with auto-monitoring enabled is handed to
the ``ExecutionMonitor`` still running, with its completion listener and
output reader intact. When the command eventually finishes, the monitor
runs the finalization callback it was given (registry update, history
record, diagnosis). ``read_progress`` lets callers poll a session at any
point, optionally blocking until completion.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentshell.services.backend import Subscription
from agentshell.services.sessions import SessionRegistry
from agentshell.storage.history import OutputHistory
from agentshell.storage.models import Diagnosis, ExecutionResult, ExecutionStatus
from agentshell.utils.normalize import normalize_output
from agentshell.utils.patterns import PREDEFINED_PATTERNS, URL_RE, extract_structures

logger = logging.getLogger(__name__)

HOT_WINDOW_SECONDS = 5.0
DEFAULT_TAIL_LINES = 30
DEFAULT_MAX_CHARS = 16000
MAX_CHARS_CAP = 50000
DEFAULT_MAX_WAIT_MS = 60000

_PERCENT_RE = re.compile(r"(\d{1,3})\s?%")
_READY_RE = re.compile(r"listening on|server (?:is )?(?:running|started|ready)|ready in|compiled successfully", re.IGNORECASE)


class SessionNotFoundError(LookupError):
    """No live execution, registry entry or history for a session name."""


@dataclass
class LiveExecution:
    """A rich-mode command in flight."""

    session_name: str
    command: str
    shell: str
    completion: asyncio.Future
    started_at: float = field(default_factory=time.monotonic)
    execution: Any = None
    subscription: Subscription | None = None
    reader: asyncio.Task | None = None
    chunks: list[str] = field(default_factory=list)
    last_output_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    prefilter: bool = False
    result: ExecutionResult | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    completion_reported: bool = False

    def raw_output(self) -> str:
        return "".join(self.chunks)

    @property
    def done(self) -> bool:
        return self.completion.done() and not self.completion.cancelled()

    @property
    def exit_code(self) -> int | None:
        return self.completion.result() if self.done else None

    def release(self) -> None:
        """Detach the completion listener and stop reading output."""
        if self.subscription is not None:
            self.subscription.dispose()
        if self.reader is not None and not self.reader.done():
            self.reader.cancel()


@dataclass
class KeywordHit:
    keyword: str
    line: int
    text: str
    context_before: list[str] = field(default_factory=list)
    context_after: list[str] = field(default_factory=list)


@dataclass
class ProgressSummary:
    process_state: str
    activity: str
    findings: list[str] = field(default_factory=list)
    recommendation: str = ""
    progress_percent: int | None = None


@dataclass
class ProgressReport:
    session_name: str
    status: str
    command: str | None = None
    exit_code: int | None = None
    elapsed_ms: int = 0
    output: str = ""
    total_lines: int = 0
    shown_lines: int = 0
    truncated: bool = False
    is_hot: bool = False
    completed: bool = False
    already_reported: bool = False
    highlights: list[KeywordHit] = field(default_factory=list)
    extracted: dict[str, Any] | None = None
    summary: ProgressSummary | None = None
    diagnosis: Diagnosis | None = None


def _select_lines(lines: list[str], include_full: bool, max_chars: int) -> tuple[list[str], bool]:
    shown = lines if include_full else lines[-DEFAULT_TAIL_LINES:]
    truncated = len(shown) < len(lines)
    if len("\n".join(shown)) <= max_chars:
        return shown, truncated

    # Keep the most recent lines that fit.
    kept: list[str] = []
    size = 0
    for line in reversed(shown):
        cost = len(line) + (1 if kept else 0)
        if size + cost > max_chars:
            break
        kept.append(line)
        size += cost
    kept.reverse()
    return kept, True


def _keyword_hits(lines: list[str], keywords: list[str], context_lines: int) -> list[KeywordHit]:
    hits = []
    for keyword in keywords:
        needle = keyword.lower()
        for index, line in enumerate(lines):
            if needle and needle in line.lower():
                hits.append(
                    KeywordHit(
                        keyword=keyword,
                        line=index + 1,
                        text=line,
                        context_before=lines[max(0, index - context_lines):index],
                        context_after=lines[index + 1:index + 1 + context_lines],
                    )
                )
    return hits


def summarize(lines: list[str], *, done: bool, exit_code: int | None, is_hot: bool, idle_seconds: float) -> ProgressSummary:
    """Heuristic digest of a command's output so far."""
    error_lines = [line for line in lines if any(p.search(line) for p in PREDEFINED_PATTERNS["error"])]
    warning_lines = [line for line in lines if any(p.search(line) for p in PREDEFINED_PATTERNS["warning"])]
    activity = next((line.strip() for line in reversed(lines) if line.strip()), "")[:120]

    findings = []
    if error_lines:
        findings.append(f"{len(error_lines)} error line(s), last: {error_lines[-1].strip()[:120]}")
    if warning_lines:
        findings.append(f"{len(warning_lines)} warning line(s)")
    text = "\n".join(lines)
    if _READY_RE.search(text):
        findings.append("Server reported ready")
    urls = list(dict.fromkeys(URL_RE.findall(text)))
    if urls:
        findings.append(f"URL: {urls[0]}")

    percents = _PERCENT_RE.findall(text)
    progress = min(int(percents[-1]), 100) if percents else None

    if done:
        progress = 100
        if exit_code == 0 and not error_lines:
            state, recommendation = "completed", "Command finished successfully."
        else:
            state = "completed_with_errors"
            recommendation = "Command finished with errors. Review the error lines and the diagnosis."
    elif is_hot:
        state, recommendation = "running_active", "Command is producing output. Poll again shortly."
    else:
        state = "running_waiting"
        recommendation = (
            f"No output for {int(idle_seconds)}s. The command may be waiting for input, "
            "serving requests, or stalled."
        )

    return ProgressSummary(
        process_state=state,
        activity=activity,
        findings=findings,
        recommendation=recommendation,
        progress_percent=progress,
    )


class ExecutionMonitor:
    """Tracks handed-off executions and answers progress queries."""

    def __init__(
        self,
        registry: SessionRegistry,
        history: OutputHistory,
        clock: Callable[[], float] = time.monotonic,
        context_lines: int = 2,
    ) -> None:
        self.registry = registry
        self.history = history
        self._clock = clock
        self.context_lines = context_lines
        self._live: dict[str, LiveExecution] = {}
        self._tasks: set[asyncio.Task] = set()

    def adopt(
        self,
        live: LiveExecution,
        on_complete: Callable[[LiveExecution, int], Awaitable[ExecutionResult]],
    ) -> None:
        """Take over a running execution; ``on_complete`` runs once it ends."""
        previous = self._live.get(live.session_name)
        if previous is not None and previous is not live and not previous.done:
            logger.warning("Session %s already had a monitored command; replacing it", live.session_name)
            previous.release()
        self._live[live.session_name] = live
        logger.info("Monitoring %s in session %s", live.command, live.session_name)

        def _done(future: asyncio.Future) -> None:
            if future.cancelled():
                live.finished.set()
                return
            task = asyncio.ensure_future(self._finish(live, future.result(), on_complete))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        live.completion.add_done_callback(_done)

    async def _finish(
        self,
        live: LiveExecution,
        exit_code: int,
        on_complete: Callable[[LiveExecution, int], Awaitable[ExecutionResult]],
    ) -> None:
        try:
            live.result = await on_complete(live, exit_code)
        except Exception:
            logger.exception("Failed to finalize monitored command: %s", live.command)
        finally:
            live.finished.set()

    def get(self, session_name: str) -> LiveExecution | None:
        return self._live.get(session_name)

    def live_sessions(self) -> list[str]:
        return list(self._live)

    def discard(self, session_name: str) -> None:
        live = self._live.pop(session_name, None)
        if live is not None:
            live.release()
            if not live.completion.done():
                live.completion.cancel()

    async def wait(self, session_name: str, timeout: float | None = None) -> ExecutionResult | None:
        """Wait for a monitored command to be finalized; ``None`` on timeout."""
        live = self._live.get(session_name)
        if live is None:
            raise SessionNotFoundError(f"No monitored command in session {session_name!r}")
        try:
            await asyncio.wait_for(live.finished.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return live.result

    async def read_progress(
        self,
        session_name: str,
        *,
        wait_for_completion: bool = False,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        include_full_output: bool = False,
        filter_keywords: list[str] | None = None,
        context_lines: int | None = None,
        extract_data: bool = False,
        smart_summary: bool = True,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> ProgressReport:
        """Report the state and output of a session's current or last command.

        Completion is reported once: the first report after the command ends
        has ``completed=True``, later ones ``already_reported=True``.
        Raises ``SessionNotFoundError`` for an unknown session.
        """
        max_chars = max(1, min(max_chars, MAX_CHARS_CAP))
        if context_lines is None:
            context_lines = self.context_lines
        live = self._live.get(session_name)

        if live is None:
            return await self._report_from_history(
                session_name, include_full_output, filter_keywords, context_lines, extract_data, max_chars
            )

        if wait_for_completion and not live.finished.is_set():
            try:
                await asyncio.wait_for(live.finished.wait(), max_wait_ms / 1000)
            except asyncio.TimeoutError:
                logger.debug("Still running after %dms: %s", max_wait_ms, live.command)

        now = self._clock()
        text = normalize_output(live.raw_output())
        lines = text.split("\n") if text else []
        shown, truncated = _select_lines(lines, include_full_output, max_chars)
        done = live.finished.is_set() and live.done
        idle = now - live.last_output_at
        end = live.ended_at if live.ended_at is not None else now

        report = ProgressReport(
            session_name=session_name,
            status="running" if not done else ("completed" if live.exit_code == 0 else "error"),
            command=live.command,
            exit_code=live.exit_code if done else None,
            elapsed_ms=int((end - live.started_at) * 1000),
            output="\n".join(shown),
            total_lines=len(lines),
            shown_lines=len(shown),
            truncated=truncated,
            is_hot=not done and idle <= HOT_WINDOW_SECONDS,
            highlights=_keyword_hits(lines, filter_keywords or [], context_lines),
            extracted=extract_structures(text) if extract_data else None,
            diagnosis=live.result.diagnosis if live.result else None,
        )
        if done:
            report.completed = not live.completion_reported
            report.already_reported = live.completion_reported
            live.completion_reported = True
        if smart_summary:
            report.summary = summarize(lines, done=done, exit_code=report.exit_code, is_hot=report.is_hot, idle_seconds=idle)
        return report

    async def _report_from_history(
        self,
        session_name: str,
        include_full_output: bool,
        filter_keywords: list[str] | None,
        context_lines: int,
        extract_data: bool,
        max_chars: int,
    ) -> ProgressReport:
        info = self.registry.get(session_name)
        record = await self.history.latest(session_name)
        if info is None and record is None:
            raise SessionNotFoundError(f"No session named {session_name!r}")

        text = record.content if record else ""
        lines = text.split("\n") if text else []
        shown, truncated = _select_lines(lines, include_full_output, max_chars)
        exit_code = info.last_exit_code if info else None
        if exit_code is None and record is not None:
            exit_code = record.metadata.get("exit_code")

        return ProgressReport(
            session_name=session_name,
            status=info.status.value if info else str(record.metadata.get("status", ExecutionStatus.SUCCESS.value)),
            command=info.last_command if info else record.metadata.get("command"),
            exit_code=exit_code,
            elapsed_ms=int(record.metadata.get("elapsed_ms", 0)) if record else 0,
            output="\n".join(shown),
            total_lines=len(lines),
            shown_lines=len(shown),
            truncated=truncated,
            highlights=_keyword_hits(lines, filter_keywords or [], context_lines),
            extracted=extract_structures(text) if extract_data else None,
        )
