"""Execution orchestrator: one state machine run per command request.

Flow: sandbox check -> approval -> shell resolution -> session reuse or
spawn -> protocol negotiation -> rich or fallback execution. In rich mode
the command's completion event, the timeout and an optional cancellation
signal race each other:

- completion: output is normalized, bounded, diagnosed on failure and
  recorded in the history store;
- timeout with auto-monitoring: the still-running command is handed to the
  ``ExecutionMonitor`` with its listener attached and partial output is
  returned;
- timeout without monitoring: the listener is disposed and partial output
  is returned as a timeout;
- cancellation: the listener is disposed, the session is left alone.

Exactly one terminal status (rejected, success, error, timeout-monitoring)
is reported to the status channel per request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from agentshell.config import AppConfig
from agentshell.services.backend import SessionBackend
from agentshell.services.channel import APPROVED, TERMINAL_STATES, AutoApproveChannel, StatusChannel, StatusState
from agentshell.services.diagnosis import classify_error
from agentshell.services.monitor import ExecutionMonitor, LiveExecution
from agentshell.services.negotiator import ProtocolNegotiator, ProtocolSupportCache, get_protocol_cache
from agentshell.services.safety import SafetyClassifier, safety_classifier
from agentshell.services.sessions import SessionRegistry, get_session_registry
from agentshell.storage.history import OutputHistory
from agentshell.storage.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    SessionStatus,
    Severity,
)
from agentshell.utils.normalize import normalize_output
from agentshell.utils.shells import ShellResolver, SystemShellResolver, check_working_directory, shell_kind
from agentshell.utils.truncate import TruncationResult, prefilter, smart_truncate

logger = logging.getLogger(__name__)

TOOL_NAME = "execute_command"


class _StatusReporter:
    """Sends status updates and guarantees a single terminal one."""

    def __init__(self, channel: StatusChannel, command: str) -> None:
        self.channel = channel
        self.command = command
        self.session_name: str | None = None
        self.finished = False
        self._last_progress = time.monotonic()

    def _payload(self, state: StatusState, fields: dict[str, Any]) -> dict[str, Any]:
        payload = {"tool": TOOL_NAME, "state": state.value, "command": self.command}
        if self.session_name:
            payload["session_name"] = self.session_name
        payload.update(fields)
        return payload

    async def _send(self, state: StatusState, fields: dict[str, Any]) -> None:
        try:
            await self.channel.update_ask("tool", self._payload(state, fields))
        except Exception:
            logger.exception("Status update %s failed", state.value)

    async def update(self, state: StatusState, **fields: Any) -> None:
        if self.finished:
            return
        if state in TERMINAL_STATES:
            self.finished = True
        await self._send(state, fields)

    async def progress(self, interval: float, **fields: Any) -> None:
        now = time.monotonic()
        if self.finished or now - self._last_progress < interval:
            return
        self._last_progress = now
        await self._send(StatusState.RUNNING, fields)

    async def say(self, kind: str, message: str) -> None:
        try:
            await self.channel.say(kind, message)
        except Exception:
            logger.exception("Channel say failed")


class CommandExecutor:
    """Runs commands against a session backend and reports every transition."""

    def __init__(
        self,
        backend: SessionBackend,
        config: AppConfig,
        *,
        channel: StatusChannel | None = None,
        registry: SessionRegistry | None = None,
        cache: ProtocolSupportCache | None = None,
        history: OutputHistory | None = None,
        monitor: ExecutionMonitor | None = None,
        resolver: ShellResolver | None = None,
        safety: SafetyClassifier | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.channel = channel or AutoApproveChannel()
        self.registry = registry if registry is not None else get_session_registry()
        self.negotiator = ProtocolNegotiator(
            cache if cache is not None else get_protocol_cache(),
            handshake_timeout=config.shell.handshake_timeout_ms / 1000,
        )
        if history is None:
            history = OutputHistory(
                max_results=config.history.max_results, context_lines=config.history.context_lines
            )
        self.history = history
        if monitor is None:
            monitor = ExecutionMonitor(self.registry, self.history, context_lines=config.history.context_lines)
        self.monitor = monitor
        self.resolver = resolver or SystemShellResolver()
        sandbox = config.sandbox
        if safety is None and (sandbox.block or sandbox.risk_keywords or sandbox.allow):
            safety = SafetyClassifier(sandbox.block, sandbox.risk_keywords, sandbox.allow)
        self.safety = safety or safety_classifier
        self._closed_subscription = backend.on_session_closed.subscribe(self._on_session_closed)

    def close(self) -> None:
        self._closed_subscription.dispose()

    def _on_session_closed(self, name: str) -> None:
        self.registry.remove(name)
        self.monitor.discard(name)

    def build_request(self, command: str, **overrides: Any) -> ExecutionRequest:
        """An ``ExecutionRequest`` with defaults taken from the config."""
        execution = self.config.execution
        values: dict[str, Any] = {
            "timeout_ms": execution.timeout_ms,
            "capture_output": execution.capture_output,
            "auto_monitor": execution.auto_monitor,
            "sandbox_enabled": execution.sandbox,
            "shell": self.config.shell.default_shell,
            "working_directory": self.config.shell.working_directory,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ExecutionRequest(command=command, **values)

    async def execute(self, request: ExecutionRequest, cancel: asyncio.Event | None = None) -> ExecutionResult:
        """Run one request to a terminal outcome. Never raises for command failures."""
        start = time.monotonic()
        reporter = _StatusReporter(self.channel, request.command)
        try:
            return await self._run(request, reporter, start, cancel)
        except Exception as e:
            logger.exception("Command execution failed: %s", request.command)
            message = f"Error executing command: {e}"
            if reporter.session_name:
                self.registry.register(reporter.session_name, SessionStatus.ERROR, request.command)
            await reporter.update(StatusState.ERROR, error=message)
            await reporter.say("error", message)
            return ExecutionResult(
                status=ExecutionStatus.ERROR,
                command=request.command,
                session_name=reporter.session_name,
                elapsed_ms=self._elapsed(start),
                error=message,
            )
        finally:
            if not reporter.finished:
                await reporter.update(StatusState.ERROR, error="Execution ended without a final status")

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    async def _run(
        self,
        request: ExecutionRequest,
        reporter: _StatusReporter,
        start: float,
        cancel: asyncio.Event | None,
    ) -> ExecutionResult:
        command = request.command

        # Sandbox
        if request.sandbox_enabled:
            verdict = self.safety.classify(command)
            if not verdict.safe:
                await reporter.update(StatusState.REJECTED, reason=verdict.reason, blocked=True)
                return ExecutionResult(
                    status=ExecutionStatus.REJECTED,
                    command=command,
                    reason=verdict.reason,
                    blocked=True,
                    recommendation="Use a more specific target, split the command, or disable the sandbox if it is safe.",
                    elapsed_ms=self._elapsed(start),
                )

        # Approval
        if self.config.execution.require_approval:
            response = await self.channel.ask(
                "tool",
                {"tool": TOOL_NAME, "command": command, "approval_state": "pending", "session_name": request.session_name},
            )
            if response != APPROVED:
                await reporter.update(StatusState.REJECTED, reason="User declined")
                return ExecutionResult(
                    status=ExecutionStatus.REJECTED,
                    command=command,
                    reason="Command execution was declined",
                    elapsed_ms=self._elapsed(start),
                )
        await reporter.update(StatusState.LOADING)

        # Shell and working directory
        shell_path = self.resolver.resolve(request.shell)
        if shell_path is None:
            available = self.resolver.available()
            message = f"Shell {request.shell!r} was not found. Available shells: {', '.join(available) or 'none'}"
            await reporter.update(StatusState.ERROR, error=message)
            await reporter.say("error", message)
            return ExecutionResult(
                status=ExecutionStatus.ERROR,
                command=command,
                shell=request.shell,
                error=message,
                available_shells=available,
                elapsed_ms=self._elapsed(start),
            )
        kind = shell_kind(request.shell, shell_path)

        cwd = None
        if request.working_directory:
            ok, resolved = check_working_directory(request.working_directory)
            if not ok:
                await reporter.update(StatusState.ERROR, error=resolved)
                await reporter.say("error", resolved)
                return ExecutionResult(
                    status=ExecutionStatus.ERROR,
                    command=command,
                    shell=kind,
                    error=resolved,
                    elapsed_ms=self._elapsed(start),
                )
            cwd = resolved

        # Session
        name, handle = await self._resolve_session(request, kind, shell_path, cwd)
        reporter.session_name = name

        # Negotiation
        outcome = await self.negotiator.negotiate(self.backend, handle, kind, shell_path)
        if not outcome.supported:
            return await self._run_fallback(request, reporter, start, name, handle, kind, cwd, outcome.reason)

        return await self._run_rich(request, reporter, start, name, handle, kind, cwd, cancel)

    async def _resolve_session(
        self,
        request: ExecutionRequest,
        kind: str,
        shell_path: str,
        cwd: str | None,
    ) -> tuple[str, Any]:
        if request.reuse_session and request.session_name:
            handle = self.backend.find(request.session_name)
            if handle is not None:
                logger.debug("Reusing session %s", request.session_name)
                return request.session_name, handle
            name = request.session_name
        else:
            live_names = self.backend.live_sessions()
            base = request.session_name or self.registry.generate_name(request.command, kind, cwd)
            name = self.registry.unique_name(base, live_names)

        handle = await self.backend.spawn(name, shell_path, cwd, request.env)
        self.registry.register(name, SessionStatus.IDLE, handle=handle)
        logger.info("Created session %s (%s)", name, kind)
        return name, handle

    async def _run_fallback(
        self,
        request: ExecutionRequest,
        reporter: _StatusReporter,
        start: float,
        name: str,
        handle: Any,
        kind: str,
        cwd: str | None,
        reason: str,
    ) -> ExecutionResult:
        await self.backend.send_text(handle, request.command)
        self.registry.register(name, SessionStatus.RUNNING, request.command)
        logger.info("Sent %s to session %s without completion protocol (%s)", request.command, name, reason)
        await reporter.update(StatusState.SUCCESS, verified=False, reason=reason)
        return ExecutionResult(
            status=ExecutionStatus.SUCCESS,
            command=request.command,
            session_name=name,
            shell=kind,
            working_directory=cwd,
            verified=False,
            reason=reason,
            recommendation=(
                f"The command was sent but its output and exit code cannot be captured. "
                f"Use read_progress on session '{name}' to check on it."
            ),
            elapsed_ms=self._elapsed(start),
        )

    async def _run_rich(
        self,
        request: ExecutionRequest,
        reporter: _StatusReporter,
        start: float,
        name: str,
        handle: Any,
        kind: str,
        cwd: str | None,
        cancel: asyncio.Event | None,
    ) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        live = LiveExecution(
            session_name=name,
            command=request.command,
            shell=kind,
            completion=loop.create_future(),
            started_at=start,
            prefilter=request.prefilter_output,
        )
        early_ends: list[tuple[Any, int]] = []

        def on_end(execution: Any, exit_code: int) -> None:
            if live.execution is None:
                early_ends.append((execution, exit_code))
            elif execution is live.execution and not live.completion.done():
                live.ended_at = time.monotonic()
                live.completion.set_result(exit_code)

        # Subscribe before issuing the command so its end event cannot be missed.
        live.subscription = self.backend.on_execution_end.subscribe(on_end)
        cancel_task: asyncio.Future | None = None
        try:
            self.registry.register(name, SessionStatus.RUNNING, request.command)
            live.execution = await self.backend.execute_command(handle, request.command)
            for execution, exit_code in early_ends:
                on_end(execution, exit_code)
            live.reader = asyncio.create_task(self._read_output(live, request, reporter))

            waiters: set[asyncio.Future] = {live.completion}
            if cancel is not None:
                cancel_task = asyncio.ensure_future(cancel.wait())
                waiters.add(cancel_task)
            done, _ = await asyncio.wait(
                waiters, timeout=request.timeout_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            live.release()
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if live.completion in done:
            result = await self._complete(live, live.completion.result())
            await reporter.update(
                StatusState.SUCCESS if result.ok else StatusState.ERROR,
                exit_code=result.exit_code,
                elapsed_ms=result.elapsed_ms,
            )
            return result

        if cancel_task is not None and cancel_task in done:
            live.release()
            logger.info("Execution cancelled: %s", request.command)
            await reporter.update(StatusState.ERROR, reason="cancelled")
            return ExecutionResult(
                status=ExecutionStatus.CANCELLED,
                command=request.command,
                session_name=name,
                shell=kind,
                working_directory=cwd,
                output=normalize_output(live.raw_output()),
                reason="Execution was cancelled; the command may still be running in the session",
                elapsed_ms=self._elapsed(start),
            )

        if request.auto_monitor:
            return await self._hand_off(live, request, reporter, cwd)
        return await self._time_out(live, request, reporter, cwd)

    async def _read_output(self, live: LiveExecution, request: ExecutionRequest, reporter: _StatusReporter) -> None:
        interval = self.config.execution.progress_interval_ms / 1000
        line_count = 0
        try:
            async for chunk in self.backend.read(live.execution):
                live.last_output_at = time.monotonic()
                if not request.capture_output:
                    continue
                live.chunks.append(chunk)
                line_count += chunk.count("\n")
                await reporter.progress(
                    interval,
                    elapsed_seconds=int(live.last_output_at - live.started_at),
                    lines=line_count,
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reading output failed for session %s", live.session_name)

    async def _drain(self, live: LiveExecution) -> None:
        """Give the reader a bounded time to consume the remaining output."""
        if live.reader is None or live.reader.done():
            return
        done, _ = await asyncio.wait({live.reader}, timeout=self.config.execution.drain_timeout_ms / 1000)
        if not done:
            live.reader.cancel()

    def _bound(self, text: str, use_prefilter: bool) -> TruncationResult:
        if use_prefilter:
            return prefilter(text, self.config.execution.prefilter_max_chars)
        return smart_truncate(text, self.config.execution.max_output_chars)

    async def _complete(self, live: LiveExecution, exit_code: int) -> ExecutionResult:
        """Finalize a finished execution: output, diagnosis, registry, history."""
        await self._drain(live)
        live.release()

        clean = normalize_output(live.raw_output())
        bounded = self._bound(clean, live.prefilter)
        diagnosis = classify_error(exit_code, clean, live.command) if exit_code != 0 else None
        status = ExecutionStatus.SUCCESS if exit_code == 0 else ExecutionStatus.ERROR
        end = live.ended_at if live.ended_at is not None else time.monotonic()
        elapsed = int((end - live.started_at) * 1000)

        self.registry.register(
            live.session_name,
            SessionStatus.COMPLETED if exit_code == 0 else SessionStatus.ERROR,
            live.command,
            exit_code,
        )
        await self._record(
            live,
            clean,
            Severity.SUCCESS if exit_code == 0 else Severity.ERROR,
            status=status.value,
            exit_code=exit_code,
            elapsed_ms=elapsed,
            error_type=diagnosis.error_type if diagnosis else None,
        )
        logger.info("Command finished in session %s with exit code %d", live.session_name, exit_code)

        return ExecutionResult(
            status=status,
            command=live.command,
            session_name=live.session_name,
            shell=live.shell,
            exit_code=exit_code,
            elapsed_ms=elapsed,
            output=bounded.text,
            output_lines=len(clean.split("\n")) if clean else 0,
            truncated=bounded.truncated,
            filtered=bounded.filtered,
            omitted_lines=bounded.omitted_lines,
            filtered_lines=bounded.filtered_lines,
            diagnosis=diagnosis,
        )

    async def _record(self, live: LiveExecution, content: str, severity: Severity, **metadata: Any) -> None:
        try:
            await self.history.append(
                live.session_name,
                content,
                severity=severity,
                metadata={"command": live.command, "shell": live.shell, **metadata},
            )
        except Exception:
            logger.exception("Failed to save output history")

    async def _hand_off(
        self,
        live: LiveExecution,
        request: ExecutionRequest,
        reporter: _StatusReporter,
        cwd: str | None,
    ) -> ExecutionResult:
        # Listener and reader stay attached; the monitor finalizes on completion.
        self.monitor.adopt(live, self._complete)
        partial = normalize_output(live.raw_output())
        bounded = smart_truncate(partial, self.config.execution.max_output_chars)
        elapsed = int((time.monotonic() - live.started_at) * 1000)
        logger.info("Command exceeded %dms, handed to monitor: %s", request.timeout_ms, request.command)
        await reporter.update(StatusState.TIMEOUT_MONITORING, elapsed_ms=elapsed)
        return ExecutionResult(
            status=ExecutionStatus.TIMEOUT_MONITORING,
            command=request.command,
            session_name=live.session_name,
            shell=live.shell,
            working_directory=cwd,
            elapsed_ms=elapsed,
            output=bounded.text,
            output_lines=len(partial.split("\n")) if partial else 0,
            truncated=bounded.truncated,
            omitted_lines=bounded.omitted_lines,
            reason=f"Command still running after {request.timeout_ms}ms",
            recommendation=(
                f"The command keeps running in session '{live.session_name}'. "
                "Use read_progress to poll its output or wait for completion."
            ),
        )

    async def _time_out(
        self,
        live: LiveExecution,
        request: ExecutionRequest,
        reporter: _StatusReporter,
        cwd: str | None,
    ) -> ExecutionResult:
        if live.subscription is not None:
            live.subscription.dispose()
        await self._drain(live)
        live.release()

        partial = normalize_output(live.raw_output())
        bounded = smart_truncate(partial, self.config.execution.max_output_chars)
        elapsed = int((time.monotonic() - live.started_at) * 1000)
        self.registry.register(live.session_name, SessionStatus.ERROR, request.command)
        await self._record(live, partial, Severity.ERROR, status=ExecutionStatus.TIMEOUT.value, elapsed_ms=elapsed)
        logger.warning("Command timed out after %dms: %s", request.timeout_ms, request.command)

        reason = f"Command did not complete within {request.timeout_ms}ms"
        await reporter.update(StatusState.ERROR, reason=reason)
        return ExecutionResult(
            status=ExecutionStatus.TIMEOUT,
            command=request.command,
            session_name=live.session_name,
            shell=live.shell,
            working_directory=cwd,
            elapsed_ms=elapsed,
            output=bounded.text,
            output_lines=len(partial.split("\n")) if partial else 0,
            truncated=bounded.truncated,
            omitted_lines=bounded.omitted_lines,
            reason=reason,
            recommendation="Re-run with auto-monitoring enabled or a longer timeout.",
        )
