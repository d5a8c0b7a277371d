"""Tests for the execution monitor and progress reports."""

from __future__ import annotations

import asyncio

import pytest

from agentshell.services.executor import CommandExecutor
from agentshell.services.monitor import ExecutionMonitor, SessionNotFoundError, summarize
from agentshell.services.negotiator import ProtocolSupportCache
from agentshell.services.sessions import SessionRegistry
from agentshell.storage.history import OutputHistory
from agentshell.storage.models import ExecutionStatus, SessionStatus

from conftest import FakeResolver


async def start_monitored(backend, app_config, channel, history, command, *chunks):
    backend.script(command, *chunks, delay=None)
    executor = CommandExecutor(
        backend,
        app_config,
        channel=channel,
        registry=SessionRegistry(),
        cache=ProtocolSupportCache(),
        history=history,
        resolver=FakeResolver(),
    )
    result = await executor.execute(executor.build_request(command, timeout_ms=100))
    assert result.status == ExecutionStatus.TIMEOUT_MONITORING
    return executor, result.session_name, backend.executions[-1]


class TestSummarize:
    def test_completed(self):
        summary = summarize(["building", "done"], done=True, exit_code=0, is_hot=False, idle_seconds=0)
        assert summary.process_state == "completed"
        assert summary.progress_percent == 100

    def test_completed_with_errors(self):
        summary = summarize(["Error: boom"], done=True, exit_code=1, is_hot=False, idle_seconds=0)
        assert summary.process_state == "completed_with_errors"
        assert "1 error line(s)" in summary.findings[0]

    def test_running_active_with_progress(self):
        summary = summarize(["downloading 10%", "downloading 45%"], done=False, exit_code=None, is_hot=True, idle_seconds=1)
        assert summary.process_state == "running_active"
        assert summary.progress_percent == 45
        assert summary.activity == "downloading 45%"

    def test_running_waiting_server(self):
        lines = ["Local: http://localhost:5173/", "ready in 300 ms"]
        summary = summarize(lines, done=False, exit_code=None, is_hot=False, idle_seconds=42)
        assert summary.process_state == "running_waiting"
        assert "42s" in summary.recommendation
        assert "Server reported ready" in summary.findings
        assert "URL: http://localhost:5173/" in summary.findings


class TestReadProgress:
    @pytest.mark.asyncio
    async def test_running_report(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor, name, _ = await start_monitored(
                backend, app_config, channel, history, "npm run dev", "compiling\n", "Local: http://localhost:3000\n"
            )
            report = await executor.monitor.read_progress(name, extract_data=True, filter_keywords=["local"])

        assert report.status == "running"
        assert report.exit_code is None
        assert not report.completed
        assert report.is_hot
        assert report.total_lines == 2
        assert report.highlights[0].line == 2
        assert report.highlights[0].context_before == ["compiling"]
        assert report.extracted["urls"] == ["http://localhost:3000"]
        assert report.summary.process_state == "running_active"

    @pytest.mark.asyncio
    async def test_context_lines_default_from_config(self, backend, app_config, channel):
        app_config.history.context_lines = 0
        async with OutputHistory() as history:
            executor, name, _ = await start_monitored(
                backend, app_config, channel, history, "npm run dev", "compiling\n", "ready\n"
            )
            report = await executor.monitor.read_progress(name, filter_keywords=["ready"])
            wider = await executor.monitor.read_progress(name, filter_keywords=["ready"], context_lines=1)

        assert report.highlights[0].context_before == []
        assert wider.highlights[0].context_before == ["compiling"]

    @pytest.mark.asyncio
    async def test_completion_reported_once(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor, name, execution = await start_monitored(backend, app_config, channel, history, "make", "step 1\n")
            backend.feed(execution, "all done\n")
            backend.finish(execution, 0)

            first = await executor.monitor.read_progress(name, wait_for_completion=True, max_wait_ms=2000)
            second = await executor.monitor.read_progress(name)

        assert first.status == "completed"
        assert first.exit_code == 0
        assert first.completed
        assert not first.already_reported
        assert "all done" in first.output
        assert not second.completed
        assert second.already_reported
        assert executor.registry.get(name).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_command_has_diagnosis(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor, name, execution = await start_monitored(backend, app_config, channel, history, "npm run dev")
            backend.feed(execution, "Error: listen EADDRINUSE: address already in use :::3000\n")
            backend.finish(execution, 1)
            report = await executor.monitor.read_progress(name, wait_for_completion=True, max_wait_ms=2000)

        assert report.status == "error"
        assert report.diagnosis.error_type == "PORT_IN_USE"
        assert "lsof -ti:3000" in report.diagnosis.related_commands
        assert report.summary.process_state == "completed_with_errors"

    @pytest.mark.asyncio
    async def test_wait_times_out_while_running(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor, name, _ = await start_monitored(backend, app_config, channel, history, "serve", "up\n")
            report = await executor.monitor.read_progress(name, wait_for_completion=True, max_wait_ms=50)
        assert report.status == "running"
        assert not report.completed

    @pytest.mark.asyncio
    async def test_output_bounded_to_recent_lines(self, backend, app_config, channel):
        chunks = [f"line {i}\n" for i in range(100)]
        async with OutputHistory() as history:
            executor, name, _ = await start_monitored(backend, app_config, channel, history, "seq", *chunks)
            tail = await executor.monitor.read_progress(name)
            full = await executor.monitor.read_progress(name, include_full_output=True)
            small = await executor.monitor.read_progress(name, include_full_output=True, max_chars=20)

        assert tail.shown_lines == 30
        assert tail.truncated
        assert tail.output.endswith("line 99")
        assert full.shown_lines == 100
        assert not full.truncated
        assert small.truncated
        assert small.output.endswith("line 99")
        assert len(small.output) <= 20

    @pytest.mark.asyncio
    async def test_falls_back_to_history(self, backend, app_config, channel):
        backend.script("echo hi", "hi\n")
        async with OutputHistory() as history:
            executor = CommandExecutor(
                backend, app_config, channel=channel, registry=SessionRegistry(), history=history, resolver=FakeResolver()
            )
            result = await executor.execute(executor.build_request("echo hi"))
            report = await executor.monitor.read_progress(result.session_name)

        assert report.status == "completed"
        assert report.command == "echo hi"
        assert report.exit_code == 0
        assert report.output == "hi"

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        async with OutputHistory() as history:
            monitor = ExecutionMonitor(SessionRegistry(), history)
            with pytest.raises(SessionNotFoundError):
                await monitor.read_progress("ghost")
            with pytest.raises(SessionNotFoundError):
                await monitor.wait("ghost")

    @pytest.mark.asyncio
    async def test_discard_on_session_close(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor, name, _ = await start_monitored(backend, app_config, channel, history, "serve", "up\n")
            backend.close(name)
            await asyncio.sleep(0)
            assert executor.monitor.get(name) is None
            assert backend.on_execution_end.listener_count == 0
