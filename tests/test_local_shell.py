"""Tests for the local subprocess session backend."""

from __future__ import annotations

import asyncio
import shutil
import sys

import pytest

from agentshell.services.executor import CommandExecutor
from agentshell.services.local_shell import LocalShellBackend
from agentshell.services.negotiator import ProtocolSupportCache
from agentshell.services.sessions import SessionRegistry
from agentshell.storage.history import OutputHistory
from agentshell.storage.models import ExecutionStatus

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None, reason="requires a POSIX sh"
)

SH = shutil.which("sh") or "/bin/sh"


async def run_once(backend, handle, command):
    ended = asyncio.get_running_loop().create_future()

    def on_end(execution, exit_code):
        if not ended.done():
            ended.set_result(exit_code)

    subscription = backend.on_execution_end.subscribe(on_end)
    execution = await backend.execute_command(handle, command)
    chunks = [chunk async for chunk in backend.read(execution)]
    exit_code = await asyncio.wait_for(ended, 5)
    subscription.dispose()
    return "".join(chunks), exit_code


class TestLocalShellBackend:
    @pytest.mark.asyncio
    async def test_spawn_has_integration(self):
        backend = LocalShellBackend()
        handle = await backend.spawn("s", SH)
        assert backend.has_integration(handle)
        assert backend.find("s") is handle
        assert backend.live_sessions() == ["s"]

    @pytest.mark.asyncio
    async def test_output_and_exit_code(self, tmp_path):
        backend = LocalShellBackend()
        handle = await backend.spawn("s", SH, cwd=str(tmp_path))
        output, exit_code = await run_once(backend, handle, "echo hello; echo oops >&2; exit 3")
        assert "hello" in output
        assert "oops" in output
        assert exit_code == 3

    @pytest.mark.asyncio
    async def test_cwd_and_env(self, tmp_path):
        backend = LocalShellBackend()
        handle = await backend.spawn("s", SH, cwd=str(tmp_path), env={"AGENTSHELL_TEST": "42"})
        output, exit_code = await run_once(backend, handle, 'pwd; echo "$AGENTSHELL_TEST"')
        assert exit_code == 0
        assert str(tmp_path.resolve()) in output
        assert "42" in output

    @pytest.mark.asyncio
    async def test_missing_shell_reports_127(self):
        backend = LocalShellBackend()
        handle = await backend.spawn("s", "/nonexistent/shell")
        output, exit_code = await run_once(backend, handle, "ls")
        assert exit_code == 127
        assert output

    @pytest.mark.asyncio
    async def test_stream_consumed_once(self):
        backend = LocalShellBackend()
        handle = await backend.spawn("s", SH)
        execution = await backend.execute_command(handle, "true")
        _ = [chunk async for chunk in backend.read(execution)]
        with pytest.raises(RuntimeError):
            async for _ in backend.read(execution):
                pass
        await backend.wait_idle()

    @pytest.mark.asyncio
    async def test_close_emits_event(self):
        backend = LocalShellBackend()
        closed = []
        backend.on_session_closed.subscribe(closed.append)
        await backend.spawn("s", SH)
        backend.close("s")
        backend.close("s")
        assert closed == ["s"]
        assert backend.find("s") is None


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_executor_with_real_shell(self, app_config, channel, tmp_path):
        app_config.shell.default_shell = SH
        backend = LocalShellBackend()
        async with OutputHistory() as history:
            executor = CommandExecutor(
                backend,
                app_config,
                channel=channel,
                registry=SessionRegistry(),
                cache=ProtocolSupportCache(),
                history=history,
            )
            ok = await executor.execute(executor.build_request("printf '\\033[32mgreen\\033[0m\\n'"))
            failed = await executor.execute(executor.build_request("nonexistent_cmd_xyz"))
            await backend.wait_idle()

        assert ok.status == ExecutionStatus.SUCCESS
        assert ok.output == "green"
        assert failed.status == ExecutionStatus.ERROR
        assert failed.exit_code == 127
        assert failed.diagnosis.error_type == "COMMAND_NOT_FOUND"
