"""Tests for the execution orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from agentshell.services.channel import DECLINED
from agentshell.services.executor import CommandExecutor
from agentshell.services.negotiator import ProtocolSupportCache
from agentshell.services.sessions import SessionRegistry
from agentshell.storage.history import OutputHistory
from agentshell.storage.models import ExecutionStatus, SessionStatus

from conftest import FakeBackend, FakeResolver, RecordingChannel


def make_executor(backend, config, channel, history, **kwargs):
    return CommandExecutor(
        backend,
        config,
        channel=channel,
        registry=kwargs.pop("registry", SessionRegistry()),
        cache=kwargs.pop("cache", ProtocolSupportCache()),
        history=history,
        resolver=kwargs.pop("resolver", FakeResolver()),
        **kwargs,
    )


class TestSuccessAndFailure:
    @pytest.mark.asyncio
    async def test_success(self, backend, app_config, channel):
        backend.script("echo hi", "hi\r\n")
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("echo hi"))

            assert result.status == ExecutionStatus.SUCCESS
            assert result.exit_code == 0
            assert result.output == "hi"
            assert result.session_name == "echo-1"
            assert result.diagnosis is None
            assert channel.terminal_states == ["success"]
            assert channel.states[0] == "loading"

            info = executor.registry.get("echo-1")
            assert info.status == SessionStatus.COMPLETED
            assert info.last_command == "echo hi"
            assert info.last_exit_code == 0

            record = await history.latest("echo-1")
            assert record.content == "hi"
            assert record.metadata["exit_code"] == 0
            assert record.metadata["command"] == "echo hi"

    @pytest.mark.asyncio
    async def test_failure_is_diagnosed(self, backend, app_config, channel):
        backend.script("npm start", "Error: Cannot find module 'express'\n", exit_code=1)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("npm start"))

            assert result.status == ExecutionStatus.ERROR
            assert result.exit_code == 1
            assert result.diagnosis.error_type == "MODULE_NOT_FOUND"
            assert "npm install express" in result.diagnosis.related_commands
            assert channel.terminal_states == ["error"]
            assert executor.registry.get(result.session_name).status == SessionStatus.ERROR

            record = await history.latest(result.session_name)
            assert record.severity.value == "error"
            assert record.metadata["error_type"] == "MODULE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_ansi_output_is_normalized(self, backend, app_config, channel):
        backend.script("ls", "\x1b[32mgreen\x1b[0m\r\n\n\n\nnext\n")
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("ls"))
        assert result.output == "green\n\nnext"
        assert result.output_lines == 3

    @pytest.mark.asyncio
    async def test_long_output_is_truncated(self, backend, app_config, channel):
        app_config.execution.max_output_chars = 200
        lines = [f"line {i}" for i in range(200)]
        backend.script("seq", "\n".join(lines))
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("seq"))

            assert result.truncated
            assert result.omitted_lines > 0
            assert result.output.startswith("line 0")
            assert result.output.endswith("line 199")
            assert "more lines omitted" in result.output
            # History keeps the full output
            record = await history.latest(result.session_name)
            assert record.content.count("\n") == 199

    @pytest.mark.asyncio
    async def test_prefilter_removes_noise(self, backend, app_config, channel):
        app_config.execution.prefilter_max_chars = 300
        noise = [f"npm WARN deprecated pkg{i}@1.0.0" for i in range(50)]
        text = "\n".join(["start", "a", "b"] + noise + ["ERROR: build failed"] + ["x", "y", "end"])
        backend.script("npm install", text, exit_code=1)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            request = executor.build_request("npm install", prefilter_output=True)
            result = await executor.execute(request)

        assert result.filtered
        assert result.filtered_lines == 50
        assert "ERROR: build failed" in result.output
        assert "npm WARN" not in result.output

    @pytest.mark.asyncio
    async def test_capture_output_disabled(self, backend, app_config, channel):
        backend.script("echo secret", "secret\n")
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("echo secret", capture_output=False))
        assert result.ok
        assert result.output == ""


class TestSandboxAndApproval:
    @pytest.mark.asyncio
    async def test_blocked_command_never_reaches_backend(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("rm -rf /"))

        assert result.status == ExecutionStatus.REJECTED
        assert result.blocked
        assert "rm -rf /" in result.reason
        assert backend.spawned == []
        assert backend.executed == []
        assert channel.terminal_states == ["rejected"]

    @pytest.mark.asyncio
    async def test_sandbox_disabled_runs_command(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("mkfs.ext4 image.img", sandbox_enabled=False))
        assert result.status == ExecutionStatus.SUCCESS
        assert backend.executed == ["mkfs.ext4 image.img"]

    @pytest.mark.asyncio
    async def test_user_block_pattern(self, backend, app_config, channel):
        app_config.sandbox.block = [r"\bcurl\b"]
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("curl https://example.com"))
        assert result.blocked
        assert "sandbox policy" in result.reason

    @pytest.mark.asyncio
    async def test_approval_requested(self, backend, app_config, channel):
        app_config.execution.require_approval = True
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("echo ok"))
        assert result.ok
        assert channel.asks[0]["command"] == "echo ok"
        assert channel.asks[0]["approval_state"] == "pending"

    @pytest.mark.asyncio
    async def test_declined(self, backend, app_config):
        app_config.execution.require_approval = True
        channel = RecordingChannel(answer=DECLINED)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("echo ok"))

        assert result.status == ExecutionStatus.REJECTED
        assert not result.blocked
        assert backend.spawned == []
        assert channel.terminal_states == ["rejected"]


    @pytest.mark.asyncio
    async def test_user_allow_pattern(self, backend, app_config, channel):
        app_config.sandbox.allow = [r"^lsblk\b"]
        backend.script("lsblk /dev/sda", "sda 8:0\n")
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("lsblk /dev/sda"))
        assert result.status == ExecutionStatus.SUCCESS
        assert backend.executed == ["lsblk /dev/sda"]


class TestHistorySettings:
    def test_history_and_monitor_built_from_config(self, backend, app_config):
        app_config.history.max_results = 7
        app_config.history.context_lines = 5
        executor = CommandExecutor(backend, app_config, registry=SessionRegistry(), cache=ProtocolSupportCache())
        assert executor.history.max_results == 7
        assert executor.history.context_lines == 5
        assert executor.monitor.context_lines == 5
        executor.close()


class TestEnvironmentErrors:
    @pytest.mark.asyncio
    async def test_unknown_shell(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("ls", shell="fish"))

        assert result.status == ExecutionStatus.ERROR
        assert result.available_shells == ["bash", "sh"]
        assert "fish" in result.error
        assert channel.terminal_states == ["error"]
        assert channel.messages[0][0] == "error"

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, backend, app_config, channel, tmp_path):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("ls", working_directory=str(tmp_path / "nope")))
        assert result.status == ExecutionStatus.ERROR
        assert "Directory not found" in result.error
        assert backend.spawned == []

    @pytest.mark.asyncio
    async def test_backend_failure_becomes_error_result(self, app_config, channel):
        class BrokenBackend(FakeBackend):
            async def spawn(self, name, shell_path, cwd=None, env=None):
                raise RuntimeError("terminal host unavailable")

        async with OutputHistory() as history:
            executor = make_executor(BrokenBackend(), app_config, channel, history)
            result = await executor.execute(executor.build_request("ls"))

        assert result.status == ExecutionStatus.ERROR
        assert "terminal host unavailable" in result.error
        assert channel.terminal_states == ["error"]


class TestFallback:
    @pytest.mark.asyncio
    async def test_unsupported_shell_sends_text(self, app_config, channel):
        backend = FakeBackend(integration=False)
        cache = ProtocolSupportCache()
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history, cache=cache)
            result = await executor.execute(executor.build_request("make build"))

            assert result.status == ExecutionStatus.SUCCESS
            assert not result.verified
            assert result.exit_code is None
            assert result.reason == "timeout_after_0.1s"
            assert backend.sent == [(result.session_name, "make build")]
            assert backend.executed == []
            assert channel.terminal_states == ["success"]
            assert cache.get("bash", "/bin/bash").supported is False

            # The cached verdict skips the handshake wait.
            second = await executor.execute(executor.build_request("make test"))
            assert second.reason == "cached_not_supported"

    @pytest.mark.asyncio
    async def test_delayed_integration_negotiates(self, app_config, channel):
        backend = FakeBackend(integration_delay=0.01)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("echo hi"))
        assert result.verified
        assert result.status == ExecutionStatus.SUCCESS


class TestTimeout:
    @pytest.mark.asyncio
    async def test_hand_off_to_monitor(self, backend, app_config, channel):
        backend.script("npm run dev", "compiling...\n", delay=None)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("npm run dev", timeout_ms=100))

            assert result.status == ExecutionStatus.TIMEOUT_MONITORING
            assert result.output == "compiling..."
            assert channel.terminal_states == ["timeout-monitoring"]
            # Completion listener stays attached after the hand-off
            assert backend.on_execution_end.listener_count == 1
            assert executor.registry.get(result.session_name).status == SessionStatus.RUNNING

            execution = backend.executions[0]
            backend.feed(execution, "ready in 300ms\n")
            backend.finish(execution, 0)
            final = await executor.monitor.wait(result.session_name, timeout=2)

            assert final.status == ExecutionStatus.SUCCESS
            assert "ready in 300ms" in final.output
            assert executor.registry.get(result.session_name).status == SessionStatus.COMPLETED
            assert backend.on_execution_end.listener_count == 0
            # Still exactly one terminal status update
            assert channel.terminal_states == ["timeout-monitoring"]
            record = await history.latest(result.session_name)
            assert "ready in 300ms" in record.content

    @pytest.mark.asyncio
    async def test_timeout_without_monitoring(self, backend, app_config, channel):
        backend.script("sleep 100", "zzz\n", delay=None)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            request = executor.build_request("sleep 100", timeout_ms=100, auto_monitor=False)
            result = await executor.execute(request)

            assert result.status == ExecutionStatus.TIMEOUT
            assert result.output == "zzz"
            assert backend.on_execution_end.listener_count == 0
            assert executor.registry.get(result.session_name).status == SessionStatus.ERROR
            assert channel.terminal_states == ["error"]
            assert executor.monitor.get(result.session_name) is None
            record = await history.latest(result.session_name)
            assert record.metadata["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_cancel(self, backend, app_config, channel):
        backend.script("tail -f log", delay=None)
        cancel = asyncio.Event()
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            task = asyncio.create_task(executor.execute(executor.build_request("tail -f log"), cancel))
            await asyncio.sleep(0.05)
            cancel.set()
            result = await task

        assert result.status == ExecutionStatus.CANCELLED
        assert backend.on_execution_end.listener_count == 0
        assert channel.terminal_states == ["error"]


class TestSessions:
    @pytest.mark.asyncio
    async def test_reuse_named_session(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            first = await executor.execute(executor.build_request("ls", session_name="dev"))
            second = await executor.execute(executor.build_request("pwd", session_name="dev", reuse_session=True))

        assert first.session_name == second.session_name == "dev"
        assert backend.spawned == ["dev"]
        assert executor.registry.get("dev").last_command == "pwd"

    @pytest.mark.asyncio
    async def test_name_collision_gets_suffix(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            await executor.execute(executor.build_request("ls", session_name="dev"))
            second = await executor.execute(executor.build_request("ls", session_name="dev"))
        assert second.session_name == "dev-2"
        assert backend.spawned == ["dev", "dev-2"]

    @pytest.mark.asyncio
    async def test_session_closed_leaves_registry(self, backend, app_config, channel):
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            result = await executor.execute(executor.build_request("ls"))
            assert result.session_name in executor.registry

            backend.close(result.session_name)
            assert result.session_name not in executor.registry

            executor.close()
            assert backend.on_session_closed.listener_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_requests_use_separate_sessions(self, backend, app_config, channel):
        backend.script("build a", "a\n", delay=0.02)
        backend.script("build b", "b\n", delay=0.01)
        async with OutputHistory() as history:
            executor = make_executor(backend, app_config, channel, history)
            first, second = await asyncio.gather(
                executor.execute(executor.build_request("build a")),
                executor.execute(executor.build_request("build b")),
            )
        assert first.output == "a"
        assert second.output == "b"
        assert first.session_name != second.session_name


class TestBuildRequest:
    def test_defaults_from_config(self, backend, app_config):
        executor = CommandExecutor(backend, app_config, registry=SessionRegistry(), resolver=FakeResolver())
        request = executor.build_request("ls", timeout_ms=None, shell="sh")
        assert request.timeout_ms == app_config.execution.timeout_ms
        assert request.shell == "sh"
        assert request.working_directory == app_config.shell.working_directory

    def test_empty_command_rejected(self, backend, app_config):
        executor = CommandExecutor(backend, app_config, registry=SessionRegistry(), resolver=FakeResolver())
        with pytest.raises(ValueError):
            executor.build_request("   ")
