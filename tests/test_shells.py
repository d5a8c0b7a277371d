"""Tests for shell discovery."""

from __future__ import annotations

from agentshell.services.local_shell import shell_argv
from agentshell.utils.shells import SystemShellResolver, check_working_directory, shell_kind


def fake_which(installed):
    return lambda name: installed.get(name)


class TestSystemShellResolver:
    def test_default_from_login_shell(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/usr/bin/zsh")
        resolver = SystemShellResolver("linux", fake_which({"zsh": "/usr/bin/zsh", "bash": "/bin/bash"}))
        assert resolver.default_shell() == "zsh"
        assert resolver.resolve("auto") == "/usr/bin/zsh"

    def test_default_falls_back_to_bash(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/opt/weird/shell")
        resolver = SystemShellResolver("linux", fake_which({"bash": "/bin/bash"}))
        assert resolver.default_shell() == "bash"

    def test_default_on_windows(self):
        resolver = SystemShellResolver("win32", fake_which({}))
        assert resolver.default_shell() == "powershell"

    def test_windows_aliases(self):
        resolver = SystemShellResolver("win32", fake_which({"pwsh.exe": r"C:\pwsh\pwsh.exe"}))
        assert resolver.resolve("powershell-core") == r"C:\pwsh\pwsh.exe"
        assert resolver.resolve("cmd") is None

    def test_unknown_shell(self):
        resolver = SystemShellResolver("linux", fake_which({"bash": "/bin/bash"}))
        assert resolver.resolve("fish") is None
        assert resolver.available() == ["bash"]

    def test_absolute_path(self, tmp_path):
        shell = tmp_path / "myshell"
        shell.write_text("")
        resolver = SystemShellResolver("linux", fake_which({}))
        assert resolver.resolve(str(shell)) == str(shell)
        assert resolver.resolve(str(tmp_path / "missing")) is None


class TestHelpers:
    def test_shell_kind(self):
        assert shell_kind("bash", "/bin/bash") == "bash"
        assert shell_kind("auto", "/usr/bin/zsh") == "zsh"
        assert shell_kind("/usr/local/bin/fish", "/usr/local/bin/fish") == "fish"

    def test_check_working_directory(self, tmp_path):
        ok, resolved = check_working_directory(str(tmp_path))
        assert ok
        assert resolved == str(tmp_path.resolve())

        ok, message = check_working_directory(str(tmp_path / "missing"))
        assert not ok
        assert "Directory not found" in message

        file = tmp_path / "f.txt"
        file.write_text("x")
        ok, message = check_working_directory(str(file))
        assert not ok
        assert "Not a directory" in message

    def test_shell_argv(self):
        assert shell_argv("/bin/bash", "ls") == ["/bin/bash", "-c", "ls"]
        assert shell_argv("cmd.exe", "dir") == ["cmd.exe", "/d", "/s", "/c", "dir"]
        assert shell_argv("pwsh", "Get-ChildItem")[1:] == ["-NoProfile", "-Command", "Get-ChildItem"]
        assert shell_argv("wsl.exe", "ls")[1:] == ["bash", "-c", "ls"]
