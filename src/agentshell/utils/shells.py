"""Shell discovery and working directory checks."""

from __future__ import annotations

import os
import shutil
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

WINDOWS_SHELLS: dict[str, tuple[str, ...]] = {
    "powershell": ("powershell.exe", "powershell"),
    "powershell-core": ("pwsh.exe", "pwsh"),
    "cmd": ("cmd.exe",),
    "git-bash": (
        r"C:\Program Files\Git\bin\bash.exe",
        r"C:\Program Files (x86)\Git\bin\bash.exe",
    ),
    "wsl-bash": ("wsl.exe",),
}

UNIX_SHELLS: tuple[str, ...] = ("bash", "zsh", "fish", "sh", "ksh", "tcsh", "dash")


class ShellResolver(Protocol):
    """Maps shell identifiers to executable paths."""

    def default_shell(self) -> str: ...

    def resolve(self, shell: str) -> str | None: ...

    def available(self) -> list[str]: ...


class SystemShellResolver:
    """Resolve shells installed on this machine."""

    def __init__(
        self,
        platform: str = sys.platform,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.platform = platform
        self._which = which

    @property
    def is_windows(self) -> bool:
        return self.platform.startswith("win")

    def known_shells(self) -> list[str]:
        return list(WINDOWS_SHELLS) if self.is_windows else list(UNIX_SHELLS)

    def default_shell(self) -> str:
        if self.is_windows:
            return "powershell"
        login_shell = Path(os.environ.get("SHELL", "")).name
        if login_shell in UNIX_SHELLS and self._which(login_shell):
            return login_shell
        return "bash" if self._which("bash") else "sh"

    def resolve(self, shell: str) -> str | None:
        """Executable path for ``shell`` (an identifier, ``auto`` or a path)."""
        if not shell or shell == "auto":
            shell = self.default_shell()

        if os.path.isabs(shell):
            return shell if os.path.isfile(shell) else None

        candidates = WINDOWS_SHELLS.get(shell, (shell,)) if self.is_windows else (shell,)
        for candidate in candidates:
            if os.path.isabs(candidate):
                if os.path.isfile(candidate):
                    return candidate
            elif found := self._which(candidate):
                return found
        return None

    def available(self) -> list[str]:
        return [shell for shell in self.known_shells() if self.resolve(shell)]


def shell_kind(shell: str, shell_path: str) -> str:
    """Identifier used as the shell part of the protocol cache key."""
    if shell and shell != "auto" and not os.path.isabs(shell):
        return shell
    return Path(shell_path).stem.lower()


def check_working_directory(path: str) -> tuple[bool, str]:
    """Validate a working directory path."""
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        return False, f"Directory not found: {resolved}"
    if not resolved.is_dir():
        return False, f"Not a directory: {resolved}"
    return True, str(resolved)
