"""Configuration management using TOML + environment variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

CONFIG_DIR = Path.home() / ".agentshell"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "agentshell.log"


@dataclass
class ExecutionConfig:
    timeout_ms: int = 30000
    auto_monitor: bool = True
    capture_output: bool = True
    sandbox: bool = True
    require_approval: bool = True
    max_output_chars: int = 10000
    prefilter_max_chars: int = 5000
    progress_interval_ms: int = 3000
    drain_timeout_ms: int = 1000


@dataclass
class ShellConfig:
    default_shell: str = "auto"
    working_directory: str = "."
    handshake_timeout_ms: int = 3000


@dataclass
class SandboxConfig:
    block: list[str] = field(default_factory=list)
    allow: list[str] = field(default_factory=list)
    risk_keywords: list[str] = field(default_factory=list)


@dataclass
class HistoryConfig:
    max_results: int = 100
    context_lines: int = 3
    export_format: str = "txt"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = "~/.agentshell/agentshell.log"


@dataclass
class AppConfig:
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    shell: ShellConfig = field(default_factory=ShellConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def ensure_config_dir() -> None:
    """Create config directory with secure permissions."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(CONFIG_DIR, 0o700)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def load_config() -> AppConfig:
    """Load configuration from TOML file with env var overrides."""
    config = AppConfig()

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "rb") as f:
            data = tomllib.load(f)

        execution = data.get("execution", {})
        config.execution.timeout_ms = execution.get("timeout_ms", config.execution.timeout_ms)
        config.execution.auto_monitor = execution.get("auto_monitor", config.execution.auto_monitor)
        config.execution.capture_output = execution.get("capture_output", config.execution.capture_output)
        config.execution.sandbox = execution.get("sandbox", config.execution.sandbox)
        config.execution.require_approval = execution.get("require_approval", config.execution.require_approval)
        config.execution.max_output_chars = execution.get("max_output_chars", config.execution.max_output_chars)
        config.execution.prefilter_max_chars = execution.get(
            "prefilter_max_chars", config.execution.prefilter_max_chars
        )
        config.execution.progress_interval_ms = execution.get(
            "progress_interval_ms", config.execution.progress_interval_ms
        )
        config.execution.drain_timeout_ms = execution.get("drain_timeout_ms", config.execution.drain_timeout_ms)

        shell = data.get("shell", {})
        config.shell.default_shell = shell.get("default_shell", config.shell.default_shell)
        config.shell.working_directory = shell.get("working_directory", config.shell.working_directory)
        config.shell.handshake_timeout_ms = shell.get("handshake_timeout_ms", config.shell.handshake_timeout_ms)

        sandbox = data.get("sandbox", {})
        config.sandbox.block = sandbox.get("block", config.sandbox.block)
        config.sandbox.allow = sandbox.get("allow", config.sandbox.allow)
        config.sandbox.risk_keywords = sandbox.get("risk_keywords", config.sandbox.risk_keywords)

        history = data.get("history", {})
        config.history.max_results = history.get("max_results", config.history.max_results)
        config.history.context_lines = history.get("context_lines", config.history.context_lines)
        config.history.export_format = history.get("export_format", config.history.export_format)

        logging_cfg = data.get("logging", {})
        config.logging.level = logging_cfg.get("level", config.logging.level)
        config.logging.file = logging_cfg.get("file", config.logging.file)

    # Environment variable overrides
    if env_timeout := os.environ.get("AGENTSHELL_TIMEOUT_MS"):
        config.execution.timeout_ms = int(env_timeout)
    if env_shell := os.environ.get("AGENTSHELL_SHELL"):
        config.shell.default_shell = env_shell
    if env_sandbox := os.environ.get("AGENTSHELL_SANDBOX"):
        config.execution.sandbox = _env_bool(env_sandbox)
    if env_max_output := os.environ.get("AGENTSHELL_MAX_OUTPUT"):
        config.execution.max_output_chars = int(env_max_output)
    if env_log_level := os.environ.get("AGENTSHELL_LOG_LEVEL"):
        config.logging.level = env_log_level
    if env_log_file := os.environ.get("AGENTSHELL_LOG_FILE"):
        config.logging.file = env_log_file

    return config


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML file."""
    ensure_config_dir()

    data = {
        "execution": {
            "timeout_ms": config.execution.timeout_ms,
            "auto_monitor": config.execution.auto_monitor,
            "capture_output": config.execution.capture_output,
            "sandbox": config.execution.sandbox,
            "require_approval": config.execution.require_approval,
            "max_output_chars": config.execution.max_output_chars,
            "prefilter_max_chars": config.execution.prefilter_max_chars,
            "progress_interval_ms": config.execution.progress_interval_ms,
            "drain_timeout_ms": config.execution.drain_timeout_ms,
        },
        "shell": {
            "default_shell": config.shell.default_shell,
            "working_directory": config.shell.working_directory,
            "handshake_timeout_ms": config.shell.handshake_timeout_ms,
        },
        "sandbox": {
            "block": config.sandbox.block,
            "allow": config.sandbox.allow,
            "risk_keywords": config.sandbox.risk_keywords,
        },
        "history": {
            "max_results": config.history.max_results,
            "context_lines": config.history.context_lines,
            "export_format": config.history.export_format,
        },
        "logging": {
            "level": config.logging.level,
            "file": config.logging.file,
        },
    }

    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(CONFIG_FILE, 0o600)


# Global singleton
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or load the global config singleton."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global config (for testing)."""
    global _config
    _config = None
