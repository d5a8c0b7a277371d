"""Data models for agentshell."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    TIMEOUT_MONITORING = "timeout-monitoring"
    CANCELLED = "cancelled"


@dataclass
class Diagnosis:
    """Structured classification of a failed command."""

    error_type: str
    category: str
    suggestion: str
    related_commands: list[str] = field(default_factory=list)
    confidence: Confidence = Confidence.MEDIUM


@dataclass
class SessionInfo:
    """A named execution context as tracked by the session registry."""

    name: str
    status: SessionStatus
    created_at: datetime
    last_active_at: datetime
    last_command: str | None = None
    last_exit_code: int | None = None
    handle: Any = None


@dataclass
class ExecutionRequest:
    """One "run this command" call."""

    command: str
    timeout_ms: int = 30000
    capture_output: bool = True
    auto_monitor: bool = True
    sandbox_enabled: bool = True
    working_directory: str | None = None
    session_name: str | None = None
    reuse_session: bool = False
    shell: str = "auto"
    env: dict[str, str] | None = None
    prefilter_output: bool = False

    def __post_init__(self) -> None:
        if not self.command or not self.command.strip():
            raise ValueError("command must not be empty")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.reuse_session and not self.session_name:
            raise ValueError("reuse_session requires session_name")


@dataclass
class ExecutionResult:
    """Outcome of one execution request."""

    status: ExecutionStatus
    command: str
    session_name: str | None = None
    shell: str | None = None
    working_directory: str | None = None
    exit_code: int | None = None
    elapsed_ms: int = 0
    output: str = ""
    output_lines: int = 0
    truncated: bool = False
    filtered: bool = False
    omitted_lines: int = 0
    filtered_lines: int = 0
    diagnosis: Diagnosis | None = None
    reason: str = ""
    recommendation: str = ""
    blocked: bool = False
    verified: bool = True
    available_shells: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


@dataclass(frozen=True)
class OutputRecord:
    """One immutable entry of the output history."""

    id: int
    session_name: str
    timestamp: datetime
    severity: Severity
    content: str
    source: str = "terminal"
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
