"""Text and markup rendering of execution results, sessions and progress."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from agentshell.services.monitor import ProgressReport
from agentshell.storage.models import ExecutionResult, ExecutionStatus, SessionInfo

_MARKUP_ESCAPES = str.maketrans({"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;", "'": "&apos;"})
_EXTRACTED_TAGS = {"urls": "url", "file_paths": "file_path", "api_calls": "api_call"}


def escape_markup(text: Any) -> str:
    """Escape ``& < > " '`` for embedding in markup."""
    return str(text).translate(_MARKUP_ESCAPES)


def format_duration(ms: int) -> str:
    """Format milliseconds to human-readable duration."""
    if ms < 1000:
        return f"{ms}ms"
    elif ms < 60000:
        return f"{ms / 1000:.1f}s"
    else:
        minutes = ms // 60000
        seconds = (ms % 60000) // 1000
        return f"{minutes}m {seconds}s"


def _tag(name: str, value: Any, indent: int = 1) -> str:
    return f"{'  ' * indent}<{name}>{escape_markup(value)}</{name}>"


def format_result(result: ExecutionResult) -> str:
    """Plain-text rendering for terminals."""
    if result.blocked:
        return f"Blocked: {result.reason}"
    if result.status == ExecutionStatus.REJECTED:
        return f"Rejected: {result.reason}"

    if result.exit_code is not None:
        icon = "OK" if result.exit_code == 0 else f"ERR({result.exit_code})"
    else:
        icon = result.status.value.upper()
    header = f"$ {result.command}\n[{icon}] {format_duration(result.elapsed_ms)}"
    if result.session_name:
        header += f" | {result.session_name}"

    parts = [header, "", result.output or result.error or "(no output)"]
    if result.diagnosis:
        parts += ["", f"{result.diagnosis.error_type}: {result.diagnosis.suggestion}"]
        parts += [f"  $ {command}" for command in result.diagnosis.related_commands]
    if result.recommendation:
        parts += ["", result.recommendation]
    return "\n".join(parts)


def render_result_markup(result: ExecutionResult) -> str:
    """``<terminal_result>`` block with every text field escaped."""
    lines = ["<terminal_result>", _tag("status", result.status.value), _tag("command", result.command)]
    if result.session_name:
        lines.append(_tag("session", result.session_name))
    if result.shell:
        lines.append(_tag("shell", result.shell))
    if result.working_directory:
        lines.append(_tag("working_directory", result.working_directory))
    if result.exit_code is not None:
        lines.append(_tag("exit_code", result.exit_code))
    lines.append(_tag("elapsed", format_duration(result.elapsed_ms)))
    if not result.verified:
        lines.append(_tag("verified", "false"))
    if result.blocked:
        lines.append(_tag("blocked", "true"))
    if result.reason:
        lines.append(_tag("reason", result.reason))
    if result.error:
        lines.append(_tag("error", result.error))
    if result.available_shells:
        lines.append(_tag("available_shells", ", ".join(result.available_shells)))

    if result.output or result.status in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR):
        attrs = f' lines="{result.output_lines}" truncated="{str(result.truncated).lower()}"'
        if result.filtered:
            attrs += f' filtered="true" filtered_lines="{result.filtered_lines}"'
        lines.append(f"  <output{attrs}>{escape_markup(result.output)}</output>")

    if result.diagnosis:
        diagnosis = result.diagnosis
        lines += [
            "  <error_analysis>",
            _tag("type", diagnosis.error_type, 2),
            _tag("category", diagnosis.category, 2),
            _tag("suggestion", diagnosis.suggestion, 2),
            _tag("confidence", diagnosis.confidence.value, 2),
        ]
        if diagnosis.related_commands:
            lines.append("    <related_commands>")
            lines += [_tag("command", command, 3) for command in diagnosis.related_commands]
            lines.append("    </related_commands>")
        lines.append("  </error_analysis>")

    if result.recommendation:
        lines.append(_tag("recommendation", result.recommendation))
    lines.append("</terminal_result>")
    return "\n".join(lines)


def render_sessions_markup(sessions: Iterable[SessionInfo]) -> str:
    """``<terminal_list>`` block describing each session."""
    sessions = list(sessions)
    lines = [f'<terminal_list count="{len(sessions)}">']
    for info in sessions:
        lines.append(f'  <terminal name="{escape_markup(info.name)}" status="{info.status.value}">')
        if info.last_command is not None:
            lines.append(_tag("last_command", info.last_command, 2))
        if info.last_exit_code is not None:
            lines.append(_tag("last_exit_code", info.last_exit_code, 2))
        lines.append(_tag("created_at", info.created_at.isoformat(), 2))
        lines.append(_tag("last_active_at", info.last_active_at.isoformat(), 2))
        lines.append("  </terminal>")
    lines.append("</terminal_list>")
    return "\n".join(lines)


def render_progress_markup(report: ProgressReport) -> str:
    """``<progress_report>`` block for a read-progress poll."""
    lines = [
        "<progress_report>",
        _tag("session", report.session_name),
        _tag("status", report.status),
    ]
    if report.command:
        lines.append(_tag("command", report.command))
    if report.exit_code is not None:
        lines.append(_tag("exit_code", report.exit_code))
    lines.append(_tag("elapsed", format_duration(report.elapsed_ms)))
    if report.completed:
        lines.append(_tag("completed", "true"))
    elif report.already_reported:
        lines.append(_tag("already_reported", "true"))

    if report.summary:
        summary = report.summary
        lines += ["  <summary>", _tag("state", summary.process_state, 2), _tag("activity", summary.activity, 2)]
        if summary.progress_percent is not None:
            lines.append(_tag("progress", f"{summary.progress_percent}%", 2))
        lines += [_tag("finding", finding, 2) for finding in summary.findings]
        lines.append(_tag("recommendation", summary.recommendation, 2))
        lines.append("  </summary>")

    for hit in report.highlights:
        lines.append(
            f'  <match keyword="{escape_markup(hit.keyword)}" line="{hit.line}">{escape_markup(hit.text)}</match>'
        )

    if report.extracted:
        lines.append("  <extracted>")
        for key, values in report.extracted.items():
            for value in values:
                if key == "json":
                    value = json.dumps(value, ensure_ascii=False)
                lines.append(_tag(_EXTRACTED_TAGS.get(key, key), value, 2))
        lines.append("  </extracted>")

    lines.append(
        f'  <output lines="{report.shown_lines}/{report.total_lines}" '
        f'truncated="{str(report.truncated).lower()}">{escape_markup(report.output)}</output>'
    )
    lines.append("</progress_report>")
    return "\n".join(lines)
