"""CLI entry point using typer."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentshell import __version__
from agentshell.config import CONFIG_FILE, LOG_FILE, AppConfig, ensure_config_dir, load_config, save_config
from agentshell.services.channel import APPROVED, DECLINED
from agentshell.services.diagnosis import classify_error
from agentshell.services.executor import CommandExecutor
from agentshell.services.local_shell import LocalShellBackend
from agentshell.services.safety import SafetyClassifier
from agentshell.storage.history import EXPORT_FORMATS, OutputHistory
from agentshell.storage.models import ExecutionResult, ExecutionStatus
from agentshell.utils.formatting import format_duration, format_result, render_progress_markup, render_result_markup
from agentshell.utils.shells import SystemShellResolver

app = typer.Typer(
    name="agentshell",
    help="Run shell commands with safety checks, bounded output and error diagnosis.",
    add_completion=False,
)
console = Console()


def _setup_logging(config: AppConfig, verbose: bool) -> None:
    ensure_config_dir()
    log_path = Path(config.logging.file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(str(log_path)),
            *([logging.StreamHandler()] if verbose else []),
        ],
    )


class ConsoleChannel:
    """Approval prompts and status lines on the terminal."""

    def __init__(self, assume_yes: bool = False, verbose: bool = False) -> None:
        self.assume_yes = assume_yes
        self.verbose = verbose

    async def ask(self, kind: str, payload: dict[str, Any]) -> str:
        if self.assume_yes:
            return APPROVED
        approved = await asyncio.to_thread(typer.confirm, f"Run `{payload.get('command', '')}`?", default=False)
        return APPROVED if approved else DECLINED

    async def update_ask(self, kind: str, payload: dict[str, Any]) -> None:
        if not self.verbose:
            return
        details = ", ".join(f"{k}={v}" for k, v in payload.items() if k not in ("tool", "state", "command"))
        console.print(f"[dim]{payload.get('state')}{': ' + escape(details) if details else ''}[/dim]")

    async def say(self, kind: str, message: str) -> None:
        style = "red" if kind == "error" else "dim"
        console.print(f"[{style}]{escape(message)}[/{style}]")


async def _run(
    cfg: AppConfig,
    command: str,
    overrides: dict[str, Any],
    *,
    assume_yes: bool,
    verbose: bool,
    wait: bool,
    markup: bool,
    export_path: Path | None,
    export_format: str,
) -> ExecutionResult:
    backend = LocalShellBackend()
    history_cfg = cfg.history
    async with OutputHistory(max_results=history_cfg.max_results, context_lines=history_cfg.context_lines) as history:
        executor = CommandExecutor(
            backend,
            cfg,
            channel=ConsoleChannel(assume_yes=assume_yes, verbose=verbose),
            history=history,
        )
        try:
            result = await executor.execute(executor.build_request(command, **overrides))
            console.print(render_result_markup(result) if markup else format_result(result), markup=False)

            if result.status == ExecutionStatus.TIMEOUT_MONITORING and result.session_name:
                if wait:
                    report = await executor.monitor.read_progress(
                        result.session_name, wait_for_completion=True, max_wait_ms=24 * 3600 * 1000
                    )
                    if markup:
                        console.print(render_progress_markup(report), markup=False)
                    else:
                        console.print(f"\n[{report.status}] {format_duration(report.elapsed_ms)}", markup=False)
                        console.print(report.output, markup=False)
                    final = executor.monitor.get(result.session_name)
                    if final is not None and final.result is not None:
                        result = final.result
                else:
                    console.print(
                        "[yellow]Command is still running; it is no longer monitored once this process exits.[/yellow]"
                    )

            if export_path is not None:
                await history.export(export_format, path=export_path, include_metadata=True)
                console.print(f"[green]History exported to {export_path}[/green]")
        finally:
            executor.close()
    return result


@app.command()
def run(
    command: str = typer.Argument(..., help="Command line to execute"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Timeout in milliseconds"),
    shell: str = typer.Option(None, "--shell", "-s", help="Shell identifier or path"),
    cwd: str = typer.Option(None, "--cwd", "-C", help="Working directory"),
    session: str = typer.Option(None, "--session", help="Session name"),
    reuse: bool = typer.Option(False, "--reuse", help="Reuse the named session if it exists"),
    sandbox: bool = typer.Option(None, "--sandbox/--no-sandbox", help="Override the safety check"),
    monitor: bool = typer.Option(None, "--monitor/--no-monitor", help="Keep monitoring after the timeout"),
    prefilter: bool = typer.Option(False, "--prefilter", help="Drop verbose build/install noise from output"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the approval prompt"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for monitored commands to finish"),
    markup: bool = typer.Option(False, "--markup", help="Print the result as a markup block"),
    export: Path = typer.Option(None, "--export", help="Write the output history to this file"),
    export_format: str = typer.Option(
        None, "--format", help=f"Export format ({', '.join(EXPORT_FORMATS)}), defaults to history.export_format"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show status updates and debug logs"),
) -> None:
    """Execute a command and print its result."""
    cfg = load_config()
    export_format = export_format or cfg.history.export_format
    if export_format not in EXPORT_FORMATS:
        console.print(f"[red]Unknown export format: {escape(export_format)}[/red]")
        raise typer.Exit(1)

    _setup_logging(cfg, verbose)

    overrides = {
        "timeout_ms": timeout,
        "shell": shell,
        "working_directory": cwd,
        "session_name": session,
        "reuse_session": reuse or None,
        "sandbox_enabled": sandbox,
        "auto_monitor": monitor,
        "prefilter_output": prefilter or None,
    }
    try:
        result = asyncio.run(
            _run(
                cfg,
                command,
                overrides,
                assume_yes=yes,
                verbose=verbose,
                wait=wait,
                markup=markup,
                export_path=export,
                export_format=export_format,
            )
        )
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2)
    except KeyboardInterrupt:
        raise typer.Exit(130)

    if result.exit_code is not None:
        raise typer.Exit(result.exit_code)
    if result.status not in (ExecutionStatus.SUCCESS, ExecutionStatus.TIMEOUT_MONITORING):
        raise typer.Exit(1)


@app.command()
def check(command: str = typer.Argument(..., help="Command line to classify")) -> None:
    """Check a command against the sandbox policy without running it."""
    cfg = load_config()
    verdict = SafetyClassifier(cfg.sandbox.block, cfg.sandbox.risk_keywords, cfg.sandbox.allow).classify(command)
    if verdict.safe:
        console.print("[green]Allowed[/green]")
        return
    console.print(f"[red]Blocked:[/red] {escape(verdict.reason)}")
    raise typer.Exit(1)


@app.command()
def diagnose(
    text: str = typer.Argument(None, help="Command output (reads stdin when omitted)"),
    exit_code: int = typer.Option(1, "--exit-code", "-e", help="Exit code of the failed command"),
    command: str = typer.Option("", "--command", "-c", help="The command that failed"),
    file: Path = typer.Option(None, "--file", "-f", help="Read the output from a file"),
) -> None:
    """Classify a failure and suggest recovery commands."""
    if file is not None:
        if not file.exists():
            console.print(f"[red]File not found: {file}[/red]")
            raise typer.Exit(1)
        output = file.read_text(encoding="utf-8", errors="replace")
    elif text is not None:
        output = text
    else:
        output = sys.stdin.read()

    diagnosis = classify_error(exit_code, output, command)
    table = Table(title="Diagnosis", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("type", diagnosis.error_type)
    table.add_row("category", diagnosis.category)
    table.add_row("confidence", diagnosis.confidence.value)
    table.add_row("suggestion", escape(diagnosis.suggestion))
    for related in diagnosis.related_commands:
        table.add_row("try", escape(related))
    console.print(table)


@app.command()
def shells() -> None:
    """List shells known on this platform and where they resolve."""
    resolver = SystemShellResolver()
    default = resolver.default_shell()
    table = Table(title="Shells")
    table.add_column("Shell", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Default")
    for name in resolver.known_shells():
        path = resolver.resolve(name)
        table.add_row(name, path or "[dim]not found[/dim]", "*" if name == default else "")
    console.print(table)


@app.command()
def config(
    key: str = typer.Argument(None, help="Config key (e.g., execution.timeout_ms)"),
    value: str = typer.Argument(None, help="New value"),
) -> None:
    """View or modify configuration."""
    cfg = load_config()
    section_map = {
        "execution": cfg.execution,
        "shell": cfg.shell,
        "sandbox": cfg.sandbox,
        "history": cfg.history,
        "logging": cfg.logging,
    }

    if key is None:
        table = Table(title=f"Configuration ({CONFIG_FILE})")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for section, obj in section_map.items():
            for attr, current in vars(obj).items():
                if isinstance(current, list):
                    shown = ", ".join(current) if current else "(none)"
                else:
                    shown = str(current)
                table.add_row(f"{section}.{attr}", escape(shown))
        console.print(table)
        return

    if value is None:
        console.print("[red]Usage: agentshell config <key> <value>[/red]")
        raise typer.Exit(1)

    parts = key.split(".")
    if len(parts) != 2:
        console.print("[red]Key format: section.key (e.g., execution.timeout_ms)[/red]")
        raise typer.Exit(1)

    section, attr = parts
    if section not in section_map:
        console.print(f"[red]Unknown section: {section}[/red]")
        raise typer.Exit(1)

    obj = section_map[section]
    if not hasattr(obj, attr):
        console.print(f"[red]Unknown key: {key}[/red]")
        raise typer.Exit(1)

    # Type coercion
    current = getattr(obj, attr)
    try:
        if isinstance(current, bool):
            typed_value = value.lower() in ("true", "1", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, list):
            typed_value = [v.strip() for v in value.split(",") if v.strip()]
        else:
            typed_value = value
    except ValueError:
        console.print(f"[red]Invalid value type for {key}[/red]")
        raise typer.Exit(1)

    setattr(obj, attr, typed_value)
    save_config(cfg)
    console.print(f"[green]{key} = {escape(str(typed_value))}[/green]")


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
) -> None:
    """View the agentshell log."""
    log_path = Path(load_config().logging.file or LOG_FILE).expanduser().resolve()
    if not log_path.exists():
        console.print("[dim]No log file found.[/dim]")
        return

    if follow:
        import subprocess

        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_path)])
        except KeyboardInterrupt:
            pass
    else:
        content = log_path.read_text()
        log_lines = content.strip().split("\n")
        for line in log_lines[-lines:]:
            console.print(line, markup=False)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"agentshell v{__version__}")
    console.print(f"Python: {sys.version.split()[0]}")
    console.print(f"Default shell: {SystemShellResolver().default_shell()}")
    console.print(f"Config: {CONFIG_FILE}")


if __name__ == "__main__":
    app()
