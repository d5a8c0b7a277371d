"""Error classifier: turns a failed command into an actionable diagnosis.

Rules are a flat, ordered table evaluated top to bottom against the
command output (case-insensitive). The first matching rule wins, so when
several error signatures appear in the same output the earlier rule in
``ERROR_RULES`` decides. When no rule matches, the exit code is consulted
(126, 127, 130, 137) before falling back to a low-confidence generic
diagnosis.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Callable
from dataclasses import dataclass

from agentshell.storage.models import Confidence, Diagnosis

logger = logging.getLogger(__name__)

ELEVATION_PREFIXES = ("sudo", "doas", "runas")


@dataclass
class Advice:
    suggestion: str
    related_commands: list[str]
    confidence: Confidence | None = None


@dataclass(frozen=True)
class ErrorRule:
    pattern: re.Pattern[str]
    error_type: str
    category: str
    confidence: Confidence
    advise: Callable[[str, str], Advice]


def _search(pattern: str, text: str) -> re.Match[str] | None:
    return re.search(pattern, text, re.IGNORECASE)


def _command_tokens(command: str) -> list[str]:
    """Tokens of a command with leading env assignments removed."""
    tokens = command.strip().split()
    while tokens and re.match(r"^[A-Za-z_][A-Za-z0-9_]*=", tokens[0]):
        tokens.pop(0)
    return tokens


def _program(command: str) -> str:
    """First token of the command, skipping elevation prefixes."""
    tokens = _command_tokens(command)
    while tokens and tokens[0] in ELEVATION_PREFIXES:
        tokens.pop(0)
    return tokens[0] if tokens else ""


def _is_elevated(command: str) -> bool:
    tokens = _command_tokens(command)
    return bool(tokens) and tokens[0] in ELEVATION_PREFIXES


def _package_manager(command: str, output: str) -> str:
    program = posixpath.basename(_program(command))
    if program in ("npm", "npx", "yarn", "pnpm", "pip", "pip3", "poetry", "cargo"):
        return "pip" if program == "pip3" else program
    if program in ("python", "python3") or _search(r"traceback|\bpip\b", output):
        return "pip"
    return "npm"


def _node_package(specifier: str) -> str:
    # "@scope/pkg/sub" -> "@scope/pkg", "lodash/fp" -> "lodash"
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def _module_advice(output: str, command: str) -> Advice:
    python_match = _search(r"no module named ['\"]?([\w.]+)['\"]?", output)
    if python_match:
        package = python_match.group(1).split(".")[0]
        return Advice(
            f"Install the missing Python package: pip install {package}",
            [f"pip install {package}", "pip install -r requirements.txt"],
        )

    node_match = _search(r"cannot find module ['\"]([^'\"]+)['\"]", output) or _search(
        r"can't resolve ['\"]([^'\"]+)['\"]", output
    )
    if node_match:
        specifier = node_match.group(1)
        if specifier.startswith((".", "/")) or re.match(r"^[A-Za-z]:\\", specifier):
            directory = posixpath.dirname(specifier) or "."
            return Advice(
                f"Module path '{specifier}' could not be resolved. Check the import path and that the file exists",
                [f"ls -la {directory}"],
                Confidence.MEDIUM,
            )
        package = _node_package(specifier)
        manager = _package_manager(command, output)
        install = {"yarn": f"yarn add {package}", "pnpm": f"pnpm add {package}"}.get(
            manager, f"npm install {package}"
        )
        return Advice(
            f"Install the missing module: {install}",
            [install, "npm install", "npm ci"] if install.startswith("npm") else [install, f"{manager} install"],
        )

    if _package_manager(command, output) == "pip":
        return Advice("Install the missing Python dependencies", ["pip install -r requirements.txt"], Confidence.MEDIUM)
    return Advice("Install the missing dependencies", ["npm install", "npm ci"], Confidence.MEDIUM)


def _extract_path(output: str) -> str | None:
    for pattern in (
        r"(?:open|access|mkdir|scandir|unlink|rmdir|stat|lstat|rename|copyfile)\s+'([^']+)'",
        r"no such file or directory:?\s+'([^']+)'",
        r"permission denied:?\s+'([^']+)'",
        r"([~./][^\s:'\"]*|[A-Za-z]:\\[^\s:'\"]*):\s*(?:permission denied|no such file or directory)",
        r"cannot (?:open|access|stat) '([^']+)'",
    ):
        match = _search(pattern, output)
        if match:
            return match.group(1)
    return None


def _permission_advice(output: str, command: str) -> Advice:
    path = _extract_path(output)
    if _is_elevated(command):
        related = [f"ls -la {path}"] if path else ["ls -la"]
        return Advice(
            "The command already runs elevated. Check ownership and permissions of the target"
            + (f" '{path}'" if path else ""),
            related + ["id"],
        )
    related = [f"sudo {command.strip()}"]
    if path:
        related.append(f"ls -la {path}")
    return Advice(
        "Permission denied. Re-run with elevated permissions (sudo on Unix, Run as Administrator on Windows)"
        " or fix ownership of the target" + (f" '{path}'" if path else ""),
        related,
    )


def _port_advice(output: str, command: str) -> Advice:
    match = (
        _search(r"(?:eaddrinuse|address already in use)\D*?:(\d{2,5})\b", output)
        or _search(r"port\s+(\d{2,5})\b", output)
        or _search(r"(?:eaddrinuse|address already in use)[^\n]*?:(\d{2,5})(?!\d)", output)
    )
    if match:
        port = match.group(1)
        return Advice(
            f"Port {port} is already in use. Stop the process holding it or use a different port.",
            [f"lsof -ti:{port}", f"npx kill-port {port}", f"netstat -ano | findstr :{port}"],
        )
    return Advice(
        "A port is already in use. Stop the process holding it or use a different port.",
        ["lsof -i -P -n", "netstat -ano"],
        Confidence.MEDIUM,
    )


def _file_advice(output: str, command: str) -> Advice:
    path = _extract_path(output)
    if path and posixpath.basename(path) == "package.json":
        return Advice("No package.json found in this directory. Initialize the project or change directory", ["npm init -y", "ls -la"])
    if path:
        directory = posixpath.dirname(path) or "."
        return Advice(f"Path '{path}' does not exist. Check the path is correct", [f"ls -la {directory}", "pwd"])
    return Advice("Check that the file or directory path is correct and exists", ["ls -la", "pwd"], Confidence.MEDIUM)


def _not_git_repo_advice(output: str, command: str) -> Advice:
    return Advice("Not inside a git repository. Initialize one or change into the repository directory", ["git init", "git status"])


def _merge_conflict_advice(output: str, command: str) -> Advice:
    files = re.findall(r"merge conflict in (\S+)", output, re.IGNORECASE)
    related = ["git status", "git diff"]
    related.extend(f"git add {name}" for name in dict.fromkeys(files))
    related.append("git merge --abort")
    suffix = f": {', '.join(dict.fromkeys(files))}" if files else ""
    return Advice(f"Resolve the merge conflicts, then stage and commit the files{suffix}", related)


def _push_rejected_advice(output: str, command: str) -> Advice:
    match = _search(r"\[rejected\]\s+(\S+)\s*->", output)
    pull = f"git pull --rebase origin {match.group(1)}" if match else "git pull --rebase"
    return Advice("The remote has commits you do not have. Pull (rebase) before pushing", [pull, "git fetch", "git status"])


def _missing_script_advice(output: str, command: str) -> Advice:
    match = _search(r"missing script:?\s*\"?([\w:.-]+)\"?", output)
    name = match.group(1) if match else None
    manager = _package_manager(command, output)
    if manager not in ("npm", "yarn", "pnpm"):
        manager = "npm"
    suggestion = f"Script '{name}' is not defined in package.json" if name else "The script is not defined in package.json"
    return Advice(suggestion + ". List the available scripts", [f"{manager} run", "cat package.json"])


_MANAGER_RECOVERY = {
    "npm": ["npm cache clean --force", "npm install"],
    "npx": ["npm cache clean --force", "npm install"],
    "yarn": ["yarn cache clean", "yarn install"],
    "pnpm": ["pnpm store prune", "pnpm install"],
    "pip": ["pip install --upgrade pip", "pip install -r requirements.txt"],
    "poetry": ["poetry lock", "poetry install"],
    "cargo": ["cargo update", "cargo build"],
}


def _dependency_advice(output: str, command: str) -> Advice:
    manager = _package_manager(command, output)
    if _search(r"eresolve|peer dep", output):
        return Advice(
            "Dependency tree could not be resolved. Retry allowing peer dependency conflicts",
            ["npm install --legacy-peer-deps", "npm ls"],
        )
    return Advice(
        f"The {manager} dependency manager failed. Clear its cache and reinstall",
        list(_MANAGER_RECOVERY.get(manager, _MANAGER_RECOVERY["npm"])),
        Confidence.MEDIUM,
    )


_SYNTAX_CHECKS = {
    ".py": "python -m py_compile {file}",
    ".js": "node --check {file}",
    ".mjs": "node --check {file}",
    ".cjs": "node --check {file}",
    ".sh": "bash -n {file}",
}


def _syntax_advice(output: str, command: str) -> Advice:
    match = _search(r'File "([^"]+)", line (\d+)', output) or _search(
        r"([\w./\\-]+\.(?:py|js|mjs|cjs|ts|tsx|jsx|sh)):(\d+)", output
    )
    if not match:
        return Advice("Fix the syntax error at the location indicated in the output", [], Confidence.MEDIUM)
    file, line = match.group(1), match.group(2)
    check = _SYNTAX_CHECKS.get(posixpath.splitext(file)[1])
    return Advice(
        f"Fix the syntax error in {file} at line {line}",
        [check.format(file=file)] if check else [],
    )


def _network_advice(output: str, command: str) -> Advice:
    match = (
        _search(r"getaddrinfo\s+\w+\s+([\w.-]+\.[A-Za-z]{2,})", output)
        or _search(r"could not resolve host:?\s+([\w.-]+)", output)
        or _search(r"enotfound\s+([\w.-]+\.[A-Za-z]{2,})", output)
    )
    if match:
        host = match.group(1)
        return Advice(
            f"Could not reach {host}. Check the network connection, DNS and proxy settings",
            [f"ping -c 1 {host}", f"nslookup {host}"],
        )
    return Advice("Network request failed. Check the network connection, DNS and proxy settings", ["ping -c 1 8.8.8.8"], Confidence.MEDIUM)


def _command_not_found_advice(output: str, command: str) -> Advice:
    match = _search(r"([\w.-]+): (?:command )?not found", output) or _search(
        r"'([\w.-]+)' is not recognized", output
    )
    program = match.group(1) if match else _program(command)
    return Advice(
        f"Command '{program}' not found. Check that it is installed and on PATH",
        [f"which {program}", f"type {program}"] if program else ["echo $PATH"],
    )


def _rule(pattern: str, error_type: str, category: str, advise: Callable[[str, str], Advice],
          confidence: Confidence = Confidence.HIGH) -> ErrorRule:
    return ErrorRule(re.compile(pattern, re.IGNORECASE), error_type, category, confidence, advise)


ERROR_RULES: list[ErrorRule] = [
    _rule(
        r"cannot find module|module not found|modulenotfounderror|no module named|can't resolve '",
        "MODULE_NOT_FOUND", "Dependency Error", _module_advice,
    ),
    _rule(
        r"eacces|eperm|permission denied|access is denied|operation not permitted",
        "PERMISSION_DENIED", "Permission Error", _permission_advice,
    ),
    _rule(
        r"eaddrinuse|address already in use|port\s+\d+\s+is\s+(?:already\s+)?in use|port is already allocated",
        "PORT_IN_USE", "Network Error", _port_advice,
    ),
    _rule(
        r"enoent|no such file or directory|cannot find the path|cannot find the file|filenotfounderror",
        "FILE_NOT_FOUND", "File System Error", _file_advice,
    ),
    _rule(r"not a git repository", "NOT_GIT_REPO", "Git Error", _not_git_repo_advice),
    _rule(
        r"merge conflict|conflict \(|automatic merge failed|fix conflicts",
        "GIT_MERGE_CONFLICT", "Git Error", _merge_conflict_advice,
    ),
    _rule(
        r"\[rejected\]|failed to push some refs|non-fast-forward|updates were rejected",
        "GIT_PUSH_REJECTED", "Git Error", _push_rejected_advice,
    ),
    _rule(r"missing script", "NPM_SCRIPT_NOT_FOUND", "NPM Error", _missing_script_advice),
    _rule(
        r"npm err!|npm error|yarn error|error an unexpected error occurred|err_pnpm|eresolve"
        r"|could not find a version that satisfies|resolutionimpossible",
        "DEPENDENCY_MANAGER_ERROR", "Dependency Error", _dependency_advice,
    ),
    _rule(
        r"syntaxerror|syntax error|unexpected token|parse error|indentationerror",
        "SYNTAX_ERROR", "Code Error", _syntax_advice,
    ),
    _rule(
        r"enotfound|getaddrinfo|eai_again|could not resolve host|name or service not known"
        r"|temporary failure in name resolution|network is unreachable|econnrefused|etimedout|connection timed out",
        "NETWORK_ERROR", "Network Error", _network_advice,
    ),
    _rule(
        r"command not found|is not recognized as (?:an internal or external command|the name of a cmdlet)",
        "COMMAND_NOT_FOUND", "Shell Error", _command_not_found_advice,
    ),
]


def _from_exit_code(exit_code: int, command: str) -> Diagnosis | None:
    program = _program(command)
    if exit_code == 127:
        advice = _command_not_found_advice("", command)
        return Diagnosis("COMMAND_NOT_FOUND", "Shell Error", advice.suggestion, advice.related_commands, Confidence.MEDIUM)
    if exit_code == 126:
        return Diagnosis(
            "COMMAND_NOT_EXECUTABLE",
            "Shell Error",
            f"'{program}' was found but could not be executed. Check its execute permission",
            [f"chmod +x {program}", f"ls -la {program}"] if program else [],
            Confidence.MEDIUM,
        )
    if exit_code == 130:
        return Diagnosis(
            "INTERRUPTED",
            "Process Error",
            "The command was interrupted (Ctrl+C). Re-run it if the interruption was unintended",
            [command.strip()],
            Confidence.MEDIUM,
        )
    if exit_code == 137:
        return Diagnosis(
            "PROCESS_KILLED",
            "Process Error",
            "The process was killed (SIGKILL), often by the out-of-memory killer. Check memory usage",
            ["free -h", "dmesg | tail -n 20"],
            Confidence.MEDIUM,
        )
    return None


def classify_error(exit_code: int, output: str, command: str) -> Diagnosis:
    """Classify a failed command. Never raises."""
    output = output or ""
    command = command or ""

    for rule in ERROR_RULES:
        if not rule.pattern.search(output):
            continue
        try:
            advice = rule.advise(output, command)
        except Exception:
            logger.exception("Error rule %s failed to build advice", rule.error_type)
            advice = Advice("Inspect the output above for details", [])
        return Diagnosis(
            error_type=rule.error_type,
            category=rule.category,
            suggestion=advice.suggestion,
            related_commands=advice.related_commands,
            confidence=advice.confidence or rule.confidence,
        )

    diagnosis = _from_exit_code(exit_code, command)
    if diagnosis is not None:
        return diagnosis

    return Diagnosis(
        error_type="UNKNOWN_ERROR",
        category="Unknown Error",
        suggestion=f"Command exited with code {exit_code}. Inspect the output above for details",
        related_commands=[],
        confidence=Confidence.LOW,
    )
