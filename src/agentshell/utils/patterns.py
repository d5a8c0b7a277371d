"""Pattern tables and extractors shared by the history store and the monitor."""

from __future__ import annotations

import json
import re
from typing import Any

from agentshell.storage.models import Severity


def _compile(*patterns: str, flags: int = re.IGNORECASE) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


PREDEFINED_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "error": _compile(
        r"error", r"fail(ed|ure)?", r"exception", r"fatal", r"crash(ed)?", r"abort(ed)?",
        r"panic", r"critical", r"\[ERROR\]", r"\[FATAL\]", r"\bERR\b",
    ),
    "warning": _compile(
        r"warn(ing)?", r"caution", r"deprecated", r"\[WARN\]", r"\[WARNING\]", r"potential\s+issue",
    ),
    "success": _compile(
        r"success(ful(ly)?)?", r"\bdone\b", r"complete(d)?", r"passed", r"\[OK\]", r"\[SUCCESS\]",
        r"✓", r"✔", r"finished", r"\bready\b",
    ),
    "build": _compile(
        r"compiling", r"building", r"bundling", r"transpiling", r"webpack", r"\bvite\b",
        r"rollup", r"esbuild", r"\[build\]",
    ),
    "test": _compile(r"\btest(s|ing)?\b", r"\bspec\b", r"\bjest\b", r"\bmocha\b", r"\bpytest\b", r"\[TEST\]"),
    "network": _compile(
        r"https?://", r"\brequest\b", r"\bresponse\b", r"(?-i:\b(GET|POST|PUT|DELETE|PATCH)\b)",
        r"\bfetch\b", r"\bendpoint\b", r"\d{3}\s+(OK|Error|Not Found)",
    ),
    "file-operation": _compile(
        r"(reading|writing|creating|deleting|copying|moving)\s+file", r"file\s+(created|deleted|modified)",
    ),
    "git": _compile(
        r"git\s+(commit|push|pull|fetch|merge|rebase|checkout)", r"\[git\]", r"\bbranch\b",
        r"\brepository\b", r"\bremote\b",
    ),
    "npm": _compile(r"npm\s+(install|update|publish|run)", r"package\.json", r"node_modules", r"\bpnpm\b", r"\byarn\b"),
    "docker": _compile(r"docker", r"\bcontainer\b", r"\bimage\b", r"\bcompose\b", r"\bvolume\b"),
    "database": _compile(
        r"\bquery\b", r"\bdatabase\b", r"\bmigration\b", r"(?-i:\b(SELECT|INSERT|UPDATE|DELETE)\b)",
        r"postgres|mysql|mongodb|redis|sqlite",
    ),
}

URL_RE = re.compile(r"https?://[^\s'\"<>)\]]+")
FILE_PATH_RE = re.compile(
    r"(?:[A-Za-z]:\\|\.{0,2}/)[^\s:'\"]+\.(?:js|mjs|cjs|ts|tsx|jsx|json|py|java|cpp|c|h|css|html|md|txt|log|yaml|yml|toml|sh)\b"
)
API_CALL_RE = re.compile(r"\b(?:GET|POST|PUT|DELETE|PATCH)\s+/[^\s]*")
XML_BLOCK_RE = re.compile(r"<([a-zA-Z][\w:-]*)[^>]*>[\s\S]*?</\1\s*>")
_JSON_START_RE = re.compile(r"[\[{]")


def detect_severity(content: str) -> Severity:
    """Error beats warning beats success; anything else is info."""
    for name, severity in (("error", Severity.ERROR), ("warning", Severity.WARNING), ("success", Severity.SUCCESS)):
        if any(p.search(content) for p in PREDEFINED_PATTERNS[name]):
            return severity
    return Severity.INFO


def wildcard_to_regex(pattern: str) -> re.Pattern[str]:
    """Case-insensitive full-match regex for a ``*`` / ``?`` wildcard pattern."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def find_json_blocks(text: str, limit: int = 20) -> list[Any]:
    """Decode JSON objects and arrays embedded in free text."""
    decoder = json.JSONDecoder()
    found: list[Any] = []
    index = 0
    while len(found) < limit:
        match = _JSON_START_RE.search(text, index)
        if match is None:
            break
        try:
            value, end = decoder.raw_decode(text, match.start())
        except ValueError:
            index = match.start() + 1
            continue
        if value:
            found.append(value)
        index = end
    return found


def _unique(items: list[str], limit: int) -> list[str]:
    return list(dict.fromkeys(items))[:limit]


def extract_structures(text: str, limit: int = 10) -> dict[str, list[Any]]:
    """Structured fragments found in ``text``: JSON, XML, URLs, paths, API calls."""
    return {
        "json": find_json_blocks(text, limit),
        "xml": _unique([m.group(0) for m in XML_BLOCK_RE.finditer(text)], limit),
        "urls": _unique(URL_RE.findall(text), limit),
        "file_paths": _unique(FILE_PATH_RE.findall(text), limit),
        "api_calls": _unique(API_CALL_RE.findall(text), limit),
    }
