"""Terminal output normalization: ANSI stripping and line-ending cleanup."""

from __future__ import annotations

import re

# CSI sequences (colors, cursor movement), OSC sequences (window titles,
# hyperlinks), charset designations and single-character escapes.
# Carriage returns are left for the line-ending pass.
_ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b\n]*(?:\x07|\x1b\\)?"
    r"|\x1b[()*+][A-Za-z0-9]"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]"
)

# Character followed by backspace: terminal overprint
_BACKSPACE_OVERWRITE_RE = re.compile(r"[^\x08]\x08")

# Remaining C0/C1 control characters except \t, \n, \r
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\x80-\x9f]")

_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and backspace overprints."""
    previous = None
    while previous != text:
        previous = text
        text = _ANSI_ESCAPE_RE.sub("", text)

    previous = None
    while previous != text:
        previous = text
        text = _BACKSPACE_OVERWRITE_RE.sub("", text)

    return text


def normalize_output(raw: str) -> str:
    """Turn raw terminal output into clean, stable text.

    Applies, in order: escape removal, control-character removal,
    ``\\r\\n`` and lone ``\\r`` to ``\\n``, runs of three or more newlines
    collapsed to two, and leading/trailing whitespace trimmed.

    The result is a fixed point: normalizing it again changes nothing.
    """
    if not raw:
        return ""

    text = strip_ansi(raw)
    text = _CONTROL_CHARS_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()
