"""Bounding large command output: smart truncation and noise pre-filtering."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

DEFAULT_MAX_CHARS = 10000
DEFAULT_PREFILTER_MAX_CHARS = 5000
HEAD_SHARE = 0.7
ANCHOR_LINES = 3
MAX_STACK_FRAMES = 3

TRUNCATION_MARKER = "... [Output truncated - {count} more lines omitted] ..."
PREFILTER_MARKER = "... [Pre-filtered: {count} verbose lines removed] ..."

# Lines worth keeping from the interior of verbose output.
IMPORTANT_PATTERNS: Mapping[str, re.Pattern[str]] = {
    "error": re.compile(
        r"error|fail(ed|ure)?|exception|fatal|crash|abort|panic|critical|\[ERROR\]|\[FATAL\]|\bERR\b",
        re.IGNORECASE,
    ),
    "warning": re.compile(r"warn(ing)?|caution|deprecated|\[WARN\]|potential\s+issue", re.IGNORECASE),
    "success": re.compile(r"success(ful(ly)?)?|\bdone\b|complete(d)?|passed|finished|\bready\b|\[OK\]|✓|✔", re.IGNORECASE),
    "progress": re.compile(r"\d+%|compiling|building|bundling|transpiling|installing|downloading", re.IGNORECASE),
    "separator": re.compile(r"^[=\-_]{3,}$"),
    "heading": re.compile(r"^#+\s+|^\*\*\s+|\[.*\]\s*$"),
}

# Known-verbose lines. Checked before the important patterns.
NOISE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^npm (WARN|notice)", re.IGNORECASE),
    re.compile(r"^npm http fetch", re.IGNORECASE),
    re.compile(r"^(node_modules|\.next|dist|build|target)/"),
    re.compile(r"downloading.*\d+%", re.IGNORECASE),
    re.compile(r"^\s*(Collecting|Downloading|Using cached|Requirement already satisfied)\b"),
    re.compile(r"^\s*(Resolving|Fetching|Linking)\b.*\.\.\.", re.IGNORECASE),
)

# Stack frames: the first few of each consecutive run are kept.
STACK_FRAME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*at\s+\S"),
    re.compile(r'^\s*File ".*", line \d+'),
)


@dataclass
class TruncationResult:
    text: str
    truncated: bool = False
    filtered: bool = False
    omitted_lines: int = 0
    filtered_lines: int = 0


def _matches_any(line: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    return any(p.search(line) for p in patterns)


def smart_truncate(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> TruncationResult:
    """Keep the head and tail of ``text`` within ``max_chars``.

    The first ~70% of the budget is filled with complete leading lines, a
    one-line marker reports how many lines were dropped, and the rest of
    the budget is filled with trailing lines. The result never exceeds
    ``max_chars`` plus the marker line.
    """
    if len(text) <= max_chars:
        return TruncationResult(text=text)

    budget = max(max_chars, 0)
    lines = text.split("\n")
    head_budget = int(budget * HEAD_SHARE)

    head: list[str] = []
    head_len = 0
    for line in lines:
        cost = len(line) + (1 if head else 0)
        if head_len + cost > head_budget:
            break
        head.append(line)
        head_len += cost

    head_text = "\n".join(head)
    # The first line alone is longer than the head budget: hard-cut it
    # and count it as omitted.
    if not head and head_budget > 0:
        head_text = lines[0][:head_budget]
    consumed = len(head)
    tail_start = consumed if head else 1

    tail: list[str] = []
    tail_len = 0
    tail_budget = budget - len(head_text)
    for line in reversed(lines[tail_start:]):
        cost = len(line) + (1 if tail else 0)
        if tail_len + cost > tail_budget:
            break
        tail.append(line)
        tail_len += cost
    tail.reverse()

    omitted = len(lines) - consumed - len(tail)
    marker = TRUNCATION_MARKER.format(count=omitted)
    parts = [part for part in (head_text, marker, "\n".join(tail)) if part]

    return TruncationResult(
        text="\n".join(parts),
        truncated=True,
        omitted_lines=omitted,
    )


def prefilter(
    text: str,
    max_chars: int = DEFAULT_PREFILTER_MAX_CHARS,
    *,
    important_patterns: Mapping[str, re.Pattern[str]] | None = None,
    noise_patterns: Iterable[re.Pattern[str]] | None = None,
    stack_frame_patterns: Iterable[re.Pattern[str]] | None = None,
) -> TruncationResult:
    """Reduce verbose output to its anchors and important lines.

    The first and last three lines are always kept. Interior lines
    matching a noise pattern, stack frames beyond the first three of a run,
    and lines matching no important pattern are removed and counted in a
    single marker line. Blank interior lines are dropped without counting.
    If the reduced text is still over budget it is smart-truncated.
    """
    important = tuple((important_patterns or IMPORTANT_PATTERNS).values())
    noise = tuple(noise_patterns if noise_patterns is not None else NOISE_PATTERNS)
    frames = tuple(stack_frame_patterns if stack_frame_patterns is not None else STACK_FRAME_PATTERNS)

    lines = text.split("\n")
    if len(lines) <= ANCHOR_LINES * 2:
        head, interior, foot = lines, [], []
    else:
        head = lines[:ANCHOR_LINES]
        interior = lines[ANCHOR_LINES:-ANCHOR_LINES]
        foot = lines[-ANCHOR_LINES:]

    kept: list[str] = []
    removed = 0
    frame_run = 0
    for line in interior:
        if not line.strip():
            continue

        if _matches_any(line, frames):
            frame_run += 1
            if frame_run > MAX_STACK_FRAMES:
                removed += 1
            else:
                kept.append(line)
            continue
        frame_run = 0

        if _matches_any(line, noise):
            removed += 1
        elif _matches_any(line, important):
            kept.append(line)
        else:
            removed += 1

    parts = ["\n".join(head)]
    if kept:
        parts.append("\n".join(kept))
    if removed:
        parts.append(PREFILTER_MARKER.format(count=removed))
    if foot:
        parts.append("\n".join(foot))
    reduced = "\n".join(parts)

    result = smart_truncate(reduced, max_chars)
    result.filtered = removed > 0
    result.filtered_lines = removed
    return result
