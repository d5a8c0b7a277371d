"""Command safety classifier - the sandbox check run before execution."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Quoted strings, removed before any check so that e.g. a commit message
# mentioning a dangerous command stays safe. Backslash escapes apply only
# inside double quotes, as in POSIX shells.
_QUOTED_RE = re.compile(r"'[^']*'" r'|"(?:\\.|[^"\\])*"')

DANGEROUS_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "rm -rf /*",
    "rm -rf ~",
    "rm -rf $HOME",
    ":(){ :|:& };:",
    "dd if=/dev/zero",
    "> /dev/sda",
)

_RECURSIVE_RM = r"\brm\s+(?:\S+\s+)*?(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\s+(?:\S+\s+)*"

STRUCTURAL_PATTERNS: list[tuple[str, str]] = [
    (
        _RECURSIVE_RM + r"/(?:[^\s/]+/)?\*(?=\s|$)",
        "Recursive deletion of root-level directories is not allowed",
    ),
    (
        _RECURSIVE_RM + r"(?:/|~/?|\$HOME/?|\$\{HOME\}/?)(?=\s|$|[;&|])",
        "Recursive deletion of home/root directory is not allowed",
    ),
    (r":\(\)\s*\{\s*:\|:\s*&\s*\}", "Fork bomb detected"),
    (r"\bmkfs(?:\.\w+)?\b", "Filesystem formatting is not allowed"),
    (r"\bdd\b[^;&|]*\bof=/dev/(?!null\b)", "Raw device write is not allowed"),
    (r">\s*/dev/(?:sd|hd|vd|xvd|nvme|disk)\w*", "Raw device write is not allowed"),
    (r"(?:^|[;&|]\s*)format\s+[a-zA-Z]:", "Disk formatting is not allowed"),
    (r"(?:^|[;&|]\s*)(?:shutdown|reboot|halt|poweroff)\b", "System control blocked"),
]

SAFE_COMMAND_PATTERNS: tuple[str, ...] = (
    r"^npm (install|ci|run|test|start|build|dev|uninstall|update|outdated|audit|init|pack|publish|version)(\s|$)",
    r"^yarn (install|run|test|start|build|dev|add|remove|upgrade|outdated|audit|init)(\s|$)",
    r"^pnpm (install|run|test|start|build|dev|add|remove|update|outdated|audit|init)(\s|$)",
    r"^git (status|log|diff|add|commit|push|pull|checkout|branch|clone|fetch|merge|rebase|tag|stash)(\s|$)",
    r"^(grep|find|sed|awk|curl|wget|ls|cat|echo|mkdir|touch|mv|cp) ",
    r"^(node|python|python3|java|cargo|go|dotnet) ",
)

RISKY_KEYWORDS: tuple[str, ...] = ("mkfs", "/dev/", "> /dev/", "dd if=")

# Device paths that are routinely used as redirection targets.
_BENIGN_DEVICE_RE = re.compile(r"/dev/(?:null|zero|u?random|tty\w*|std(?:in|out|err)|fd/\d+)\b")


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    reason: str = ""


def strip_quoted(command: str) -> str:
    """Remove single- and double-quoted substrings from a command."""
    return _QUOTED_RE.sub("", command)


def _literal_pattern(text: str) -> re.Pattern[str]:
    # Literal match bounded by whitespace or shell separators.
    return re.compile(r"(?:^|(?<=[\s;&|(]))" + re.escape(text) + r"(?=$|[\s;&|)])")


class SafetyClassifier:
    """Deny-list / allow-list command classifier.

    Checks run against the command with quoted strings removed, in order:
    literal deny list, structural deny patterns, user block patterns, then
    (only for commands matching no built-in or user allow pattern) the risky
    keyword scan. User allow patterns never override a deny rule.
    """

    def __init__(
        self,
        extra_block: Iterable[str] = (),
        extra_risk_keywords: Iterable[str] = (),
        extra_allow: Iterable[str] = (),
    ) -> None:
        self._literals = [(text, _literal_pattern(text)) for text in DANGEROUS_COMMANDS]
        self._structural = [(re.compile(p), reason) for p, reason in STRUCTURAL_PATTERNS]
        self._safe = [re.compile(p) for p in SAFE_COMMAND_PATTERNS]
        self._risk_keywords = list(RISKY_KEYWORDS) + [k for k in extra_risk_keywords if k]

        self._user_block: list[tuple[re.Pattern[str], str]] = []
        for pattern in extra_block:
            try:
                self._user_block.append((re.compile(pattern, re.IGNORECASE), pattern))
            except re.error:
                logger.error("Invalid sandbox block pattern: %s", pattern)
        for pattern in extra_allow:
            try:
                self._safe.append(re.compile(pattern, re.IGNORECASE))
            except re.error:
                logger.error("Invalid sandbox allow pattern: %s", pattern)

    def classify(self, command: str) -> SafetyVerdict:
        """Classify a command. Never raises; identical input gives identical output."""
        verdict = self._classify(command)
        if not verdict.safe:
            logger.warning("Blocked command: %s (reason: %s)", command, verdict.reason)
        return verdict

    def _classify(self, command: str) -> SafetyVerdict:
        bare = strip_quoted(command).strip()
        if not bare:
            return SafetyVerdict(safe=True)

        for text, compiled in self._literals:
            if compiled.search(bare):
                return SafetyVerdict(safe=False, reason=f'Dangerous command detected: "{text}"')

        for compiled, reason in self._structural:
            if compiled.search(bare):
                return SafetyVerdict(safe=False, reason=reason)

        for compiled, pattern in self._user_block:
            if compiled.search(bare):
                return SafetyVerdict(safe=False, reason=f'Blocked by sandbox policy: "{pattern}"')

        if any(p.search(bare) for p in self._safe):
            return SafetyVerdict(safe=True)

        scanned = _BENIGN_DEVICE_RE.sub("", bare)
        for keyword in self._risk_keywords:
            if keyword in scanned:
                return SafetyVerdict(safe=False, reason=f'Potentially dangerous operation: "{keyword}"')

        return SafetyVerdict(safe=True)


safety_classifier = SafetyClassifier()
