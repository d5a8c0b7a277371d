"""Output history store and query engine.

Records live in an in-memory SQLite database for the life of the process.
The table is append-only: rows are inserted by ``append`` and removed only
by ``clear``; every other operation is a read. Filtering by session
(``*``/``?`` wildcards), severity, source and time range happens in SQL;
keyword, regex and pattern matching happen in Python on the selected rows.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any

import aiosqlite

from agentshell.storage.models import OutputRecord, Severity
from agentshell.utils.patterns import PREDEFINED_PATTERNS, detect_severity, extract_structures, wildcard_to_regex

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 100
PATTERN_SAMPLE_SIZE = 100
EXPORT_FORMATS = ("txt", "json", "csv", "markdown")
SEARCH_MODES = ("keyword", "regex", "pattern")

RELATIVE_RANGES: dict[str, timedelta] = {
    "last-minute": timedelta(minutes=1),
    "last-5-minutes": timedelta(minutes=5),
    "last-15-minutes": timedelta(minutes=15),
    "last-hour": timedelta(hours=1),
    "last-day": timedelta(days=1),
    "last-week": timedelta(weeks=1),
}

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS outputs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_name TEXT NOT NULL,
        timestamp REAL NOT NULL,
        severity TEXT NOT NULL
            CHECK(severity IN ('info', 'warning', 'error', 'success')),
        source TEXT NOT NULL DEFAULT 'terminal',
        content TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TimeRange:
    start: datetime | None = None
    end: datetime | None = None


def parse_time_range(
    name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> TimeRange | None:
    """Resolve a named or custom range; ``None`` means unbounded.

    Named ranges ("last-5-minutes", "last day", ...) resolve to
    ``[now - duration, now]`` at call time.
    """
    key = (name or "").strip().lower().replace(" ", "-").replace("_", "-")
    if key in ("", "custom"):
        if start is None and end is None:
            return None
        return TimeRange(start, end)
    if key in ("all", "none"):
        return None
    if key not in RELATIVE_RANGES:
        raise ValueError(f"Unknown time range: {name!r}. Expected one of: all, custom, {', '.join(RELATIVE_RANGES)}")
    now = now or _utcnow()
    return TimeRange(now - RELATIVE_RANGES[key], now)


@dataclass(frozen=True)
class LineMatch:
    line: int
    column: int
    text: str
    context_before: tuple[str, ...] = ()
    context_after: tuple[str, ...] = ()


@dataclass(frozen=True)
class SearchHit:
    record: OutputRecord
    matches: tuple[LineMatch, ...]


@dataclass
class PatternOccurrence:
    name: str
    count: int
    severity: Severity
    examples: list[str] = field(default_factory=list)


@dataclass
class SessionStats:
    session_name: str
    total: int = 0
    error_count: int = 0
    warning_count: int = 0
    success_count: int = 0
    last_activity: datetime | None = None


@dataclass
class Analysis:
    total: int = 0
    error_count: int = 0
    warning_count: int = 0
    success_count: int = 0
    info_count: int = 0
    patterns: list[PatternOccurrence] = field(default_factory=list)
    sessions: dict[str, SessionStats] = field(default_factory=dict)
    structures: dict[str, Any] = field(default_factory=dict)


@lru_cache(maxsize=128)
def _wildcard(pattern: str) -> re.Pattern[str]:
    return wildcard_to_regex(pattern)


def _sql_wildcard(pattern: str, value: str) -> bool:
    return _wildcard(pattern).match(value) is not None


def _timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _row_to_record(row: aiosqlite.Row) -> OutputRecord:
    return OutputRecord(
        id=row["id"],
        session_name=row["session_name"],
        timestamp=datetime.fromtimestamp(row["timestamp"], timezone.utc),
        severity=Severity(row["severity"]),
        content=row["content"],
        source=row["source"],
        metadata=MappingProxyType(json.loads(row["metadata"])),
    )


class OutputHistory:
    """Append-only per-session output log with search, analysis and export."""

    def __init__(
        self,
        db_path: str = ":memory:",
        clock: Callable[[], datetime] = _utcnow,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        context_lines: int = 0,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self.max_results = max_results
        self.context_lines = context_lines
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> aiosqlite.Connection:
        """Open the database, create the schema and return the connection."""
        if self._db is not None:
            return self._db
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        await db.create_function("wildcard", 2, _sql_wildcard, deterministic=True)
        await db.execute(_SCHEMA)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_outputs_session ON outputs(session_name)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_outputs_timestamp ON outputs(timestamp)")
        await db.commit()
        self._db = db
        logger.debug("Output history opened: %s", self.db_path)
        return db

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("Output history closed")

    async def __aenter__(self) -> OutputHistory:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        return await self.open()

    def _limit(self, max_results: int | None) -> int:
        return self.max_results if max_results is None else max_results

    # -- writes ---------------------------------------------------------

    async def append(
        self,
        session_name: str,
        content: str,
        severity: Severity | str | None = None,
        source: str = "terminal",
        metadata: Mapping[str, Any] | None = None,
    ) -> OutputRecord:
        """Store one output unit. Severity is detected from content when omitted."""
        db = await self._conn()
        severity = Severity(severity) if severity is not None else detect_severity(content)
        timestamp = self._clock()
        stored_meta = json.dumps(dict(metadata or {}), default=str)
        stamp = _timestamp(timestamp)
        cursor = await db.execute(
            """INSERT INTO outputs (session_name, timestamp, severity, source, content, metadata)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (session_name, stamp, severity.value, source, content, stored_meta),
        )
        await db.commit()
        return OutputRecord(
            id=cursor.lastrowid,
            session_name=session_name,
            timestamp=datetime.fromtimestamp(stamp, timezone.utc),
            severity=severity,
            content=content,
            source=source,
            metadata=MappingProxyType(json.loads(stored_meta)),
        )

    async def clear(self, session: str | None = None) -> int:
        """Remove records, optionally only those of matching sessions. Returns the count."""
        db = await self._conn()
        if session:
            cursor = await db.execute("DELETE FROM outputs WHERE wildcard(?, session_name)", (session,))
        else:
            cursor = await db.execute("DELETE FROM outputs")
        await db.commit()
        removed = cursor.rowcount
        logger.info("Cleared %d history records%s", removed, f" for {session}" if session else "")
        return removed

    # -- reads ----------------------------------------------------------

    async def _select(
        self,
        *,
        severity: Severity | str | None = None,
        source: str | None = None,
        session: str | None = None,
        time_range: TimeRange | None = None,
        limit: int | None = None,
    ) -> list[OutputRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if severity:
            clauses.append("severity = ?")
            params.append(Severity(severity).value)
        if source:
            clauses.append("source = ?")
            params.append(source)
        if session:
            clauses.append("wildcard(?, session_name)")
            params.append(session)
        if time_range is not None and time_range.start is not None:
            clauses.append("timestamp >= ?")
            params.append(_timestamp(time_range.start))
        if time_range is not None and time_range.end is not None:
            clauses.append("timestamp <= ?")
            params.append(_timestamp(time_range.end))

        query = "SELECT * FROM outputs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        db = await self._conn()
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def filter(
        self,
        *,
        severity: Severity | str | None = None,
        source: str | None = None,
        session: str | None = None,
        time_range: TimeRange | None = None,
        max_results: int | None = None,
    ) -> list[OutputRecord]:
        """Records matching all given filters, newest first."""
        return await self._select(
            severity=severity, source=source, session=session, time_range=time_range, limit=self._limit(max_results)
        )

    async def history(
        self,
        session: str | None = None,
        time_range: TimeRange | None = None,
        max_results: int | None = None,
    ) -> list[OutputRecord]:
        """Most recent records, newest first."""
        return await self._select(session=session, time_range=time_range, limit=self._limit(max_results))

    async def latest(self, session: str) -> OutputRecord | None:
        records = await self._select(session=session, limit=1)
        return records[0] if records else None

    async def search(
        self,
        query: str | None = None,
        *,
        mode: str = "keyword",
        pattern: str | None = None,
        case_sensitive: bool = False,
        severity: Severity | str | None = None,
        source: str | None = None,
        session: str | None = None,
        time_range: TimeRange | None = None,
        context_lines: int | None = None,
        max_results: int | None = None,
    ) -> list[SearchHit]:
        """Find records whose content matches, with per-line match spans.

        ``mode`` is ``keyword`` (literal text), ``regex`` or ``pattern`` (one of
        the predefined pattern groups, named by ``pattern`` or ``query``).
        Raises ``ValueError`` for an invalid regex, unknown pattern or mode.
        """
        matchers = self._matchers(query, mode, pattern, case_sensitive)
        records = await self._select(severity=severity, source=source, session=session, time_range=time_range)
        if context_lines is None:
            context_lines = self.context_lines
        limit = self._limit(max_results)

        hits: list[SearchHit] = []
        for record in records:
            matches = self._match_lines(record.content, matchers, context_lines)
            if matches:
                hits.append(SearchHit(record=record, matches=tuple(matches)))
                if len(hits) >= limit:
                    break
        return hits

    @staticmethod
    def _matchers(query: str | None, mode: str, pattern: str | None, case_sensitive: bool) -> tuple[re.Pattern[str], ...]:
        flags = 0 if case_sensitive else re.IGNORECASE
        if mode == "pattern":
            name = pattern or query
            if name not in PREDEFINED_PATTERNS:
                raise ValueError(f"Unknown pattern: {name!r}. Expected one of: {', '.join(PREDEFINED_PATTERNS)}")
            return PREDEFINED_PATTERNS[name]
        if not query:
            raise ValueError(f"A query is required for {mode} search")
        if mode == "keyword":
            return (re.compile(re.escape(query), flags),)
        if mode == "regex":
            try:
                return (re.compile(query, flags),)
            except re.error as e:
                raise ValueError(f"Invalid regex {query!r}: {e}") from e
        raise ValueError(f"Unknown search mode: {mode!r}. Expected one of: {', '.join(SEARCH_MODES)}")

    @staticmethod
    def _match_lines(content: str, matchers: tuple[re.Pattern[str], ...], context_lines: int) -> list[LineMatch]:
        lines = content.split("\n")
        matches: list[LineMatch] = []
        for index, line in enumerate(lines):
            for matcher in matchers:
                for found in matcher.finditer(line):
                    if not found.group(0):
                        continue
                    matches.append(
                        LineMatch(
                            line=index + 1,
                            column=found.start() + 1,
                            text=found.group(0),
                            context_before=tuple(lines[max(0, index - context_lines):index]) if context_lines else (),
                            context_after=tuple(lines[index + 1:index + 1 + context_lines]) if context_lines else (),
                        )
                    )
        return matches

    async def analyze(
        self,
        *,
        session: str | None = None,
        time_range: TimeRange | None = None,
        group_by_session: bool = False,
        detect_patterns: bool = True,
    ) -> Analysis:
        """Aggregate counts, pattern occurrences and structural findings."""
        records = await self._select(session=session, time_range=time_range)
        analysis = Analysis(total=len(records))
        for record in records:
            if record.severity == Severity.ERROR:
                analysis.error_count += 1
            elif record.severity == Severity.WARNING:
                analysis.warning_count += 1
            elif record.severity == Severity.SUCCESS:
                analysis.success_count += 1
            else:
                analysis.info_count += 1

        if group_by_session:
            analysis.sessions = self._group_by_session(records)

        if detect_patterns:
            sample = records[:PATTERN_SAMPLE_SIZE]
            analysis.patterns = self._detect_patterns(sample)
            analysis.structures = self._detect_structures(sample)
        return analysis

    @staticmethod
    def _group_by_session(records: list[OutputRecord]) -> dict[str, SessionStats]:
        stats: dict[str, SessionStats] = {}
        for record in records:
            entry = stats.setdefault(record.session_name, SessionStats(session_name=record.session_name))
            entry.total += 1
            if record.severity == Severity.ERROR:
                entry.error_count += 1
            elif record.severity == Severity.WARNING:
                entry.warning_count += 1
            elif record.severity == Severity.SUCCESS:
                entry.success_count += 1
            if entry.last_activity is None or record.timestamp > entry.last_activity:
                entry.last_activity = record.timestamp
        return stats

    @staticmethod
    def _detect_patterns(records: list[OutputRecord]) -> list[PatternOccurrence]:
        occurrences = []
        for name, patterns in PREDEFINED_PATTERNS.items():
            count = 0
            examples: list[str] = []
            for record in records:
                for pattern in patterns:
                    found = pattern.search(record.content)
                    if found:
                        count += 1
                        if len(examples) < 3:
                            examples.append(found.group(0))
            if count:
                severity = {"error": Severity.ERROR, "warning": Severity.WARNING}.get(name, Severity.INFO)
                occurrences.append(PatternOccurrence(name=name, count=count, severity=severity, examples=examples))
        occurrences.sort(key=lambda o: o.count, reverse=True)
        return occurrences

    @staticmethod
    def _detect_structures(records: list[OutputRecord]) -> dict[str, Any]:
        json_count = 0
        xml_count = 0
        urls: list[str] = []
        file_paths: list[str] = []
        api_calls: list[str] = []
        for record in records:
            found = extract_structures(record.content)
            json_count += len(found["json"])
            xml_count += len(found["xml"])
            urls.extend(found["urls"])
            file_paths.extend(found["file_paths"])
            api_calls.extend(found["api_calls"])
        return {
            "json_count": json_count,
            "xml_count": xml_count,
            "urls": list(dict.fromkeys(urls))[:10],
            "file_paths": list(dict.fromkeys(file_paths))[:10],
            "api_calls": list(dict.fromkeys(api_calls))[:10],
        }

    async def statistics(self, time_range: TimeRange | None = None) -> dict[str, Any]:
        """Totals, per-severity counts, error/warning rates and per-session counts."""
        records = await self._select(time_range=time_range)
        total = len(records)
        by_severity = {severity.value: 0 for severity in Severity}
        by_session: dict[str, int] = {}
        for record in records:
            by_severity[record.severity.value] += 1
            by_session[record.session_name] = by_session.get(record.session_name, 0) + 1

        def rate(count: int) -> float:
            return round(count / total * 100, 1) if total else 0.0

        return {
            "total": total,
            "by_severity": by_severity,
            "error_rate": rate(by_severity["error"]),
            "warning_rate": rate(by_severity["warning"]),
            "sessions": len(by_session),
            "by_session": by_session,
            "first": records[-1].timestamp if records else None,
            "last": records[0].timestamp if records else None,
        }

    async def export(
        self,
        format: str = "txt",
        *,
        records: list[OutputRecord] | None = None,
        severity: Severity | str | None = None,
        source: str | None = None,
        session: str | None = None,
        time_range: TimeRange | None = None,
        include_timestamps: bool = True,
        include_metadata: bool = False,
        path: str | Path | None = None,
    ) -> str:
        """Serialize records (given, or selected by the filters) oldest first.

        Writes the result to ``path`` as well when one is given.
        """
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format: {format!r}. Expected one of: {', '.join(EXPORT_FORMATS)}")
        if records is None:
            records = await self._select(severity=severity, source=source, session=session, time_range=time_range)
        ordered = sorted(records, key=lambda r: r.id)

        if format == "json":
            text = _export_json(ordered, include_timestamps, include_metadata)
        elif format == "csv":
            text = _export_csv(ordered, include_timestamps, include_metadata)
        elif format == "markdown":
            text = _export_markdown(ordered, include_timestamps, include_metadata)
        else:
            text = _export_text(ordered, include_timestamps, include_metadata)

        if path is not None:
            target = Path(path).expanduser()
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
            logger.info("Exported %d records to %s", len(ordered), target)
        return text


def _export_text(records: list[OutputRecord], timestamps: bool, metadata: bool) -> str:
    lines = []
    for record in records:
        prefix = ""
        if timestamps:
            prefix += f"[{record.timestamp.isoformat()}] "
        if metadata:
            prefix += f"[{record.session_name}] [{record.severity.value}] "
        lines.append(prefix + record.content)
    return "\n".join(lines)


def _record_dict(record: OutputRecord, timestamps: bool, metadata: bool) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": record.id,
        "session_name": record.session_name,
        "severity": record.severity.value,
        "source": record.source,
        "content": record.content,
    }
    if timestamps:
        data["timestamp"] = record.timestamp.isoformat()
    if metadata:
        data["metadata"] = dict(record.metadata)
    return data


def _export_json(records: list[OutputRecord], timestamps: bool, metadata: bool) -> str:
    return json.dumps([_record_dict(r, timestamps, metadata) for r in records], indent=2, default=str)


def _export_csv(records: list[OutputRecord], timestamps: bool, metadata: bool) -> str:
    columns = ["id", "session_name", "severity", "source", "content"]
    if timestamps:
        columns.insert(1, "timestamp")
    if metadata:
        columns.append("metadata")
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for record in records:
        row = _record_dict(record, timestamps, metadata)
        if metadata:
            row["metadata"] = json.dumps(row["metadata"], default=str)
        writer.writerow(row)
    return buffer.getvalue()


def _export_markdown(records: list[OutputRecord], timestamps: bool, metadata: bool) -> str:
    parts = ["# Output history", ""]
    for record in records:
        parts.append(f"## {record.session_name} #{record.id} ({record.severity.value})")
        if timestamps:
            parts.append(f"- time: {record.timestamp.isoformat()}")
        if metadata and record.metadata:
            for key, value in record.metadata.items():
                parts.append(f"- {key}: {value}")
        parts.extend(["", "```", record.content, "```", ""])
    return "\n".join(parts)
