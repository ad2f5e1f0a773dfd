"""Export recorded statements as a SQL dump or replay them against the database.

Replayed statements carry the ``/*NOTRACK*/`` tag so that the statement
interceptor does not record them a second time.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

from .config import TrackingSettings, get_settings
from .models import LogEntry, TrackingVersion, format_date
from .versions import _run_in_savepoint, _snapshot_statements


logger = logging.getLogger(__name__)

NOTRACK_TAG = "/*NOTRACK*/"

_CREATE_VIEW = re.compile(r"\s*CREATE\s+(?:TEMP(?:ORARY)?\s+)?VIEW\b", re.I)


class ExportType(str, Enum):
    SQLDUMPFILE = "sqldumpfile"
    SQLDUMP = "sqldump"
    EXECUTION = "execution"


@dataclass
class ExecutionResult:
    ok: bool
    executed: int = 0
    failed_entry_id: int | None = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "executed": self.executed,
            "failed_entry_id": self.failed_entry_id,
            "message": self.message,
        }


class _ReplayFailed(Exception):
    def __init__(self, entry_id: int, error: sqlite3.Error):
        super().__init__(str(error))
        self.entry_id = entry_id
        self.error = error


def split_statements(sql: str) -> list[str]:
    """Split SQL text into complete statements using sqlite3.complete_statement."""
    statements = []
    buffer = ""
    for piece in sql.split(";"):
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            if buffer.strip(" \t\r\n;"):
                statements.append(buffer.strip())
            buffer = ""
    if buffer.strip(" \t\r\n;"):
        statements.append(buffer.strip())
    return statements


def _header_table_name(table: str) -> str:
    return re.sub(r"\s+", " ", table)


def build_dump(
    table: str, entries: Iterable[LogEntry], *, now: datetime | None = None
) -> str:
    """Return a replayable dump: a two-line header, then each statement verbatim."""
    dump = (
        f"-- Tracking report for table `{_header_table_name(table)}`\n"
        f"-- {format_date(now or datetime.now())}\n"
    )
    for entry in entries:
        dump += entry.statement + "\n"
    return dump


def build_sql_dump(entries: Iterable[LogEntry]) -> str:
    dump = (
        "-- You can execute the dump against a scratch copy of the database. "
        "Please ensure that you have the privileges to do so.\n"
        "-- Statements refer to tables by the schema they were recorded in.\n"
        "\n"
    )
    for entry in entries:
        dump += entry.statement + "\n"
    return dump


def download_info(
    table: str, entries: Iterable[LogEntry], *, now: datetime | None = None
) -> dict:
    table = _header_table_name(table)
    return {"filename": f"log_{table}.sql", "dump": build_dump(table, entries, now=now)}


def execute_entries(
    conn: sqlite3.Connection,
    entries: Iterable[LogEntry],
    *,
    runner: Callable[[str], object] | None = None,
    atomic: bool = True,
) -> ExecutionResult:
    """Replay entries in order through ``runner`` (``conn.execute`` by default).

    Stops at the first failing statement. With ``atomic`` (the default) the
    whole replay runs inside a SAVEPOINT and a failure rolls back the
    statements that already ran.
    """
    runner = runner or conn.execute
    entries = list(entries)
    executed = 0

    def _replay() -> None:
        nonlocal executed
        for entry in entries:
            try:
                for statement in split_statements(entry.statement):
                    runner(f"{NOTRACK_TAG}\n{statement}")
            except sqlite3.Error as e:
                raise _ReplayFailed(entry.id, e) from e
            executed += 1

    try:
        if atomic:
            _run_in_savepoint(conn, _replay)
        else:
            _replay()
    except _ReplayFailed as failure:
        logger.warning(
            "Replay stopped at entry %d after %d statement(s): %s",
            failure.entry_id,
            executed,
            failure.error,
        )
        return ExecutionResult(
            ok=False,
            executed=0 if atomic else executed,
            failed_entry_id=failure.entry_id,
            message=f"Query error: {failure.error}",
        )
    return ExecutionResult(
        ok=True, executed=executed, message=f"{executed} statement(s) executed."
    )


def restore_statements(
    record: TrackingVersion, *, settings: TrackingSettings | None = None
) -> list[str]:
    """Return the statements that recreate the structure stored with ``record``.

    Built from ``schema_sql``, which never changes after the version is
    created, so deleting DDL log entries does not affect a restore.
    """
    if not record.schema_sql:
        return []
    return _snapshot_statements(
        record.db_name,
        record.table_name,
        record.schema_sql,
        bool(_CREATE_VIEW.match(record.schema_sql)),
        settings or get_settings(),
    )


def restore_structure(
    conn: sqlite3.Connection,
    record: TrackingVersion,
    *,
    runner: Callable[[str], object] | None = None,
    settings: TrackingSettings | None = None,
) -> ExecutionResult:
    """Recreate the table definition captured by ``record``'s snapshot.

    Warning: with the default settings the snapshot starts with a
    ``DROP TABLE``, so the table's current rows are lost.
    """
    entries = [
        LogEntry(id=i, timestamp=record.date_created, username="", statement=sql)
        for i, sql in enumerate(restore_statements(record, settings=settings))
    ]
    if not entries:
        return ExecutionResult(ok=False, message="Version has no snapshot statements.")
    return execute_entries(conn, entries, runner=runner)


_EXPORTERS: dict[ExportType, Callable[..., dict]] = {
    ExportType.SQLDUMPFILE: lambda conn, table, entries: download_info(table, entries),
    ExportType.SQLDUMP: lambda conn, table, entries: {"dump": build_sql_dump(entries)},
    ExportType.EXECUTION: lambda conn, table, entries: execute_entries(
        conn, entries
    ).to_dict(),
}


def export(
    conn: sqlite3.Connection,
    table: str,
    entries: Iterable[LogEntry],
    export_type: ExportType | str,
) -> dict:
    """Dispatch to the exporter for ``export_type`` and return its result as a dict."""
    return _EXPORTERS[ExportType(export_type)](conn, table, list(entries))
