"""Assemble tracking reports as plain data for rendering or JSON output."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from . import snapshot
from .logs import filter_entries, get_entries, parse_users
from .models import (
    LogEntry,
    LogType,
    StatementKind,
    TrackingVersion,
    format_date,
    format_tracking_set,
)


@dataclass(frozen=True)
class ReportRow:
    line_number: int
    entry: LogEntry

    def to_dict(self) -> dict:
        return {"line_number": self.line_number, **self.entry.to_dict()}


@dataclass
class TrackingReport:
    db_name: str
    table_name: str
    version: int
    tracking: tuple[StatementKind, ...]
    active: bool
    log_type: LogType
    users: str
    date_from: datetime
    date_to: datetime
    ddl_rows: list[ReportRow] = field(default_factory=list)
    dml_rows: list[ReportRow] = field(default_factory=list)
    entries: list[LogEntry] = field(default_factory=list)
    is_empty: bool = False

    def to_dict(self) -> dict:
        return {
            "db_name": self.db_name,
            "table_name": self.table_name,
            "version": self.version,
            "tracking": format_tracking_set(self.tracking),
            "tracking_active": self.active,
            "log_type": self.log_type.value,
            "users": self.users,
            "date_from": format_date(self.date_from),
            "date_to": format_date(self.date_to),
            "ddlog": [row.to_dict() for row in self.ddl_rows],
            "dmlog": [row.to_dict() for row in self.dml_rows],
            "entries": [entry.to_dict() for entry in self.entries],
            "is_empty": self.is_empty,
        }


@dataclass
class SnapshotReport:
    db_name: str
    table_name: str
    version: int
    statements: str
    columns: list[dict]
    indexes: list[dict]

    def to_dict(self) -> dict:
        return {
            "db_name": self.db_name,
            "table_name": self.table_name,
            "version": self.version,
            "statements": self.statements,
            "columns": self.columns,
            "indexes": self.indexes,
        }


def _numbered_rows(
    log: list[LogEntry],
    users: set[str],
    date_from: datetime,
    date_to: datetime,
    first_line: int,
) -> list[ReportRow]:
    # Line numbers count every entry of the log, shown or not
    lines = {entry.id: first_line + position for position, entry in enumerate(log)}
    return [
        ReportRow(lines[entry.id], entry)
        for entry in filter_entries(log, users, date_from, date_to)
    ]


def build_report(
    record: TrackingVersion,
    *,
    log_type: LogType | str = LogType.SCHEMA_AND_DATA,
    users: str | None = "*",
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> TrackingReport:
    """Build the tracking report for one version.

    ``users`` is a comma-separated user filter where ``*`` matches anyone.
    The window defaults to the version's creation date up to now.
    """
    log_type = LogType(log_type)
    filter_users = parse_users(users)
    date_from = date_from or record.date_created
    date_to = date_to or datetime.now()

    report = TrackingReport(
        db_name=record.db_name,
        table_name=record.table_name,
        version=record.version,
        tracking=record.tracking,
        active=record.active,
        log_type=log_type,
        users=", ".join(sorted(filter_users)),
        date_from=date_from,
        date_to=date_to,
        is_empty=not record.ddlog and not record.dmlog,
    )
    if log_type in (LogType.SCHEMA, LogType.SCHEMA_AND_DATA):
        report.ddl_rows = _numbered_rows(
            record.ddlog, filter_users, date_from, date_to, 1
        )
    if log_type in (LogType.DATA, LogType.SCHEMA_AND_DATA):
        report.dml_rows = _numbered_rows(
            record.dmlog, filter_users, date_from, date_to, len(record.ddlog) + 1
        )
    report.entries = get_entries(
        record.ddlog, record.dmlog, log_type, filter_users, date_from, date_to
    )
    return report


def snapshot_statements(record: TrackingVersion) -> list[str]:
    """Return the DDL statements that recreate the snapshotted structure.

    That is the first DDL log entry, plus the second one when the first is
    a ``DROP TABLE``/``DROP VIEW``.
    """
    if not record.ddlog:
        return [record.schema_sql] if record.schema_sql else []
    first = record.ddlog[0].statement
    statements = [first]
    upper = first.upper()
    if ("DROP TABLE" in upper or "DROP VIEW" in upper) and len(record.ddlog) > 1:
        statements.append(record.ddlog[1].statement)
    return statements


def build_snapshot_report(record: TrackingVersion) -> SnapshotReport:
    columns, indexes = snapshot.decode(record.schema_snapshot)
    return SnapshotReport(
        db_name=record.db_name,
        table_name=record.table_name,
        version=record.version,
        statements="\n".join(snapshot_statements(record)),
        columns=columns,
        indexes=indexes,
    )
