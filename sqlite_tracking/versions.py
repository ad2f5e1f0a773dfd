"""Tracking versions: creation, activation, deletion and log appends.

Each tracked table has one or more numbered versions stored as rows of the
tracking table (``_tracking`` by default) in the ``main`` schema:

- db_name, table_name, version: identify the version
- date_created, date_updated: ``YYYY-MM-DD HH:MM:SS`` strings
- schema_snapshot: encoded columns and indexes at creation time
- schema_sql: the CREATE statements at creation time
- ddlog, dmlog: encoded statement logs
- tracking: comma-separated statement kinds to record
- tracking_active: 1 while statements are being recorded

Mutating operations return an :class:`OperationResult` instead of raising
when the database refuses a write.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from typing import Callable, Iterable, Union

from . import snapshot
from .config import TrackingSettings, get_settings
from .logs import decode_log, encode_log, next_entry_id, remove_entry
from .models import (
    UNTRACKED,
    LogEntry,
    OperationResult,
    StatementKind,
    TrackingVersion,
    format_date,
    format_tracking_set,
    parse_date,
    parse_tracking_set,
)


logger = logging.getLogger(__name__)

_savepoint_counter = count(1)

_LOG_LABELS = {
    "ddlog": "Tracking data definition successfully deleted",
    "dmlog": "Tracking data manipulation successfully deleted",
}


def _version_number(version) -> int | None:
    try:
        return int(version)
    except (TypeError, ValueError):
        return None


def _run_in_savepoint(conn: sqlite3.Connection, fn):
    """Execute fn() atomically using a SAVEPOINT and return its result."""
    savepoint_name = f"sqlite_tracking_sp_{next(_savepoint_counter)}"
    conn.execute(f"savepoint [{savepoint_name}]")
    try:
        result = fn()
    except Exception:
        conn.execute(f"rollback to [{savepoint_name}]")
        conn.execute(f"release [{savepoint_name}]")
        raise
    else:
        conn.execute(f"release [{savepoint_name}]")
        return result


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def ensure_tracking_table(
    conn: sqlite3.Connection, settings: TrackingSettings | None = None
) -> str:
    """Create the tracking table if it does not exist and return its name."""
    name = (settings or get_settings()).tracking_table
    conn.execute(
        f"""create table if not exists [main].[{name}] (
    db_name text not null,
    table_name text not null,
    version integer not null,
    date_created text not null,
    date_updated text not null,
    schema_snapshot text,
    schema_sql text,
    ddlog text,
    dmlog text,
    tracking text,
    tracking_active integer not null default 1,
    primary key (db_name, table_name, version)
)"""
    )
    return name


def _existing_tracking_table(
    conn: sqlite3.Connection, settings: TrackingSettings | None
) -> str | None:
    # Readers must not create the table: they may hold a read-only connection
    name = (settings or get_settings()).tracking_table
    row = conn.execute(
        "select count(*) from [main].sqlite_master where type = 'table' and name = ?",
        (name,),
    ).fetchone()
    return name if row[0] else None


def _row_to_version(row: dict) -> TrackingVersion:
    return TrackingVersion(
        db_name=row["db_name"],
        table_name=row["table_name"],
        version=int(row["version"]),
        date_created=parse_date(row["date_created"]),
        date_updated=parse_date(row["date_updated"]),
        schema_snapshot=row["schema_snapshot"],
        schema_sql=row["schema_sql"],
        ddlog=decode_log(row["ddlog"]),
        dmlog=decode_log(row["dmlog"]),
        tracking=parse_tracking_set(row["tracking"]),
        active=bool(row["tracking_active"]),
    )


def _select_versions(
    conn: sqlite3.Connection,
    where: str,
    params: list,
    settings: TrackingSettings | None,
) -> list[TrackingVersion]:
    name = _existing_tracking_table(conn, settings)
    if name is None:
        return []
    cursor = conn.execute(f"select * from [main].[{name}] as v where {where}", params)
    col_names = [desc[0] for desc in cursor.description]
    return [_row_to_version(dict(zip(col_names, row))) for row in cursor.fetchall()]


def get_version(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    *,
    settings: TrackingSettings | None = None,
) -> TrackingVersion | None:
    number = _version_number(version)
    if number is None:
        return None
    found = _select_versions(
        conn,
        "db_name = ? and table_name = ? and version = ?",
        [db, table, number],
        settings,
    )
    return found[0] if found else None


def list_versions(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    *,
    settings: TrackingSettings | None = None,
) -> list[TrackingVersion]:
    """Return all versions of a table, newest first."""
    return _select_versions(
        conn,
        "db_name = ? and table_name = ? order by version desc",
        [db, table],
        settings,
    )


def get_last_version_number(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    *,
    settings: TrackingSettings | None = None,
) -> int:
    """Return the highest version number for a table, or ``UNTRACKED`` (-1)."""
    name = _existing_tracking_table(conn, settings)
    if name is None:
        return UNTRACKED
    row = conn.execute(
        f"select max(version) from [main].[{name}] "
        "where db_name = ? and table_name = ?",
        (db, table),
    ).fetchone()
    return UNTRACKED if row[0] is None else int(row[0])


def get_latest_version(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    *,
    settings: TrackingSettings | None = None,
) -> TrackingVersion | None:
    last = get_last_version_number(conn, db, table, settings=settings)
    if last == UNTRACKED:
        return None
    return get_version(conn, db, table, last, settings=settings)


def get_tracked_tables(
    conn: sqlite3.Connection,
    db: str,
    *,
    settings: TrackingSettings | None = None,
) -> list[TrackingVersion]:
    """Return the head (latest) version of every tracked table in ``db``."""
    name = (settings or get_settings()).tracking_table
    return _select_versions(
        conn,
        f"db_name = ? and version = (select max(t2.version) from [main].[{name}] t2 "
        "where t2.db_name = v.db_name and t2.table_name = v.table_name) "
        "order by table_name",
        [db],
        settings,
    )


def _snapshot_statements(
    db: str,
    table: str,
    schema_sql: str,
    view: bool,
    settings: TrackingSettings,
) -> list[str]:
    statements = []
    if view and settings.add_drop_view:
        statements.append(f"DROP VIEW IF EXISTS [{db}].[{table}];")
    elif not view and settings.add_drop_table:
        statements.append(f"DROP TABLE IF EXISTS [{db}].[{table}];")
    statements.append(schema_sql)
    return statements


def create_version(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int | str | None = None,
    tracking: str | Iterable | None = None,
    *,
    username: str | None = None,
    is_view: bool | None = None,
    date: datetime | None = None,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    """Start a new tracking version for ``db.table``.

    Captures the current structure as the version's snapshot, seeds the DDL
    log with the statements needed to recreate it and activates tracking.

    Args:
        conn: SQLite connection.
        db: Schema name of the table (``main`` or an attached alias).
        table: Table or view name.
        version: Version number. Defaults to the last version plus one and
            must be greater than the last version.
        tracking: Statement kinds to record. Defaults to the configured
            ``default_statements``.
        username: User the seed statements are attributed to.
        is_view: Whether ``table`` is a view. Looked up when None.
        date: Creation time. Defaults to now.
        settings: Overrides the environment configuration.
    """
    settings = settings or get_settings()
    username = username or settings.default_username
    tracking_set = parse_tracking_set(
        settings.default_statements if tracking is None else tracking
    )
    try:
        last = get_last_version_number(conn, db, table, settings=settings)
        if version is None or version == "":
            number = max(last, 0) + 1
        else:
            try:
                number = int(version)
            except (TypeError, ValueError):
                return OperationResult(False, "Version must be a positive integer.")
            if number < 1:
                return OperationResult(False, "Version must be a positive integer.")
            if number <= last:
                return OperationResult(
                    False,
                    f"Version {number} of {db}.{table} must be greater than "
                    f"the latest version {last}.",
                )

        create_sql = snapshot.create_statement(conn, db, table)
        if create_sql is None:
            return OperationResult(False, f"Table {db}.{table} does not exist.")
        if is_view is None:
            is_view = snapshot.is_view(conn, db, table)
        columns, indexes = snapshot.fetch_structure(conn, db, table)
        schema_sql = "".join(
            f"{sql};\n"
            for sql in [create_sql] + snapshot.index_statements(conn, db, table)
        )

        created = date or _now()
        seed = [
            LogEntry(id=i, timestamp=created, username=username, statement=statement)
            for i, statement in enumerate(
                _snapshot_statements(db, table, schema_sql, is_view, settings)
            )
        ]
        name = ensure_tracking_table(conn, settings)
        conn.execute(
            f"insert into [main].[{name}] (db_name, table_name, version, "
            "date_created, date_updated, schema_snapshot, schema_sql, "
            "ddlog, dmlog, tracking, tracking_active) "
            "values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)",
            [
                db,
                table,
                number,
                format_date(created),
                format_date(created),
                snapshot.encode(columns, indexes),
                schema_sql,
                encode_log(seed),
                encode_log([]),
                format_tracking_set(tracking_set),
            ],
        )
    except sqlite3.Error as e:
        logger.exception("Could not create tracking version for %s.%s", db, table)
        return OperationResult(False, f"Query error: {e}")

    logger.info("Created tracking version %d for %s.%s", number, db, table)
    return OperationResult(
        True, f"Version {number} was created, tracking for {db}.{table} is active."
    )


def create_for_multiple_tables(
    conn: sqlite3.Connection,
    db: str,
    tables: Iterable[str],
    version: int | str | None = None,
    tracking: str | Iterable | None = None,
    *,
    username: str | None = None,
    settings: TrackingSettings | None = None,
) -> dict[str, OperationResult]:
    """Create an independent version for each table.

    A failure for one table does not stop the others.

    Raises:
        ValueError: If no tables were selected.
    """
    selected = [t for t in (tables or []) if t]
    if not selected:
        raise ValueError("No tables selected.")
    return {
        table: create_version(
            conn,
            db,
            table,
            version,
            tracking,
            username=username,
            settings=settings,
        )
        for table in selected
    }


def _set_active(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    active: bool,
    settings: TrackingSettings | None,
) -> OperationResult:
    action = "activated" if active else "deactivated"
    number = _version_number(version)
    if number is None:
        return OperationResult.noop()
    try:
        name = ensure_tracking_table(conn, settings)
        cursor = conn.execute(
            f"update [main].[{name}] set tracking_active = ?, date_updated = ? "
            "where db_name = ? and table_name = ? and version = ?",
            [int(active), format_date(_now()), db, table, number],
        )
    except sqlite3.Error as e:
        logger.exception("Could not change tracking for %s.%s", db, table)
        return OperationResult(False, f"Query error: {e}")
    if cursor.rowcount == 0:
        return OperationResult(False, f"Version {version} of {db}.{table} does not exist.")
    logger.info("Tracking for %s.%s %s at version %s", db, table, action, version)
    return OperationResult(
        True, f"Tracking for {db}.{table} was {action} at version {version}."
    )


def activate(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    *,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    return _set_active(conn, db, table, version, True, settings)


def deactivate(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    *,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    return _set_active(conn, db, table, version, False, settings)


def delete_version(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    *,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    """Permanently remove a version together with its snapshot and logs."""
    number = _version_number(version)
    if number is None:
        return OperationResult.noop()
    try:
        name = ensure_tracking_table(conn, settings)
        cursor = conn.execute(
            f"delete from [main].[{name}] "
            "where db_name = ? and table_name = ? and version = ?",
            [db, table, number],
        )
    except sqlite3.Error as e:
        logger.exception("Could not delete tracking version for %s.%s", db, table)
        return OperationResult(False, f"Query error: {e}")
    if cursor.rowcount == 0:
        return OperationResult(False, f"Version {version} of {db}.{table} does not exist.")
    logger.info("Deleted tracking version %s of %s.%s", version, db, table)
    return OperationResult(True, f"Version {version} of {db}.{table} was deleted.")


def rename_tracked_table(
    conn: sqlite3.Connection,
    db: str,
    old_table: str,
    new_table: str,
    *,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    """Move every version of ``old_table`` to ``new_table`` after a rename."""
    try:
        name = ensure_tracking_table(conn, settings)
        cursor = conn.execute(
            f"update [main].[{name}] set table_name = ? "
            "where db_name = ? and table_name = ?",
            [new_table, db, old_table],
        )
    except sqlite3.Error as e:
        logger.exception("Could not rename tracking for %s.%s", db, old_table)
        return OperationResult(False, f"Query error: {e}")
    if cursor.rowcount == 0:
        return OperationResult.noop()
    logger.info("Tracking for %s.%s moved to %s.%s", db, old_table, db, new_table)
    return OperationResult(True, f"Tracking for {db}.{old_table} moved to {new_table}.")


def _write_log(
    conn: sqlite3.Connection,
    record: TrackingVersion,
    which_log: str,
    entries: list[LogEntry],
    settings: TrackingSettings | None,
) -> int:
    name = ensure_tracking_table(conn, settings)
    cursor = conn.execute(
        f"update [main].[{name}] set [{which_log}] = ?, date_updated = ? "
        "where db_name = ? and table_name = ? and version = ?",
        [
            encode_log(entries),
            format_date(_now()),
            record.db_name,
            record.table_name,
            record.version,
        ],
    )
    return cursor.rowcount


def append_entry(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    statement: str,
    *,
    username: str,
    kind: StatementKind | str,
    version: int | None = None,
    date: datetime | None = None,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    """Append a statement to the DDL or DML log of a version.

    The version defaults to the latest one. Nothing is written unless that
    version is active and ``kind`` is part of its tracking set.
    """
    kind = StatementKind(kind)
    which_log = "ddlog" if kind.is_ddl else "dmlog"

    def _append() -> OperationResult:
        if version is None:
            record = get_latest_version(conn, db, table, settings=settings)
        else:
            record = get_version(conn, db, table, version, settings=settings)
        if record is None:
            return OperationResult(False, f"{db}.{table} is not tracked.")
        if not record.active:
            return OperationResult(
                False,
                f"Tracking for {db}.{table} is not active at version {record.version}.",
            )
        if not record.tracks(kind):
            return OperationResult(
                False, f"{kind.value} is not tracked for {db}.{table}."
            )
        log = record.ddlog if which_log == "ddlog" else record.dmlog
        entry = LogEntry(
            id=next_entry_id(log),
            timestamp=date or _now(),
            username=username,
            statement=statement,
        )
        _write_log(conn, record, which_log, log + [entry], settings)
        return OperationResult(True, f"Statement recorded in {which_log}.")

    try:
        return _run_in_savepoint(conn, _append)
    except sqlite3.Error as e:
        logger.exception("Could not record statement for %s.%s", db, table)
        return OperationResult(False, f"Query error: {e}")


def delete_log_entry(
    conn: sqlite3.Connection,
    db: str,
    table: str,
    version: int,
    which_log: str,
    entry_id,
    *,
    settings: TrackingSettings | None = None,
) -> OperationResult:
    """Remove a single entry from a version's ``ddlog`` or ``dmlog``.

    Other entries keep their ids. An ``entry_id`` that is not an integer, or
    that matches no entry, is a no-op.
    """
    if which_log not in _LOG_LABELS:
        raise ValueError(f"which_log must be 'ddlog' or 'dmlog', not {which_log!r}")
    try:
        entry_id = int(entry_id)
    except (TypeError, ValueError):
        return OperationResult.noop()

    try:
        record = get_version(conn, db, table, version, settings=settings)
        if record is None:
            return OperationResult.noop()
        log = record.ddlog if which_log == "ddlog" else record.dmlog
        remaining = remove_entry(log, entry_id)
        if len(remaining) == len(log):
            return OperationResult.noop()
        _write_log(conn, record, which_log, remaining, settings)
    except sqlite3.Error:
        logger.exception("Could not delete %s entry %d for %s.%s", which_log, entry_id, db, table)
        return OperationResult(False, "Query error")
    return OperationResult(True, _LOG_LABELS[which_log])


# Untracked tables ---------------------------------------------------------


@dataclass
class TableLeaf:
    name: str


@dataclass
class TableGroup:
    name: str
    children: list["TableNode"] = field(default_factory=list)


TableNode = Union[TableGroup, TableLeaf]


def build_table_tree(
    names: Iterable[str], separator: str = "__", _depth: int = 0
) -> list[TableNode]:
    """Group table names that share a ``separator``-delimited prefix."""
    nodes: list[TableNode] = []
    grouped: dict[str, list[str]] = {}
    for name in sorted(names):
        parts = name.split(separator) if separator else [name]
        if len(parts) > _depth + 1:
            grouped.setdefault(parts[_depth], []).append(name)
        else:
            nodes.append(TableLeaf(name))
    for prefix, members in grouped.items():
        nodes.append(
            TableGroup(prefix, build_table_tree(members, separator, _depth + 1))
        )
    return nodes


def extract_table_names(
    nodes: Iterable[TableNode], is_tracked: Callable[[str], bool]
) -> list[str]:
    """Return names of the leaves in ``nodes`` for which ``is_tracked`` is false."""
    untracked = []
    for node in nodes:
        if isinstance(node, TableGroup):
            untracked.extend(extract_table_names(node.children, is_tracked))
        elif not is_tracked(node.name):
            untracked.append(node.name)
    return untracked


def get_untracked_tables(
    conn: sqlite3.Connection,
    db: str,
    *,
    settings: TrackingSettings | None = None,
) -> list[str]:
    settings = settings or get_settings()
    rows = conn.execute(
        f"select name from [{db}].sqlite_master "
        "where type in ('table', 'view') and name not like 'sqlite\\_%' escape '\\' "
        "order by name"
    ).fetchall()
    names = [r[0] for r in rows if not (db == "main" and r[0] == settings.tracking_table)]
    tree = build_table_tree(names, settings.table_separator)
    return sorted(
        extract_table_names(
            tree,
            lambda name: get_last_version_number(conn, db, name, settings=settings)
            != UNTRACKED,
        )
    )
