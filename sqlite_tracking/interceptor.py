"""Record statements run through the package against tracked tables.

:func:`execute_tracked` runs a statement and then hands it to
:func:`handle_query`, which works out the statement kind and target table
and appends it to the active version of that table. Statements starting
with the ``/*NOTRACK*/`` tag are never recorded.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, replace

from .config import TrackingSettings, get_settings
from .export import NOTRACK_TAG
from .models import UNTRACKED, StatementKind
from .versions import (
    append_entry,
    create_version,
    get_last_version_number,
    rename_tracked_table,
)


logger = logging.getLogger(__name__)

_IDENT = r'(?:\[[^\]]+\]|"(?:[^"]|"")+"|`[^`]+`|[A-Za-z_][\w$]*)'
_TABLE = rf"(?:(?P<schema>{_IDENT})\s*\.\s*)?(?P<table>{_IDENT})"
_NEW_TABLE = rf"(?:{_IDENT}\s*\.\s*)?(?P<new_table>{_IDENT})"
_INDEX = rf"(?:(?P<schema>{_IDENT})\s*\.\s*)?(?P<index>{_IDENT})"

_PATTERNS = [
    (
        StatementKind.ALTER_TABLE,
        rf"ALTER\s+TABLE\s+{_TABLE}(?:\s+RENAME\s+TO\s+{_NEW_TABLE})?",
    ),
    (StatementKind.RENAME_TABLE, rf"RENAME\s+TABLE\s+{_TABLE}\s+TO\s+{_NEW_TABLE}"),
    (
        StatementKind.CREATE_TABLE,
        rf"CREATE\s+(?:TEMP(?:ORARY)?\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{_TABLE}",
    ),
    (StatementKind.DROP_TABLE, rf"DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?{_TABLE}"),
    (StatementKind.ALTER_VIEW, rf"ALTER\s+VIEW\s+{_TABLE}"),
    (
        StatementKind.CREATE_VIEW,
        rf"CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?VIEW\s+"
        rf"(?:IF\s+NOT\s+EXISTS\s+)?{_TABLE}",
    ),
    (StatementKind.DROP_VIEW, rf"DROP\s+VIEW\s+(?:IF\s+EXISTS\s+)?{_TABLE}"),
    (
        StatementKind.CREATE_INDEX,
        rf"CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?{_INDEX}"
        rf"\s+ON\s+(?P<table>{_IDENT})",
    ),
    (
        StatementKind.DROP_INDEX,
        rf"DROP\s+INDEX\s+(?:IF\s+EXISTS\s+)?{_INDEX}(?:\s+ON\s+(?P<table>{_IDENT}))?",
    ),
    (
        StatementKind.INSERT,
        rf"(?:REPLACE|INSERT(?:\s+OR\s+\w+)?)\s+INTO\s+{_TABLE}",
    ),
    (StatementKind.UPDATE, rf"UPDATE\s+(?:OR\s+\w+\s+)?{_TABLE}"),
    (StatementKind.DELETE, rf"DELETE\s+FROM\s+{_TABLE}"),
    (StatementKind.TRUNCATE, rf"TRUNCATE\s+(?:TABLE\s+)?{_TABLE}"),
]
_COMPILED = [(kind, re.compile(pattern, re.I | re.S)) for kind, pattern in _PATTERNS]

_LEADING_COMMENTS = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/)*", re.S)


@dataclass(frozen=True)
class ParsedStatement:
    kind: StatementKind
    table: str | None
    schema: str | None = None
    index: str | None = None
    new_table: str | None = None


def _unquote(identifier: str | None) -> str | None:
    if identifier is None:
        return None
    if identifier[0] == "[" and identifier[-1] == "]":
        return identifier[1:-1]
    if identifier[0] == identifier[-1] and identifier[0] in "\"`":
        quote = identifier[0]
        return identifier[1:-1].replace(quote * 2, quote)
    return identifier


def is_notrack(sql: str) -> bool:
    return sql.lstrip().startswith(NOTRACK_TAG)


def parse_statement(sql: str) -> ParsedStatement | None:
    """Identify the statement kind and target table of ``sql``.

    Only the statement head is inspected. Returns None for statements that
    are not one of the tracked kinds.
    """
    head = sql[_LEADING_COMMENTS.match(sql).end():]
    for kind, pattern in _COMPILED:
        match = pattern.match(head)
        if match is None:
            continue
        groups = match.groupdict()
        return ParsedStatement(
            kind=kind,
            table=_unquote(groups.get("table")),
            schema=_unquote(groups.get("schema")),
            index=_unquote(groups.get("index")),
            new_table=_unquote(groups.get("new_table")),
        )
    return None


def resolve_statement(
    conn: sqlite3.Connection, sql: str, *, db: str = "main"
) -> ParsedStatement | None:
    """Parse ``sql`` and fill in the schema and, for DROP INDEX, the table.

    Must run before a DROP INDEX executes, while the index still exists.
    """
    parsed = parse_statement(sql)
    if parsed is None:
        return None
    schema = parsed.schema or db
    table = parsed.table
    if table is None and parsed.index is not None:
        row = conn.execute(
            f"select tbl_name from [{schema}].sqlite_master "
            "where type = 'index' and name = ?",
            (parsed.index,),
        ).fetchone()
        table = row[0] if row else None
    return replace(parsed, schema=schema, table=table)


def _normalize(sql: str) -> str:
    return sql.strip().rstrip(";").rstrip() + ";"


def handle_query(
    conn: sqlite3.Connection,
    sql: str,
    *,
    username: str,
    db: str = "main",
    parsed: ParsedStatement | None = None,
    settings: TrackingSettings | None = None,
) -> bool:
    """Record an executed statement if its table is tracked. Returns True if recorded."""
    if is_notrack(sql):
        return False
    settings = settings or get_settings()
    parsed = parsed or resolve_statement(conn, sql, db=db)
    if parsed is None or parsed.table is None:
        return False
    schema = parsed.schema or db
    if schema == "main" and parsed.table == settings.tracking_table:
        return False

    last = get_last_version_number(conn, schema, parsed.table, settings=settings)
    if last == UNTRACKED:
        if settings.version_auto_create and parsed.kind in (
            StatementKind.CREATE_TABLE,
            StatementKind.CREATE_VIEW,
        ):
            result = create_version(
                conn, schema, parsed.table, 1, username=username, settings=settings
            )
            return result.ok
        return False

    result = append_entry(
        conn,
        schema,
        parsed.table,
        _normalize(sql),
        username=username,
        kind=parsed.kind,
        version=last,
        settings=settings,
    )
    if not result:
        logger.debug("Not recorded: %s", result.message)
        return False
    if parsed.new_table:
        rename_tracked_table(
            conn, schema, parsed.table, parsed.new_table, settings=settings
        )
    return True


def execute_tracked(
    conn: sqlite3.Connection,
    sql: str,
    params=(),
    *,
    username: str,
    db: str = "main",
    settings: TrackingSettings | None = None,
) -> sqlite3.Cursor:
    """Execute ``sql`` on ``conn`` and record it against its tracked table.

    The recorded text is ``sql`` itself, placeholders included.
    """
    parsed = None if is_notrack(sql) else resolve_statement(conn, sql, db=db)
    cursor = conn.execute(sql, params)
    handle_query(
        conn, sql, username=username, db=db, parsed=parsed, settings=settings
    )
    return cursor
