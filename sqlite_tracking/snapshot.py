"""Structural snapshots: capture a table's columns and indexes and encode them.

Snapshots are historical data, so :func:`decode` never raises. A blob it
cannot make sense of decodes to empty column and index lists.
"""

from __future__ import annotations

import json
import logging
import sqlite3


logger = logging.getLogger(__name__)


def encode(columns: list[dict], indexes: list[dict]) -> str:
    return json.dumps({"COLUMNS": list(columns), "INDEXES": list(indexes)})


def decode(blob) -> tuple[list[dict], list[dict]]:
    """Decode a snapshot blob into ``(columns, indexes)``."""
    if isinstance(blob, bytes):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Snapshot is not valid UTF-8, ignoring it")
            return [], []
    if not isinstance(blob, str):
        return [], []
    try:
        data = json.loads(blob)
    except ValueError:
        logger.warning("Snapshot could not be decoded, ignoring it")
        return [], []
    if not isinstance(data, dict):
        return [], []
    columns = data.get("COLUMNS")
    indexes = data.get("INDEXES")
    if not isinstance(columns, list) or not isinstance(indexes, list):
        return [], []
    return columns, indexes


def fetch_structure(
    conn: sqlite3.Connection, db: str, table: str
) -> tuple[list[dict], list[dict]]:
    """Return column and index descriptors for ``db.table``."""
    rows = conn.execute(f"PRAGMA [{db}].table_xinfo([{table}])").fetchall()
    columns = [
        {
            "name": r[1],
            "type": r[2],
            "notnull": bool(r[3]),
            "default": r[4],
            "pk": r[5],
            "hidden": r[6],
        }
        for r in rows
    ]
    indexes = []
    for r in conn.execute(f"PRAGMA [{db}].index_list([{table}])").fetchall():
        index_name = r[1]
        index_columns = [
            info[2]
            for info in conn.execute(
                f"PRAGMA [{db}].index_info([{index_name}])"
            ).fetchall()
        ]
        indexes.append(
            {
                "name": index_name,
                "unique": bool(r[2]),
                "origin": r[3],
                "partial": bool(r[4]),
                "columns": index_columns,
            }
        )
    return columns, indexes


def is_view(conn: sqlite3.Connection, db: str, table: str) -> bool:
    row = conn.execute(
        f"select type from [{db}].sqlite_master where name = ?", (table,)
    ).fetchone()
    return row is not None and row[0] == "view"


def create_statement(conn: sqlite3.Connection, db: str, table: str) -> str | None:
    """Return the stored ``CREATE TABLE``/``CREATE VIEW`` SQL, or None."""
    row = conn.execute(
        f"select sql from [{db}].sqlite_master "
        "where name = ? and type in ('table', 'view')",
        (table,),
    ).fetchone()
    return row[0] if row else None


def index_statements(conn: sqlite3.Connection, db: str, table: str) -> list[str]:
    """Return ``CREATE INDEX`` SQL for explicitly created indexes on the table."""
    rows = conn.execute(
        f"select sql from [{db}].sqlite_master "
        "where type = 'index' and tbl_name = ? and sql is not null order by name",
        (table,),
    ).fetchall()
    return [r[0] for r in rows]
