"""DDL/DML log encoding, filtering and ordering."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable

from .models import LogEntry, LogType, parse_date


logger = logging.getLogger(__name__)

WILDCARD_USER = "*"

_LEGACY_MARKER = "# log "


def encode_log(entries: Iterable[LogEntry]) -> str:
    return json.dumps([entry.to_dict() for entry in entries])


def decode_log(blob) -> list[LogEntry]:
    """Decode a persisted log into entries, oldest first.

    Accepts the JSON list written by :func:`encode_log` as well as the
    legacy ``# log <date> <user>`` text format. Anything else decodes to an
    empty list.
    """
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8", errors="replace")
    if not isinstance(blob, str) or not blob.strip():
        return []
    if blob.lstrip().startswith(_LEGACY_MARKER):
        return _decode_legacy_log(blob)
    try:
        items = json.loads(blob)
    except ValueError:
        logger.warning("Tracking log could not be decoded, ignoring it")
        return []
    if not isinstance(items, list):
        return []
    entries = []
    for position, item in enumerate(items):
        try:
            entries.append(
                LogEntry(
                    id=int(item.get("id", position)),
                    timestamp=parse_date(item["date"]),
                    username=str(item["username"]),
                    statement=str(item["statement"]),
                )
            )
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed tracking log item at %d", position)
    return entries


def _decode_legacy_log(blob: str) -> list[LogEntry]:
    entries = []
    for chunk in blob.split(_LEGACY_MARKER):
        if not chunk.strip():
            continue
        header, _, statement = chunk.partition("\n")
        try:
            timestamp = parse_date(header[:19])
        except ValueError:
            continue
        entries.append(
            LogEntry(
                id=len(entries),
                timestamp=timestamp,
                username=header[20:].strip(),
                statement=statement.rstrip(),
            )
        )
    return entries


def next_entry_id(entries: list[LogEntry]) -> int:
    return max((entry.id for entry in entries), default=-1) + 1


def remove_entry(entries: list[LogEntry], entry_id: int) -> list[LogEntry]:
    """Return a copy of ``entries`` without the entry whose id is ``entry_id``.

    Remaining entries keep their ids.
    """
    return [entry for entry in entries if entry.id != entry_id]


def parse_users(users: str | None) -> set[str]:
    """Parse a comma-separated user filter such as ``"alice, bob"``."""
    if users is None:
        return {WILDCARD_USER}
    names = {name.strip() for name in users.split(",")}
    names.discard("")
    return names or {WILDCARD_USER}


def filter_entries(
    entries: Iterable[LogEntry],
    filter_users: Iterable[str],
    date_from: datetime,
    date_to: datetime,
) -> list[LogEntry]:
    """Keep entries inside ``[date_from, date_to]`` made by one of ``filter_users``.

    ``"*"`` in ``filter_users`` matches every user.
    """
    users = set(filter_users)
    any_user = WILDCARD_USER in users
    return [
        entry
        for entry in entries
        if date_from <= entry.timestamp <= date_to
        and (any_user or entry.username in users)
    ]


def get_entries(
    ddlog: list[LogEntry],
    dmlog: list[LogEntry],
    log_type: LogType | str,
    filter_users: Iterable[str],
    date_from: datetime,
    date_to: datetime,
) -> list[LogEntry]:
    """Select, filter and sort entries for a report or export.

    The DDL log is used for ``schema`` and ``schema_and_data``, the DML log
    for ``data`` and ``schema_and_data``. The result is ordered by
    ``(timestamp, id, username, statement)``.
    """
    log_type = LogType(log_type)
    filter_users = set(filter_users)
    entries: list[LogEntry] = []
    if log_type in (LogType.SCHEMA, LogType.SCHEMA_AND_DATA):
        entries.extend(filter_entries(ddlog, filter_users, date_from, date_to))
    if log_type in (LogType.DATA, LogType.SCHEMA_AND_DATA):
        entries.extend(filter_entries(dmlog, filter_users, date_from, date_to))
    entries.sort(key=lambda entry: entry.sort_key)
    return entries
