"""Plain data types shared by the tracking modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable


UNTRACKED = -1

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StatementKind(str, Enum):
    ALTER_TABLE = "ALTER TABLE"
    RENAME_TABLE = "RENAME TABLE"
    CREATE_TABLE = "CREATE TABLE"
    DROP_TABLE = "DROP TABLE"
    ALTER_VIEW = "ALTER VIEW"
    CREATE_VIEW = "CREATE VIEW"
    DROP_VIEW = "DROP VIEW"
    CREATE_INDEX = "CREATE INDEX"
    DROP_INDEX = "DROP INDEX"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    TRUNCATE = "TRUNCATE"

    @property
    def is_ddl(self) -> bool:
        return self not in DML_KINDS


DML_KINDS = frozenset(
    {
        StatementKind.INSERT,
        StatementKind.UPDATE,
        StatementKind.DELETE,
        StatementKind.TRUNCATE,
    }
)


class LogType(str, Enum):
    SCHEMA = "schema"
    DATA = "data"
    SCHEMA_AND_DATA = "schema_and_data"


def parse_tracking_set(value: str | Iterable | None) -> tuple[StatementKind, ...]:
    """Parse ``"INSERT,UPDATE"`` (or an iterable of tokens) into a tracking set.

    The result is de-duplicated and ordered by the statement-kind vocabulary.
    Unknown tokens are ignored.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        tokens = value.split(",")
    else:
        tokens = list(value)
    wanted = set()
    for token in tokens:
        if isinstance(token, StatementKind):
            wanted.add(token)
            continue
        normalized = " ".join(str(token).upper().split())
        try:
            wanted.add(StatementKind(normalized))
        except ValueError:
            continue
    return tuple(kind for kind in StatementKind if kind in wanted)


def format_tracking_set(kinds: Iterable[StatementKind]) -> str:
    return ",".join(kind.value for kind in parse_tracking_set(kinds))


def format_date(value: datetime) -> str:
    return value.strftime(DATE_FORMAT)


def parse_date(value: str) -> datetime:
    # Accepts "YYYY-MM-DD HH:MM:SS" with optional fractional seconds.
    # Log timestamps are naive local time, so offsets are converted to it.
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class LogEntry:
    id: int
    timestamp: datetime
    username: str
    statement: str

    @property
    def sort_key(self) -> tuple:
        return (self.timestamp, self.id, self.username, self.statement)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": format_date(self.timestamp),
            "username": self.username,
            "statement": self.statement,
        }


@dataclass
class TrackingVersion:
    db_name: str
    table_name: str
    version: int
    date_created: datetime
    date_updated: datetime
    schema_snapshot: str | None = None
    schema_sql: str | None = None
    ddlog: list[LogEntry] = field(default_factory=list)
    dmlog: list[LogEntry] = field(default_factory=list)
    tracking: tuple[StatementKind, ...] = ()
    active: bool = True

    def tracks(self, kind: StatementKind) -> bool:
        return kind in self.tracking

    def to_dict(self, *, include_logs: bool = False) -> dict:
        data = {
            "db_name": self.db_name,
            "table_name": self.table_name,
            "version": self.version,
            "date_created": format_date(self.date_created),
            "date_updated": format_date(self.date_updated),
            "tracking": format_tracking_set(self.tracking),
            "tracking_active": self.active,
        }
        if include_logs:
            data["ddlog"] = [entry.to_dict() for entry in self.ddlog]
            data["dmlog"] = [entry.to_dict() for entry in self.dmlog]
        return data


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a mutating operation: a success flag plus a user-facing message."""

    ok: bool
    message: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def noop(cls) -> "OperationResult":
        return cls(False, "")
