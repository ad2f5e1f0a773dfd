"""Versioned DDL/DML change tracking for SQLite tables."""

from .config import TrackingSettings, get_settings
from .export import (
    ExportType,
    build_dump,
    build_sql_dump,
    download_info,
    execute_entries,
    export,
    restore_statements,
    restore_structure,
)
from .interceptor import execute_tracked, handle_query, parse_statement
from .logs import filter_entries, get_entries, parse_users, remove_entry
from .models import (
    UNTRACKED,
    LogEntry,
    LogType,
    OperationResult,
    StatementKind,
    TrackingVersion,
)
from .report import build_report, build_snapshot_report
from .versions import (
    activate,
    append_entry,
    create_for_multiple_tables,
    create_version,
    deactivate,
    delete_log_entry,
    delete_version,
    get_last_version_number,
    get_tracked_tables,
    get_untracked_tables,
    get_version,
    list_versions,
)

__all__ = [
    "TrackingSettings",
    "get_settings",
    "UNTRACKED",
    "LogEntry",
    "LogType",
    "OperationResult",
    "StatementKind",
    "TrackingVersion",
    "create_version",
    "create_for_multiple_tables",
    "activate",
    "deactivate",
    "delete_version",
    "get_last_version_number",
    "get_version",
    "list_versions",
    "get_tracked_tables",
    "get_untracked_tables",
    "append_entry",
    "delete_log_entry",
    "filter_entries",
    "get_entries",
    "parse_users",
    "remove_entry",
    "build_report",
    "build_snapshot_report",
    "ExportType",
    "build_dump",
    "build_sql_dump",
    "download_info",
    "execute_entries",
    "export",
    "restore_statements",
    "restore_structure",
    "execute_tracked",
    "handle_query",
    "parse_statement",
]
