"""Command-line interface for sqlite-tracking."""

from __future__ import annotations

import argparse
import json
import sqlite3
import sys

from .config import get_settings
from .export import ExportType, export, restore_structure
from .interceptor import execute_tracked
from .models import LogType, parse_date
from .report import build_report, build_snapshot_report
from .versions import (
    activate,
    create_for_multiple_tables,
    deactivate,
    delete_log_entry,
    delete_version,
    get_tracked_tables,
    get_untracked_tables,
    get_version,
    list_versions,
)


def _finish(result) -> None:
    """Print a status message and exit non-zero on failure."""
    if result.message:
        print(result.message, file=sys.stderr)
    if not result:
        sys.exit(1)


def _dump_json(data) -> None:
    json.dump(data, sys.stdout, indent=2)
    sys.stdout.write("\n")


def _load_version(conn, args):
    record = get_version(conn, args.schema, args.table, args.version)
    if record is None:
        print(
            f"Error: version {args.version} of {args.schema}.{args.table} "
            "does not exist.",
            file=sys.stderr,
        )
        sys.exit(1)
    return record


def _report_for(record, args):
    try:
        date_from = parse_date(args.date_from) if args.date_from else None
        date_to = parse_date(args.date_to) if args.date_to else None
    except ValueError as e:
        print(f"Error: invalid date: {e}", file=sys.stderr)
        sys.exit(1)
    return build_report(
        record,
        log_type=args.log_type,
        users=args.users,
        date_from=date_from,
        date_to=date_to,
    )


def cmd_create(args):
    conn = sqlite3.connect(args.database)
    try:
        try:
            results = create_for_multiple_tables(
                conn,
                args.schema,
                args.tables,
                args.version,
                args.statements,
                username=args.user,
            )
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        conn.commit()
        for result in results.values():
            print(result.message, file=sys.stderr)
        if not all(results.values()):
            sys.exit(1)
    finally:
        conn.close()


def _cmd_change(operation):
    def cmd(args):
        conn = sqlite3.connect(args.database)
        try:
            result = operation(conn, args.schema, args.table, args.version)
            conn.commit()
            _finish(result)
        finally:
            conn.close()

    return cmd


cmd_activate = _cmd_change(activate)
cmd_deactivate = _cmd_change(deactivate)
cmd_delete_version = _cmd_change(delete_version)


def cmd_versions(args):
    conn = sqlite3.connect(args.database)
    try:
        _dump_json(
            [v.to_dict() for v in list_versions(conn, args.schema, args.table)]
        )
    finally:
        conn.close()


def cmd_status(args):
    conn = sqlite3.connect(args.database)
    try:
        _dump_json(
            {
                "tracked": [v.to_dict() for v in get_tracked_tables(conn, args.schema)],
                "untracked": get_untracked_tables(conn, args.schema),
            }
        )
    finally:
        conn.close()


def cmd_untracked(args):
    conn = sqlite3.connect(args.database)
    try:
        _dump_json(get_untracked_tables(conn, args.schema))
    finally:
        conn.close()


def cmd_report(args):
    conn = sqlite3.connect(args.database)
    try:
        record = _load_version(conn, args)
        _dump_json(_report_for(record, args).to_dict())
    finally:
        conn.close()


def cmd_snapshot(args):
    conn = sqlite3.connect(args.database)
    try:
        record = _load_version(conn, args)
        _dump_json(build_snapshot_report(record).to_dict())
    finally:
        conn.close()


def cmd_restore_structure(args):
    conn = sqlite3.connect(args.database)
    try:
        record = _load_version(conn, args)
        result = restore_structure(conn, record)
        conn.commit()
        _finish(result)
    finally:
        conn.close()


def cmd_export(args):
    conn = sqlite3.connect(args.database)
    try:
        record = _load_version(conn, args)
        report = _report_for(record, args)
        output = export(conn, args.table, report.entries, args.type)
        if args.type == ExportType.EXECUTION.value:
            conn.commit()
            print(output["message"], file=sys.stderr)
            if not output["ok"]:
                sys.exit(1)
            return
        if args.output:
            with open(args.output, "w") as fp:
                fp.write(output["dump"])
            print(
                f"Exported {len(report.entries)} statement(s) to '{args.output}'.",
                file=sys.stderr,
            )
        else:
            sys.stdout.write(output["dump"])
    finally:
        conn.close()


def cmd_delete_entry(args):
    conn = sqlite3.connect(args.database)
    try:
        which_log, entry_id = (
            ("ddlog", args.ddlog) if args.ddlog is not None else ("dmlog", args.dmlog)
        )
        result = delete_log_entry(
            conn, args.schema, args.table, args.version, which_log, entry_id
        )
        conn.commit()
        if not result.ok and not result.message:
            print("Nothing to delete.", file=sys.stderr)
            return
        _finish(result)
    finally:
        conn.close()


def cmd_execute(args):
    conn = sqlite3.connect(args.database)
    try:
        cursor = execute_tracked(
            conn, args.sql, username=args.user, db=args.schema
        )
        rows = cursor.fetchall()
        conn.commit()
        if cursor.description:
            names = [d[0] for d in cursor.description]
            _dump_json([dict(zip(names, row)) for row in rows])
    except sqlite3.Error as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        conn.close()


def _add_filter_args(parser):
    parser.add_argument(
        "--log-type",
        choices=[t.value for t in LogType],
        default=LogType.SCHEMA_AND_DATA.value,
        help="Which log(s) to include.",
    )
    parser.add_argument(
        "--users", default="*", help="Comma-separated users to include, * for all."
    )
    parser.add_argument(
        "--date-from", default=None, help="Only entries at or after this time."
    )
    parser.add_argument(
        "--date-to", default=None, help="Only entries at or before this time."
    )


def cli(args=None):
    default_user = get_settings().default_username

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--schema",
        default="main",
        help="Schema (database) the table lives in, default 'main'.",
    )

    parser = argparse.ArgumentParser(
        prog="python -m sqlite_tracking",
        description="Versioned DDL/DML change tracking for SQLite tables.",
    )
    parser.add_argument("database", help="Path to the SQLite database file.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # create
    p_create = subparsers.add_parser(
        "create", parents=[common], help="Create a tracking version for tables."
    )
    p_create.add_argument("tables", nargs="+", help="Table name(s) to track.")
    p_create.add_argument(
        "--version", default=None, help="Version number, default last + 1."
    )
    p_create.add_argument(
        "--statements",
        default=None,
        help="Comma-separated statement kinds to track, e.g. 'INSERT,UPDATE'.",
    )
    p_create.add_argument("--user", default=default_user, help="Acting user.")
    p_create.set_defaults(func=cmd_create)

    # activate / deactivate / delete-version
    for name, func, help_text in (
        ("activate", cmd_activate, "Resume tracking at a version."),
        ("deactivate", cmd_deactivate, "Pause tracking at a version."),
        ("delete-version", cmd_delete_version, "Delete a version and its logs."),
    ):
        p = subparsers.add_parser(name, parents=[common], help=help_text)
        p.add_argument("table", help="Table name.")
        p.add_argument("version", type=int, help="Version number.")
        p.set_defaults(func=func)

    # versions
    p_versions = subparsers.add_parser(
        "versions", parents=[common], help="List versions of a table, newest first."
    )
    p_versions.add_argument("table", help="Table name.")
    p_versions.set_defaults(func=cmd_versions)

    # status
    p_status = subparsers.add_parser(
        "status", parents=[common], help="Show tracked and untracked tables."
    )
    p_status.set_defaults(func=cmd_status)

    # untracked
    p_untracked = subparsers.add_parser(
        "untracked", parents=[common], help="List tables that have no version."
    )
    p_untracked.set_defaults(func=cmd_untracked)

    # report
    p_report = subparsers.add_parser(
        "report", parents=[common], help="Show the tracking report for a version."
    )
    p_report.add_argument("table", help="Table name.")
    p_report.add_argument("version", type=int, help="Version number.")
    _add_filter_args(p_report)
    p_report.set_defaults(func=cmd_report)

    # snapshot
    p_snapshot = subparsers.add_parser(
        "snapshot", parents=[common], help="Show the structure snapshot of a version."
    )
    p_snapshot.add_argument("table", help="Table name.")
    p_snapshot.add_argument("version", type=int, help="Version number.")
    p_snapshot.set_defaults(func=cmd_snapshot)

    # restore-structure
    p_restore = subparsers.add_parser(
        "restore-structure",
        parents=[common],
        help="Recreate the table definition from a version's snapshot.",
    )
    p_restore.add_argument("table", help="Table name.")
    p_restore.add_argument("version", type=int, help="Version number.")
    p_restore.set_defaults(func=cmd_restore_structure)

    # export
    p_export = subparsers.add_parser(
        "export", parents=[common], help="Export recorded statements."
    )
    p_export.add_argument("table", help="Table name.")
    p_export.add_argument("version", type=int, help="Version number.")
    p_export.add_argument(
        "--type",
        choices=[t.value for t in ExportType],
        default=ExportType.SQLDUMPFILE.value,
        help="Dump with header, plain dump, or execution against the database.",
    )
    p_export.add_argument(
        "--output", default=None, help="Write the dump to this file."
    )
    _add_filter_args(p_export)
    p_export.set_defaults(func=cmd_export)

    # delete-entry
    p_delete_entry = subparsers.add_parser(
        "delete-entry", parents=[common], help="Delete one entry from a log."
    )
    p_delete_entry.add_argument("table", help="Table name.")
    p_delete_entry.add_argument("version", type=int, help="Version number.")
    which = p_delete_entry.add_mutually_exclusive_group(required=True)
    which.add_argument("--ddlog", default=None, help="Id of the DDL entry.")
    which.add_argument("--dmlog", default=None, help="Id of the DML entry.")
    p_delete_entry.set_defaults(func=cmd_delete_entry)

    # execute
    p_execute = subparsers.add_parser(
        "execute", parents=[common], help="Execute a statement and record it."
    )
    p_execute.add_argument("sql", help="SQL statement.")
    p_execute.add_argument("--user", default=default_user, help="Acting user.")
    p_execute.set_defaults(func=cmd_execute)

    parsed = parser.parse_args(args)
    parsed.func(parsed)
