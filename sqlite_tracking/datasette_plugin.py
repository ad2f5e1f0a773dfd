"""Datasette plugin exposing tracking versions, reports and exports.

Routes, where ``<db>`` is a datasette database and ``<table>`` a table in
its ``main`` schema:

- ``GET /-/tracking/<db>``: tracked tables (head versions) and untracked ones
- ``POST /-/tracking/<db>``: ``{"tables": [...]}`` creates a version per table
- ``GET /-/tracking/<db>/<table>``: versions, newest first
- ``POST /-/tracking/<db>/<table>``: ``{"action": "create" | "activate" |
  "deactivate" | "delete", "version": ..., "tracking": ...}``
- ``GET /-/tracking/<db>/<table>/<version>``: report, filtered by the
  ``log_type``, ``users``, ``date_from`` and ``date_to`` query parameters
- ``GET /-/tracking/<db>/<table>/<version>/snapshot``: structure snapshot
- ``GET /-/tracking/<db>/<table>/<version>/export``: SQL dump download
  (``export_type=sqldump`` for the plain dump)
- ``POST /-/tracking/<db>/<table>/<version>/export``: replay the statements

Writes run through ``execute_write_fn`` so they are serialized on
datasette's write thread.
"""

from __future__ import annotations

import json
from urllib.parse import unquote

from datasette import hookimpl
from datasette.utils.asgi import Response

from .config import get_settings
from .export import ExportType, build_sql_dump, download_info, execute_entries
from .models import parse_date
from .report import build_report, build_snapshot_report
from .versions import (
    activate,
    create_for_multiple_tables,
    create_version,
    deactivate,
    delete_version,
    get_tracked_tables,
    get_untracked_tables,
    get_version,
    list_versions,
)


_SCHEMA = "main"

_ACTIONS = {
    "activate": activate,
    "deactivate": deactivate,
    "delete": delete_version,
}


def _error(message: str, status: int = 400) -> Response:
    return Response.json({"ok": False, "error": message}, status=status)


def _username(request) -> str:
    actor = request.actor or {}
    return str(actor.get("id") or get_settings().default_username)


def _get_database(datasette, request):
    try:
        return datasette.get_database(request.url_vars["database"])
    except KeyError:
        return None


async def _read_json(request):
    body = await request.post_body()
    if not body:
        return {}
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


async def _load_record(db, table: str, version: int):
    return await db.execute_fn(lambda conn: get_version(conn, _SCHEMA, table, version))


async def _database_view(datasette, request):
    db = _get_database(datasette, request)
    if db is None:
        return _error("Database not found", 404)

    if request.method == "GET":

        def _status(conn):
            return {
                "ok": True,
                "tracked": [v.to_dict() for v in get_tracked_tables(conn, _SCHEMA)],
                "untracked": get_untracked_tables(conn, _SCHEMA),
            }

        return Response.json(await db.execute_fn(_status))

    if request.method != "POST":
        return _error("Method not allowed", 405)
    try:
        body = await _read_json(request)
    except ValueError as e:
        return _error(f"Invalid JSON: {e}")
    tables = body.get("tables") or []
    if not isinstance(tables, list) or not tables:
        return _error("No tables selected.")
    username = _username(request)

    def _create(conn):
        return create_for_multiple_tables(
            conn,
            _SCHEMA,
            tables,
            body.get("version"),
            body.get("tracking"),
            username=username,
        )

    results = await db.execute_write_fn(_create)
    return Response.json(
        {
            "ok": all(results.values()),
            "results": {
                table: {"ok": result.ok, "message": result.message}
                for table, result in results.items()
            },
        }
    )


async def _table_view(datasette, request):
    db = _get_database(datasette, request)
    if db is None:
        return _error("Database not found", 404)
    table = unquote(request.url_vars["table"])

    if request.method == "GET":
        versions = await db.execute_fn(
            lambda conn: [v.to_dict() for v in list_versions(conn, _SCHEMA, table)]
        )
        return Response.json({"ok": True, "versions": versions})

    if request.method != "POST":
        return _error("Method not allowed", 405)
    try:
        body = await _read_json(request)
    except ValueError as e:
        return _error(f"Invalid JSON: {e}")

    action = body.get("action")
    username = _username(request)
    if action == "create":

        def _run(conn):
            return create_version(
                conn,
                _SCHEMA,
                table,
                body.get("version"),
                body.get("tracking"),
                username=username,
            )

    elif action in _ACTIONS:
        try:
            version = int(body.get("version"))
        except (TypeError, ValueError):
            return _error("'version' must be an integer")
        operation = _ACTIONS[action]

        def _run(conn):
            return operation(conn, _SCHEMA, table, version)

    else:
        return _error(f"Unknown action: {action}")

    result = await db.execute_write_fn(_run)
    return Response.json(
        {"ok": result.ok, "message": result.message},
        status=200 if result.ok else 400,
    )


async def _report_view(datasette, request):
    db = _get_database(datasette, request)
    if db is None:
        return _error("Database not found", 404)
    table = unquote(request.url_vars["table"])
    record = await _load_record(db, table, int(request.url_vars["version"]))
    if record is None:
        return _error("Version not found", 404)
    try:
        report = _report_from_args(record, request)
    except ValueError as e:
        return _error(str(e))
    return Response.json({"ok": True, "report": report.to_dict()})


def _report_from_args(record, request):
    args = request.args
    return build_report(
        record,
        log_type=args.get("log_type") or "schema_and_data",
        users=args.get("users") or "*",
        date_from=parse_date(args["date_from"]) if args.get("date_from") else None,
        date_to=parse_date(args["date_to"]) if args.get("date_to") else None,
    )


async def _snapshot_view(datasette, request):
    db = _get_database(datasette, request)
    if db is None:
        return _error("Database not found", 404)
    table = unquote(request.url_vars["table"])
    record = await _load_record(db, table, int(request.url_vars["version"]))
    if record is None:
        return _error("Version not found", 404)
    return Response.json({"ok": True, "snapshot": build_snapshot_report(record).to_dict()})


async def _export_view(datasette, request):
    db = _get_database(datasette, request)
    if db is None:
        return _error("Database not found", 404)
    table = unquote(request.url_vars["table"])
    record = await _load_record(db, table, int(request.url_vars["version"]))
    if record is None:
        return _error("Version not found", 404)
    try:
        report = _report_from_args(record, request)
    except ValueError as e:
        return _error(str(e))
    entries = report.entries

    if request.method == "POST":
        result = await db.execute_write_fn(lambda conn: execute_entries(conn, entries))
        return Response.json(result.to_dict(), status=200 if result.ok else 400)

    export_type = request.args.get("export_type") or ExportType.SQLDUMPFILE.value
    if export_type == ExportType.SQLDUMP.value:
        return Response.text(build_sql_dump(entries))
    if export_type != ExportType.SQLDUMPFILE.value:
        return _error(f"Unsupported export_type: {export_type}")
    info = download_info(table, entries)
    return Response.text(
        info["dump"],
        headers={
            "content-disposition": f'attachment; filename="{info["filename"]}"'
        },
    )


@hookimpl
def register_routes(datasette):
    base = r"^/-/tracking/(?P<database>[^/]+)"
    table = base + r"/(?P<table>[^/]+)"
    version = table + r"/(?P<version>\d+)"
    return [
        (base + r"$", _database_view),
        (table + r"$", _table_view),
        (version + r"$", _report_view),
        (version + r"/snapshot$", _snapshot_view),
        (version + r"/export$", _export_view),
    ]
