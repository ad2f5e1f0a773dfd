"""Tests for log encoding, filtering and ordering."""

import json
from datetime import datetime

import pytest

from sqlite_tracking.logs import (
    decode_log,
    encode_log,
    filter_entries,
    get_entries,
    next_entry_id,
    parse_users,
    remove_entry,
)
from sqlite_tracking.models import LogEntry, LogType


T0 = datetime(2024, 3, 1, 12, 0, 0)
T1 = datetime(2024, 3, 1, 12, 5, 0)
T2 = datetime(2024, 3, 1, 12, 10, 0)


def entry(id, timestamp, username, statement):
    return LogEntry(id=id, timestamp=timestamp, username=username, statement=statement)


@pytest.fixture
def dmlog():
    return [
        entry(0, T0, "alice", "INSERT INTO t VALUES(1)"),
        entry(1, T1, "bob", "UPDATE t SET x=2"),
    ]


@pytest.fixture
def ddlog():
    return [
        entry(0, T0, "admin", "DROP TABLE IF EXISTS [main].[t];"),
        entry(1, T0, "admin", "CREATE TABLE t (x);"),
        entry(2, T2, "bob", "ALTER TABLE t ADD COLUMN y;"),
    ]


# ---------------------------------------------------------------------------
# Tests: filter_entries
# ---------------------------------------------------------------------------


class TestFilterEntries:
    def test_single_user(self, dmlog):
        assert filter_entries(dmlog, {"alice"}, T0, T1) == [dmlog[0]]

    def test_wildcard_matches_everyone(self, dmlog):
        assert filter_entries(dmlog, {"*"}, T0, T1) == dmlog

    def test_bounds_are_inclusive(self, dmlog):
        assert filter_entries(dmlog, {"*"}, T1, T1) == [dmlog[1]]
        assert filter_entries(dmlog, {"*"}, T0, T0) == [dmlog[0]]

    def test_outside_window_excluded(self, dmlog):
        assert filter_entries(dmlog, {"*"}, T2, datetime(2025, 1, 1)) == []

    def test_unknown_user_excluded(self, dmlog):
        assert filter_entries(dmlog, {"carol"}, T0, T2) == []

    def test_keeps_original_ids(self, dmlog):
        assert [e.id for e in filter_entries(dmlog, {"bob"}, T0, T2)] == [1]

    def test_matches_predicate_for_every_entry(self, ddlog, dmlog):
        users = {"bob", "admin"}
        entries = ddlog + dmlog
        kept = filter_entries(entries, users, T0, T1)
        for e in entries:
            expected = T0 <= e.timestamp <= T1 and e.username in users
            assert (e in kept) == expected


# ---------------------------------------------------------------------------
# Tests: get_entries
# ---------------------------------------------------------------------------


class TestGetEntries:
    def test_data_scenario(self, dmlog):
        entries = get_entries([], dmlog, "data", {"*"}, T0, T1)
        assert entries == dmlog

    def test_schema_only_uses_ddlog(self, ddlog, dmlog):
        entries = get_entries(ddlog, dmlog, LogType.SCHEMA, {"*"}, T0, T2)
        assert entries == ddlog

    def test_data_only_uses_dmlog(self, ddlog, dmlog):
        entries = get_entries(ddlog, dmlog, LogType.DATA, {"*"}, T0, T2)
        assert entries == dmlog

    def test_schema_and_data_merges_and_sorts(self, ddlog, dmlog):
        entries = get_entries(ddlog, dmlog, LogType.SCHEMA_AND_DATA, {"*"}, T0, T2)
        assert [(e.timestamp, e.id, e.username) for e in entries] == [
            (T0, 0, "admin"),
            (T0, 0, "alice"),
            (T0, 1, "admin"),
            (T1, 1, "bob"),
            (T2, 2, "bob"),
        ]

    def test_output_is_sorted_by_four_keys(self, ddlog, dmlog):
        entries = get_entries(ddlog, dmlog, "schema_and_data", {"*"}, T0, T2)
        keys = [(e.timestamp, e.id, e.username, e.statement) for e in entries]
        assert keys == sorted(keys)

    def test_statement_breaks_remaining_ties(self):
        a = entry(0, T0, "alice", "INSERT INTO t VALUES(2)")
        b = entry(0, T0, "alice", "INSERT INTO t VALUES(1)")
        entries = get_entries([a], [b], "schema_and_data", {"*"}, T0, T0)
        assert entries == [b, a]

    def test_independent_of_input_order(self, ddlog, dmlog):
        forward = get_entries(ddlog, dmlog, "schema_and_data", {"*"}, T0, T2)
        backward = get_entries(
            list(reversed(ddlog)), list(reversed(dmlog)), "schema_and_data", {"*"}, T0, T2
        )
        assert forward == backward

    # The DDL log is selected for "schema" and "schema_and_data" whether or
    # not it is empty; an empty DDL log never suppresses the DML log.
    def test_schema_with_empty_ddlog(self, dmlog):
        assert get_entries([], dmlog, "schema", {"*"}, T0, T2) == []

    def test_schema_and_data_with_empty_ddlog(self, dmlog):
        assert get_entries([], dmlog, "schema_and_data", {"*"}, T0, T2) == dmlog

    def test_schema_and_data_with_empty_dmlog(self, ddlog):
        assert get_entries(ddlog, [], "schema_and_data", {"*"}, T0, T2) == ddlog

    def test_user_filter_applies_to_both_logs(self, ddlog, dmlog):
        entries = get_entries(ddlog, dmlog, "schema_and_data", {"bob"}, T0, T2)
        assert [e.statement for e in entries] == [
            "UPDATE t SET x=2",
            "ALTER TABLE t ADD COLUMN y;",
        ]

    def test_unknown_log_type(self, ddlog, dmlog):
        with pytest.raises(ValueError):
            get_entries(ddlog, dmlog, "everything", {"*"}, T0, T2)


# ---------------------------------------------------------------------------
# Tests: entry removal and ids
# ---------------------------------------------------------------------------


class TestRemoveEntry:
    def test_remove_keeps_other_ids(self):
        log = [entry(i, T0, "alice", f"INSERT INTO t VALUES({i})") for i in range(4)]
        remaining = remove_entry(log, 2)
        assert remaining == [log[0], log[1], log[3]]
        assert [e.id for e in remaining] == [0, 1, 3]

    def test_remove_returns_new_list(self):
        log = [entry(0, T0, "alice", "INSERT INTO t VALUES(0)")]
        remaining = remove_entry(log, 0)
        assert remaining == []
        assert len(log) == 1

    def test_next_entry_id(self):
        assert next_entry_id([]) == 0
        assert next_entry_id([entry(0, T0, "a", "x"), entry(3, T0, "a", "y")]) == 4


class TestParseUsers:
    @pytest.mark.parametrize(
        "users,expected",
        [
            ("*", {"*"}),
            ("alice, bob", {"alice", "bob"}),
            (" alice ,,", {"alice"}),
            ("", {"*"}),
            (None, {"*"}),
        ],
    )
    def test_parse(self, users, expected):
        assert parse_users(users) == expected


# ---------------------------------------------------------------------------
# Tests: log encoding
# ---------------------------------------------------------------------------


class TestLogEncoding:
    def test_ids_survive_encoding(self):
        log = [entry(0, T0, "alice", "a"), entry(3, T1, "bob", "b")]
        assert decode_log(encode_log(log)) == log

    def test_encoded_shape(self):
        data = json.loads(encode_log([entry(0, T0, "alice", "INSERT INTO t VALUES(1)")]))
        assert data == [
            {
                "id": 0,
                "date": "2024-03-01 12:00:00",
                "username": "alice",
                "statement": "INSERT INTO t VALUES(1)",
            }
        ]

    def test_legacy_text_format(self):
        blob = (
            "# log 2024-03-01 12:00:00 root\n"
            "DROP TABLE IF EXISTS `t`;\n"
            "# log 2024-03-01 12:05:00 bob\n"
            "CREATE TABLE `t` (\n  `x` int\n);\n"
        )
        log = decode_log(blob)
        assert [e.id for e in log] == [0, 1]
        assert [e.username for e in log] == ["root", "bob"]
        assert log[1].timestamp == T1
        assert log[1].statement == "CREATE TABLE `t` (\n  `x` int\n);"

    @pytest.mark.parametrize(
        "blob", [None, "", "not json", "{}", '[{"id": 0}]', b"\xff\xfe", 42]
    )
    def test_malformed_log_decodes_to_empty(self, blob):
        assert decode_log(blob) == []

    def test_skips_malformed_items(self):
        blob = json.dumps(
            [
                {"id": 0, "date": "garbage", "username": "a", "statement": "x"},
                {"id": 1, "date": "2024-03-01 12:00:00", "username": "a", "statement": "y"},
            ]
        )
        assert [e.id for e in decode_log(blob)] == [1]
