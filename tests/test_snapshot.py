"""Tests for the structural snapshot codec."""

import sqlite3

import pytest

from sqlite_tracking import snapshot


@pytest.fixture
def conn():
    db = sqlite3.connect(":memory:")
    db.execute(
        """
        CREATE TABLE people (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT DEFAULT 'anon'
        )
        """
    )
    db.execute("CREATE INDEX people_name ON people (name, email)")
    db.execute("CREATE VIEW named AS SELECT name FROM people")
    yield db
    db.close()


class TestCodec:
    def test_round_trip(self):
        columns = [{"name": "id", "type": "INTEGER", "pk": 1}]
        indexes = [{"name": "idx", "unique": False, "columns": ["id"]}]
        assert snapshot.decode(snapshot.encode(columns, indexes)) == (columns, indexes)

    def test_round_trip_empty(self):
        assert snapshot.decode(snapshot.encode([], [])) == ([], [])

    def test_decodes_bytes(self):
        blob = snapshot.encode([{"name": "x"}], []).encode("utf-8")
        assert snapshot.decode(blob) == ([{"name": "x"}], [])

    @pytest.mark.parametrize(
        "blob",
        [
            None,
            "",
            "not json at all",
            "[1, 2, 3]",
            '{"COLUMNS": "id"}',
            '{"COLUMNS": []}',
            'a:2:{s:7:"COLUMNS";a:0:{}s:7:"INDEXES";a:0:{}}',
            b"\x80\x81",
            12,
        ],
    )
    def test_garbage_decodes_to_empty(self, blob):
        assert snapshot.decode(blob) == ([], [])


class TestFetchStructure:
    def test_columns(self, conn):
        columns, _ = snapshot.fetch_structure(conn, "main", "people")
        assert [c["name"] for c in columns] == ["id", "email", "name"]
        assert columns[0]["pk"] == 1
        assert columns[1]["notnull"] is True
        assert columns[2]["default"] == "'anon'"

    def test_indexes(self, conn):
        _, indexes = snapshot.fetch_structure(conn, "main", "people")
        by_name = {i["name"]: i for i in indexes}
        assert by_name["people_name"]["columns"] == ["name", "email"]
        assert by_name["people_name"]["origin"] == "c"
        unique = [i for i in indexes if i["origin"] == "u"]
        assert len(unique) == 1
        assert unique[0]["unique"] is True
        assert unique[0]["columns"] == ["email"]

    def test_missing_table(self, conn):
        assert snapshot.fetch_structure(conn, "main", "nope") == ([], [])

    def test_is_view(self, conn):
        assert snapshot.is_view(conn, "main", "named") is True
        assert snapshot.is_view(conn, "main", "people") is False

    def test_create_statement(self, conn):
        assert snapshot.create_statement(conn, "main", "named") == (
            "CREATE VIEW named AS SELECT name FROM people"
        )
        assert snapshot.create_statement(conn, "main", "nope") is None

    def test_index_statements_skip_automatic_indexes(self, conn):
        assert snapshot.index_statements(conn, "main", "people") == [
            "CREATE INDEX people_name ON people (name, email)"
        ]

    def test_attached_schema(self, conn):
        conn.execute("ATTACH DATABASE ':memory:' AS other")
        conn.execute("CREATE TABLE other.things (id INTEGER PRIMARY KEY, label TEXT)")
        columns, indexes = snapshot.fetch_structure(conn, "other", "things")
        assert [c["name"] for c in columns] == ["id", "label"]
        assert indexes == []
