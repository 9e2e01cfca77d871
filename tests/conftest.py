"""Shared fixtures: an in-memory stand-in for the Supabase table API."""
from types import SimpleNamespace

import pytest


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.filters = {}
        self.operation = "select"
        self.payload = None

    def select(self, *columns, **kwargs):
        return self

    def eq(self, column, value):
        self.filters[column] = value
        return self

    def limit(self, count):
        return self

    def insert(self, payload):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.operation = "update"
        self.payload = payload
        return self

    def execute(self):
        if self.db.fail_on and self.db.fail_on == (self.table, self.operation):
            raise RuntimeError(f"{self.operation} on {self.table} failed")

        rows = self.db.rows.setdefault(self.table, [])
        matching = [row for row in rows if all(row.get(k) == v for k, v in self.filters.items())]
        self.db.calls.append((self.table, self.operation, self.payload))

        if self.operation == "insert":
            row = {"id": len(rows) + 1, **self.payload}
            rows.append(row)
            return SimpleNamespace(data=[row], count=None)
        if self.operation == "update":
            for row in matching:
                row.update(self.payload)
            return SimpleNamespace(data=matching, count=None)
        return SimpleNamespace(data=[dict(row) for row in matching], count=len(matching))


class FakeSupabase:
    def __init__(self, rows=None):
        self.rows = rows or {}
        self.calls = []
        self.fail_on = None

    def table(self, name):
        return FakeQuery(self, name)

    def operations(self, table):
        return [(operation, payload) for t, operation, payload in self.calls if t == table and operation != "select"]


@pytest.fixture
def fake_supabase():
    return FakeSupabase()
