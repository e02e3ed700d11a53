"""Shared fixtures: an in-memory Supabase client double and a service wired to it."""
from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from supabase import PostgrestAPIError

from quest_ops.backend import BackendClient
from quest_ops.cache import QueryCache
from quest_ops.config import get_settings
from quest_ops.service import ConsoleService

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return value.isoformat()


def hours_ago(hours: float) -> str:
    return iso(NOW - timedelta(hours=hours))


def days_ago(days: float) -> str:
    return iso(NOW - timedelta(days=days))


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    """Evaluates the Supabase request builder API against in-memory rows."""

    def __init__(self, backend: "FakeBackend", table: str) -> None:
        self.backend = backend
        self.table = table
        self.filters: List[tuple] = []
        self.method = "GET"
        self.body: Any = None
        self.columns: Optional[str] = None
        self._negate = False
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    def select(self, *columns: str) -> "FakeQuery":
        self.columns = ",".join(columns) or "*"
        return self

    @property
    def not_(self) -> "FakeQuery":
        self._negate = True
        return self

    def _add(self, column: str, op: str, value: Any) -> "FakeQuery":
        if self._negate:
            op = f"not_{op}"
            self._negate = False
        self.filters.append((column, op, value))
        return self

    def eq(self, column, value):
        return self._add(column, "eq", value)

    def neq(self, column, value):
        return self._add(column, "neq", value)

    def gt(self, column, value):
        return self._add(column, "gt", value)

    def gte(self, column, value):
        return self._add(column, "gte", value)

    def lt(self, column, value):
        return self._add(column, "lt", value)

    def lte(self, column, value):
        return self._add(column, "lte", value)

    def is_(self, column, value):
        return self._add(column, "is", None if value == "null" else value)

    def in_(self, column, values):
        return self._add(column, "in", list(values))

    def order(self, column, *, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def insert(self, rows):
        self.method = "POST"
        self.body = rows
        return self

    def update(self, values):
        self.method = "PATCH"
        self.body = dict(values)
        return self

    def delete(self):
        self.method = "DELETE"
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        for column, op, value in self.filters:
            actual = row.get(column)
            if op == "eq" and actual != value:
                return False
            if op == "neq" and actual == value:
                return False
            if op == "is" and actual is not value:
                return False
            if op == "in" and actual not in value:
                return False
            if op == "not_in" and actual in value:
                return False
            if op in {"gt", "gte", "lt", "lte"}:
                if actual is None:
                    return False
                if op == "gt" and not actual > value:
                    return False
                if op == "gte" and not actual >= value:
                    return False
                if op == "lt" and not actual < value:
                    return False
                if op == "lte" and not actual <= value:
                    return False
        return True

    def _rows(self) -> List[Dict[str, Any]]:
        self.backend.queries.append(self)
        if self.table in self.backend.failing_tables:
            raise PostgrestAPIError({"message": f"{self.table} unavailable", "code": "PGRST000"})
        rows = self.backend.tables.setdefault(self.table, [])
        if self.method == "POST":
            new_rows = self.body if isinstance(self.body, list) else [self.body]
            self.backend.inserts.append((self.table, copy.deepcopy(new_rows)))
            rows.extend(copy.deepcopy(new_rows))
            return copy.deepcopy(new_rows)
        matched = [row for row in rows if self._matches(row)]
        if self.method == "PATCH":
            self.backend.updates.append((self.table, dict(self.body), list(self.filters)))
            for row in matched:
                row.update(self.body)
            return copy.deepcopy(matched)
        if self.method == "DELETE":
            self.backend.deletes.append((self.table, list(self.filters)))
            self.backend.tables[self.table] = [row for row in rows if row not in matched]
            return copy.deepcopy(matched)
        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return copy.deepcopy(matched)

    def execute(self) -> FakeResponse:
        return FakeResponse(self._rows())


class FakeRpc:
    def __init__(self, backend: "FakeBackend", name: str, params: Dict[str, Any]) -> None:
        self.backend = backend
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        self.backend.rpc_calls.append((self.name, self.params))
        if self.name in self.backend.failing_tables:
            raise PostgrestAPIError({"message": f"rpc {self.name} failed", "code": "P0001"})
        return FakeResponse(self.backend.rpc_results.get(self.name))


class FakeFunctions:
    def __init__(self, backend: "FakeBackend") -> None:
        self.backend = backend

    def invoke(self, function_name: str, invoke_options: Optional[Dict[str, Any]] = None):
        options = invoke_options or {}
        self.backend.invocations.append((function_name, dict(options.get("body") or {})))
        return {"ok": True}


class FakeBackend:
    """Stands in for ``supabase.Client`` with tables held in memory."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables or {})
        self.failing_tables: set = set()
        self.queries: List[FakeQuery] = []
        self.inserts: List[tuple] = []
        self.updates: List[tuple] = []
        self.deletes: List[tuple] = []
        self.rpc_calls: List[tuple] = []
        self.rpc_results: Dict[str, Any] = {}
        self.invocations: List[tuple] = []
        self.functions = FakeFunctions(self)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params=None) -> FakeRpc:
        return FakeRpc(self, name, dict(params or {}))

    def inserted(self, table: str) -> List[Dict[str, Any]]:
        return [row for name, rows in self.inserts if name == table for row in rows]

    def reads(self, table: str) -> int:
        return sum(1 for q in self.queries if q.table == table and q.method == "GET")


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def service(backend: FakeBackend) -> ConsoleService:
    return ConsoleService(
        BackendClient(backend),
        cache=QueryCache(),
        settings=get_settings(),
        clock=lambda: NOW,
    )
