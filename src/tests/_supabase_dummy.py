from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Tuple


@dataclass
class _Record:
    op: str
    table: str
    payload: Dict[str, Any]
    filters: List[Tuple[str, Any]] = field(default_factory=list)


class DummySupabase:
    """Petit double Supabase en mémoire pour les tests unitaires."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.records: list[_Record] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.storage = DummyStorage()
        self.auth = DummyAuth()

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(dict(row) for row in rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def row(self, table: str, row_id: Any) -> dict[str, Any] | None:
        for row in self.rows(table):
            if row.get("id") == row_id:
                return row
        return None

    def fail_on(self, table: str, op: str, exc: Exception) -> None:
        self.failures[(table, op)] = exc

    def table(self, name: str):
        return _DummyTable(self, name)


def _resp(data: list[dict[str, Any]]):
    return type("Resp", (), {"data": data})()


class _DummyTable:
    def __init__(self, supabase: DummySupabase, name: str) -> None:
        self.supabase = supabase
        self.name = name
        self.op = "select"
        self.payload: dict[str, Any] = {}
        self._filters: list[tuple[str, Any]] = []
        self._predicates: list[Callable[[dict[str, Any]], bool]] = []
        self._order: tuple[str, bool] | None = None
        self._limit: int | None = None
        self._negate_next = False

    # Chaîne de méthodes utilisée par supabase-py
    def select(self, *args: Any, **kwargs: Any):
        self.op = "select"
        return self

    def insert(self, payload: dict[str, Any]):
        self.op = "insert"
        self.payload = dict(payload)
        return self

    def update(self, payload: dict[str, Any]):
        self.op = "update"
        self.payload = dict(payload)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def _filter(self, label: str, column: str, value: Any, predicate) -> "_DummyTable":
        if self._negate_next:
            self._negate_next = False
            label = f"not.{label}"
            original = predicate
            predicate = lambda row: not original(row)  # noqa: E731
        self._filters.append((label, column, value))
        self._predicates.append(predicate)
        return self

    def eq(self, column: str, value: Any):
        return self._filter("eq", column, value, lambda row: row.get(column) == value)

    def in_(self, column: str, values: list[Any]):
        allowed = tuple(values)
        return self._filter("in", column, allowed, lambda row: row.get(column) in allowed)

    def is_(self, column: str, value: Any):
        if value in (None, "null"):
            return self._filter("is", column, value, lambda row: row.get(column) is None)
        return self._filter("is", column, value, lambda row: row.get(column) is value)

    def order(self, column: str, desc: bool = False):
        self._order = (column, desc)
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    @property
    def not_(self):
        self._negate_next = True
        return self

    def _matching(self) -> list[dict[str, Any]]:
        return [
            row
            for row in self.supabase.rows(self.name)
            if all(predicate(row) for predicate in self._predicates)
        ]

    def execute(self):
        failure = self.supabase.failures.get((self.name, self.op))
        if failure is not None:
            raise failure
        self.supabase.records.append(
            _Record(self.op, self.name, dict(self.payload), list(self._filters))
        )

        if self.op == "insert":
            record = dict(self.payload)
            record.setdefault("id", str(uuid.uuid4()))
            self.supabase.rows(self.name).append(record)
            return _resp([dict(record)])

        matches = self._matching()
        if self.op == "update":
            for row in matches:
                row.update(self.payload)
            return _resp([dict(row) for row in matches])
        if self.op == "delete":
            table = self.supabase.rows(self.name)
            for row in matches:
                table.remove(row)
            return _resp([dict(row) for row in matches])

        if self._order is not None:
            column, desc = self._order
            present = [row for row in matches if row.get(column) is not None]
            missing = [row for row in matches if row.get(column) is None]
            present.sort(key=lambda row: row[column], reverse=desc)
            matches = present + missing
        if self._limit is not None:
            matches = matches[: self._limit]
        return _resp([dict(row) for row in matches])


class DummyAuth:
    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}

    def get_user(self, token: str):
        if token not in self.tokens:
            raise Exception("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=self.tokens[token]))


class DummyStorage:
    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, dict[str, Any]]] = {}
        self.created: list[tuple[str, dict[str, Any] | None]] = []
        self.failing_paths: set[str] = set()
        self.signing_fails = False
        self.list_calls: list[tuple[str | None, dict[str, Any]]] = []

    def get_bucket(self, bucket_id: str):
        if bucket_id not in self.buckets:
            raise Exception("Bucket not found")
        return {"id": bucket_id, "name": bucket_id}

    def create_bucket(self, bucket_id: str, options: dict[str, Any] | None = None):
        self.buckets.setdefault(bucket_id, {})
        self.created.append((bucket_id, options))
        return {"name": bucket_id}

    def from_(self, bucket_id: str):
        return _DummyBucket(self, bucket_id)

    def files(self, bucket_id: str) -> dict[str, bytes]:
        return {
            path: entry["data"] for path, entry in self.buckets.get(bucket_id, {}).items()
        }


class _DummyBucket:
    def __init__(self, storage: DummyStorage, bucket_id: str) -> None:
        self.storage = storage
        self.bucket_id = bucket_id

    @property
    def objects(self) -> dict[str, dict[str, Any]]:
        return self.storage.buckets.setdefault(self.bucket_id, {})

    def upload(self, path: str, file: bytes, file_options: dict[str, Any] | None = None):
        options = dict(file_options or {})
        if path in self.storage.failing_paths:
            raise Exception(f"upload refused for {path}")
        if path in self.objects and options.get("upsert") != "true":
            raise Exception("The resource already exists")
        self.objects[path] = {"data": bytes(file), "options": options}
        return {"Key": f"{self.bucket_id}/{path}"}

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/{self.bucket_id}/{path}"

    def create_signed_url(self, path: str, expires_in: int):
        if self.storage.signing_fails:
            raise Exception("signing unavailable")
        return {"signedURL": f"https://storage.test/sign/{self.bucket_id}/{path}?e={expires_in}"}

    def list(self, path: str | None = None, options: dict[str, Any] | None = None):
        # Même pagination par défaut que l'API de stockage (100 entrées).
        options = options or {}
        limit = options.get("limit", 100)
        offset = options.get("offset", 0)
        self.storage.list_calls.append((path, dict(options)))
        prefix = (path or "").strip("/")
        if not prefix:
            folders = sorted({key.split("/", 1)[0] for key in self.objects if "/" in key})
            entries = [{"name": folder, "id": None} for folder in folders]
        else:
            entries = []
            for key in sorted(self.objects):
                folder, _, name = key.partition("/")
                if folder == prefix and name:
                    entries.append({"name": name, "id": f"obj-{key}"})
        return entries[offset : offset + limit]

    def remove(self, paths: list[str]):
        removed = []
        for path in paths:
            if self.objects.pop(path, None) is not None:
                removed.append({"name": path})
        return removed
