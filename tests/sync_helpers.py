"""Fakes shared by the catalog sync tests."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

_LIMIT_RE = re.compile(r"limit (\d+);")
_OFFSET_RE = re.compile(r"offset (\d+);")
_PREDICATE_RE = re.compile(r"(\w+) = \(([^)]*)\)")


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _matches(record: Mapping[str, Any], field: str, values: set[int]) -> bool:
    value = record.get(field)
    if isinstance(value, (list, tuple)):
        return any(item in values for item in value)
    return value in values


class FakeIGDB:
    """In-memory stand-in for :class:`igdb.client.IGDBClient`.

    Records are filtered by every ``field = (values)`` predicate in the
    query and sliced with its ``limit``/``offset``. ``errors`` maps a
    request number (starting at 1) to an exception raised instead.
    """

    def __init__(
        self,
        records: Mapping[str, Iterable[Mapping[str, Any]]] | None = None,
        *,
        errors: Mapping[int, Exception] | None = None,
    ) -> None:
        self.records = {endpoint: list(rows) for endpoint, rows in (records or {}).items()}
        self.errors = dict(errors or {})
        self.queries: list[tuple[str, str]] = []

    @property
    def request_count(self) -> int:
        return len(self.queries)

    def fetch_page(self, endpoint: str, query: str) -> list[dict[str, Any]]:
        self.queries.append((endpoint, query))
        error = self.errors.get(len(self.queries))
        if error is not None:
            raise error

        rows = self.records.get(endpoint, [])
        for field, raw_values in _PREDICATE_RE.findall(query):
            values = {int(item) for item in raw_values.split(",") if item.strip()}
            rows = [row for row in rows if _matches(row, field, values)]
        rows = sorted(rows, key=lambda row: row["id"])

        limit = int(_LIMIT_RE.search(query).group(1))
        offset = int(_OFFSET_RE.search(query).group(1))
        return [dict(row) for row in rows[offset : offset + limit]]

    def fetch_count(self, endpoint: str, where: str | None = None) -> int:
        return len(self.records.get(endpoint, []))


def make_games(count: int, *, start: int = 1, platforms: Iterable[int] = (6,)) -> list[dict[str, Any]]:
    platform_list = list(platforms)
    return [
        {
            "id": igdb_id,
            "name": f"Game {igdb_id}",
            "summary": f"Summary {igdb_id}",
            "platforms": platform_list,
            "genres": [5, 12],
            "cover": 10_000 + igdb_id,
            "screenshots": [20_000 + igdb_id],
        }
        for igdb_id in range(start, start + count)
    ]


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def set(self, *args: Any) -> "FakePipeline":
        self._ops.append(("set", args))
        return self

    def zadd(self, *args: Any) -> "FakePipeline":
        self._ops.append(("zadd", args))
        return self

    def execute(self) -> list[Any]:
        return [getattr(self._redis, name)(*args) for name, args in self._ops]


class FakeRedis:
    """The handful of Redis commands used by the job manager."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.sorted_sets: dict[str, dict[str, float]] = {}

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.expiries[key] = ex
        return True

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        members = self.sorted_sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    def zrange(self, key: str, start: int, end: int) -> list[str]:
        members = sorted(self.sorted_sets.get(key, {}).items(), key=lambda item: item[1])
        names = [name for name, _score in members]
        return names[start:] if end == -1 else names[start : end + 1]

    def zcard(self, key: str) -> int:
        return len(self.sorted_sets.get(key, {}))

    def zrem(self, key: str, member: str) -> int:
        return 1 if self.sorted_sets.get(key, {}).pop(member, None) is not None else 0
