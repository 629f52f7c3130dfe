"""Shared fixtures for the loyalty ledger test suite."""

from __future__ import annotations

import os
from collections import defaultdict

import pytest

os.environ.setdefault("TESTING", "1")


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the queue uses."""

    def __init__(self):
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    # keys
    def exists(self, key: str) -> int:
        return 1 if key in self.values else 0

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    # lists
    def rpush(self, key: str, *values: str) -> int:
        self.lists[key].extend(values)
        return len(self.lists[key])

    def lmove(self, src: str, dst: str, wherefrom: str = "LEFT", whereto: str = "RIGHT"):
        source = self.lists[src]
        if not source:
            return None
        item = source.pop(0) if wherefrom == "LEFT" else source.pop()
        if whereto == "LEFT":
            self.lists[dst].insert(0, item)
        else:
            self.lists[dst].append(item)
        return item

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self.lists[key]
        removed = 0
        while value in items and (count == 0 or removed < count):
            items.remove(value)
            removed += 1
        return removed

    def llen(self, key: str) -> int:
        return len(self.lists[key])

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis):
        self._client = client
        self._ops: list = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return _queue

    def execute(self) -> list:
        return [getattr(self._client, name)(*a, **kw) for name, a, kw in self._ops]


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def order_payload() -> dict:
    return {
        "id": 1,
        "email": "a@x.com",
        "total_price": "10.00",
        "currency": "EUR",
        "customer": {"id": 7001},
    }
