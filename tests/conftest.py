from __future__ import annotations

import os

# Настройки читаются один раз при импорте: подменяем БД до импорта пакета
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest  # noqa: E402


class _FakeRedis:
    """
    Минимальная in-memory замена redis.Redis (decode_responses=True)
    для брокера, рантайма и heartbeat цепочек.
    """

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, str] = {}
        self.ttl: dict[str, int] = {}
        self.ping_ok = True

    # --- lists --------------------------------------------------------------
    def lpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        for v in values:
            items.insert(0, v)
        return len(items)

    def rpoplpush(self, src: str, dst: str) -> str | None:
        items = self.lists.get(src)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(dst, []).insert(0, value)
        return value

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self.lists.get(key, [])
        removed = 0
        for item in list(items):
            if item == value and (count == 0 or removed < abs(count)):
                items.remove(item)
                removed += 1
        return removed

    def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self.lists.get(key, [])
        stop = len(items) if end == -1 else end + 1
        return list(items[start:stop])

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    # --- sorted sets --------------------------------------------------------
    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    def zrangebyscore(self, key, min, max, start=None, num=None) -> list[str]:  # noqa: A002
        lo = float("-inf") if min == "-inf" else float(min)
        hi = float("inf") if max == "+inf" else float(max)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if lo <= score <= hi
        )
        out = [member for _, member in members]
        if start is not None and num is not None:
            out = out[start : start + num]
        return out

    def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    # --- strings ------------------------------------------------------------
    def set(self, name: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and name in self.strings:
            return None
        self.strings[name] = value
        if ex is not None:
            self.ttl[name] = ex
        return True

    def get(self, name: str) -> str | None:
        return self.strings.get(name)

    def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.strings.pop(name, None) is not None:
                removed += 1
            self.ttl.pop(name, None)
        return removed

    def ping(self) -> bool:
        return self.ping_ok


@pytest.fixture()
def fake_redis() -> _FakeRedis:
    return _FakeRedis()
