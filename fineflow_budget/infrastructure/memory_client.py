from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Optional


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class InMemoryRedis:
    """In-process stand-in for the small Redis surface the service uses.

    Values are stored as bytes, mirroring a client created with
    ``decode_responses=False``. Key expiry is not modelled.
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            return self._data.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        async with self._lock:
            if nx and key in self._data:
                return False
            self._data[key] = _as_bytes(value)
            return True

    async def incr(self, key: str) -> int:
        async with self._lock:
            return self._incr_unlocked(key)

    async def incrbyfloat(self, key: str, amount: float | str) -> float:
        async with self._lock:
            return self._incrbyfloat_unlocked(key, amount)

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._lock:
            return key in self._data

    async def ttl(self, key: str) -> int:
        async with self._lock:
            return -1 if key in self._data else -2

    async def delete(self, *keys: str) -> int:
        count = 0
        async with self._lock:
            for k in keys:
                if k in self._data:
                    del self._data[k]
                    count += 1
        return count

    async def exists(self, key: str) -> int:
        async with self._lock:
            return int(key in self._data)

    def pipeline(self, transaction: bool = True) -> "InMemoryPipeline":
        return InMemoryPipeline(self)

    async def aclose(self) -> None:
        pass

    def _incr_unlocked(self, key: str) -> int:
        raw = self._data.get(key, b"0")
        try:
            current = int(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            current = 0
        current += 1
        self._data[key] = str(current).encode("utf-8")
        return current

    def _incrbyfloat_unlocked(self, key: str, amount: float | str) -> float:
        raw = self._data.get(key, b"0")
        # Decimal keeps repeated small increments from drifting.
        total = Decimal(raw.decode("utf-8")) + Decimal(str(amount))
        self._data[key] = str(total).encode("utf-8")
        return float(total)


class InMemoryPipeline:
    """Queues commands and runs them under one lock acquisition on ``execute``."""

    def __init__(self, client: InMemoryRedis) -> None:
        self._client = client
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, *exc: object) -> None:
        self._commands.clear()

    def incrbyfloat(self, key: str, amount: float | str) -> "InMemoryPipeline":
        self._commands.append(("incrbyfloat", (key, amount)))
        return self

    def incr(self, key: str) -> "InMemoryPipeline":
        self._commands.append(("incr", (key,)))
        return self

    def expire(self, key: str, seconds: int) -> "InMemoryPipeline":
        self._commands.append(("expire", (key, seconds)))
        return self

    def exists(self, key: str) -> "InMemoryPipeline":
        self._commands.append(("exists", (key,)))
        return self

    async def execute(self) -> list[Any]:
        client = self._client
        results: list[Any] = []
        async with client._lock:
            for name, args in self._commands:
                if name == "incrbyfloat":
                    results.append(client._incrbyfloat_unlocked(*args))
                elif name == "incr":
                    results.append(client._incr_unlocked(*args))
                elif name == "exists":
                    results.append(int(args[0] in client._data))
                else:
                    results.append(args[0] in client._data)
        self._commands.clear()
        return results

