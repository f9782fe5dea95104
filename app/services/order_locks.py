"""
Per-order asyncio locks. Serializes reconciliation of one order inside this process;
the version column on the order row covers concurrent writers in other processes.

Entries live only while someone holds or waits on them, so the registry does not grow
with the number of orders ever touched.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class OrderLockRegistry:
    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        key = str(order_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._entries[key]

    def is_held(self, order_id: str) -> bool:
        entry = self._entries.get(str(order_id))
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


order_locks = OrderLockRegistry()
