from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass

_DEFAULT_MAXSIZE = 1024


@dataclass(frozen=True, slots=True)
class StickyCursor:
    last_index: int
    last_account_id: str


class FlowCursorStore:
    """Last successful chain position per flow, kept for the life of the process."""

    def __init__(self, *, maxsize: int = _DEFAULT_MAXSIZE) -> None:
        self._lock = asyncio.Lock()
        self._cursors: OrderedDict[str, StickyCursor] = OrderedDict()
        self._maxsize = maxsize

    async def get(self, flow_key: str) -> StickyCursor | None:
        async with self._lock:
            cursor = self._cursors.get(flow_key)
            if cursor is not None:
                self._cursors.move_to_end(flow_key)
            return cursor

    async def record(self, flow_key: str, index: int, account_id: str) -> None:
        async with self._lock:
            self._cursors[flow_key] = StickyCursor(last_index=index, last_account_id=account_id)
            self._cursors.move_to_end(flow_key)
            while len(self._cursors) > self._maxsize:
                self._cursors.popitem(last=False)

    async def forget(self, flow_key: str) -> None:
        async with self._lock:
            self._cursors.pop(flow_key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._cursors.clear()
