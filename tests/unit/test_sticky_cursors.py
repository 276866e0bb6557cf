from __future__ import annotations

import pytest

from switchboard.modules.proxy.sticky import FlowCursorStore, StickyCursor

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_record_and_forget():
    cursors = FlowCursorStore()
    assert await cursors.get("flow-a") is None

    await cursors.record("flow-a", 2, "acc3")
    assert await cursors.get("flow-a") == StickyCursor(last_index=2, last_account_id="acc3")

    await cursors.forget("flow-a")
    assert await cursors.get("flow-a") is None


@pytest.mark.asyncio
async def test_least_recently_used_cursor_is_evicted():
    cursors = FlowCursorStore(maxsize=2)
    await cursors.record("a", 0, "x")
    await cursors.record("b", 0, "y")
    await cursors.get("a")
    await cursors.record("c", 1, "z")

    assert await cursors.get("b") is None
    assert await cursors.get("a") is not None
    assert await cursors.get("c") is not None

    await cursors.clear()
    assert await cursors.get("a") is None
