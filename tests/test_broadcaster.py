from __future__ import annotations

import asyncio
from typing import List

import pytest

from vibequeue.ws.broadcaster import SnapshotBroadcaster, snapshot_event
from vibequeue.ws.manager import WebSocketManager


class RecordingManager:
    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.count = 1

    async def broadcast(self, message: dict) -> None:
        self.sent.append(message)


@pytest.mark.asyncio
async def test_broadcasts_only_when_version_changes(store) -> None:
    manager = RecordingManager()
    broadcaster = SnapshotBroadcaster(store, manager, tick_s=0.01)
    await broadcaster.start()
    try:
        await asyncio.sleep(0.05)
        assert len(manager.sent) == 1

        store.mutate(lambda s: setattr(s, "volume", 40))
        await asyncio.sleep(0.05)
    finally:
        await broadcaster.stop()

    assert len(manager.sent) == 2
    assert manager.sent[-1]["data"]["volume"] == 40


@pytest.mark.asyncio
async def test_no_clients_no_broadcast(store) -> None:
    manager = RecordingManager()
    manager.count = 0
    broadcaster = SnapshotBroadcaster(store, manager, tick_s=0.01)
    await broadcaster.start()
    try:
        await asyncio.sleep(0.03)
    finally:
        await broadcaster.stop()

    assert manager.sent == []


def test_snapshot_event_is_json_ready(store) -> None:
    event = snapshot_event(store)
    assert event["type"] == "snapshot"
    assert event["data"]["dispatcher_status"] == "idle"
    assert event["data"]["visualizer"] == []


class FakeSocket:
    def __init__(self, fail: bool = False, hang: bool = False) -> None:
        self.fail = fail
        self.hang = hang
        self.accepted = False
        self.received: List[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        if self.hang:
            await asyncio.sleep(10)
        self.received.append(message)


@pytest.mark.asyncio
async def test_manager_drops_broken_and_slow_clients() -> None:
    manager = WebSocketManager(send_timeout_s=0.05)
    ok, broken, slow = FakeSocket(), FakeSocket(fail=True), FakeSocket(hang=True)
    for ws in (ok, broken, slow):
        await manager.connect(ws)
    assert manager.count == 3 and ok.accepted

    delivered = await manager.broadcast({"type": "snapshot", "data": {}})

    assert delivered == 1
    assert manager.count == 1
    assert ok.received == [{"type": "snapshot", "data": {}}]

    await manager.disconnect(ok)
    assert manager.count == 0
