from __future__ import annotations

import asyncio
import logging
from typing import Optional

from vibequeue.state.store import StateStore
from vibequeue.ws.manager import WebSocketManager

log = logging.getLogger("ws.broadcaster")


def snapshot_event(store: StateStore) -> dict:
    return {"type": "snapshot", "data": store.snapshot().model_dump(mode="json")}


class SnapshotBroadcaster:
    """
    Tick do renderer: a cada `tick_s` manda o snapshot mais recente,
    só se a versão do store mudou desde o último envio.
    """

    def __init__(self, store: StateStore, manager: WebSocketManager, tick_s: float = 0.2) -> None:
        self.store = store
        self.manager = manager
        self.tick_s = tick_s
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_version = -1

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        log.info("broadcaster_started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        log.info("broadcaster_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                if self.manager.count and self.store.version != self._last_version:
                    event = snapshot_event(self.store)
                    self._last_version = event["data"]["version"]
                    await self.manager.broadcast(event)
            except Exception:
                log.exception("broadcaster_loop_error")
            await asyncio.sleep(self.tick_s)
