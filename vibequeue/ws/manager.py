from typing import List, Set
from fastapi import WebSocket
import asyncio
import logging

log = logging.getLogger("ws")

# renderer lento não pode segurar o tick dos outros
SEND_TIMEOUT_S = 1.0


class WebSocketManager:
    """Renderers conectados. Só empurra snapshots; entrada chega pela rota /ws."""

    def __init__(self, send_timeout_s: float = SEND_TIMEOUT_S) -> None:
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self.send_timeout_s = send_timeout_s

    @property
    def count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)
        log.info("renderer_attached", extra={"clients": self.count})

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)
        log.info("renderer_detached", extra={"clients": self.count})

    async def broadcast(self, message: dict) -> int:
        """Manda para todos em paralelo; quem falhar ou estourar o timeout sai. Devolve quantos receberam."""
        async with self._lock:
            clients: List[WebSocket] = list(self._clients)
            results = await asyncio.gather(
                *(asyncio.wait_for(ws.send_json(message), self.send_timeout_s) for ws in clients),
                return_exceptions=True,
            )

            dropped = [ws for ws, res in zip(clients, results) if isinstance(res, BaseException)]
            for ws in dropped:
                self._clients.discard(ws)
            if dropped:
                log.warning("renderer_dropped", extra={"dropped": len(dropped), "clients": self.count})

            return len(clients) - len(dropped)
