# vibequeue/state/store.py

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, TypeVar

from vibequeue.models.state import QueueState, StoreSnapshot

log = logging.getLogger("state.store")

T = TypeVar("T")


class StateStore:
    """
    Fonte única da verdade: fila, música atual, volume, status do dispatcher.

    - `mutate(fn)`: lock exclusivo, aplica a transformação, solta
    - `snapshot()`: cópia imutável para leitores (renderer, dispatcher)

    Transformações devem ser curtas e NUNCA chamar o store de novo
    (o lock não é reentrante).
    """

    def __init__(
        self,
        *,
        default_volume: int = 70,
        visualizer_capacity: int = 64,
        finished_capacity: int = 50,
    ) -> None:
        self._lock = threading.Lock()
        self._state = QueueState(
            volume=max(0, min(100, default_volume)),
            visualizer=deque(maxlen=visualizer_capacity),
            finished=deque(maxlen=finished_capacity),
        )

    # =========================
    # MUTATION
    # =========================

    def mutate(self, fn: Callable[[QueueState], T]) -> T:
        with self._lock:
            result = fn(self._state)
            self._state.version += 1
            return result

    # =========================
    # READ
    # =========================

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            s = self._state
            return StoreSnapshot(
                version=s.version,
                current=s.current.model_copy() if s.current is not None else None,
                pending=tuple(song.model_copy() for song in s.pending),
                finished=tuple(song.model_copy() for song in s.finished),
                position=s.position.model_copy(),
                volume=s.volume,
                paused=s.paused,
                dispatcher_status=s.dispatcher_status,
                acting_tool=s.acting_tool,
                status_message=s.status_message,
                device_error=s.device_error,
                visualizer=tuple(s.visualizer),
            )

    @property
    def version(self) -> int:
        with self._lock:
            return self._state.version
