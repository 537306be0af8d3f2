# vibequeue/models/state.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from vibequeue.models.song import Song


DispatcherStatus = Literal["idle", "thinking", "acting"]


class PlaybackPosition(BaseModel):
    elapsed_s: float = 0.0
    total_s: float = 0.0

    @property
    def remaining_s(self) -> float:
        return max(0.0, self.total_s - self.elapsed_s)


@dataclass
class QueueState:
    """
    Estado mutável. Só o StateStore segura uma referência a ele;
    os outros componentes só o veem dentro de `store.mutate(...)`.

    `current` (a música tocando) fica FORA de `pending`.
    """

    pending: List[Song] = field(default_factory=list)
    current: Optional[Song] = None
    finished: Deque[Song] = field(default_factory=lambda: deque(maxlen=50))

    position: PlaybackPosition = field(default_factory=PlaybackPosition)
    volume: int = 70
    paused: bool = False

    dispatcher_status: DispatcherStatus = "idle"
    acting_tool: Optional[str] = None

    # avisos para o usuário
    status_message: Optional[str] = None
    device_error: Optional[str] = None

    visualizer: Deque[float] = field(default_factory=lambda: deque(maxlen=64))

    version: int = 0

    def find(self, song_id: str) -> Optional[Song]:
        if self.current is not None and self.current.id == song_id:
            return self.current
        for song in self.pending:
            if song.id == song_id:
                return song
        return None

    def index_of(self, song_id: str) -> int:
        for i, song in enumerate(self.pending):
            if song.id == song_id:
                return i
        return -1

    def retire_current(self) -> Optional[Song]:
        """Move `current` para `finished` e zera posição/visualizer."""
        song = self.current
        if song is None:
            return None
        self.finished.append(song)
        self.current = None
        self.paused = False
        self.position = PlaybackPosition()
        self.visualizer.clear()
        return song


class StoreSnapshot(BaseModel):
    """Cópia imutável e consistente do store em um instante."""

    model_config = ConfigDict(frozen=True)

    version: int
    current: Optional[Song]
    pending: Tuple[Song, ...]
    finished: Tuple[Song, ...]
    position: PlaybackPosition
    volume: int
    paused: bool
    dispatcher_status: DispatcherStatus
    acting_tool: Optional[str]
    status_message: Optional[str]
    device_error: Optional[str]
    visualizer: Tuple[float, ...]

    @property
    def is_playing(self) -> bool:
        return self.current is not None and not self.paused

    def playing_count(self) -> int:
        songs = list(self.pending)
        if self.current is not None:
            songs.append(self.current)
        return sum(1 for s in songs if s.status == "playing")
