# vibequeue/models/song.py
from __future__ import annotations

import uuid
from typing import Literal, Optional

from pydantic import BaseModel, Field

from vibequeue.core.errors import FailureKind


SongStatus = Literal["queued", "fetching", "ready", "playing", "played", "failed"]

# ordem monotônica do ciclo de vida; "failed" fica fora (terminal, alcançável de qualquer ponto)
_STATUS_ORDER = {
    "queued": 0,
    "fetching": 1,
    "ready": 2,
    "playing": 3,
    "played": 4,
}
TERMINAL_STATUSES = frozenset({"played", "failed"})


def can_transition(old: SongStatus, new: SongStatus) -> bool:
    if old in TERMINAL_STATUSES:
        return False
    if new == "failed":
        return True
    return _STATUS_ORDER[new] > _STATUS_ORDER[old]


class Candidate(BaseModel):
    """Resultado de `resolve`: ainda não é uma entrada da fila."""

    title: str
    artist: str = ""
    locator: str
    duration_s: Optional[float] = None


class Song(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    title: str
    artist: str = ""
    source_reference: str

    # só existem depois do fetch
    local_artifact: Optional[str] = None
    duration_s: Optional[float] = None

    status: SongStatus = "queued"
    failure_kind: Optional[FailureKind] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "Song":
        return cls(
            title=candidate.title or candidate.locator,
            artist=candidate.artist,
            source_reference=candidate.locator,
            duration_s=candidate.duration_s,
        )

    def transition(self, new: SongStatus) -> bool:
        if not can_transition(self.status, new):
            return False
        self.status = new
        return True

    def fail(self, kind: FailureKind, reason: str) -> bool:
        if not self.transition("failed"):
            return False
        self.failure_kind = kind
        self.failure_reason = reason[:200]
        return True
