from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

from vibequeue.models.operations import ToolCall
from vibequeue.models.song import Candidate


class SongFetcher(ABC):
    @abstractmethod
    async def resolve(self, query_or_locator: str, count: int = 1) -> List[Candidate]:
        """Busca ou URL direta -> candidatos na ordem da fonte."""

    @abstractmethod
    async def materialize(self, locator: str) -> str:
        """Baixa (ou reaproveita do cache) e devolve o caminho local."""


class PlaybackHandle(ABC):
    @abstractmethod
    def position(self) -> Tuple[float, float]:
        """(elapsed_s, total_s). Levanta PlaybackDeviceError se o stream morreu."""

    @property
    @abstractmethod
    def finished(self) -> bool:
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def resume(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def amplitude_sample(self) -> float:
        pass

    @abstractmethod
    def set_volume(self, level: int) -> None:
        pass

    @abstractmethod
    def seek(self, seconds: float) -> None:
        """Move a posição de leitura; o chamador já limitou a [0, total]."""


class AudioOutput(ABC):
    @abstractmethod
    def start(self, artifact: str, *, volume: int) -> PlaybackHandle:
        """Bloqueante (decode + abrir stream): chamar via asyncio.to_thread."""


class ToolPlanner(ABC):
    @abstractmethod
    async def plan(self, context: Dict[str, Any]) -> List[ToolCall]:
        pass
