from __future__ import annotations

from typing import Literal, Optional

FailureKind = Literal["fetch_transient", "fetch_permanent", "playback_device"]


class VibeQueueError(Exception):
    """Base de todos os erros de domínio do vibequeue."""


# =========================
# FETCH
# =========================

class FetchError(VibeQueueError):
    kind: FailureKind = "fetch_transient"


class FetchTransient(FetchError):
    """Rede, timeout, falha do yt-dlp sem causa conhecida. Vale 1 retry."""

    kind: FailureKind = "fetch_transient"


class FetchPermanent(FetchError):
    """Vídeo indisponível, URL não suportada, binário ausente. Sem retry."""

    kind: FailureKind = "fetch_permanent"


# =========================
# PLAYBACK
# =========================

class PlaybackDeviceError(VibeQueueError):
    kind: FailureKind = "playback_device"

    def __init__(self, message: str, *, device_lost: bool = False) -> None:
        super().__init__(message)
        self.device_lost = device_lost


# =========================
# DISPATCH
# =========================

class DispatchError(VibeQueueError):
    pass


class DispatchTimeout(DispatchError):
    pass


class DispatchTransportError(DispatchError):
    pass


class InvalidOperationReference(VibeQueueError):
    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation
