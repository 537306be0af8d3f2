from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

import librosa
import numpy as np
import sounddevice as sd

from vibequeue.core.errors import PlaybackDeviceError
from vibequeue.services.capabilities import AudioOutput, PlaybackHandle

log = logging.getLogger("audio.output")

# RMS de música fica em ~0.05..0.3; o visualizer quer 0..1
AMPLITUDE_GAIN = 3.0


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


class SoundDevicePlayback(PlaybackHandle):
    """
    Um stream de saída por música.
    O callback roda na thread do PortAudio; tudo que ele toca fica sob `_lock`.
    """

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: int,
        *,
        volume: int,
        device: Optional[str] = None,
    ) -> None:
        self._samples = samples.astype(np.float32, copy=False)
        self._sample_rate = int(sample_rate)
        self._cursor = 0
        self._lock = threading.Lock()
        self._paused = False
        self._stopped = False
        self._volume = clamp01(volume / 100.0)
        self._rms = 0.0
        self._done = threading.Event()

        self._stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            device=device,
            callback=self._on_write,
            finished_callback=self._done.set,
        )
        self._stream.start()

    # =========================
    # PlaybackHandle
    # =========================

    def position(self) -> Tuple[float, float]:
        with self._lock:
            cursor = self._cursor
        total = len(self._samples) / self._sample_rate
        if self._done.is_set() and not self._stopped and cursor < len(self._samples):
            raise PlaybackDeviceError("audio stream aborted before the end of the song")
        return cursor / self._sample_rate, total

    @property
    def finished(self) -> bool:
        with self._lock:
            at_end = self._cursor >= len(self._samples)
        return at_end and self._done.is_set()

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def stop(self) -> None:
        self._stopped = True
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError:
            log.exception("audio_stream_close_failed")

    def amplitude_sample(self) -> float:
        with self._lock:
            return clamp01(self._rms * AMPLITUDE_GAIN)

    def set_volume(self, level: int) -> None:
        with self._lock:
            self._volume = clamp01(level / 100.0)

    def seek(self, seconds: float) -> None:
        frame = int(max(0.0, seconds) * self._sample_rate)
        with self._lock:
            self._cursor = min(frame, len(self._samples))

    # =========================
    # CALLBACK
    # =========================

    def _on_write(self, outdata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            log.warning("audio_stream_status", extra={"status": str(status)})

        with self._lock:
            if self._paused:
                outdata.fill(0)
                self._rms = 0.0
                return

            chunk = self._samples[self._cursor : self._cursor + frames]
            n = len(chunk)
            outdata[:n, 0] = chunk * self._volume
            outdata[n:] = 0
            self._cursor += n
            self._rms = float(np.sqrt(np.mean(np.square(chunk)))) if n else 0.0

            if self._cursor >= len(self._samples):
                raise sd.CallbackStop


class SoundDeviceOutput(AudioOutput):
    def __init__(self, device: Optional[str] = None) -> None:
        self.device = device

    def start(self, artifact: str, *, volume: int) -> PlaybackHandle:
        log.info("audio_load_start", extra={"path": artifact})

        try:
            # sr=None preserva taxa nativa
            y, sr = librosa.load(artifact, sr=None, mono=True)
        except Exception as e:
            raise PlaybackDeviceError(f"cannot decode audio: {e}") from e

        if y.size == 0:
            raise PlaybackDeviceError("decoded audio is empty")

        log.info("audio_load_ok", extra={"sr": sr, "durationS": round(y.size / sr, 2)})

        try:
            return SoundDevicePlayback(y, sr, volume=volume, device=self.device)
        except sd.PortAudioError as e:
            raise PlaybackDeviceError(f"audio output unavailable: {e}", device_lost=True) from e
