from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set, Tuple

from vibequeue.core.config import Settings, get_settings
from vibequeue.core.errors import PlaybackDeviceError
from vibequeue.models.state import PlaybackPosition, QueueState, StoreSnapshot
from vibequeue.services.capabilities import AudioOutput, PlaybackHandle
from vibequeue.services.fetch_pipeline import FetchPipeline
from vibequeue.state.store import StateStore

log = logging.getLogger("playback.engine")


def clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


class PlaybackEngine:
    """
    Toca a primeira música `ready` da fila, avança ao terminar, reporta progresso.

    - Stopped -> Playing -> Stopped (fim/skip); Paused é sub-estado de Playing
    - sem música pronta: fica "esperando" e o tick tenta de novo (polling)
    - todas as operações passam por `_lock`: nunca dois starts em paralelo
    """

    def __init__(
        self,
        store: StateStore,
        output: AudioOutput,
        pipeline: Optional[FetchPipeline] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.output = output
        self.pipeline = pipeline
        self.settings = settings or get_settings()

        self._lock = asyncio.Lock()
        self._handle: Optional[PlaybackHandle] = None
        self._current_id: Optional[str] = None

        # começa esperando: a primeira música pronta já toca
        self._waiting = True
        self._prefetched_for: Optional[str] = None
        self._logged_failed: Set[str] = set()
        # play_url: assim que ficar pronta, interrompe a atual
        self._preempt_id: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._running = False

    # =========================
    # Lifecycle
    # =========================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        log.info("playback_engine_started", extra={"tickS": self.settings.playback_tick_s})

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        self._stop_handle()
        log.info("playback_engine_stopped")

    @property
    def waiting(self) -> bool:
        return self._waiting and self._handle is None

    # =========================
    # Public controls
    # =========================

    async def play_next(self) -> bool:
        async with self._lock:
            if self._handle is not None:
                log.info("play_next_ignored_already_playing", extra={"songId": self._current_id})
                return False
            return await self._play_next_locked()

    async def skip(self) -> bool:
        async with self._lock:
            skipped = self._current_id
            self._stop_handle()
            self.store.mutate(self._finish_current)
            log.info("song_skipped", extra={"songId": skipped})
            return await self._play_next_locked()

    async def pause(self) -> bool:
        async with self._lock:
            if self._handle is None:
                return False
            changed = self.store.mutate(lambda s: self._set_paused(s, True))
            if changed:
                self._handle.pause()
                log.info("player_paused", extra={"songId": self._current_id})
            return changed

    async def resume(self) -> bool:
        async with self._lock:
            if self._handle is None:
                return False
            changed = self.store.mutate(lambda s: self._set_paused(s, False))
            if changed:
                self._handle.resume()
                log.info("player_resumed", extra={"songId": self._current_id})
            return changed

    async def toggle_pause(self) -> bool:
        if self.store.snapshot().paused:
            return await self.resume()
        return await self.pause()

    async def set_volume(self, level: int) -> int:
        level = clamp(int(level), 0, 100)
        self.store.mutate(lambda s: setattr(s, "volume", level))
        if self._handle is not None:
            self._handle.set_volume(level)
        log.info("volume_set", extra={"level": level})
        return level

    async def nudge_volume(self, delta: int) -> int:
        return await self.set_volume(self.store.snapshot().volume + delta)

    async def seek(self, seconds: float) -> Optional[float]:
        """Pula para `seconds` (limitado a [0, total]). None se nada toca."""
        async with self._lock:
            if self._handle is None:
                return None
            total = self.store.snapshot().position.total_s
            target = max(0.0, min(float(seconds), total)) if total > 0 else max(0.0, float(seconds))
            self._handle.seek(target)
            self.store.mutate(lambda s: self._set_elapsed(s, target))
            log.info("player_seek", extra={"songId": self._current_id, "positionS": round(target, 2)})
            return target

    async def seek_relative(self, delta: float) -> Optional[float]:
        return await self.seek(self.store.snapshot().position.elapsed_s + delta)

    def play_when_ready(self, song_id: str) -> None:
        self._preempt_id = song_id
        log.info("preempt_armed", extra={"songId": song_id})

    # =========================
    # Loop
    # =========================

    async def _loop(self) -> None:
        interval = self.settings.playback_tick_s
        while self._running:
            try:
                await self.tick()
            except Exception:
                log.exception("playback_loop_error")
            await asyncio.sleep(interval)

    async def tick(self) -> None:
        async with self._lock:
            if self._preempt_id is not None and await self._maybe_preempt():
                return

            handle = self._handle
            if handle is None:
                if self._waiting:
                    await self._play_next_locked()
                return

            if handle.finished:
                log.info("song_completed", extra={"songId": self._current_id})
                self._stop_handle()
                self.store.mutate(self._finish_current)
                await self._play_next_locked()
                return

            try:
                elapsed, total = handle.position()
                amplitude = handle.amplitude_sample()
            except PlaybackDeviceError as e:
                # artefato ilegível / stream morreu no meio: conta como fim com falha
                log.error("playback_failed_mid_song", extra={"songId": self._current_id, "error": str(e)})
                failed_id = self._current_id
                self._stop_handle()
                self.store.mutate(lambda s: self._fail_current(s, failed_id, e))
                if not e.device_lost:
                    await self._play_next_locked()
                else:
                    self._waiting = False
                return

            remaining = self.store.mutate(lambda s: self._report_progress(s, elapsed, total, amplitude))
            self._maybe_prefetch(remaining)

    # =========================
    # Internals
    # =========================

    async def _maybe_preempt(self) -> bool:
        song_id = self._preempt_id
        status = self._pending_status(self.store.snapshot(), song_id)
        if status in ("queued", "fetching"):
            return False

        self._preempt_id = None
        if status != "ready":
            log.info("preempt_dropped", extra={"songId": song_id, "status": status})
            return False

        if self._handle is not None:
            log.info("song_preempted", extra={"songId": self._current_id, "by": song_id})
            self._stop_handle()
            self.store.mutate(self._finish_current)
        await self._play_next_locked(prefer=song_id)
        return True

    async def _play_next_locked(self, prefer: Optional[str] = None) -> bool:
        while True:
            picked = self.store.mutate(lambda s: self._take_next_ready(s, prefer))
            prefer = None
            if picked is None:
                if not self._waiting:
                    log.info("playback_waiting_for_ready_song")
                self._waiting = True
                return False

            song_id, artifact, volume = picked
            try:
                handle = await asyncio.to_thread(self.output.start, artifact, volume=volume)
            except PlaybackDeviceError as e:
                log.error("playback_start_failed", extra={"songId": song_id, "error": str(e)})
                self.store.mutate(lambda s: self._fail_current(s, song_id, e))
                if e.device_lost:
                    # sem saída de áudio: para de avançar até um skip/play explícito
                    self._waiting = False
                    return False
                continue

            self._handle = handle
            self._current_id = song_id
            self._waiting = False
            self._prefetched_for = None
            self.store.mutate(lambda s: setattr(s, "device_error", None))
            log.info("song_started", extra={"songId": song_id})
            return True

    def _stop_handle(self) -> None:
        if self._handle is not None:
            try:
                self._handle.stop()
            except Exception:
                log.exception("playback_handle_stop_failed")
        self._handle = None
        self._current_id = None

    def _maybe_prefetch(self, remaining: Optional[float]) -> None:
        if self.pipeline is None or remaining is None:
            return
        if self._prefetched_for == self._current_id:
            return
        if remaining < self.settings.prefetch_threshold_s:
            self._prefetched_for = self._current_id
            self.pipeline.prefetch(self.settings.prefetch_count)

    # =========================
    # Store transforms
    # =========================

    def _take_next_ready(
        self,
        state: QueueState,
        prefer: Optional[str] = None,
    ) -> Optional[Tuple[str, str, int]]:
        if state.current is not None:
            return None

        # só lembra falhas que ainda estão na fila
        self._logged_failed &= {s.id for s in state.pending}

        chosen = None
        if prefer is not None:
            song = state.find(prefer)
            if song is not None and song.status == "ready" and song.local_artifact:
                chosen = song

        for song in state.pending:
            if chosen is not None:
                break
            if song.status == "ready" and song.local_artifact:
                chosen = song
                break
            if song.status == "failed" and song.id not in self._logged_failed:
                self._logged_failed.add(song.id)
                log.info(
                    "playback_skipping_failed_song",
                    extra={"songId": song.id, "reason": song.failure_reason},
                )

        if chosen is None:
            return None

        state.pending.remove(chosen)
        chosen.transition("playing")
        state.current = chosen
        state.paused = False
        state.position = PlaybackPosition(elapsed_s=0.0, total_s=chosen.duration_s or 0.0)
        state.visualizer.clear()
        return chosen.id, chosen.local_artifact, state.volume

    @staticmethod
    def _pending_status(snap: StoreSnapshot, song_id: Optional[str]) -> Optional[str]:
        # leitura pura: não mexe no version
        for song in snap.pending:
            if song.id == song_id:
                return song.status
        return None

    @staticmethod
    def _set_elapsed(state: QueueState, elapsed: float) -> None:
        if state.current is not None:
            state.position = PlaybackPosition(elapsed_s=elapsed, total_s=state.position.total_s)

    @staticmethod
    def _finish_current(state: QueueState) -> Optional[str]:
        song = state.current
        if song is None:
            return None
        song.transition("played")
        state.retire_current()
        return song.id

    @staticmethod
    def _fail_current(state: QueueState, song_id: Optional[str], error: PlaybackDeviceError) -> None:
        song = state.current
        if song is None or song.id != song_id:
            return
        song.fail(error.kind, str(error))
        state.retire_current()
        if error.device_lost:
            state.device_error = str(error)

    @staticmethod
    def _set_paused(state: QueueState, paused: bool) -> bool:
        if state.current is None or state.paused == paused:
            return False
        state.paused = paused
        return True

    @staticmethod
    def _report_progress(
        state: QueueState,
        elapsed: float,
        total: float,
        amplitude: float,
    ) -> Optional[float]:
        song = state.current
        if song is None:
            return None

        total = total or song.duration_s or 0.0
        # elapsed nunca volta enquanto toca
        elapsed = max(state.position.elapsed_s, elapsed)
        state.position = PlaybackPosition(elapsed_s=elapsed, total_s=total)
        if not state.paused:
            state.visualizer.append(amplitude)

        if total <= 0:
            return None
        return max(0.0, total - elapsed)
