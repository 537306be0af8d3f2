from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional, Set, Tuple

import librosa

from vibequeue.core.config import Settings, get_settings
from vibequeue.core.errors import FetchError, FetchTransient
from vibequeue.models.song import SongStatus
from vibequeue.models.state import QueueState
from vibequeue.services.capabilities import SongFetcher
from vibequeue.state.store import StateStore

log = logging.getLogger("fetch.pipeline")

MAX_ATTEMPTS = 2  # 1 tentativa + 1 retry para falhas transitórias


class FetchPipeline:
    """
    Transforma músicas `queued` em artefatos locais tocáveis.

    - backlog limitado (prioridade para play_url)
    - semáforo como portão de admissão (N fetches simultâneos)
    - cada música: queued -> fetching -> {ready | failed}, uma vez só
    """

    def __init__(
        self,
        store: StateStore,
        fetcher: SongFetcher,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or get_settings()

        self._backlog: asyncio.PriorityQueue[Tuple[int, int, str]] = asyncio.PriorityQueue(
            maxsize=self.settings.fetch_backlog
        )
        self._gate = asyncio.Semaphore(max(1, self.settings.fetch_concurrency))
        self._seq = itertools.count()

        # ids no backlog ou em voo
        self._scheduled: Set[str] = set()
        self._units: Set[asyncio.Task] = set()

        self._task: Optional[asyncio.Task] = None
        self._running = False

    # =========================
    # LIFECYCLE
    # =========================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._admit_loop())
        log.info("fetch_pipeline_started", extra={"concurrency": self.settings.fetch_concurrency})

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        for unit in list(self._units):
            unit.cancel()
        log.info("fetch_pipeline_stopped")

    async def drain(self) -> None:
        """Espera o backlog esvaziar e todos os fetches em voo terminarem."""
        await self._backlog.join()

    # =========================
    # TRIGGERS
    # =========================

    def schedule(self, song_id: str, *, priority: bool = False) -> bool:
        if song_id in self._scheduled:
            return False

        try:
            self._backlog.put_nowait((0 if priority else 1, next(self._seq), song_id))
        except asyncio.QueueFull:
            # continua `queued`; o prefetch do player pega depois
            log.warning("fetch_backlog_full", extra={"songId": song_id})
            return False

        self._scheduled.add(song_id)
        log.info("fetch_scheduled", extra={"songId": song_id, "priority": priority})
        return True

    def prefetch(self, count: int) -> int:
        snap = self.store.snapshot()
        queued = [s.id for s in snap.pending if s.status == "queued"][: max(0, count)]
        scheduled = sum(1 for song_id in queued if self.schedule(song_id))
        if scheduled:
            log.info("prefetch_scheduled", extra={"count": scheduled})
        return scheduled

    # =========================
    # WORKER
    # =========================

    async def _admit_loop(self) -> None:
        while self._running:
            _, _, song_id = await self._backlog.get()
            await self._gate.acquire()
            unit = asyncio.create_task(self._run_unit(song_id))
            self._units.add(unit)
            unit.add_done_callback(self._units.discard)

    async def _run_unit(self, song_id: str) -> None:
        try:
            await self.fetch(song_id)
        except Exception:
            log.exception("fetch_unit_crashed", extra={"songId": song_id})
        finally:
            self._gate.release()
            self._scheduled.discard(song_id)
            self._backlog.task_done()

    # =========================
    # CORE LOGIC
    # =========================

    async def fetch(self, song_id: str) -> Optional[SongStatus]:
        claim = self.store.mutate(lambda s: self._claim(s, song_id))
        if claim is None:
            log.info("fetch_not_claimed", extra={"songId": song_id})
            return None

        locator, known_duration = claim
        log.info("fetch_start", extra={"songId": song_id})

        attempt = 0
        while True:
            attempt += 1
            try:
                path = await asyncio.wait_for(
                    self.fetcher.materialize(locator),
                    timeout=self.settings.fetch_timeout_s,
                )
            except asyncio.TimeoutError:
                error: FetchError = FetchTransient(
                    f"fetch timed out after {self.settings.fetch_timeout_s}s"
                )
            except FetchError as e:
                error = e
            except Exception as e:
                log.exception("fetch_unexpected_error", extra={"songId": song_id})
                error = FetchTransient(str(e) or e.__class__.__name__)
            else:
                duration = known_duration or await self._probe_duration(path)
                return self.store.mutate(lambda s: self._mark_ready(s, song_id, path, duration))

            if isinstance(error, FetchTransient) and attempt < MAX_ATTEMPTS:
                log.warning(
                    "fetch_retry",
                    extra={"songId": song_id, "attempt": attempt, "error": str(error)},
                )
                await asyncio.sleep(self.settings.fetch_retry_delay_s)
                continue

            log.error(
                "fetch_failed",
                extra={"songId": song_id, "kind": error.kind, "error": str(error)},
            )
            return self.store.mutate(lambda s: self._mark_failed(s, song_id, error))

    async def _probe_duration(self, path: str) -> Optional[float]:
        try:
            return float(await asyncio.to_thread(librosa.get_duration, path=path))
        except Exception:
            log.warning("duration_probe_failed", extra={"path": path})
            return None

    # =========================
    # STORE TRANSFORMS
    # =========================

    @staticmethod
    def _claim(state: QueueState, song_id: str) -> Optional[Tuple[str, Optional[float]]]:
        song = state.find(song_id)
        if song is None or song.status != "queued":
            return None
        song.transition("fetching")
        return song.source_reference, song.duration_s

    @staticmethod
    def _mark_ready(
        state: QueueState,
        song_id: str,
        path: str,
        duration: Optional[float],
    ) -> Optional[SongStatus]:
        song = state.find(song_id)
        if song is None or song.status != "fetching":
            # limpa/skip durante o fetch: resultado descartado
            log.info("fetch_result_discarded", extra={"songId": song_id})
            return None
        song.local_artifact = path
        if duration and not song.duration_s:
            song.duration_s = duration
        song.transition("ready")
        log.info("fetch_ready", extra={"songId": song_id, "title": song.title})
        return song.status

    @staticmethod
    def _mark_failed(state: QueueState, song_id: str, error: FetchError) -> Optional[SongStatus]:
        song = state.find(song_id)
        if song is None or song.status != "fetching":
            log.info("fetch_result_discarded", extra={"songId": song_id})
            return None
        song.fail(error.kind, str(error) or error.__class__.__name__)
        return song.status
