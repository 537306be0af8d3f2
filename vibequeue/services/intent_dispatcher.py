from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vibequeue.core.config import Settings, get_settings
from vibequeue.core.errors import (
    DispatchError,
    DispatchTimeout,
    FetchError,
    FetchTransient,
    InvalidOperationReference,
)
from vibequeue.models.operations import (
    OPERATION_NAMES,
    ClearQueue,
    Operation,
    Pause,
    PlayUrl,
    QueueNext,
    ReplaceQueue,
    Resume,
    SearchAndQueue,
    SetVolume,
    Skip,
    ToolCall,
    parse_operation,
)
from vibequeue.models.song import Candidate, Song
from vibequeue.models.state import DispatcherStatus, QueueState, StoreSnapshot
from vibequeue.services.capabilities import SongFetcher, ToolPlanner
from vibequeue.services.fetch_pipeline import FetchPipeline
from vibequeue.services.playback_engine import PlaybackEngine
from vibequeue.services.ytdlp import is_locator
from vibequeue.state.store import StateStore

log = logging.getLogger("intent.dispatcher")


@dataclass
class DispatchResult:
    input: str
    applied: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)] + "…"


def build_context(snap: StoreSnapshot, text: str, settings: Settings) -> Dict[str, Any]:
    """Payload enxuto para o modelo: só títulos, truncados, com limite de itens."""
    now_playing = None
    if snap.current is not None:
        now_playing = {"title": snap.current.title, "artist": snap.current.artist}

    limit = settings.context_title_chars
    queue = [_truncate(s.title, limit) for s in snap.pending[: settings.context_max_queue]]

    return {
        "input": text,
        "now_playing": now_playing,
        "queue": queue,
        "queue_length": len(snap.pending),
        "volume": snap.volume,
        "paused": snap.paused,
        "tools": list(OPERATION_NAMES),
    }


class IntentDispatcher:
    """
    Texto livre -> lista ordenada de operações (via modelo) -> aplicadas no store.

    Um dispatch por vez: entradas novas esperam o anterior terminar.
    Falha de uma operação vira warning; o resto do lote continua.
    """

    def __init__(
        self,
        store: StateStore,
        planner: ToolPlanner,
        fetcher: SongFetcher,
        engine: PlaybackEngine,
        pipeline: Optional[FetchPipeline] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.planner = planner
        self.fetcher = fetcher
        self.engine = engine
        self.pipeline = pipeline
        self.settings = settings or get_settings()

        self._lock = asyncio.Lock()
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # =========================
    # Lifecycle
    # =========================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        log.info("dispatcher_started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        log.info("dispatcher_stopped")

    def submit(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        self._inbox.put_nowait(text)
        log.info("dispatch_enqueued", extra={"pending": self._inbox.qsize()})
        return True

    async def _worker(self) -> None:
        while self._running:
            text = await self._inbox.get()
            try:
                await self.handle(text)
            except Exception:
                log.exception("dispatch_worker_error")
            finally:
                self._inbox.task_done()

    # =========================
    # Protocol
    # =========================

    async def handle(self, text: str) -> DispatchResult:
        text = text.strip()
        async with self._lock:
            result = DispatchResult(input=text)
            context = build_context(self.store.snapshot(), text, self.settings)
            log.info("dispatch_start", extra={"input": text[:120]})

            self.store.mutate(lambda s: self._set_status(s, "thinking"))
            try:
                calls = await self._request(context)
                self.store.mutate(lambda s: self._set_status(s, "acting"))
                for call in calls:
                    await self._apply_call(call, result)
            except DispatchError as e:
                result.error = str(e) or e.__class__.__name__
                log.error("dispatch_failed", extra={"error": result.error})
            except Exception as e:
                result.error = f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__
                log.exception("dispatch_crashed")
            finally:
                message = self._status_message(result)
                self.store.mutate(lambda s: self._finish(s, message))

            log.info(
                "dispatch_done",
                extra={"applied": result.applied, "warnings": len(result.warnings)},
            )
            return result

    async def _request(self, context: Dict[str, Any]) -> List[ToolCall]:
        try:
            return await asyncio.wait_for(
                self.planner.plan(context),
                timeout=self.settings.dispatch_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise DispatchTimeout(
                f"language model did not answer in {self.settings.dispatch_timeout_s}s"
            ) from e

    async def _apply_call(self, call: ToolCall, result: DispatchResult) -> None:
        try:
            op = parse_operation(call)
            self.store.mutate(lambda s: self._set_status(s, "acting", tool=op.name))
            log.info("operation_apply", extra={"operation": op.name})
            await self.apply(op)
            result.applied.append(op.name)
        except InvalidOperationReference as e:
            self._warn(result, e.operation or call.name, str(e))
        except FetchError as e:
            self._warn(result, call.name, f"{e.kind}: {e}")
        except Exception as e:
            log.exception("operation_crashed", extra={"operation": call.name})
            self._warn(result, call.name, str(e) or e.__class__.__name__)

    def _warn(self, result: DispatchResult, operation: str, message: str) -> None:
        result.warnings.append(f"{operation}: {message}")
        log.warning("operation_skipped", extra={"operation": operation, "reason": message})

    # =========================
    # Operations
    # =========================

    async def apply(self, op: Operation) -> None:
        if isinstance(op, PlayUrl):
            await self._play_url(op.url)
        elif isinstance(op, SearchAndQueue):
            await self._search_and_queue(op.query, op.count)
        elif isinstance(op, QueueNext):
            await self._queue_next(op.query)
        elif isinstance(op, Skip):
            snap = self.store.snapshot()
            if snap.current is None and not snap.pending:
                raise InvalidOperationReference("nothing to skip", operation="skip")
            await self.engine.skip()
        elif isinstance(op, Pause):
            self._require_current("pause")
            await self.engine.pause()
        elif isinstance(op, Resume):
            self._require_current("resume")
            await self.engine.resume()
        elif isinstance(op, SetVolume):
            await self.engine.set_volume(op.level)
        elif isinstance(op, ClearQueue):
            self.clear_queue()
        elif isinstance(op, ReplaceQueue):
            await self._replace_queue(op.queries)

    def clear_queue(self) -> int:
        removed = self.store.mutate(self._clear_pending)
        log.info("queue_cleared", extra={"removed": removed})
        return removed

    async def _play_url(self, url: str) -> None:
        url = url.strip()
        if not is_locator(url):
            raise InvalidOperationReference(f"not a direct URL: {url!r}", operation="play_url")

        try:
            candidates = await self.fetcher.resolve(url, 1)
        except FetchTransient as e:
            # metadados são opcionais aqui; o fetch decide se a URL presta
            log.warning("play_url_resolve_failed", extra={"url": url, "error": str(e)})
            candidates = []

        candidate = candidates[0] if candidates else Candidate(title=url, locator=url)
        song = Song.from_candidate(candidate)
        self.store.mutate(lambda s: s.pending.insert(0, song))
        self.engine.play_when_ready(song.id)
        self._schedule(song.id, priority=True)

    async def _search_and_queue(self, query: str, count: int) -> None:
        if int(count) < 1:
            raise InvalidOperationReference(f"count must be at least 1, got {count}", operation="search_and_queue")
        count = min(self.settings.max_search_count, int(count))
        candidates = await self._resolve(query, count, operation="search_and_queue")

        songs = [Song.from_candidate(c) for c in candidates[:count]]
        self.store.mutate(lambda s: s.pending.extend(songs))
        for song in songs:
            self._schedule(song.id)

    async def _queue_next(self, query: str) -> None:
        candidates = await self._resolve(query, 1, operation="queue_next")
        song = Song.from_candidate(candidates[0])
        # `current` fica fora de `pending`: "logo depois da atual" = índice 0
        self.store.mutate(lambda s: s.pending.insert(0, song))
        self._schedule(song.id)

    async def _replace_queue(self, queries: List[str]) -> None:
        queries = [q.strip() for q in queries if q and q.strip()]
        if not queries:
            raise InvalidOperationReference("no queries given", operation="replace_queue")

        self.clear_queue()
        failures = []
        for query in queries:
            try:
                await self._search_and_queue(query, self.settings.replace_queue_count)
            except (InvalidOperationReference, FetchError) as e:
                failures.append(f"{query!r}: {e}")
                log.warning("replace_queue_query_failed", extra={"query": query, "error": str(e)})

        if len(failures) == len(queries):
            raise InvalidOperationReference("; ".join(failures), operation="replace_queue")

    # =========================
    # Helpers
    # =========================

    async def _resolve(self, query: str, count: int, *, operation: str) -> List[Candidate]:
        query = query.strip()
        if not query:
            raise InvalidOperationReference("empty query", operation=operation)
        candidates = await self.fetcher.resolve(query, count)
        if not candidates:
            raise InvalidOperationReference(f"no results for {query!r}", operation=operation)
        return candidates

    def _require_current(self, operation: str) -> None:
        if self.store.snapshot().current is None:
            raise InvalidOperationReference("nothing is playing", operation=operation)

    def _schedule(self, song_id: str, *, priority: bool = False) -> None:
        if self.pipeline is not None:
            self.pipeline.schedule(song_id, priority=priority)

    @staticmethod
    def _status_message(result: DispatchResult) -> Optional[str]:
        if result.error:
            return f"Dispatch error: {result.error}"
        if result.warnings:
            return f"{len(result.warnings)} operation(s) skipped: {result.warnings[0]}"
        return None

    # =========================
    # Store transforms
    # =========================

    @staticmethod
    def _set_status(state: QueueState, status: DispatcherStatus, *, tool: Optional[str] = None) -> None:
        state.dispatcher_status = status
        state.acting_tool = tool

    @staticmethod
    def _finish(state: QueueState, message: Optional[str]) -> None:
        state.dispatcher_status = "idle"
        state.acting_tool = None
        state.status_message = message

    @staticmethod
    def _clear_pending(state: QueueState) -> int:
        removed = len(state.pending)
        state.pending.clear()
        return removed
