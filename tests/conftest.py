from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from vibequeue.core.config import Settings
from vibequeue.core.errors import PlaybackDeviceError
from vibequeue.models.operations import ToolCall
from vibequeue.models.song import Candidate, Song
from vibequeue.services.capabilities import AudioOutput, PlaybackHandle, SongFetcher, ToolPlanner
from vibequeue.state.store import StateStore


# =========================
# FETCH
# =========================

class FakeFetcher(SongFetcher):
    """
    `resolve` gera candidatos determinísticos; `materialize` segue um roteiro
    por locator (lista de exceções/caminhos consumida em ordem).
    """

    def __init__(self) -> None:
        self.resolve_calls: List[Tuple[str, int]] = []
        self.materialize_calls: List[str] = []
        self.resolve_errors: Dict[str, Exception] = {}
        self.scripts: Dict[str, List[Any]] = {}
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_resolve = None

    async def resolve(self, query_or_locator: str, count: int = 1) -> List[Candidate]:
        self.resolve_calls.append((query_or_locator, count))
        if self.on_resolve is not None:
            self.on_resolve(query_or_locator)
        if query_or_locator in self.resolve_errors:
            raise self.resolve_errors[query_or_locator]
        if query_or_locator.startswith("http"):
            return [Candidate(title="Linked Song", artist="Someone", locator=query_or_locator, duration_s=180.0)]
        return [
            Candidate(
                title=f"{query_or_locator} #{i}",
                artist="Artist",
                locator=f"https://media.test/{query_or_locator.replace(' ', '-')}/{i}",
                duration_s=200.0,
            )
            for i in range(1, count + 1)
        ]

    async def materialize(self, locator: str) -> str:
        self.materialize_calls.append(locator)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)

            script = self.scripts.get(locator)
            outcome = script.pop(0) if script else None
            if isinstance(outcome, Exception):
                raise outcome
            return outcome or f"/cache/{abs(hash(locator))}.mp3"
        finally:
            self.in_flight -= 1


# =========================
# AUDIO
# =========================

class FakeHandle(PlaybackHandle):
    def __init__(self, artifact: str, volume: int) -> None:
        self.artifact = artifact
        self.volume = volume
        self.elapsed = 0.0
        self.total = 200.0
        self.done = False
        self.paused = False
        self.stopped = False
        self.pause_calls = 0
        self.resume_calls = 0
        self.error: Optional[PlaybackDeviceError] = None
        self.amplitude = 0.5
        self.seeks: List[float] = []

    def position(self) -> Tuple[float, float]:
        if self.error is not None:
            raise self.error
        return self.elapsed, self.total

    @property
    def finished(self) -> bool:
        return self.done

    def pause(self) -> None:
        self.pause_calls += 1
        self.paused = True

    def resume(self) -> None:
        self.resume_calls += 1
        self.paused = False

    def stop(self) -> None:
        self.stopped = True

    def amplitude_sample(self) -> float:
        return self.amplitude

    def set_volume(self, level: int) -> None:
        self.volume = level

    def seek(self, seconds: float) -> None:
        self.seeks.append(seconds)
        self.elapsed = seconds


class FakeOutput(AudioOutput):
    def __init__(self) -> None:
        self.starts: List[str] = []
        self.handles: List[FakeHandle] = []
        self.errors: Dict[str, PlaybackDeviceError] = {}

    def start(self, artifact: str, *, volume: int) -> PlaybackHandle:
        self.starts.append(artifact)
        if artifact in self.errors:
            raise self.errors[artifact]
        handle = FakeHandle(artifact, volume)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]


class FakePipeline:
    def __init__(self) -> None:
        self.prefetch_calls: List[int] = []
        self.scheduled: List[Tuple[str, bool]] = []

    def prefetch(self, count: int) -> int:
        self.prefetch_calls.append(count)
        return 0

    def schedule(self, song_id: str, *, priority: bool = False) -> bool:
        self.scheduled.append((song_id, priority))
        return True


# =========================
# LANGUAGE MODEL
# =========================

class FakePlanner(ToolPlanner):
    def __init__(self, calls: Optional[List[ToolCall]] = None) -> None:
        self.calls = calls or []
        self.contexts: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.on_plan = None

    async def plan(self, context: Dict[str, Any]) -> List[ToolCall]:
        self.contexts.append(context)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_plan is not None:
                self.on_plan(context)
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return list(self.calls)
        finally:
            self.active -= 1


# =========================
# FIXTURES
# =========================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        cache_dir=str(tmp_path / "songs"),
        fetch_concurrency=2,
        fetch_backlog=8,
        fetch_timeout_s=5.0,
        fetch_retry_delay_s=0.0,
        playback_tick_s=0.01,
        prefetch_threshold_s=30.0,
        prefetch_count=2,
        dispatch_timeout_s=2.0,
        default_volume=70,
    )


@pytest.fixture
def store(settings: Settings) -> StateStore:
    return StateStore(
        default_volume=settings.default_volume,
        visualizer_capacity=settings.visualizer_capacity,
        finished_capacity=settings.finished_capacity,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def output() -> FakeOutput:
    return FakeOutput()


def add_song(
    store: StateStore,
    title: str,
    *,
    status: str = "queued",
    artifact: Optional[str] = None,
    duration: Optional[float] = 200.0,
) -> Song:
    song = Song(
        title=title,
        source_reference=f"https://media.test/{title}",
        status=status,
        local_artifact=artifact if artifact is not None else (f"/cache/{title}.mp3" if status == "ready" else None),
        duration_s=duration,
    )
    store.mutate(lambda s: s.pending.append(song))
    return song


def mark_ready(store: StateStore, song_id: str, artifact: Optional[str] = None) -> None:
    def _ready(state) -> None:
        song = state.find(song_id)
        song.local_artifact = artifact or f"/cache/{song.title}.mp3"
        song.status = "ready"

    store.mutate(_ready)
