from __future__ import annotations

import asyncio

import pytest

from vibequeue.core.errors import PlaybackDeviceError
from vibequeue.services.playback_engine import PlaybackEngine

from conftest import FakePipeline, add_song, mark_ready


@pytest.fixture
def pipeline() -> FakePipeline:
    return FakePipeline()


@pytest.fixture
def engine(store, output, pipeline, settings) -> PlaybackEngine:
    return PlaybackEngine(store, output, pipeline, settings)


@pytest.mark.asyncio
async def test_play_next_starts_first_ready_song(store, output, engine) -> None:
    a = add_song(store, "a", status="ready")
    b = add_song(store, "b")

    assert await engine.play_next()

    snap = store.snapshot()
    assert snap.current.id == a.id
    assert snap.current.status == "playing"
    assert [s.id for s in snap.pending] == [b.id]
    assert output.starts == ["/cache/a.mp3"]


@pytest.mark.asyncio
async def test_play_next_is_noop_while_playing(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    add_song(store, "b", status="ready")

    assert await engine.play_next()
    assert not await engine.play_next()
    assert len(output.starts) == 1


@pytest.mark.asyncio
async def test_tick_autoplays_first_ready_song(store, output, engine) -> None:
    add_song(store, "a")
    await engine.tick()
    assert output.starts == []

    mark_ready(store, store.snapshot().pending[0].id)
    await engine.tick()
    assert store.snapshot().current.title == "a"


@pytest.mark.asyncio
async def test_finished_song_advances(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    add_song(store, "b", status="ready")
    await engine.tick()

    output.last.done = True
    await engine.tick()

    snap = store.snapshot()
    assert snap.current.title == "b"
    assert [s.title for s in snap.finished] == ["a"]
    assert snap.finished[0].status == "played"
    assert output.handles[0].stopped


@pytest.mark.asyncio
async def test_skip_waits_then_resolves_without_duplicate_starts(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    b = add_song(store, "b")
    await engine.play_next()

    assert not await engine.skip()
    assert engine.waiting
    assert store.snapshot().current is None

    await engine.tick()
    assert len(output.starts) == 1

    mark_ready(store, b.id)
    await engine.tick()
    await engine.tick()

    assert store.snapshot().current.id == b.id
    assert output.starts == ["/cache/a.mp3", "/cache/b.mp3"]


@pytest.mark.asyncio
async def test_concurrent_skips_never_overlap(store, output, engine) -> None:
    for title in ("a", "b", "c", "d"):
        add_song(store, title, status="ready")
    await engine.play_next()

    await asyncio.gather(engine.skip(), engine.skip(), engine.tick())

    snap = store.snapshot()
    assert snap.playing_count() == 1
    assert len(output.starts) == len(set(output.starts))
    assert sum(1 for h in output.handles if not h.stopped) == 1


@pytest.mark.asyncio
async def test_pause_and_resume_are_idempotent(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()

    assert await engine.pause()
    assert not await engine.pause()
    assert store.snapshot().paused
    assert output.last.pause_calls == 1

    assert await engine.resume()
    assert not await engine.resume()
    assert not store.snapshot().paused
    assert output.last.resume_calls == 1


@pytest.mark.asyncio
async def test_pause_without_current_song_does_nothing(store, engine) -> None:
    assert not await engine.pause()
    assert not store.snapshot().paused


@pytest.mark.asyncio
async def test_start_failure_marks_song_and_moves_on(store, output, engine) -> None:
    a = add_song(store, "a", status="ready")
    add_song(store, "b", status="ready")
    output.errors["/cache/a.mp3"] = PlaybackDeviceError("cannot decode audio")

    assert await engine.play_next()

    snap = store.snapshot()
    assert snap.current.title == "b"
    assert snap.finished[0].id == a.id
    assert snap.finished[0].status == "failed"
    assert snap.finished[0].failure_kind == "playback_device"
    assert snap.device_error is None


@pytest.mark.asyncio
async def test_lost_device_stops_auto_advance(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    add_song(store, "b", status="ready")
    output.errors["/cache/a.mp3"] = PlaybackDeviceError("no output device", device_lost=True)

    assert not await engine.play_next()
    assert store.snapshot().device_error == "no output device"
    assert not engine.waiting

    await engine.tick()
    assert output.starts == ["/cache/a.mp3"]

    # pedido explícito tenta de novo e limpa o aviso
    assert await engine.play_next()
    snap = store.snapshot()
    assert snap.current.title == "b"
    assert snap.device_error is None


@pytest.mark.asyncio
async def test_mid_song_failure_advances(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    add_song(store, "b", status="ready")
    await engine.play_next()

    output.last.error = PlaybackDeviceError("audio stream aborted")
    await engine.tick()

    snap = store.snapshot()
    assert snap.finished[0].status == "failed"
    assert snap.current.title == "b"


@pytest.mark.asyncio
async def test_failed_songs_are_passed_over(store, output, engine) -> None:
    add_song(store, "broken", status="failed")
    add_song(store, "ok", status="ready")

    await engine.play_next()

    snap = store.snapshot()
    assert snap.current.title == "ok"
    assert [s.title for s in snap.pending] == ["broken"]


@pytest.mark.asyncio
async def test_progress_is_reported_and_never_goes_back(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()

    output.last.elapsed = 50.0
    await engine.tick()
    output.last.elapsed = 40.0
    await engine.tick()

    snap = store.snapshot()
    assert snap.position.elapsed_s == 50.0
    assert snap.position.total_s == 200.0
    assert snap.visualizer == (0.5, 0.5)


@pytest.mark.asyncio
async def test_visualizer_is_idle_while_paused(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()
    await engine.pause()

    await engine.tick()

    assert store.snapshot().visualizer == ()


@pytest.mark.asyncio
async def test_prefetch_triggers_once_near_the_end(store, output, pipeline, engine, settings) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()

    output.last.elapsed = 100.0
    await engine.tick()
    assert pipeline.prefetch_calls == []

    output.last.elapsed = 180.0
    await engine.tick()
    output.last.elapsed = 190.0
    await engine.tick()
    assert pipeline.prefetch_calls == [settings.prefetch_count]


@pytest.mark.asyncio
async def test_volume_is_clamped_and_applied(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()

    assert await engine.set_volume(150) == 100
    assert output.last.volume == 100
    assert await engine.nudge_volume(-5) == 95
    assert await engine.set_volume(-5) == 0
    assert store.snapshot().volume == 0


@pytest.mark.asyncio
async def test_new_song_starts_at_store_volume(store, output, engine) -> None:
    await engine.set_volume(30)
    add_song(store, "a", status="ready")

    await engine.play_next()

    assert output.last.volume == 30


@pytest.mark.asyncio
async def test_seek_is_clamped_to_the_song(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()

    assert await engine.seek(500) == 200.0
    assert await engine.seek_relative(-1000) == 0.0
    assert await engine.seek(42) == 42.0

    assert output.last.seeks == [200.0, 0.0, 42.0]
    assert store.snapshot().position.elapsed_s == 42.0


@pytest.mark.asyncio
async def test_seek_back_lowers_reported_progress(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()
    output.last.elapsed = 120.0
    await engine.tick()

    assert await engine.seek_relative(-10) == 110.0
    await engine.tick()

    assert store.snapshot().position.elapsed_s == 110.0


@pytest.mark.asyncio
async def test_seek_without_current_song_does_nothing(store, engine) -> None:
    assert await engine.seek(30) is None
    assert await engine.seek_relative(10) is None


@pytest.mark.asyncio
async def test_armed_song_waits_for_download_then_replaces_current(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()
    urgent = add_song(store, "urgent")
    engine.play_when_ready(urgent.id)

    await engine.tick()
    assert store.snapshot().current.title == "a"
    assert not output.handles[0].stopped

    mark_ready(store, urgent.id)
    await engine.tick()

    snap = store.snapshot()
    assert snap.current.id == urgent.id
    assert output.handles[0].stopped
    assert snap.finished[0].title == "a"
    assert snap.finished[0].status == "played"


@pytest.mark.asyncio
async def test_armed_song_that_fails_is_dropped(store, output, engine) -> None:
    add_song(store, "a", status="ready")
    await engine.play_next()
    urgent = add_song(store, "urgent")
    engine.play_when_ready(urgent.id)

    store.mutate(lambda s: s.find(urgent.id).fail("fetch_permanent", "gone"))
    await engine.tick()

    assert store.snapshot().current.title == "a"
    assert engine._preempt_id is None


@pytest.mark.asyncio
async def test_failed_song_memory_follows_the_queue(store, output, engine) -> None:
    broken = add_song(store, "broken", status="failed")
    await engine.play_next()
    assert broken.id in engine._logged_failed

    store.mutate(lambda s: s.pending.clear())
    await engine.play_next()

    assert engine._logged_failed == set()
