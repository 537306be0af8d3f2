# vibequeue/api/routes_player.py
from fastapi import APIRouter, Depends, HTTPException

from vibequeue.api.deps import get_engine, get_store
from vibequeue.services.playback_engine import PlaybackEngine
from vibequeue.state.store import StateStore

router = APIRouter(prefix="/player", tags=["player"])

VOLUME_STEP = 5


def _require_current(store: StateStore) -> None:
    if store.snapshot().current is None:
        raise HTTPException(status_code=409, detail="Nothing is playing")


# =====================================================
# PAUSE / RESUME
# =====================================================
@router.post("/pause")
async def pause(
    engine: PlaybackEngine = Depends(get_engine),
    store: StateStore = Depends(get_store),
):
    _require_current(store)
    changed = await engine.pause()
    return {"ok": True, "changed": changed}


@router.post("/resume")
async def resume(
    engine: PlaybackEngine = Depends(get_engine),
    store: StateStore = Depends(get_store),
):
    _require_current(store)
    changed = await engine.resume()
    return {"ok": True, "changed": changed}


# =====================================================
# SKIP / PLAY NEXT
# 👉 skip sem música pronta deixa o engine esperando
# =====================================================
@router.post("/skip")
async def skip(engine: PlaybackEngine = Depends(get_engine)):
    started = await engine.skip()
    return {"ok": True, "started": started}


@router.post("/play-next")
async def play_next(engine: PlaybackEngine = Depends(get_engine)):
    started = await engine.play_next()
    return {"ok": True, "started": started}


# =====================================================
# VOLUME
# =====================================================
@router.post("/volume/up")
async def volume_up(engine: PlaybackEngine = Depends(get_engine)):
    level = await engine.nudge_volume(VOLUME_STEP)
    return {"ok": True, "volume": level}


@router.post("/volume/down")
async def volume_down(engine: PlaybackEngine = Depends(get_engine)):
    level = await engine.nudge_volume(-VOLUME_STEP)
    return {"ok": True, "volume": level}


@router.post("/volume/{level}")
async def set_volume(level: int, engine: PlaybackEngine = Depends(get_engine)):
    applied = await engine.set_volume(level)
    return {"ok": True, "volume": applied}


# =====================================================
# SEEK
# =====================================================
@router.post("/seek/{seconds}")
async def seek(
    seconds: float,
    engine: PlaybackEngine = Depends(get_engine),
    store: StateStore = Depends(get_store),
):
    _require_current(store)
    position = await engine.seek(seconds)
    return {"ok": True, "position": position}
