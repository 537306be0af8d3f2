from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vibequeue.core.config import settings
from vibequeue.core.logging import setup_logging

from vibequeue.state.store import StateStore

from vibequeue.audio.output import SoundDeviceOutput
from vibequeue.services.fetch_pipeline import FetchPipeline
from vibequeue.services.intent_dispatcher import IntentDispatcher
from vibequeue.services.openai_client import OpenAIToolPlanner
from vibequeue.services.playback_engine import PlaybackEngine
from vibequeue.services.ytdlp import YtDlpFetcher

from vibequeue.ws.manager import WebSocketManager
from vibequeue.ws.broadcaster import SnapshotBroadcaster

from vibequeue.api.routes_ws import router as ws_router
from vibequeue.api.routes_queue import router as queue_router
from vibequeue.api.routes_player import router as player_router
from vibequeue.api.routes_intent import router as intent_router

log = logging.getLogger("app")


def include_routers(app: FastAPI) -> None:
    app.include_router(ws_router)
    app.include_router(queue_router)
    app.include_router(player_router)
    app.include_router(intent_router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_file)
    log.info("app_starting", extra={"env": settings.app_env})

    os.makedirs(settings.cache_dir, exist_ok=True)

    store = StateStore(
        default_volume=settings.default_volume,
        visualizer_capacity=settings.visualizer_capacity,
        finished_capacity=settings.finished_capacity,
    )
    app.state.store = store

    # FETCH
    fetcher = YtDlpFetcher(settings)
    app.state.pipeline = FetchPipeline(store, fetcher, settings)

    # PLAYBACK
    app.state.engine = PlaybackEngine(
        store,
        SoundDeviceOutput(settings.audio_device),
        app.state.pipeline,
        settings,
    )

    # DISPATCHER
    app.state.dispatcher = IntentDispatcher(
        store,
        OpenAIToolPlanner(settings),
        fetcher,
        app.state.engine,
        app.state.pipeline,
        settings,
    )

    # WEBSOCKET
    app.state.ws_manager = WebSocketManager()
    app.state.broadcaster = SnapshotBroadcaster(store, app.state.ws_manager, settings.ui_tick_s)

    components = [
        ("pipeline", app.state.pipeline),
        ("engine", app.state.engine),
        ("dispatcher", app.state.dispatcher),
        ("broadcaster", app.state.broadcaster),
    ]
    for name, component in components:
        await component.start()
        log.info("component_started", extra={"component": name})

    try:
        yield
    finally:
        for name, component in reversed(components):
            try:
                await component.stop()
            except Exception:
                log.exception("error_stopping_component", extra={"component": name})


app = FastAPI(
    title="vibequeue",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

include_routers(app)


@app.get("/health")
def health():
    return {
        "ok": True,
        "app": "vibequeue",
        "env": settings.app_env,
    }
