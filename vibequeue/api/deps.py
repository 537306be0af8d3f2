from __future__ import annotations

from fastapi import HTTPException, Request, WebSocket

from vibequeue.services.intent_dispatcher import IntentDispatcher
from vibequeue.services.playback_engine import PlaybackEngine
from vibequeue.state.store import StateStore
from vibequeue.ws.manager import WebSocketManager


def _require(obj, name: str):
    if obj is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    return obj


# =========================
# CORE STATE
# =========================

def get_store(request: Request) -> StateStore:
    return _require(getattr(request.app.state, "store", None), "store")


# =========================
# PLAYBACK ENGINE
# =========================

def get_engine(request: Request) -> PlaybackEngine:
    return _require(getattr(request.app.state, "engine", None), "engine")


# =========================
# DISPATCHER
# =========================

def get_dispatcher(request: Request) -> IntentDispatcher:
    return _require(getattr(request.app.state, "dispatcher", None), "dispatcher")


# =========================
# WEBSOCKET
# =========================

def get_ws_manager_ws(websocket: WebSocket) -> WebSocketManager:
    return websocket.app.state.ws_manager


def get_store_ws(websocket: WebSocket) -> StateStore:
    return websocket.app.state.store


def get_engine_ws(websocket: WebSocket) -> PlaybackEngine:
    return websocket.app.state.engine


def get_dispatcher_ws(websocket: WebSocket) -> IntentDispatcher:
    return websocket.app.state.dispatcher
