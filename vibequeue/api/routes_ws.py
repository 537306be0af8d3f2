from fastapi import APIRouter, WebSocket, Depends
import logging

from vibequeue.api.deps import (
    get_dispatcher_ws,
    get_engine_ws,
    get_store_ws,
    get_ws_manager_ws,
)
from vibequeue.services.intent_dispatcher import IntentDispatcher
from vibequeue.services.playback_engine import PlaybackEngine
from vibequeue.ws.broadcaster import snapshot_event

log = logging.getLogger("ws")

router = APIRouter()

VOLUME_STEP = 5
SEEK_STEP_S = 10.0


async def handle_key(engine: PlaybackEngine, key: str) -> bool:
    """Teclas do renderer -> controles do engine (1:1). False se a tecla não tem ação."""
    if key in ("p", " "):
        await engine.toggle_pause()
    elif key == "n":
        await engine.skip()
    elif key in ("+", "="):
        await engine.nudge_volume(VOLUME_STEP)
    elif key == "-":
        await engine.nudge_volume(-VOLUME_STEP)
    elif key == "f":
        await engine.seek_relative(SEEK_STEP_S)
    elif key == "b":
        await engine.seek_relative(-SEEK_STEP_S)
    else:
        return False
    return True


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    ws_manager = Depends(get_ws_manager_ws),
    store = Depends(get_store_ws),
    engine: PlaybackEngine = Depends(get_engine_ws),
    dispatcher: IntentDispatcher = Depends(get_dispatcher_ws),
):
    await ws_manager.connect(websocket)
    log.info("ws_connected_renderer")

    try:
        # estado inicial sem esperar o próximo tick
        await websocket.send_json(snapshot_event(store))

        while True:
            msg = await websocket.receive_json()
            if not isinstance(msg, dict):
                log.debug("ws_non_object_msg", extra={"payload": str(msg)[:120]})
                continue

            msg_type = msg.get("type")

            if msg_type == "input":
                if not dispatcher.submit(str(msg.get("text") or "")):
                    log.debug("ws_empty_input")
                continue

            if msg_type == "key":
                key = str(msg.get("key") or "")
                if not await handle_key(engine, key):
                    log.debug("ws_unmapped_key", extra={"key": key})
                continue

            log.debug("ws_unknown_msg", extra={"payload": msg})

    except Exception as e:
        log.warning("ws_connection_closed", extra={"error": str(e)})
    finally:
        await ws_manager.disconnect(websocket)
        log.info("ws_disconnected_renderer")
