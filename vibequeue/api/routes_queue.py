from __future__ import annotations

from fastapi import APIRouter, Depends

from vibequeue.api.deps import get_dispatcher, get_store
from vibequeue.services.intent_dispatcher import IntentDispatcher
from vibequeue.state.store import StateStore

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("")
async def get_queue(store: StateStore = Depends(get_store)):
    return store.snapshot().model_dump(mode="json")


@router.delete("")
async def clear_queue(dispatcher: IntentDispatcher = Depends(get_dispatcher)):
    removed = dispatcher.clear_queue()
    return {"ok": True, "removed": removed}
