from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from vibequeue.api.deps import get_dispatcher
from vibequeue.services.intent_dispatcher import IntentDispatcher

router = APIRouter(prefix="/intent", tags=["intent"])


class IntentRequest(BaseModel):
    text: str


@router.post("", status_code=202)
async def submit_intent(
    body: IntentRequest,
    dispatcher: IntentDispatcher = Depends(get_dispatcher),
):
    if not dispatcher.submit(body.text):
        raise HTTPException(status_code=400, detail="Empty input")
    return {"ok": True, "accepted": True}
