# vibequeue/models/operations.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from vibequeue.core.errors import InvalidOperationReference


@dataclass(frozen=True)
class ToolCall:
    """Chamada crua devolvida pelo modelo, antes de qualquer validação."""

    name: str
    arguments: Optional[Dict[str, Any]]


# =========================
# VOCABULÁRIO
# =========================

class PlayUrl(BaseModel):
    """Download and play a direct URL (e.g. a YouTube link). It replaces the current song as soon as it is downloaded."""

    name: Literal["play_url"] = "play_url"
    url: str = Field(description="Direct URL to play")


class SearchAndQueue(BaseModel):
    """Search and append the results to the end of the queue. Use for song names, artists or moods."""

    name: Literal["search_and_queue"] = "search_and_queue"
    query: str = Field(description="Search query")
    count: int = Field(default=3, description="Number of results to queue (1-5)")


class QueueNext(BaseModel):
    """Search and put the best result right after the song that is playing now."""

    name: Literal["queue_next"] = "queue_next"
    query: str = Field(description="Search query")


class Skip(BaseModel):
    """Skip the currently playing song."""

    name: Literal["skip"] = "skip"


class Pause(BaseModel):
    """Pause playback."""

    name: Literal["pause"] = "pause"


class Resume(BaseModel):
    """Resume playback."""

    name: Literal["resume"] = "resume"


class SetVolume(BaseModel):
    """Set the playback volume."""

    name: Literal["set_volume"] = "set_volume"
    level: int = Field(description="Volume level 0-100")


class ClearQueue(BaseModel):
    """Remove every song waiting in the queue. The current song keeps playing."""

    name: Literal["clear_queue"] = "clear_queue"


class ReplaceQueue(BaseModel):
    """Clear the queue and fill it with new searches. Use when the user wants a different vibe."""

    name: Literal["replace_queue"] = "replace_queue"
    queries: List[str] = Field(description="Search queries for the new queue")


OPERATION_MODELS = (
    PlayUrl,
    SearchAndQueue,
    QueueNext,
    Skip,
    Pause,
    Resume,
    SetVolume,
    ClearQueue,
    ReplaceQueue,
)

OPERATION_NAMES = tuple(m.model_fields["name"].default for m in OPERATION_MODELS)

Operation = Annotated[
    Union[
        PlayUrl,
        SearchAndQueue,
        QueueNext,
        Skip,
        Pause,
        Resume,
        SetVolume,
        ClearQueue,
        ReplaceQueue,
    ],
    Field(discriminator="name"),
]

_OPERATION_ADAPTER: TypeAdapter[Operation] = TypeAdapter(Operation)


def parse_operation(call: ToolCall) -> Operation:
    if call.name not in OPERATION_NAMES:
        raise InvalidOperationReference(f"unknown operation: {call.name}", operation=call.name)
    if not isinstance(call.arguments, dict):
        raise InvalidOperationReference("arguments are not a JSON object", operation=call.name)

    try:
        return _OPERATION_ADAPTER.validate_python({**call.arguments, "name": call.name})
    except ValidationError as e:
        raise InvalidOperationReference(
            f"invalid arguments: {e.error_count()} error(s)",
            operation=call.name,
        ) from e


def tool_definitions() -> List[Dict[str, Any]]:
    """
    Tools no formato de function-calling da OpenAI, geradas a partir dos models
    (o campo `name` é a tag, não um argumento).
    """
    tools: List[Dict[str, Any]] = []
    for model in OPERATION_MODELS:
        schema = model.model_json_schema()
        properties = {k: v for k, v in schema.get("properties", {}).items() if k != "name"}
        required = [r for r in schema.get("required", []) if r != "name"]

        parameters: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            parameters["required"] = required

        tools.append(
            {
                "type": "function",
                "function": {
                    "name": model.model_fields["name"].default,
                    "description": (model.__doc__ or "").strip(),
                    "parameters": parameters,
                },
            }
        )
    return tools
