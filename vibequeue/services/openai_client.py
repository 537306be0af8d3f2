from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from vibequeue.core.config import Settings, get_settings
from vibequeue.core.errors import DispatchTimeout, DispatchTransportError
from vibequeue.models.operations import ToolCall, tool_definitions
from vibequeue.services.capabilities import ToolPlanner

log = logging.getLogger("openai.client")


_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)

SYSTEM_PROMPT = (
    "You are the brain of a music queue player. You control the player only "
    "through tools; never answer with plain text.\n"
    "You receive the current player state (now playing, queue, volume) with "
    "every message.\n"
    "- For direct links use play_url.\n"
    "- For songs or artists use search_and_queue with specific queries.\n"
    "- For 'play X next' use queue_next.\n"
    "- For a mood or vibe, translate it into several specific search queries.\n"
    "- When the user wants a different vibe, use replace_queue with 4-6 "
    "diverse but fitting queries.\n"
    "- Prefer queries with artist and song names, or precise descriptions like "
    "'chill lo-fi beats', over vague words."
)


class OpenAIToolPlanner(ToolPlanner):
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if not self.settings.openai_api_key:
            log.warning("openai_api_key_missing")
        self._headers = {
            "Authorization": f"Bearer {self.settings.openai_api_key}",
            "Content-Type": "application/json",
        }
        # testes injetam httpx.MockTransport
        self._transport = transport

    async def plan(self, context: Dict[str, Any]) -> List[ToolCall]:
        """
        Manda o contexto para o modelo e devolve as tool calls na ordem recebida.
        """
        payload = {
            "model": self.settings.openai_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(context, ensure_ascii=False)},
            ],
            "tools": tool_definitions(),
            "tool_choice": "required",
            "temperature": 0.2,
        }

        log.info(
            "openai_request_start",
            extra={"model": self.settings.openai_model, "input": str(context.get("input", ""))[:120]},
        )

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.openai_base_url,
                timeout=self.settings.dispatch_timeout_s,
                transport=self._transport,
            ) as client:
                r = await client.post("/chat/completions", headers=self._headers, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.TimeoutException as e:
            raise DispatchTimeout(f"language model timed out: {e.__class__.__name__}") from e
        except httpx.HTTPStatusError as e:
            body = e.response.text[:300]
            log.error("openai_http_error", extra={"status": e.response.status_code, "body": body})
            raise DispatchTransportError(f"language model returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DispatchTransportError(f"language model unreachable: {e}") from e
        except ValueError as e:
            raise DispatchTransportError("language model returned invalid JSON") from e

        calls = self._parse_tool_calls(data)
        log.info("openai_response_ok", extra={"tools": [c.name for c in calls]})
        return calls

    def _parse_tool_calls(self, data: Dict[str, Any]) -> List[ToolCall]:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise DispatchTransportError("language model response has no message") from e
        if not isinstance(message, dict):
            raise DispatchTransportError("language model response has no message")

        content = message.get("content")
        if content:
            preview = str(content)[:300].replace("\n", "\\n")
            log.info("openai_text_response", extra={"preview": preview})

        calls: List[ToolCall] = []
        raw_calls = message.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise DispatchTransportError("language model returned malformed tool_calls")

        for raw in raw_calls:
            fn = raw.get("function") if isinstance(raw, dict) else None
            if not isinstance(fn, dict):
                raise DispatchTransportError("language model returned a malformed tool call")
            name = fn.get("name") or ""
            calls.append(ToolCall(name=name, arguments=self._parse_arguments(fn.get("arguments"))))

        if not calls:
            log.warning("openai_no_tool_calls")
        return calls

    def _parse_arguments(self, raw: Any) -> Optional[Dict[str, Any]]:
        if isinstance(raw, dict):
            return raw

        content = (raw or "").strip() if isinstance(raw, str) else ""
        if not content:
            return {}

        # se já é JSON puro
        try:
            parsed = json.loads(content)
        except ValueError:
            # tenta extrair um {...}
            m = _JSON_RE.search(content)
            if not m:
                return None
            try:
                parsed = json.loads(m.group(0))
            except ValueError:
                return None

        return parsed if isinstance(parsed, dict) else None
