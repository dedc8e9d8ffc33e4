from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog

from .errors import ModelConfigurationError, ModelServiceError

logger = structlog.get_logger(__name__)

ToolRunner = Callable[[str, str], Awaitable[dict[str, Any]]]

PROBE_MESSAGES = [{"role": "user", "content": "Say hello"}]


@dataclass
class ToolBinding:
    specs: list[dict[str, Any]]
    run: ToolRunner


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _accumulate_tool_calls(pending: dict[Any, dict[str, str]], deltas: list[dict[str, Any]]) -> None:
    for delta in deltas:
        key = delta.get("index")
        if key is None:
            key = delta.get("id") or len(pending)
        entry = pending.setdefault(key, {"id": "", "name": "", "arguments": ""})
        if delta.get("id"):
            entry["id"] = delta["id"]
        function = delta.get("function") or {}
        if function.get("name"):
            entry["name"] = function["name"]
        if function.get("arguments"):
            entry["arguments"] += function["arguments"]


class ChatModelClient:
    """OpenAI-compatible chat-completions client with a tool-calling loop.

    ``stream_text`` yields text deltas as they arrive. When a round ends in
    tool calls, each call is run through the bound ``ToolBinding`` and the
    next round is streamed, up to ``max_tool_steps`` rounds. Cancelling the
    consumer closes the HTTP stream; a tool call already running is shielded
    and finishes on its own.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
        max_tool_steps: int = 5,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_tool_steps = max(1, max_tool_steps)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ModelConfigurationError("The AI service is not configured.")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def ensure_configured(self) -> None:
        self._headers()

    def _payload(
        self,
        messages: list[dict[str, Any]],
        tools: ToolBinding | None,
        *,
        stream: bool,
        max_output_tokens: int | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_output_tokens or self.max_output_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "stream": stream,
        }
        if tools and tools.specs:
            payload["tools"] = tools.specs
            payload["tool_choice"] = "auto"
        return payload

    async def _run_tool_calls(
        self,
        conversation: list[dict[str, Any]],
        calls: list[dict[str, str]],
        tools: ToolBinding,
        step: int,
    ) -> None:
        for position, call in enumerate(calls):
            if not call["id"]:
                call["id"] = f"call_{step}_{position}"
        conversation.append(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
                    }
                    for call in calls
                ],
            }
        )
        for call in calls:
            logger.info("model_tool_call", tool=call["name"], step=step)
            result = await asyncio.shield(tools.run(call["name"], call["arguments"]))
            conversation.append(
                {
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "content": json.dumps(result, default=str),
                }
            )

    async def stream_text(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolBinding | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        headers = self._headers()
        conversation = list(messages)
        async with self._client() as client:
            for step in range(1, self.max_tool_steps + 1):
                payload = self._payload(
                    conversation,
                    tools,
                    stream=True,
                    max_output_tokens=max_output_tokens,
                    temperature=temperature,
                )
                pending: dict[Any, dict[str, str]] = {}
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", headers=headers, json=payload
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise ModelServiceError(_provider_error_message(response))
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if not data:
                            continue
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError as exc:
                            raise ModelServiceError("Malformed chunk in model stream.") from exc
                        if isinstance(chunk, dict) and chunk.get("error"):
                            error = chunk["error"]
                            message = error.get("message") if isinstance(error, dict) else str(error)
                            raise ModelServiceError(message or "Model stream reported an error.")
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            if delta.get("tool_calls"):
                                _accumulate_tool_calls(pending, delta["tool_calls"])
                            content = delta.get("content")
                            if isinstance(content, str) and content:
                                yield content

                if not pending or tools is None:
                    return
                if step == self.max_tool_steps:
                    logger.warning("model_tool_steps_exhausted", steps=step)
                    return
                await self._run_tool_calls(conversation, list(pending.values()), tools, step)

    async def complete_text(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolBinding | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        headers = self._headers()
        conversation = list(messages)
        text = ""
        async with self._client() as client:
            for step in range(1, self.max_tool_steps + 1):
                payload = self._payload(
                    conversation,
                    tools,
                    stream=False,
                    max_output_tokens=max_output_tokens,
                    temperature=temperature,
                )
                response = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
                if response.status_code >= 400:
                    raise ModelServiceError(_provider_error_message(response))
                try:
                    choices = response.json().get("choices") or []
                except ValueError as exc:
                    raise ModelServiceError("Malformed model response.") from exc
                message = choices[0].get("message", {}) if choices else {}
                text += _coerce_completion_text(message)

                pending: dict[Any, dict[str, str]] = {}
                _accumulate_tool_calls(pending, message.get("tool_calls") or [])
                if not pending or tools is None or step == self.max_tool_steps:
                    return text
                await self._run_tool_calls(conversation, list(pending.values()), tools, step)
        return text

    async def probe(self) -> str:
        return await self.complete_text(PROBE_MESSAGES, max_output_tokens=50)
