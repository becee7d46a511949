"""LLM client: HTTP connection to a chat-completion backend.

The turn orchestrator depends only on the protocol:

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

Two implementations are provided:

    HttpLLM   real HTTP client for OpenAI-compatible /v1/chat/completions
              backends (OpenAI, llama.cpp server, vLLM, LM Studio, ...),
              including function tools.
    EchoLLM   replies with the last user message. Useful for smoke-testing
              the turn wiring without a running model.

Production code builds an HttpLLM and hands it to the orchestrator.
Tests use scripted stubs instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from wind_tavern.errors import LLMError, describe_cause
from wind_tavern.models import LLMConnection, MessageRole, TokenUsage, ToolCall, new_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------

class LLMMessage(BaseModel):
    role: MessageRole
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


class ToolDefinition(BaseModel):
    """A function tool as offered to the model."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


class CompletionRequest(BaseModel):
    connection: LLMConnection
    model: str
    messages: list[LLMMessage]
    tools: list[ToolDefinition] = Field(default_factory=list)
    temperature: float | None = None
    max_output_tokens: int | None = None


class CompletionResponse(BaseModel):
    message: LLMMessage
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for OpenAI-compatible chat completions.

    POST {base_url}/v1/chat/completions
      {"model", "messages", "tools"?, "temperature"?, "max_tokens"?}
    Response: {"choices": [{"message": {...}}], "usage": {...}}

    A base_url that already ends in /v1 is used as-is.

    Args:
        timeout: HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(self, timeout: float = 120.0) -> None:
        self._timeout = timeout

    def _url(self, connection: LLMConnection) -> str:
        base = connection.base_url.rstrip("/")
        if base.endswith("/v1"):
            return f"{base}/chat/completions"
        return f"{base}/v1/chat/completions"

    def _headers(self, connection: LLMConnection) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if connection.api_key:
            headers["Authorization"] = f"Bearer {connection.api_key}"
        return headers

    def _build_body(self, request: CompletionRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model or request.connection.default_model,
            "messages": [_wire_message(m) for m in request.messages],
        }
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters or {"type": "object", "properties": {}},
                    },
                }
                for tool in request.tools
            ]
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_output_tokens is not None:
            body["max_tokens"] = request.max_output_tokens
        return body

    def _parse_response(self, data: Any) -> CompletionResponse:
        if not isinstance(data, dict):
            raise LLMError(
                "Unexpected response format from chat completion backend",
                details={"type": type(data).__name__, "message": "response body is not a JSON object"},
            )
        choices = data.get("choices")
        if (
            not isinstance(choices, list)
            or not choices
            or not isinstance(choices[0], dict)
            or not isinstance(choices[0].get("message"), dict)
        ):
            raise LLMError("Unexpected response format from chat completion backend")
        raw = choices[0]["message"]
        content = raw.get("content") or ""
        tool_calls = _parse_tool_calls(raw.get("tool_calls"))
        if not content and not tool_calls:
            raise LLMError("Chat completion backend returned an empty message")

        usage = None
        if isinstance(data.get("usage"), dict):
            u = data["usage"]
            usage = TokenUsage(
                prompt=u.get("prompt_tokens") or 0,
                completion=u.get("completion_tokens") or 0,
                total=u.get("total_tokens") or 0,
            )
        return CompletionResponse(
            message=LLMMessage(role="assistant", content=content, tool_calls=tool_calls),
            usage=usage,
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        connection = request.connection
        if connection.provider != "openai_compatible":
            raise LLMError(f"Unsupported LLM provider: {connection.provider}")

        url = self._url(connection)
        body = self._build_body(request)
        logger.debug(
            "llm call url=%s model=%s messages=%d tools=%d",
            url, body["model"], len(request.messages), len(request.tools),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers(connection))
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(
                f"Cannot connect to LLM backend at {connection.base_url}",
                details=describe_cause(e),
            ) from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}",
                details=describe_cause(e),
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(
                f"LLM backend timed out after {self._timeout}s",
                details=describe_cause(e),
            ) from e
        except httpx.HTTPError as e:
            raise LLMError(
                f"LLM request to {connection.base_url} failed: {type(e).__name__}",
                details=describe_cause(e),
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned invalid JSON", details=describe_cause(e)) from e

        result = self._parse_response(data)
        logger.debug(
            "llm response len=%d tool_calls=%d",
            len(result.message.content), len(result.message.tool_calls or []),
        )
        return result


def _wire_message(message: LLMMessage) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "tool",
            "content": message.content,
            "tool_call_id": message.tool_call_id,
        }
    if message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": call.arguments
                        if isinstance(call.arguments, str)
                        else json.dumps(call.arguments or {}),
                    },
                }
                for call in message.tool_calls
            ],
        }
    return {"role": message.role, "content": message.content}


def _parse_tool_calls(raw: Any) -> list[ToolCall] | None:
    if not isinstance(raw, list):
        return None
    calls: list[ToolCall] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        function = item.get("function")
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            continue
        calls.append(ToolCall(
            id=item.get("id") or new_id(),
            name=name,
            arguments=_parse_arguments(function.get("arguments")),
        ))
    return calls or None


def _parse_arguments(args: Any) -> Any:
    if not isinstance(args, str):
        return args
    try:
        return json.loads(args)
    except json.JSONDecodeError:
        return args


# ---------------------------------------------------------------------------
# EchoLLM: repeats the user; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Replies with the most recent user message. No network calls, no tools."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        last_user = next(
            (m.content for m in reversed(request.messages) if m.role == "user"), ""
        )
        logger.debug("EchoLLM messages=%d", len(request.messages))
        return CompletionResponse(message=LLMMessage(role="assistant", content=last_user or "..."))
