"""Turn orchestrator: runs one user turn end-to-end.

Turn flow:
  1. Reject unknown chats, then claim the chat id (CHAT_BUSY if taken).
  2. Append the user message and open a ChatRun (status=running).
  3. Resolve the chat's LLM config and connection.
  4. Tool loop, at most max(1, max_tool_iterations) completion calls:
       a. build the prompt and resolve the tool catalog to definitions
       b. call the model
       c. no tool calls  -> append the assistant reply, complete the run, return
       d. tool calls     -> append the assistant tool-call message, run every
                            call in model order, append one tool message each
  5. Loop exhausted -> TOOL_ITERATION_LIMIT.

Once the run exists every failure marks it failed before propagating, and
anything that is not already an AppError is wrapped as INTERNAL_ERROR. The
chat id is released on every exit path.

A failed tool call becomes a tool message so the model can react to it.
Listing a server's tools is bounded by the same per-call timeout as a call.
Failing to list a server's tools, or failing the completion call, aborts the
turn instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from pydantic import BaseModel

from wind_tavern.errors import AppError, describe_cause
from wind_tavern.events import ChatEventBus, InFlightChats
from wind_tavern.llm import LLM, CompletionRequest, ToolDefinition
from wind_tavern.mcp_client import CancelToken, ToolConnectionManager
from wind_tavern.models import (
    ChatLLMConfig,
    ChatRun,
    LLMConnection,
    MCPServer,
    Message,
    TokenUsage,
    ToolCall,
    utc_now,
)
from wind_tavern.pipeline.prompt_builder import PromptBuilder
from wind_tavern.storage import Storage

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_-]")
_MAX_TOOL_NAME = 64


class ResolvedTool(BaseModel):
    definition: ToolDefinition
    original_name: str
    server: MCPServer


def build_tool_name(server_id: str, tool_name: str) -> str:
    """Function name offered to the model: mcp_<server>_<tool>, sanitized, <= 64 chars."""
    safe_server = _UNSAFE_NAME.sub("_", server_id)
    safe_tool = _UNSAFE_NAME.sub("_", tool_name)
    return f"mcp_{safe_server}_{safe_tool}"[:_MAX_TOOL_NAME]


def default_llm_connection(storage: Storage, preferred_id: str | None = None) -> LLMConnection | None:
    """The preferred connection if it exists, else the first enabled one, else the first one."""
    if preferred_id:
        preferred = storage.get_llm_connection(preferred_id)
        if preferred is not None:
            return preferred
    connections = storage.list_llm_connections()
    if not connections:
        return None
    return next((c for c in connections if c.is_enabled), connections[0])


def ensure_llm_config(storage: Storage, chat_id: str) -> ChatLLMConfig | None:
    """The chat's LLM config, provisioned from the default connection when missing."""
    existing = storage.get_chat_llm_config(chat_id)
    if existing is not None:
        return existing
    connection = default_llm_connection(storage)
    if connection is None:
        return None
    logger.info("provisioning LLM config for chat %s from connection %s", chat_id, connection.name)
    return storage.save_chat_llm_config(ChatLLMConfig(
        chat_id=chat_id,
        llm_connection_id=connection.id,
        model=connection.default_model,
    ))


class TurnOrchestrator:
    def __init__(
        self,
        *,
        storage: Storage,
        llm: LLM,
        prompt_builder: PromptBuilder,
        tools: ToolConnectionManager,
        events: ChatEventBus,
        in_flight: InFlightChats,
    ) -> None:
        self._storage = storage
        self._llm = llm
        self._prompt_builder = prompt_builder
        self._tools = tools
        self._events = events
        self._in_flight = in_flight

    def list_runs(self, chat_id: str) -> list[ChatRun]:
        if self._storage.get_chat(chat_id) is None:
            raise AppError("CHAT_NOT_FOUND", "Chat not found")
        return self._storage.list_runs(chat_id)

    async def submit_user_turn(self, chat_id: str, content: str) -> Message:
        """Execute one user turn and return the assistant reply."""
        if self._storage.get_chat(chat_id) is None:
            raise AppError("CHAT_NOT_FOUND", "Chat not found")
        if not self._in_flight.claim(chat_id):
            raise AppError("CHAT_BUSY", "Chat is busy")

        try:
            user_message = self._append(Message(chat_id=chat_id, role="user", content=content))
            run = self._save_run(ChatRun(chat_id=chat_id, user_message_id=user_message.id))
            logger.info("turn started chat=%s run=%s", chat_id, run.id)

            try:
                return await self._perform_turn(chat_id, run)
            except AppError as e:
                self._fail_run(run, e.message)
                raise
            except asyncio.CancelledError:
                self._fail_run(run, "Turn was cancelled")
                raise
            except Exception as e:
                logger.exception("turn crashed chat=%s run=%s", chat_id, run.id)
                self._fail_run(run, str(e) or type(e).__name__)
                raise AppError(
                    "INTERNAL_ERROR", str(e) or "Unexpected error", details=describe_cause(e)
                ) from e
        finally:
            self._in_flight.release(chat_id)

    # ------------------------------------------------------------------
    # Turn body
    # ------------------------------------------------------------------

    async def _perform_turn(self, chat_id: str, run: ChatRun) -> Message:
        cfg = ensure_llm_config(self._storage, chat_id)
        if cfg is None:
            raise AppError("CHAT_LLM_CONFIG_NOT_FOUND", "Chat LLM config not found")
        connection = self._storage.get_llm_connection(cfg.llm_connection_id)
        if connection is None:
            raise AppError("LLM_CONNECTION_NOT_FOUND", "LLM connection not found")
        if not connection.is_enabled:
            raise AppError("LLM_CONNECTION_DISABLED", "LLM connection is disabled")

        max_iterations = max(1, cfg.max_tool_iterations)
        usage = TokenUsage()

        for iteration in range(1, max_iterations + 1):
            prompt = self._prompt_builder.build_prompt_for_chat(chat_id)
            resolved = await self._resolve_tools(prompt.tools, cfg.tool_call_timeout_ms)

            response = await self._llm.complete(CompletionRequest(
                connection=connection,
                model=cfg.model or connection.default_model,
                messages=prompt.messages,
                tools=[t.definition for t in resolved.values()],
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
            ))
            usage.add(response.usage)
            completion_tokens = response.usage.completion if response.usage else None
            tool_calls = response.message.tool_calls or []

            if not tool_calls:
                reply = self._append(Message(
                    chat_id=chat_id,
                    role="assistant",
                    content=response.message.content,
                    token_count=completion_tokens,
                    run_id=run.id,
                ))
                self._complete_run(run, reply, usage)
                return reply

            self._append(Message(
                chat_id=chat_id,
                role="assistant",
                content=response.message.content,
                tool_calls=tool_calls,
                token_count=completion_tokens,
                run_id=run.id,
            ))
            logger.info(
                "tool iteration %d/%d chat=%s calls=%d",
                iteration, max_iterations, chat_id, len(tool_calls),
            )
            for call in tool_calls:
                await self._run_tool_call(chat_id, run, call, resolved, cfg.tool_call_timeout_ms)

        raise AppError(
            "TOOL_ITERATION_LIMIT", f"Exceeded max tool iterations ({max_iterations})"
        )

    async def _resolve_tools(self, servers: list[MCPServer], timeout_ms: int) -> dict[str, ResolvedTool]:
        resolved: dict[str, ResolvedTool] = {}
        for server in servers:
            token = CancelToken.after(timeout_ms / 1000)
            try:
                tools = await self._tools.list_tools(server, token)
            finally:
                token.dispose()
            for tool in tools:
                name = build_tool_name(server.id, tool.name)
                resolved[name] = ResolvedTool(
                    definition=ToolDefinition(
                        name=name,
                        description=tool.description or f"{tool.name} (server: {server.name})",
                        parameters=tool.parameters,
                    ),
                    original_name=tool.name,
                    server=server,
                )
        return resolved

    async def _run_tool_call(
        self,
        chat_id: str,
        run: ChatRun,
        call: ToolCall,
        resolved: dict[str, ResolvedTool],
        timeout_ms: int,
    ) -> None:
        target = resolved.get(call.name)
        tool_results: Any
        if target is None:
            logger.warning("model requested unknown tool %s chat=%s", call.name, chat_id)
            content = f"Tool {call.name} is not available."
            tool_results = {"error": "UNKNOWN_TOOL"}
        else:
            token = CancelToken.after(timeout_ms / 1000)
            try:
                result = await self._tools.call_tool(
                    target.server, target.original_name, call.arguments, token
                )
            except AppError as e:
                logger.warning("tool %s failed chat=%s: %s", call.name, chat_id, e.message)
                content = f"Tool {call.name} failed: {e.message}"
                tool_results = {"error": e.message}
            else:
                if result.is_error:
                    content = f"Tool {call.name} failed: {result.content}"
                else:
                    content = result.content
                tool_results = result.raw
            finally:
                token.dispose()

        self._append(Message(
            chat_id=chat_id,
            role="tool",
            content=content,
            tool_call_id=call.id,
            tool_results=tool_results,
            run_id=run.id,
        ))

    # ------------------------------------------------------------------
    # Records and notifications
    # ------------------------------------------------------------------

    def _append(self, message: Message) -> Message:
        stored = self._storage.append_message(message)
        self._events.publish_message(stored.chat_id, stored)
        return stored

    def _save_run(self, run: ChatRun) -> ChatRun:
        self._storage.save_run(run)
        self._events.publish_run(run.chat_id, run)
        return run

    def _complete_run(self, run: ChatRun, reply: Message, usage: TokenUsage) -> None:
        self._save_run(run.model_copy(update={
            "status": "completed",
            "assistant_message_id": reply.id,
            "finished_at": utc_now(),
            "token_usage": None if usage.is_empty else usage,
            "error": None,
        }))
        logger.info("turn completed chat=%s run=%s", run.chat_id, run.id)

    def _fail_run(self, run: ChatRun, error: str) -> None:
        try:
            self._save_run(run.model_copy(update={
                "status": "failed",
                "finished_at": utc_now(),
                "error": error,
            }))
        except Exception:
            logger.exception("could not mark run %s failed", run.id)
        logger.warning("turn failed chat=%s run=%s: %s", run.chat_id, run.id, error)
