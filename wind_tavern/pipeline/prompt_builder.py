"""Prompt assembly for one chat.

Output order:
  1. character persona (system), if non-blank after substitution
  2. user persona prompt (system), if non-blank after substitution
  3. enabled prompt stack entries by sort order:
       static_text  substituted content under the entry role
       lorebook     keyword-triggered lore under the entry role
       history      the history window (at most once)
       mcp_tools    no message; only affects the tool catalog
  4. the history window, when no enabled history entry placed it earlier

The tool catalog is the list of enabled tool servers attached to the
character. A stack with mcp_tools entries, all disabled, suppresses it.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from wind_tavern import config
from wind_tavern.errors import AppError
from wind_tavern.llm import LLMMessage
from wind_tavern.models import (
    ChatHistoryConfig,
    MCPServer,
    Message,
    Preset,
    PromptPreset,
    PromptRole,
)
from wind_tavern.pipeline.lore import format_lorebook, match_lorebook_entries, scan_history_for_lore
from wind_tavern.prompts import TemplateContext, render_template
from wind_tavern.storage import Storage
from wind_tavern.tokens import TokenCounter

logger = logging.getLogger(__name__)


class PromptBuildResult(BaseModel):
    messages: list[LLMMessage] = Field(default_factory=list)
    tools: list[MCPServer] = Field(default_factory=list)


class PromptBuilder:
    def __init__(self, storage: Storage, counter: TokenCounter) -> None:
        self._storage = storage
        self._counter = counter

    def build_prompt_for_chat(self, chat_id: str) -> PromptBuildResult:
        storage = self._storage
        chat = storage.get_chat(chat_id)
        if chat is None:
            raise AppError("CHAT_NOT_FOUND", "Chat not found")
        character = storage.get_character(chat.character_id)
        if character is None:
            raise AppError("CHARACTER_NOT_FOUND", "Character not found")
        persona = storage.get_user_persona(chat.user_persona_id)
        if persona is None:
            raise AppError("USER_PERSONA_NOT_FOUND", "User persona not found")

        ctx = TemplateContext(character=character.name, user=persona.name)
        history_cfg = storage.get_chat_history_config(chat_id) or ChatHistoryConfig(chat_id=chat_id)
        history = storage.list_messages(chat_id)
        stack = storage.list_prompt_presets(character.id)

        messages: list[LLMMessage] = []
        self._append_system(messages, character.persona, ctx)
        self._append_system(messages, persona.prompt, ctx)

        history_done = False
        for entry in stack:
            if not entry.is_enabled:
                continue
            preset = storage.get_preset(entry.preset_id)
            if preset is None:
                logger.warning("prompt stack entry %s references missing preset %s", entry.id, entry.preset_id)
                continue

            if preset.kind == "static_text":
                text = render_template(preset.content or "", ctx)
                if text.strip():
                    messages.append(LLMMessage(role=entry.role, content=text))
            elif preset.kind == "lorebook":
                lore = self._lore_message(preset, entry.role, history, history_cfg, ctx)
                if lore is not None:
                    messages.append(lore)
            elif preset.kind == "history":
                if not history_done:
                    messages.extend(self._history_window(history, history_cfg))
                    history_done = True

        if not history_done:
            messages.extend(self._history_window(history, history_cfg))

        tools = self._tool_catalog(character.id, stack)
        logger.debug(
            "prompt built chat=%s messages=%d tool_servers=%d", chat_id, len(messages), len(tools)
        )
        return PromptBuildResult(messages=messages, tools=tools)

    # ------------------------------------------------------------------

    @staticmethod
    def _append_system(messages: list[LLMMessage], text: str, ctx: TemplateContext) -> None:
        rendered = render_template(text or "", ctx).strip()
        if rendered:
            messages.append(LLMMessage(role="system", content=rendered))

    def _lore_message(
        self,
        preset: Preset,
        role: PromptRole,
        history: list[Message],
        history_cfg: ChatHistoryConfig,
        ctx: TemplateContext,
    ) -> LLMMessage | None:
        lorebook_id = preset.lorebook_id
        lorebook = self._storage.get_lorebook(lorebook_id) if lorebook_id else None
        if lorebook is None:
            logger.warning("lorebook preset %s references missing lorebook %s", preset.id, lorebook_id)
            return None

        scanned = scan_history_for_lore(history, self._counter, history_cfg.lore_scan_token_limit)
        entries = match_lorebook_entries(
            self._storage.list_lorebook_entries(lorebook.id), scanned, config.MAX_LORE_ENTRIES
        )
        text = format_lorebook([render_template(e.content, ctx) for e in entries])
        if not text:
            return None
        return LLMMessage(role=role, content=text)

    @staticmethod
    def _history_window(history: list[Message], cfg: ChatHistoryConfig) -> list[LLMMessage]:
        eligible = [m for m in history if m.state == "ok"]
        if cfg.history_enabled:
            size = max(0, cfg.message_limit)
        else:
            size = 1
        start = _exchange_start(eligible, max(0, len(eligible) - size)) if size else len(eligible)
        window = eligible[start:]
        return [
            LLMMessage(
                role=m.role,
                content=m.content,
                tool_calls=m.tool_calls or None,
                tool_call_id=m.tool_call_id,
            )
            for m in window
        ]

    def _tool_catalog(self, character_id: str, stack: list[PromptPreset]) -> list[MCPServer]:
        tool_entries = []
        for entry in stack:
            preset = self._storage.get_preset(entry.preset_id)
            if preset is not None and preset.kind == "mcp_tools":
                tool_entries.append(entry)
        if tool_entries and not any(e.is_enabled for e in tool_entries):
            return []

        servers: list[MCPServer] = []
        for link in self._storage.list_character_mcp_servers(character_id):
            server = self._storage.get_mcp_server(link.mcp_server_id)
            if server is not None and server.is_enabled:
                servers.append(server)
        return servers


def _exchange_start(messages: list[Message], start: int) -> int:
    """Index the history window should open at.

    A window must not open on tool replies: it is widened back to the assistant
    message that made the calls, or, when that message is gone, the orphaned
    replies are skipped.
    """
    if start >= len(messages) or messages[start].role != "tool":
        return start
    call_id = messages[start].tool_call_id
    for i in range(start - 1, -1, -1):
        m = messages[i]
        if m.role == "assistant" and m.tool_calls and any(c.id == call_id for c in m.tool_calls):
            return i
        if m.role != "tool":
            break
    while start < len(messages) and messages[start].role == "tool":
        start += 1
    return start
