"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON. Lookups return None when a record is
missing; storage never raises for "not found".

Directory layout:

    {base}/
      characters.json             <- list of Character
      user_personas.json          <- list of UserPersona
      chats.json                  <- list of Chat
      chat_llm_configs.json       <- list of ChatLLMConfig, keyed by chat_id
      chat_history_configs.json   <- list of ChatHistoryConfig, keyed by chat_id
      presets.json                <- list of Preset
      prompt_presets.json         <- list of PromptPreset (all characters)
      lorebooks.json              <- list of Lorebook
      lorebook_entries.json       <- list of LorebookEntry (all lorebooks)
      mcp_servers.json            <- list of MCPServer
      character_mcp_servers.json  <- list of CharacterMCPServer
      llm_connections.json        <- list of LLMConnection
      messages/{chat_id}.json     <- append-only Message stream
      runs/{chat_id}.json         <- ChatRun records

Every read-modify-write runs under one re-entrant lock and never awaits, so
turns for unrelated chats can share a Storage safely.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from wind_tavern.models import (
    Character,
    CharacterMCPServer,
    Chat,
    ChatHistoryConfig,
    ChatLLMConfig,
    ChatRun,
    LLMConnection,
    Lorebook,
    LorebookEntry,
    MCPServer,
    Message,
    Preset,
    PresetKind,
    PromptPreset,
    UserPersona,
    utc_now,
)

M = TypeVar("M", bound=BaseModel)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)
        (self._base / "messages").mkdir(exist_ok=True)
        (self._base / "runs").mkdir(exist_ok=True)
        self._lock = threading.RLock()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _load(self, path: Path, model: type[M]) -> list[M]:
        if not path.exists():
            return []
        return [model.model_validate(item) for item in self._read_json(path)]

    def _dump(self, path: Path, items: list[BaseModel]) -> None:
        self._write_json(path, [item.model_dump(mode="json") for item in items])

    def _upsert(self, path: Path, record: M, key: str = "id") -> M:
        """Replace the record with the same key, or append it."""
        with self._lock:
            items = self._load(path, type(record))
            for i, existing in enumerate(items):
                if getattr(existing, key) == getattr(record, key):
                    items[i] = record
                    break
            else:
                items.append(record)
            self._dump(path, items)
        return record

    def _find(self, path: Path, model: type[M], value: str, key: str = "id") -> M | None:
        for item in self._load(path, model):
            if getattr(item, key) == value:
                return item
        return None

    def _remove(self, path: Path, model: type[M], value: str, key: str = "id") -> bool:
        with self._lock:
            items = self._load(path, model)
            kept = [item for item in items if getattr(item, key) != value]
            if len(kept) == len(items):
                return False
            self._dump(path, kept)
        return True

    # ------------------------------------------------------------------
    # Characters and user personas
    # ------------------------------------------------------------------

    def save_character(self, character: Character) -> Character:
        return self._upsert(self._base / "characters.json", character)

    def get_character(self, character_id: str) -> Character | None:
        return self._find(self._base / "characters.json", Character, character_id)

    def list_characters(self) -> list[Character]:
        items = self._load(self._base / "characters.json", Character)
        return sorted(items, key=lambda c: c.name)

    def save_user_persona(self, persona: UserPersona) -> UserPersona:
        return self._upsert(self._base / "user_personas.json", persona)

    def get_user_persona(self, persona_id: str) -> UserPersona | None:
        return self._find(self._base / "user_personas.json", UserPersona, persona_id)

    def list_user_personas(self) -> list[UserPersona]:
        items = self._load(self._base / "user_personas.json", UserPersona)
        return sorted(items, key=lambda p: p.name)

    # ------------------------------------------------------------------
    # Chats and per-chat config
    # ------------------------------------------------------------------

    def save_chat(self, chat: Chat) -> Chat:
        return self._upsert(self._base / "chats.json", chat)

    def get_chat(self, chat_id: str) -> Chat | None:
        return self._find(self._base / "chats.json", Chat, chat_id)

    def list_chats(self, character_id: str | None = None) -> list[Chat]:
        chats = self._load(self._base / "chats.json", Chat)
        if character_id is not None:
            chats = [c for c in chats if c.character_id == character_id]
        return sorted(chats, key=lambda c: c.created_at, reverse=True)

    def touch_chat(self, chat_id: str) -> None:
        with self._lock:
            chat = self.get_chat(chat_id)
            if chat is not None:
                self.save_chat(chat.model_copy(update={"updated_at": utc_now()}))

    def get_chat_llm_config(self, chat_id: str) -> ChatLLMConfig | None:
        return self._find(
            self._base / "chat_llm_configs.json", ChatLLMConfig, chat_id, key="chat_id"
        )

    def save_chat_llm_config(self, cfg: ChatLLMConfig) -> ChatLLMConfig:
        return self._upsert(self._base / "chat_llm_configs.json", cfg, key="chat_id")

    def get_chat_history_config(self, chat_id: str) -> ChatHistoryConfig | None:
        return self._find(
            self._base / "chat_history_configs.json", ChatHistoryConfig, chat_id, key="chat_id"
        )

    def save_chat_history_config(self, cfg: ChatHistoryConfig) -> ChatHistoryConfig:
        return self._upsert(self._base / "chat_history_configs.json", cfg, key="chat_id")

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def _messages_path(self, chat_id: str) -> Path:
        return self._base / "messages" / f"{chat_id}.json"

    def list_messages(self, chat_id: str) -> list[Message]:
        items = self._load(self._messages_path(chat_id), Message)
        return sorted(items, key=lambda m: m.seq)

    def append_message(self, message: Message) -> Message:
        """Persist a message, assigning the next seq for its chat."""
        path = self._messages_path(message.chat_id)
        with self._lock:
            existing = self._load(path, Message)
            seq = max((m.seq for m in existing), default=0) + 1
            stored = message.model_copy(update={"seq": seq})
            existing.append(stored)
            self._dump(path, existing)
            self.touch_chat(message.chat_id)
        return stored

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _runs_path(self, chat_id: str) -> Path:
        return self._base / "runs" / f"{chat_id}.json"

    def save_run(self, run: ChatRun) -> ChatRun:
        return self._upsert(self._runs_path(run.chat_id), run)

    def get_run(self, chat_id: str, run_id: str) -> ChatRun | None:
        return self._find(self._runs_path(chat_id), ChatRun, run_id)

    def list_runs(self, chat_id: str) -> list[ChatRun]:
        """Runs for a chat, newest first."""
        runs = self._load(self._runs_path(chat_id), ChatRun)
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    # ------------------------------------------------------------------
    # Presets and prompt stack entries
    # ------------------------------------------------------------------

    def save_preset(self, preset: Preset) -> Preset:
        return self._upsert(self._base / "presets.json", preset)

    def get_preset(self, preset_id: str) -> Preset | None:
        return self._find(self._base / "presets.json", Preset, preset_id)

    def list_presets(
        self, kind: PresetKind | None = None, built_in: bool | None = None
    ) -> list[Preset]:
        presets = self._load(self._base / "presets.json", Preset)
        if kind is not None:
            presets = [p for p in presets if p.kind == kind]
        if built_in is not None:
            presets = [p for p in presets if p.built_in == built_in]
        return sorted(presets, key=lambda p: p.title)

    def save_prompt_preset(self, entry: PromptPreset) -> PromptPreset:
        return self._upsert(self._base / "prompt_presets.json", entry)

    def save_prompt_presets(self, entries: list[PromptPreset]) -> None:
        """Upsert several stack entries in one write."""
        path = self._base / "prompt_presets.json"
        with self._lock:
            by_id = {e.id: e for e in self._load(path, PromptPreset)}
            for entry in entries:
                by_id[entry.id] = entry
            self._dump(path, list(by_id.values()))

    def get_prompt_preset(self, prompt_preset_id: str) -> PromptPreset | None:
        return self._find(self._base / "prompt_presets.json", PromptPreset, prompt_preset_id)

    def list_prompt_presets(self, character_id: str) -> list[PromptPreset]:
        items = self._load(self._base / "prompt_presets.json", PromptPreset)
        stack = [pp for pp in items if pp.character_id == character_id]
        return sorted(stack, key=lambda pp: pp.sort_order)

    def delete_prompt_preset(self, prompt_preset_id: str) -> bool:
        return self._remove(self._base / "prompt_presets.json", PromptPreset, prompt_preset_id)

    # ------------------------------------------------------------------
    # Lorebooks
    # ------------------------------------------------------------------

    def save_lorebook(self, lorebook: Lorebook) -> Lorebook:
        return self._upsert(self._base / "lorebooks.json", lorebook)

    def get_lorebook(self, lorebook_id: str) -> Lorebook | None:
        return self._find(self._base / "lorebooks.json", Lorebook, lorebook_id)

    def list_lorebooks(self) -> list[Lorebook]:
        items = self._load(self._base / "lorebooks.json", Lorebook)
        return sorted(items, key=lambda lb: lb.name)

    def save_lorebook_entry(self, entry: LorebookEntry) -> LorebookEntry:
        return self._upsert(self._base / "lorebook_entries.json", entry)

    def list_lorebook_entries(self, lorebook_id: str) -> list[LorebookEntry]:
        items = self._load(self._base / "lorebook_entries.json", LorebookEntry)
        entries = [e for e in items if e.lorebook_id == lorebook_id]
        return sorted(entries, key=lambda e: e.insertion_order)

    # ------------------------------------------------------------------
    # MCP servers and LLM connections
    # ------------------------------------------------------------------

    def save_mcp_server(self, server: MCPServer) -> MCPServer:
        return self._upsert(self._base / "mcp_servers.json", server)

    def get_mcp_server(self, server_id: str) -> MCPServer | None:
        return self._find(self._base / "mcp_servers.json", MCPServer, server_id)

    def list_mcp_servers(self) -> list[MCPServer]:
        items = self._load(self._base / "mcp_servers.json", MCPServer)
        return sorted(items, key=lambda s: s.name)

    def attach_mcp_server(self, character_id: str, server_id: str) -> None:
        path = self._base / "character_mcp_servers.json"
        with self._lock:
            links = self._load(path, CharacterMCPServer)
            if any(
                link.character_id == character_id and link.mcp_server_id == server_id
                for link in links
            ):
                return
            links.append(CharacterMCPServer(character_id=character_id, mcp_server_id=server_id))
            self._dump(path, links)

    def list_character_mcp_servers(self, character_id: str) -> list[CharacterMCPServer]:
        links = self._load(self._base / "character_mcp_servers.json", CharacterMCPServer)
        return [link for link in links if link.character_id == character_id]

    def save_llm_connection(self, connection: LLMConnection) -> LLMConnection:
        return self._upsert(self._base / "llm_connections.json", connection)

    def get_llm_connection(self, connection_id: str) -> LLMConnection | None:
        return self._find(self._base / "llm_connections.json", LLMConnection, connection_id)

    def list_llm_connections(self) -> list[LLMConnection]:
        items = self._load(self._base / "llm_connections.json", LLMConnection)
        return sorted(items, key=lambda c: c.name)
