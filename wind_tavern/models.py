"""Core domain models.

All services and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from wind_tavern import config

MessageRole = Literal["user", "assistant", "system", "tool"]
MessageState = Literal["ok", "failed", "pending"]
PromptRole = Literal["system", "assistant", "user"]
PresetKind = Literal["static_text", "lorebook", "history", "mcp_tools"]
RunStatus = Literal["running", "completed", "failed"]


def new_id() -> str:
    return uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Characters and personas
# ---------------------------------------------------------------------------

class Character(BaseModel):
    """The model-driven side of a chat. `persona` is its system prompt."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    persona: str = ""


class UserPersona(BaseModel):
    """Who the user plays as. `prompt` is injected right after the character persona."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    prompt: str = ""
    is_default: bool = False


# ---------------------------------------------------------------------------
# Chats, messages, runs
# ---------------------------------------------------------------------------

class Chat(BaseModel):
    id: str = Field(default_factory=new_id)
    character_id: str
    user_persona_id: str
    title: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class ChatLLMConfig(BaseModel):
    chat_id: str
    llm_connection_id: str
    model: str = ""
    temperature: float = config.DEFAULT_TEMPERATURE
    max_output_tokens: int = config.DEFAULT_MAX_OUTPUT_TOKENS
    max_tool_iterations: int = config.DEFAULT_MAX_TOOL_ITERATIONS
    tool_call_timeout_ms: int = config.DEFAULT_TOOL_CALL_TIMEOUT_MS


class ChatHistoryConfig(BaseModel):
    chat_id: str
    history_enabled: bool = config.DEFAULT_HISTORY_ENABLED
    message_limit: int = config.DEFAULT_MESSAGE_LIMIT
    lore_scan_token_limit: int = config.DEFAULT_LORE_SCAN_TOKEN_LIMIT


class ToolCall(BaseModel):
    """One function call requested by the model."""

    id: str
    name: str
    arguments: Any = None


class Message(BaseModel):
    """A single entry in a chat's append-only message stream.

    `seq` is assigned by storage and is the ordering key; `created_at` alone
    is not unique enough to order messages appended in the same instant.
    """

    id: str = Field(default_factory=new_id)
    chat_id: str
    seq: int = 0
    role: MessageRole
    content: str
    tool_calls: list[ToolCall] | None = None  # assistant only
    tool_call_id: str | None = None  # tool only
    tool_results: Any = None
    token_count: int | None = None
    run_id: str | None = None
    state: MessageState = "ok"
    created_at: str = Field(default_factory=utc_now)


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0

    def add(self, other: TokenUsage | None) -> None:
        if other is None:
            return
        self.prompt += other.prompt
        self.completion += other.completion
        self.total += other.total

    @property
    def is_empty(self) -> bool:
        return self.prompt == 0 and self.completion == 0 and self.total == 0


class ChatRun(BaseModel):
    """Record of one turn attempt. Moves running -> completed|failed exactly once."""

    id: str = Field(default_factory=new_id)
    chat_id: str
    user_message_id: str
    status: RunStatus = "running"
    assistant_message_id: str | None = None
    started_at: str = Field(default_factory=utc_now)
    finished_at: str | None = None
    error: str | None = None
    token_usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Prompt stack
# ---------------------------------------------------------------------------

class Preset(BaseModel):
    """A reusable prompt block. Non-static kinds are placeholders."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    kind: PresetKind
    content: str | None = None
    built_in: bool = False
    config: dict[str, Any] | None = None  # {"lorebook_id": ...} for lorebook presets

    @property
    def lorebook_id(self) -> str | None:
        value = (self.config or {}).get("lorebook_id")
        return value if isinstance(value, str) else None


class PromptPreset(BaseModel):
    """One entry of a character's prompt stack."""

    id: str = Field(default_factory=new_id)
    character_id: str
    preset_id: str
    role: PromptRole = "system"
    sort_order: int
    is_enabled: bool = True


# ---------------------------------------------------------------------------
# Lore
# ---------------------------------------------------------------------------

class Lorebook(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""


class LorebookEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    lorebook_id: str
    keywords: list[str] = Field(default_factory=list)
    content: str
    insertion_order: int = 0
    is_enabled: bool = True


# ---------------------------------------------------------------------------
# External connections
# ---------------------------------------------------------------------------

class MCPServer(BaseModel):
    """How to launch a tool server. Connection state is never stored here."""

    id: str = Field(default_factory=new_id)
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    is_enabled: bool = True


class CharacterMCPServer(BaseModel):
    character_id: str
    mcp_server_id: str


class LLMConnection(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    provider: Literal["openai_compatible"] = "openai_compatible"
    base_url: str
    default_model: str = ""
    api_key: str = ""
    is_enabled: bool = True
