"""Tests for PromptBuilder message ordering, lore, history and tool catalog."""

import pytest

from wind_tavern.errors import AppError
from wind_tavern.models import (
    Chat,
    ChatHistoryConfig,
    Lorebook,
    LorebookEntry,
    MCPServer,
    Message,
    Preset,
    ToolCall,
    UserPersona,
)
from wind_tavern.pipeline.prompt_builder import PromptBuilder
from wind_tavern.prompt_stack import PromptStackService
from wind_tavern.storage import Storage
from wind_tavern.tokens import ApproxTokenCounter


@pytest.fixture
def builder(storage: Storage) -> PromptBuilder:
    return PromptBuilder(storage, ApproxTokenCounter())


@pytest.fixture
def stack(storage: Storage) -> PromptStackService:
    return PromptStackService(storage)


def _say(storage: Storage, chat: Chat, content: str, role: str = "user", **fields) -> Message:
    return storage.append_message(Message(chat_id=chat.id, role=role, content=content, **fields))


def _static(storage: Storage, content: str) -> Preset:
    return storage.save_preset(Preset(title="static", kind="static_text", content=content))


def _contents(result) -> list[str]:
    return [m.content for m in result.messages]


# ── Resolution errors ────────────────────────────────────────


def test_unknown_chat(builder: PromptBuilder):
    with pytest.raises(AppError) as exc_info:
        builder.build_prompt_for_chat("missing")
    assert exc_info.value.code == "CHAT_NOT_FOUND"


def test_missing_character(storage: Storage, builder: PromptBuilder):
    chat = storage.save_chat(Chat(character_id="gone", user_persona_id="p", title="T"))
    with pytest.raises(AppError) as exc_info:
        builder.build_prompt_for_chat(chat.id)
    assert exc_info.value.code == "CHARACTER_NOT_FOUND"


def test_missing_user_persona(storage: Storage, builder: PromptBuilder, chat: Chat):
    storage.save_chat(chat.model_copy(update={"user_persona_id": "gone"}))
    with pytest.raises(AppError) as exc_info:
        builder.build_prompt_for_chat(chat.id)
    assert exc_info.value.code == "USER_PERSONA_NOT_FOUND"


# ── Personas ─────────────────────────────────────────────────


def test_persona_templating_example(storage: Storage, builder: PromptBuilder, chat: Chat):
    character = storage.get_character(chat.character_id)
    storage.save_character(character.model_copy(update={"persona": "Hi {user}"}))
    result = builder.build_prompt_for_chat(chat.id)
    assert result.messages[0].role == "system"
    assert result.messages[0].content == "Hi Ann"


def test_user_persona_prompt_follows_character(storage: Storage, builder: PromptBuilder, chat: Chat):
    persona = storage.get_user_persona(chat.user_persona_id)
    storage.save_user_persona(persona.model_copy(update={"prompt": "  {user} talks to {character}  "}))
    result = builder.build_prompt_for_chat(chat.id)
    assert _contents(result)[:2] == ["You are Mira.", "Ann talks to Mira"]


def test_blank_personas_skipped(storage: Storage, builder: PromptBuilder, chat: Chat):
    character = storage.get_character(chat.character_id)
    storage.save_character(character.model_copy(update={"persona": "   "}))
    storage.save_user_persona(UserPersona(id=chat.user_persona_id, name="Ann", prompt=""))
    assert builder.build_prompt_for_chat(chat.id).messages == []


# ── Stack entries ────────────────────────────────────────────


def test_static_entries_in_sort_order_with_role(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    stack.attach(chat.character_id, preset_id=_static(storage, "second").id, role="assistant")
    stack.attach(chat.character_id, preset_id=_static(storage, "first {user}").id, position=0)
    stack.attach(chat.character_id, preset_id=_static(storage, "   ").id)

    result = builder.build_prompt_for_chat(chat.id)
    assert _contents(result) == ["You are Mira.", "first Ann", "second"]
    assert result.messages[2].role == "assistant"


def test_disabled_entries_skipped(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    entry = stack.attach(chat.character_id, preset_id=_static(storage, "hidden").id)
    stack.set_enabled(entry.id, False)
    assert "hidden" not in _contents(builder.build_prompt_for_chat(chat.id))


def test_history_appended_after_stack_without_entry(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    stack.attach(chat.character_id, preset_id=_static(storage, "rules").id)
    _say(storage, chat, "hello")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "rules", "hello"]


def test_history_entry_controls_position(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    stack.attach(chat.character_id, kind="history")
    stack.attach(chat.character_id, preset_id=_static(storage, "after history").id)
    _say(storage, chat, "hello")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "hello", "after history"]


def test_history_injected_once(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    history = stack.ensure_history_preset()
    stack.attach(chat.character_id, preset_id=history.id)
    stack.attach(chat.character_id, preset_id=history.id)
    _say(storage, chat, "hello")
    assert _contents(builder.build_prompt_for_chat(chat.id)).count("hello") == 1


def test_disabled_history_entry_falls_back_to_end(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    entry = stack.attach(chat.character_id, kind="history")
    stack.attach(chat.character_id, preset_id=_static(storage, "rules").id)
    stack.set_enabled(entry.id, False)
    _say(storage, chat, "hello")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "rules", "hello"]


# ── History window ───────────────────────────────────────────


def test_history_limit(storage: Storage, builder: PromptBuilder, chat: Chat):
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id, message_limit=2))
    for text in ["one", "two", "three"]:
        _say(storage, chat, text)
    assert _contents(builder.build_prompt_for_chat(chat.id))[1:] == ["two", "three"]


def test_history_disabled_forwards_only_latest(storage: Storage, builder: PromptBuilder, chat: Chat):
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id, history_enabled=False))
    for i in range(30):
        _say(storage, chat, f"msg {i}")
    _say(storage, chat, "broken", state="failed")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "msg 29"]


def test_history_excludes_non_ok(storage: Storage, builder: PromptBuilder, chat: Chat):
    _say(storage, chat, "kept")
    _say(storage, chat, "pending", state="pending")
    _say(storage, chat, "failed", state="failed")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "kept"]


def test_history_forwards_tool_exchange(storage: Storage, builder: PromptBuilder, chat: Chat):
    call = ToolCall(id="call_1", name="mcp_s_search", arguments={"query": "dragon"})
    _say(storage, chat, "", role="assistant", tool_calls=[call])
    _say(storage, chat, "Fafnir", role="tool", tool_call_id="call_1")
    messages = builder.build_prompt_for_chat(chat.id).messages
    assert messages[1].tool_calls == [call]
    assert messages[2].role == "tool"
    assert messages[2].tool_call_id == "call_1"


def _tool_exchange(storage: Storage, chat: Chat) -> None:
    _say(storage, chat, "look it up")
    _say(storage, chat, "", role="assistant", tool_calls=[
        ToolCall(id="c1", name="mcp_s_search"), ToolCall(id="c2", name="mcp_s_search"),
    ])
    _say(storage, chat, "first", role="tool", tool_call_id="c1")
    _say(storage, chat, "second", role="tool", tool_call_id="c2")


def test_history_limit_keeps_tool_calls_with_their_replies(
    storage: Storage, builder: PromptBuilder, chat: Chat
):
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id, message_limit=2))
    _tool_exchange(storage, chat)
    history = builder.build_prompt_for_chat(chat.id).messages[1:]
    assert [(m.role, m.tool_call_id) for m in history] == [
        ("assistant", None), ("tool", "c1"), ("tool", "c2"),
    ]
    assert [c.id for c in history[0].tool_calls] == ["c1", "c2"]


def test_history_disabled_mid_tool_exchange(storage: Storage, builder: PromptBuilder, chat: Chat):
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id, history_enabled=False))
    _tool_exchange(storage, chat)
    history = builder.build_prompt_for_chat(chat.id).messages[1:]
    assert [m.role for m in history] == ["assistant", "tool", "tool"]


def test_history_drops_tool_replies_without_their_call(
    storage: Storage, builder: PromptBuilder, chat: Chat
):
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id, message_limit=2))
    _say(storage, chat, "", role="assistant", state="failed", tool_calls=[ToolCall(id="c1", name="x")])
    _say(storage, chat, "orphan", role="tool", tool_call_id="c1")
    _say(storage, chat, "next question")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "next question"]


# ── Lore ─────────────────────────────────────────────────────


@pytest.fixture
def lorebook(storage: Storage) -> Lorebook:
    lb = storage.save_lorebook(Lorebook(name="World"))
    storage.save_lorebook_entry(LorebookEntry(
        lorebook_id=lb.id, keywords=["village"], content="The village of {user}", insertion_order=2,
    ))
    storage.save_lorebook_entry(LorebookEntry(
        lorebook_id=lb.id, keywords=["Dragon"], content="Fafnir the dragon", insertion_order=1,
    ))
    storage.save_lorebook_entry(LorebookEntry(
        lorebook_id=lb.id, keywords=["castle"], content="The castle", insertion_order=0,
    ))
    return lb


def test_lore_injected_under_entry_role(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat, lorebook: Lorebook
):
    stack.attach(chat.character_id, kind="lorebook", lorebook_id=lorebook.id, role="user")
    _say(storage, chat, "A village near")
    _say(storage, chat, "the DRAGON cave", role="assistant")

    messages = builder.build_prompt_for_chat(chat.id).messages
    assert messages[1].role == "user"
    assert messages[1].content == "Fafnir the dragon\n\nThe village of Ann"


def test_lore_nothing_when_no_match(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat, lorebook: Lorebook
):
    stack.attach(chat.character_id, kind="lorebook", lorebook_id=lorebook.id)
    _say(storage, chat, "just a quiet evening")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "just a quiet evening"]


def test_lore_scan_ignores_failed_messages(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat, lorebook: Lorebook
):
    stack.attach(chat.character_id, kind="lorebook", lorebook_id=lorebook.id)
    _say(storage, chat, "castle", state="failed")
    _say(storage, chat, "nothing here")
    assert "The castle" not in _contents(builder.build_prompt_for_chat(chat.id))


def test_lore_missing_lorebook_skipped(
    storage: Storage, builder: PromptBuilder, stack: PromptStackService, chat: Chat
):
    preset = storage.save_preset(Preset(title="gone", kind="lorebook", config={"lorebook_id": "gone"}))
    stack.attach(chat.character_id, preset_id=preset.id)
    _say(storage, chat, "hello")
    assert _contents(builder.build_prompt_for_chat(chat.id)) == ["You are Mira.", "hello"]


# ── Tool catalog ─────────────────────────────────────────────


@pytest.fixture
def servers(storage: Storage, chat: Chat) -> list[MCPServer]:
    on = storage.save_mcp_server(MCPServer(name="lore", command="python"))
    off = storage.save_mcp_server(MCPServer(name="off", command="python", is_enabled=False))
    storage.save_mcp_server(MCPServer(name="unattached", command="python"))
    storage.attach_mcp_server(chat.character_id, on.id)
    storage.attach_mcp_server(chat.character_id, off.id)
    return [on, off]


def test_catalog_defaults_to_enabled_attached_servers(
    builder: PromptBuilder, chat: Chat, servers: list[MCPServer]
):
    result = builder.build_prompt_for_chat(chat.id)
    assert [s.name for s in result.tools] == ["lore"]


def test_catalog_with_enabled_tools_entry(
    builder: PromptBuilder, stack: PromptStackService, chat: Chat, servers: list[MCPServer]
):
    stack.attach(chat.character_id, kind="mcp_tools")
    result = builder.build_prompt_for_chat(chat.id)
    assert [s.name for s in result.tools] == ["lore"]
    assert _contents(result) == ["You are Mira."]


def test_catalog_suppressed_by_disabled_tools_entry(
    builder: PromptBuilder, stack: PromptStackService, chat: Chat, servers: list[MCPServer]
):
    entry = stack.attach(chat.character_id, kind="mcp_tools")
    stack.set_enabled(entry.id, False)
    assert builder.build_prompt_for_chat(chat.id).tools == []
