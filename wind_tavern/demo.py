"""Create demo data for development/testing."""

import shutil
import sys

from wind_tavern.models import (
    Character,
    Chat,
    ChatHistoryConfig,
    LLMConnection,
    Lorebook,
    LorebookEntry,
    MCPServer,
    Preset,
    UserPersona,
)
from wind_tavern.prompt_stack import PromptStackService
from wind_tavern.storage import Storage

DEMO_LORE = [
    (["dragon", "fafnir"], "Fafnir is a young dragon nesting in the old mine above the village."),
    (["hollow", "village"], "Dragon's Hollow is a mountain village of forty souls, half of it burned."),
    (["tavern", "inn"], "The Singed Goat is the only inn left standing. Its cellar floods every spring."),
    (["mayor", "aldric"], "Mayor Aldric wants the dragon gone and does not care how."),
]


def create_demo_data(storage: Storage) -> Chat:
    """Wipe the data directory and seed one playable chat. Returns the chat."""
    base = storage.base_path
    for child in base.iterdir():
        if child.is_dir():
            shutil.rmtree(child)
        else:
            child.unlink()
    storage = Storage(base)

    character = storage.save_character(Character(
        name="Mira",
        description="Innkeeper of the Singed Goat.",
        persona=(
            "You are {character}, the sharp-tongued innkeeper of the Singed Goat in "
            "Dragon's Hollow. You are talking to {user}, a traveller who just walked in."
        ),
    ))
    persona = storage.save_user_persona(UserPersona(
        name="Rowan",
        description="A wandering sellsword.",
        prompt="{user} is a tired sellsword looking for work and a warm meal.",
        is_default=True,
    ))

    lorebook = storage.save_lorebook(Lorebook(name="Dragon's Hollow", description="Village lore"))
    for order, (keywords, content) in enumerate(DEMO_LORE):
        storage.save_lorebook_entry(LorebookEntry(
            lorebook_id=lorebook.id, keywords=keywords, content=content, insertion_order=order,
        ))

    lore_server = storage.save_mcp_server(MCPServer(
        name="lore",
        command=sys.executable,
        args=["-m", "wind_tavern.mcp_server", "--data-dir", str(base.resolve())],
    ))
    storage.attach_mcp_server(character.id, lore_server.id)

    # Disabled until pointed at a real backend.
    storage.save_llm_connection(LLMConnection(
        name="Local OpenAI-compatible server",
        base_url="http://localhost:8080",
        default_model="local-model",
        is_enabled=False,
    ))

    stack = PromptStackService(storage)
    style = storage.save_preset(Preset(
        title="Style",
        kind="static_text",
        content="Stay in character as {character}. Keep replies under 120 words.",
    ))
    stack.attach(character.id, preset_id=style.id)
    stack.attach(character.id, kind="lorebook", lorebook_id=lorebook.id)
    stack.attach(character.id, kind="mcp_tools")
    stack.attach(character.id, kind="history")

    chat = storage.save_chat(Chat(
        character_id=character.id, user_persona_id=persona.id, title="Arrival at the Singed Goat",
    ))
    storage.save_chat_history_config(ChatHistoryConfig(chat_id=chat.id))
    return chat
