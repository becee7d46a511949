from pathlib import Path

import pytest

from wind_tavern.models import Character, Chat, LLMConnection, UserPersona
from wind_tavern.storage import Storage


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def storage(data_dir: Path) -> Storage:
    """A fresh, empty JSON store per test."""
    return Storage(data_dir)


@pytest.fixture
def chat(storage: Storage) -> Chat:
    """Character "Mira", user persona "Ann", one enabled LLM connection, one chat."""
    character = storage.save_character(Character(name="Mira", persona="You are {character}."))
    persona = storage.save_user_persona(UserPersona(name="Ann"))
    storage.save_llm_connection(LLMConnection(
        name="local", base_url="http://localhost:8080", default_model="test-model",
    ))
    return storage.save_chat(Chat(
        character_id=character.id, user_persona_id=persona.id, title="Test chat",
    ))
