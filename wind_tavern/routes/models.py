"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, Field

from wind_tavern.models import PresetKind, PromptRole


class SubmitTurn(BaseModel):
    content: str = Field(min_length=1)


class AttachPromptPreset(BaseModel):
    preset_id: str | None = None
    kind: PresetKind | None = None
    lorebook_id: str | None = None
    role: PromptRole = "system"
    position: int | None = None


class ReorderPromptStack(BaseModel):
    ids: list[str]


class UpdatePromptPreset(BaseModel):
    is_enabled: bool
