"""Prompt stack management for characters.

A character's stack is an ordered list of PromptPreset entries whose
sort_order values always form 0..n-1. Every operation that inserts or
removes an entry re-packs the remaining positions.

Built-in presets (history, mcp_tools, one per lorebook) are created on
first use. Every stack carries a history entry; get_stack attaches one when
it is missing and detach refuses to remove it.
"""

from __future__ import annotations

import logging

from wind_tavern.errors import AppError
from wind_tavern.models import Preset, PresetKind, PromptPreset, PromptRole
from wind_tavern.storage import Storage

logger = logging.getLogger(__name__)


class PromptStackService:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get_stack(self, character_id: str) -> list[PromptPreset]:
        self._require_character(character_id)
        stack = self._storage.list_prompt_presets(character_id)
        history = self.ensure_history_preset()
        if not any(entry.preset_id == history.id for entry in stack):
            self.attach(character_id, preset_id=history.id)
            stack = self._storage.list_prompt_presets(character_id)
        return stack

    def attach(
        self,
        character_id: str,
        *,
        preset_id: str | None = None,
        kind: PresetKind | None = None,
        lorebook_id: str | None = None,
        role: PromptRole = "system",
        position: int | None = None,
    ) -> PromptPreset:
        """Insert a stack entry at `position`, or at the end when out of range."""
        self._require_character(character_id)
        preset = self._resolve_preset(preset_id, kind, lorebook_id)
        if preset is None:
            raise AppError("PRESET_NOT_FOUND", "Preset not found for prompt stack attachment")

        existing = self._storage.list_prompt_presets(character_id)
        if position is not None and 0 <= position < len(existing):
            sort_order = position
        else:
            sort_order = len(existing)

        shifted = [
            entry.model_copy(update={"sort_order": entry.sort_order + 1})
            for entry in existing
            if entry.sort_order >= sort_order
        ]
        entry = PromptPreset(
            character_id=character_id,
            preset_id=preset.id,
            role=role,
            sort_order=sort_order,
        )
        self._storage.save_prompt_presets([*shifted, entry])
        logger.info(
            "attached preset %s (%s) to character %s at %d",
            preset.id, preset.kind, character_id, sort_order,
        )
        return entry

    def detach(self, prompt_preset_id: str) -> None:
        entry = self._storage.get_prompt_preset(prompt_preset_id)
        if entry is None:
            raise AppError("PROMPT_PRESET_NOT_FOUND", "Prompt preset not found")
        preset = self._storage.get_preset(entry.preset_id)
        if preset is not None and preset.kind == "history":
            raise AppError("CANNOT_DELETE_HISTORY_PROMPT", "History prompt cannot be removed")

        self._storage.delete_prompt_preset(prompt_preset_id)
        remaining = self._storage.list_prompt_presets(entry.character_id)
        self._storage.save_prompt_presets([
            e.model_copy(update={"sort_order": i}) for i, e in enumerate(remaining)
        ])

    def reorder(self, character_id: str, ordered_ids: list[str]) -> list[PromptPreset]:
        """Apply a full permutation of the character's entry ids."""
        self._require_character(character_id)
        existing = self._storage.list_prompt_presets(character_id)
        by_id = {entry.id: entry for entry in existing}

        if len(ordered_ids) != len(existing) or len(set(ordered_ids)) != len(ordered_ids):
            raise AppError(
                "PROMPT_PRESET_REORDER_INCOMPLETE", "Reorder list must include all prompt presets"
            )
        foreign = [pid for pid in ordered_ids if pid not in by_id]
        if foreign:
            raise AppError(
                "PROMPT_PRESET_CHARACTER_MISMATCH",
                "Prompt preset does not belong to character",
                details={"ids": foreign},
            )

        reordered = [
            by_id[pid].model_copy(update={"sort_order": i}) for i, pid in enumerate(ordered_ids)
        ]
        self._storage.save_prompt_presets(reordered)
        return reordered

    def set_enabled(self, prompt_preset_id: str, enabled: bool) -> PromptPreset:
        entry = self._storage.get_prompt_preset(prompt_preset_id)
        if entry is None:
            raise AppError("PROMPT_PRESET_NOT_FOUND", "Prompt preset not found")
        return self._storage.save_prompt_preset(entry.model_copy(update={"is_enabled": enabled}))

    # ------------------------------------------------------------------
    # Built-in presets
    # ------------------------------------------------------------------

    def ensure_history_preset(self) -> Preset:
        return self._ensure_builtin(
            "history", "Chat History", "Latest conversation turns based on chat history config"
        )

    def ensure_mcp_tools_preset(self) -> Preset:
        return self._ensure_builtin(
            "mcp_tools", "MCP Tools", "Expose attached MCP servers to the model"
        )

    def ensure_lorebook_preset(self, lorebook_id: str) -> Preset:
        lorebook = self._storage.get_lorebook(lorebook_id)
        if lorebook is None:
            raise AppError("LOREBOOK_NOT_FOUND", "Lorebook not found")
        for preset in self._storage.list_presets(kind="lorebook"):
            if preset.lorebook_id == lorebook_id:
                return preset
        return self._storage.save_preset(Preset(
            title=f"Lorebook: {lorebook.name}",
            description=lorebook.description or lorebook.name,
            kind="lorebook",
            built_in=True,
            config={"lorebook_id": lorebook_id},
        ))

    def _ensure_builtin(self, kind: PresetKind, title: str, description: str) -> Preset:
        existing = self._storage.list_presets(kind=kind, built_in=True)
        if existing:
            return existing[0]
        return self._storage.save_preset(
            Preset(title=title, description=description, kind=kind, built_in=True)
        )

    def _resolve_preset(
        self, preset_id: str | None, kind: PresetKind | None, lorebook_id: str | None
    ) -> Preset | None:
        if preset_id:
            return self._storage.get_preset(preset_id)
        if kind == "history":
            return self.ensure_history_preset()
        if kind == "mcp_tools":
            return self.ensure_mcp_tools_preset()
        if kind == "lorebook" and lorebook_id:
            return self.ensure_lorebook_preset(lorebook_id)
        return None

    def _require_character(self, character_id: str) -> None:
        if self._storage.get_character(character_id) is None:
            raise AppError("CHARACTER_NOT_FOUND", "Character not found")
