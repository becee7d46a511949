"""Character prompt stack endpoints."""

from fastapi import APIRouter, Depends

from wind_tavern.services import Services

from .deps import get_services
from .models import AttachPromptPreset, ReorderPromptStack, UpdatePromptPreset

router = APIRouter()


@router.get("/characters/{character_id}/prompt-stack")
async def get_prompt_stack(character_id: str, services: Services = Depends(get_services)):
    """Stack entries in sort order."""
    return services.prompt_stack.get_stack(character_id)


@router.post("/characters/{character_id}/prompt-stack", status_code=201)
async def attach_prompt_preset(
    character_id: str, body: AttachPromptPreset, services: Services = Depends(get_services)
):
    """Insert a preset into the stack by id, or a built-in one by kind."""
    return services.prompt_stack.attach(character_id, **body.model_dump())


@router.put("/characters/{character_id}/prompt-stack/order")
async def reorder_prompt_stack(
    character_id: str, body: ReorderPromptStack, services: Services = Depends(get_services)
):
    """Reorder the stack; `ids` must be a full permutation of its entry ids."""
    return services.prompt_stack.reorder(character_id, body.ids)


@router.patch("/prompt-stack/{prompt_preset_id}")
async def update_prompt_preset(
    prompt_preset_id: str, body: UpdatePromptPreset, services: Services = Depends(get_services)
):
    """Enable or disable a stack entry."""
    return services.prompt_stack.set_enabled(prompt_preset_id, body.is_enabled)


@router.delete("/prompt-stack/{prompt_preset_id}", status_code=204)
async def detach_prompt_preset(prompt_preset_id: str, services: Services = Depends(get_services)):
    """Remove a stack entry. History entries cannot be removed."""
    services.prompt_stack.detach(prompt_preset_id)
