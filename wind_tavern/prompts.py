"""Placeholder substitution for persona and preset text.

Only two placeholders exist, `{character}` and `{user}`, matched
case-insensitively. Anything else in braces is left alone.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

_PLACEHOLDER = re.compile(r"\{(character|user)\}", re.IGNORECASE)


class TemplateContext(BaseModel):
    character: str
    user: str


def render_template(text: str, context: TemplateContext) -> str:
    """Replace `{character}` and `{user}` with the context names."""
    if not text:
        return text

    def _sub(match: re.Match[str]) -> str:
        if match.group(1).lower() == "character":
            return context.character
        return context.user

    return _PLACEHOLDER.sub(_sub, text)
