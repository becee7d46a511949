"""Keyword-triggered lore: history scanning, entry matching and formatting."""

from __future__ import annotations

from wind_tavern import config
from wind_tavern.models import LorebookEntry, Message
from wind_tavern.tokens import TokenCounter


def scan_history_for_lore(
    messages: list[Message], counter: TokenCounter, token_limit: int
) -> list[str]:
    """Lowercased texts of recent user/assistant messages, oldest first.

    Walks backwards while the running token cost stays within `token_limit`.
    The most recent eligible message is always admitted, even when it alone
    exceeds the limit.
    """
    scanned: list[str] = []
    used = 0
    for message in reversed(messages):
        if message.state != "ok" or message.role not in ("user", "assistant"):
            continue
        text = message.content.lower()
        cost = counter.count(text)
        if scanned and used + cost > token_limit:
            break
        scanned.append(text)
        used += cost
    scanned.reverse()
    return scanned


def match_lorebook_entries(
    entries: list[LorebookEntry],
    texts: list[str],
    limit: int = config.MAX_LORE_ENTRIES,
) -> list[LorebookEntry]:
    """Enabled entries, in insertion order, with a keyword found in any text."""
    if not texts:
        return []
    haystack = [t.lower() for t in texts]
    matched: list[LorebookEntry] = []
    for entry in sorted(entries, key=lambda e: e.insertion_order):
        if not entry.is_enabled:
            continue
        keywords = [k.strip().lower() for k in entry.keywords]
        if any(k and k in text for k in keywords for text in haystack):
            matched.append(entry)
            if len(matched) >= limit:
                break
    return matched


def format_lorebook(contents: list[str]) -> str:
    """Join entry contents with a blank line between them."""
    return "\n\n".join(c for c in contents if c)
