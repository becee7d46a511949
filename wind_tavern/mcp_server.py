"""FastMCP server exposing lorebook search as MCP tools.

Tools:
  - search_lore(query, limit)  entries whose keywords or content mention the query
  - list_lorebooks()           every lorebook with its enabled entry count

Storage is replaced via set_storage() for tests, or opened from --data-dir
when run as __main__.

Usage:
    python -m wind_tavern.mcp_server --data-dir ./data
"""

from __future__ import annotations

import argparse
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from wind_tavern.storage import Storage

mcp = FastMCP("wind-tavern-lore")

_storage: Storage | None = None


def set_storage(storage: Storage) -> None:
    """Replace the storage the tools read from."""
    global _storage
    _storage = storage


def get_storage() -> Storage:
    if _storage is None:
        raise RuntimeError("lore server has no storage; call set_storage() first")
    return _storage


@mcp.tool()
def search_lore(query: str, limit: int = 5) -> list[dict]:
    """Search enabled lorebook entries by keyword or content. Returns at most `limit` hits."""
    needle = query.strip().lower()
    if not needle:
        return []
    storage = get_storage()
    hits: list[dict] = []
    for lorebook in storage.list_lorebooks():
        for entry in storage.list_lorebook_entries(lorebook.id):
            if not entry.is_enabled:
                continue
            keywords = [k.strip().lower() for k in entry.keywords]
            if any(k and (k in needle or needle in k) for k in keywords) or needle in entry.content.lower():
                hits.append({
                    "lorebook": lorebook.name,
                    "keywords": entry.keywords,
                    "content": entry.content,
                })
                if len(hits) >= max(1, limit):
                    return hits
    return hits


@mcp.tool()
def list_lorebooks() -> list[dict]:
    """List lorebooks with their number of enabled entries."""
    storage = get_storage()
    return [
        {
            "id": lb.id,
            "name": lb.name,
            "description": lb.description,
            "entries": sum(1 for e in storage.list_lorebook_entries(lb.id) if e.is_enabled),
        }
        for lb in storage.list_lorebooks()
    ]


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Wind Tavern lore tool server (stdio)")
    parser.add_argument("--data-dir", type=Path, default=Path("data"))
    args = parser.parse_args()
    set_storage(Storage(args.data_dir))
    mcp.run()
