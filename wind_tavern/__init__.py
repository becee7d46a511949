"""Wind Tavern: character chat backend with lore, personas and MCP tools."""

__version__ = "0.1.0"
