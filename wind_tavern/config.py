"""Process configuration and engine defaults.

Settings come from the environment, with a `.env` file at the repo root
loaded first (python-dotenv). Nothing here is read at import time except the
.env load, so tests can monkeypatch the environment freely.

Environment:
  DATA_DIR                     JSON storage directory (default ./data)
  HOST / PORT                  uvicorn bind address (0.0.0.0 / 13013)
  LOG_LEVEL                    root log level (INFO)
  LLM_TIMEOUT                  completion HTTP timeout in seconds (120)
  WIND_TAVERN_TOKENIZER        "tiktoken" (exact) or "approx" (chars / 4)
  WIND_TAVERN_TOKENIZER_MODEL  model name used to pick the tiktoken encoding
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent.parent
load_dotenv(ROOT / ".env")

DEFAULT_MAX_TOOL_ITERATIONS = 5
DEFAULT_TOOL_CALL_TIMEOUT_MS = 15_000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 1024

DEFAULT_HISTORY_ENABLED = True
DEFAULT_MESSAGE_LIMIT = 20
DEFAULT_LORE_SCAN_TOKEN_LIMIT = 1500

MAX_LORE_ENTRIES = 8

DEFAULT_PROBE_TIMEOUT = 5.0


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    host: str = "0.0.0.0"
    port: int = 13013
    log_level: str = "INFO"
    llm_timeout: float = 120.0
    tokenizer: str = "tiktoken"
    tokenizer_model: str = "gpt-4o-mini"


def load_settings(data_dir: Path | None = None) -> Settings:
    """Build Settings from the environment; an explicit data_dir wins."""
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(ROOT / "data")))
    return Settings(
        data_dir=resolved,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "13013")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        llm_timeout=float(os.getenv("LLM_TIMEOUT", "120")),
        tokenizer=os.getenv("WIND_TAVERN_TOKENIZER", "tiktoken").lower(),
        tokenizer_model=os.getenv("WIND_TAVERN_TOKENIZER_MODEL", "gpt-4o-mini"),
    )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
