"""Token cost estimation for prompt budgeting.

Two interchangeable counters share the TokenCounter protocol:

    ApproxTokenCounter  ceil(len(text) / 4), no dependencies, deterministic.
    TiktokenCounter     exact counts from the model's tiktoken encoding.

TiktokenCounter resolves its encoding once at construction. If that fails
(unknown model and no cached BPE file, offline machine, ...) it keeps working
on the approximate heuristic; callers never see the difference.
"""

from __future__ import annotations

import logging
import math
from typing import Protocol

import tiktoken

logger = logging.getLogger(__name__)

_FALLBACK_ENCODING = "cl100k_base"


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...

    def count_all(self, texts: list[str]) -> int: ...


class ApproxTokenCounter:
    """Roughly aligns with common LLM token density for English text."""

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def count_all(self, texts: list[str]) -> int:
        return sum(self.count(t) for t in texts)


class TiktokenCounter:
    def __init__(self, model: str = "gpt-4o-mini") -> None:
        self.model = model
        self._approx = ApproxTokenCounter()
        self._encoding = None
        try:
            try:
                self._encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                self._encoding = tiktoken.get_encoding(_FALLBACK_ENCODING)
        except Exception:
            logger.debug("tiktoken unavailable for model %s; using approximation", model, exc_info=True)
            self._encoding = None

    @property
    def exact(self) -> bool:
        return self._encoding is not None

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            return self._approx.count(text)
        return len(self._encoding.encode(text, disallowed_special=()))

    def count_all(self, texts: list[str]) -> int:
        return sum(self.count(t) for t in texts)


def create_token_counter(strategy: str = "tiktoken", model: str = "gpt-4o-mini") -> TokenCounter:
    if strategy == "approx":
        return ApproxTokenCounter()
    return TiktokenCounter(model)
