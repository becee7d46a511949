"""Application error taxonomy.

Every failure that crosses a service boundary is an AppError carrying a stable
code. The HTTP layer turns the code into a status and a JSON body:

    {"code": "CHAT_BUSY", "message": "Chat is busy", "details": ...}

LLMError and ToolServerError are the two external-failure kinds; both keep the
original exception as `details` (and as __cause__ when raised with `from`).
"""

from __future__ import annotations

from typing import Any, Literal

ErrorCode = Literal[
    "CHAT_BUSY",
    "CHAT_NOT_FOUND",
    "CHAT_LLM_CONFIG_NOT_FOUND",
    "LLM_CONNECTION_NOT_FOUND",
    "LLM_CONNECTION_DISABLED",
    "CHARACTER_NOT_FOUND",
    "USER_PERSONA_NOT_FOUND",
    "PRESET_NOT_FOUND",
    "LOREBOOK_NOT_FOUND",
    "MCP_SERVER_NOT_FOUND",
    "PROMPT_PRESET_NOT_FOUND",
    "PROMPT_PRESET_REORDER_INCOMPLETE",
    "PROMPT_PRESET_CHARACTER_MISMATCH",
    "CANNOT_DELETE_HISTORY_PROMPT",
    "TOOL_ITERATION_LIMIT",
    "VALIDATION_ERROR",
    "EXTERNAL_LLM_ERROR",
    "EXTERNAL_TOOL_ERROR",
    "INTERNAL_ERROR",
]

STATUS_BY_CODE: dict[str, int] = {
    "CHAT_BUSY": 409,
    "CHAT_NOT_FOUND": 404,
    "CHAT_LLM_CONFIG_NOT_FOUND": 404,
    "LLM_CONNECTION_NOT_FOUND": 404,
    "LLM_CONNECTION_DISABLED": 503,
    "CHARACTER_NOT_FOUND": 404,
    "USER_PERSONA_NOT_FOUND": 404,
    "PRESET_NOT_FOUND": 404,
    "LOREBOOK_NOT_FOUND": 404,
    "MCP_SERVER_NOT_FOUND": 404,
    "PROMPT_PRESET_NOT_FOUND": 404,
    "PROMPT_PRESET_REORDER_INCOMPLETE": 400,
    "PROMPT_PRESET_CHARACTER_MISMATCH": 400,
    "CANNOT_DELETE_HISTORY_PROMPT": 400,
    "TOOL_ITERATION_LIMIT": 400,
    "VALIDATION_ERROR": 400,
    "EXTERNAL_LLM_ERROR": 502,
    "EXTERNAL_TOOL_ERROR": 502,
    "INTERNAL_ERROR": 500,
}


class AppError(Exception):
    """Domain failure with a stable code and HTTP status."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status or STATUS_BY_CODE.get(code, 500)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"AppError({self.code!r}, {self.message!r})"


class LLMError(AppError):
    """Raised when the completion backend cannot be reached or returns an error."""

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__("EXTERNAL_LLM_ERROR", message, details=details)


class ToolServerError(AppError):
    """Raised for any MCP tool server failure: launch, handshake, call or cancel."""

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__("EXTERNAL_TOOL_ERROR", message, details=details)


def describe_cause(err: BaseException) -> dict[str, str]:
    """Diagnostic detail for a wrapped exception."""
    return {"type": type(err).__name__, "message": str(err) or repr(err)}
