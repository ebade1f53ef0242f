"""Error taxonomy for the orchestration loop.

Two families:
  ChannelError - raised by the model transport (network, timeout, API,
                 cancellation); carries raw provider details.
  ChatError    - misuse or invalid conversation state detected by the
                 runner before any model call.

format_error() flattens either into the {code, message} shape carried
by ErrorEvent and ChatResult.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_DISABLED = "CONFIG_DISABLED"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    INVALID_MESSAGE_ROLE = "INVALID_MESSAGE_ROLE"
    NO_HISTORY = "NO_HISTORY"
    INVALID_STATE = "INVALID_STATE"
    NO_FUNCTION_CALLS = "NO_FUNCTION_CALLS"
    MAX_TOOL_ITERATIONS = "MAX_TOOL_ITERATIONS"
    NOT_ENOUGH_ROUNDS = "NOT_ENOUGH_ROUNDS"
    NOT_ENOUGH_CONTENT = "NOT_ENOUGH_CONTENT"
    NO_MESSAGES_TO_SUMMARIZE = "NO_MESSAGES_TO_SUMMARIZE"
    EMPTY_SUMMARY = "EMPTY_SUMMARY"
    ABORTED = "ABORTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorType(StrEnum):
    """Transport failure classes."""

    CANCELLED_ERROR = "CANCELLED_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    API_ERROR = "API_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"


# User-facing message templates, formatted with str.format(**kwargs)
MESSAGES: dict[str, str] = {
    "config_not_found": "Configuration not found: {config_id}",
    "config_disabled": "Configuration disabled: {config_id}",
    "max_tool_iterations": "Maximum tool call iterations reached ({max_iterations})",
    "tool_not_found": "Tool not found: {tool_name}",
    "invalid_mcp_tool_name": "Invalid MCP tool name: {tool_name}",
    "mcp_tool_call_failed": "MCP tool call failed",
    "tool_execution_success": "Tool execution successful",
    "tool_execution_failed": "Tool execution failed",
    "no_history": "Conversation history is empty",
    "last_message_not_model": "Last message is not a model message",
    "no_function_calls": "No pending function calls",
    "user_rejected_tool": "User rejected tool execution",
    "not_enough_rounds": (
        "Not enough conversation rounds, current {current_rounds}, "
        "keeping {keep_rounds}, no summary needed"
    ),
    "not_enough_content": (
        "Not enough content to summarize, current {current_rounds}, keeping {keep_rounds}"
    ),
    "no_messages_to_summarize": "No messages to summarize",
    "summarize_aborted": "Summarize request aborted",
    "empty_summary": "AI generated summary is empty",
    "message_not_found": "Message not found: index {message_index}",
    "can_only_edit_user_message": "Can only edit user messages, current message role: {role}",
    "unknown_error": "Unknown error",
}


def message(key: str, **kwargs: Any) -> str:
    return MESSAGES[key].format(**kwargs)


class ChannelError(Exception):
    """Transport failure with a machine-readable type and raw details."""

    def __init__(self, type: ErrorType, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.type = type
        self.message = message
        self.details = details


class ChatError(Exception):
    """Configuration or conversation-state error raised before a model call."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class ErrorInfo:
    code: str
    message: str


def format_error(exc: BaseException) -> ErrorInfo:
    """Flatten an exception into {code, message}.

    ChannelError details are appended verbatim after a newline: strings as
    is, anything else as indented JSON.
    """
    if isinstance(exc, ChannelError):
        text = exc.message
        if exc.details is not None:
            if isinstance(exc.details, str):
                text = f"{text}\n{exc.details}"
            else:
                text = f"{text}\n{json.dumps(exc.details, indent=2, ensure_ascii=False, default=str)}"
        return ErrorInfo(code=str(exc.type), message=text)

    code = getattr(exc, "code", None) or ErrorCode.UNKNOWN_ERROR
    text = str(exc) or message("unknown_error")
    return ErrorInfo(code=str(code), message=text)
