"""Shared data models for the API layer.

Turn content, stream increments and model request/response shapes live
here so that runner.py, compaction.py and the storage layer can share
them without circular imports.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "model"]


@dataclass
class InlineData:
    """Binary attachment carried inline as base64."""

    mime_type: str
    data: str  # base64
    id: str | None = None  # storage/display only
    name: str | None = None  # storage/display only
    display_name: str | None = None  # forwarded to Gemini only


@dataclass
class FunctionCall:
    """A tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    rejected: bool = False
    # Streaming fragments: position of the call within the response and the
    # raw JSON text received so far.
    index: int | None = None
    partial_args: str | None = None


@dataclass
class FunctionResponse:
    """The result of one tool invocation, paired to its call by id."""

    name: str
    response: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    parts: list[ContentPart] | None = None  # multimodal payload


@dataclass
class ContentPart:
    """One part of a turn: text, attachment, call or result.

    At most one form is populated.  A part holding only
    ``thought_signatures`` is allowed (provider signature carrier).
    """

    text: str | None = None
    thought: bool = False
    inline_data: InlineData | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    thought_signatures: dict[str, str] | None = None

    def __post_init__(self) -> None:
        forms = sum(
            1
            for value in (self.text, self.inline_data, self.function_call, self.function_response)
            if value is not None
        )
        if forms > 1:
            raise ValueError("ContentPart must populate exactly one of text/inline_data/function_call/function_response")

    @property
    def is_signature_only(self) -> bool:
        return (
            self.thought_signatures is not None
            and self.text is None
            and self.inline_data is None
            and self.function_call is None
            and self.function_response is None
        )


@dataclass
class UsageMetadata:
    prompt_token_count: int | None = None
    candidates_token_count: int | None = None
    thoughts_token_count: int | None = None
    total_token_count: int | None = None


@dataclass
class Content:
    """One turn of conversation history."""

    role: Role
    parts: list[ContentPart] = field(default_factory=list)
    is_function_response: bool = False
    is_summary: bool = False
    summarized_message_count: int | None = None
    usage_metadata: UsageMetadata | None = None
    model_version: str | None = None

    # Pre-computed token counts (user messages)
    estimated_token_count: int | None = None
    token_count_by_channel: dict[str, int] = field(default_factory=dict)

    # Timing (milliseconds since epoch / milliseconds)
    timestamp: int | None = None
    thinking_start_time: int | None = None
    thinking_duration: int | None = None
    response_duration: int | None = None
    stream_duration: int | None = None
    first_chunk_time: int | None = None
    chunk_count: int | None = None

    @property
    def is_genuine_user(self) -> bool:
        """A user message typed by a human (not a tool-result message)."""
        return self.role == "user" and not self.is_function_response

    def has_thoughts(self) -> bool:
        return any(p.thought for p in self.parts)

    def has_thought_signatures(self) -> bool:
        return any(p.thought_signatures for p in self.parts)

    def text(self) -> str:
        """Concatenated non-thought text."""
        return "".join(p.text for p in self.parts if p.text and not p.thought)


@dataclass
class StreamChunk:
    """One increment of a streaming model response."""

    delta: list[ContentPart] = field(default_factory=list)
    done: bool = False
    usage: UsageMetadata | None = None
    finish_reason: str | None = None
    model_version: str | None = None
    thought_signature: str | None = None  # stored under the channel type


@dataclass
class GenerateRequest:
    """What the orchestration loop hands to the model transport."""

    config_id: str
    history: list[Content]
    dynamic_system_prompt: str | None = None
    cancel: asyncio.Event | None = None
    skip_tools: bool = False
    skip_retry: bool = False
    model_override: str | None = None


@dataclass
class GenerateResponse:
    """Non-streaming transport result."""

    content: Content


@dataclass
class ToolCall:
    """A pending tool invocation extracted from a model message."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """A tool invocation outcome as reported to callers."""

    id: str
    name: str
    result: dict[str, Any]


@dataclass
class ConversationRound:
    """A genuine user message and everything up to the next one."""

    start_index: int
    end_index: int  # exclusive
    cumulative_tokens: int = 0


@dataclass
class TrimResult:
    history: list[Content]
    trim_start_index: int = 0
