"""Request DTOs and the outbound event union.

Requests are pydantic models (validated at the API boundary).  Results
and outbound events are plain dataclasses carrying Content objects.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from conductor.api.errors import ErrorCode, ErrorInfo
from conductor.api.models import Content, StreamChunk, ToolCall, ToolResult
from conductor.storage.checkpoints import CheckpointRecord

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_id: str
    config_id: str
    cancel: asyncio.Event | None = Field(default=None, exclude=True)


class AttachmentData(BaseModel):
    """A user-supplied binary attachment."""

    id: str
    name: str
    mime_type: str
    data: str  # base64


class ChatRequest(_Request):
    message: str
    attachments: list[AttachmentData] = Field(default_factory=list)


class ToolConfirmation(BaseModel):
    id: str
    name: str
    confirmed: bool


class ToolConfirmationRequest(_Request):
    tool_responses: list[ToolConfirmation]
    annotation: str | None = None


class RetryRequest(_Request):
    pass


class EditAndRetryRequest(_Request):
    message_index: int
    new_message: str


class SummarizeRequest(_Request):
    pass


# ---------------------------------------------------------------------------
# Non-streaming results
# ---------------------------------------------------------------------------


@dataclass
class ChatResult:
    success: bool
    content: Content | None = None
    error: ErrorInfo | None = None
    pending_tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class SummarizeResult:
    success: bool
    summary_content: Content | None = None
    summarized_message_count: int = 0
    before_token_count: int | None = None
    after_token_count: int | None = None
    error: ErrorInfo | None = None


# ---------------------------------------------------------------------------
# Outbound events (closed union, one dataclass per kind)
# ---------------------------------------------------------------------------


@dataclass
class ChunkEvent:
    conversation_id: str
    chunk: StreamChunk
    thinking_start_time: int | None = None
    kind: Literal["chunk"] = "chunk"


@dataclass
class ToolsExecutingEvent:
    """Emitted right before auto-executed or confirmed calls run."""

    conversation_id: str
    content: Content
    pending_tool_calls: list[ToolCall]
    kind: Literal["toolsExecuting"] = "toolsExecuting"


@dataclass
class AwaitingConfirmationEvent:
    """The loop paused; pending calls need a human decision."""

    conversation_id: str
    content: Content
    pending_tool_calls: list[ToolCall]
    kind: Literal["awaitingConfirmation"] = "awaitingConfirmation"

    def __post_init__(self) -> None:
        if not self.pending_tool_calls:
            raise ValueError("AwaitingConfirmationEvent requires at least one pending tool call")


@dataclass
class ToolIterationEvent:
    conversation_id: str
    content: Content | None
    tool_results: list[ToolResult]
    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    kind: Literal["toolIteration"] = "toolIteration"


@dataclass
class CheckpointsEvent:
    """Out-of-band checkpoints (around user/model messages)."""

    conversation_id: str
    checkpoints: list[CheckpointRecord]
    kind: Literal["checkpoints"] = "checkpoints"


@dataclass
class CompleteEvent:
    conversation_id: str
    content: Content
    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    kind: Literal["complete"] = "complete"


@dataclass
class CancelledEvent:
    conversation_id: str
    content: Content | None = None  # partial content, if any was received
    kind: Literal["cancelled"] = "cancelled"


@dataclass
class ErrorEvent:
    conversation_id: str
    error: ErrorInfo
    kind: Literal["error"] = "error"


@dataclass
class MaxIterationsEvent:
    """Iteration cap reached; a terminal outcome, not an error."""

    conversation_id: str
    max_iterations: int
    message: str
    code: str = ErrorCode.MAX_TOOL_ITERATIONS
    kind: Literal["maxIterations"] = "maxIterations"


ChatEvent = (
    ChunkEvent
    | ToolsExecutingEvent
    | AwaitingConfirmationEvent
    | ToolIterationEvent
    | CheckpointsEvent
    | CompleteEvent
    | CancelledEvent
    | ErrorEvent
    | MaxIterationsEvent
)
