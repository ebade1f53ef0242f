"""Conversation storage and the transport-ready history view.

The store owns Turn Content once the loop has persisted it.  History is
append-mostly; the only rewrites are token-count bookkeeping, edits of
user messages, summary insertion and delete-to-message.

get_history_for_api() never hands out stored objects: it builds a
filtered deep copy (thinking disclosure, internal flags, attachment
metadata, multimodal capability).
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from conductor.api.errors import message
from conductor.api.models import Content, ContentPart, InlineData

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})
DOCUMENT_MIME_TYPES = frozenset({"application/pdf", "text/plain"})


# ---------------------------------------------------------------------------
# Multimodal capability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MultimodalCapability:
    supports_images: bool = False
    supports_documents: bool = False
    supports_history_multimodal: bool = False


NO_MULTIMODAL = MultimodalCapability()
FULL_MULTIMODAL = MultimodalCapability(True, True, True)


def get_multimodal_capability(channel_type: str, tool_mode: str, enabled: bool) -> MultimodalCapability:
    """What multimodal tool output a channel can take."""
    if not enabled:
        return NO_MULTIMODAL
    if channel_type in ("gemini", "anthropic", "openai-responses"):
        return FULL_MULTIMODAL
    if channel_type == "openai":
        if tool_mode == "function_call":
            # tool results must be strings
            return NO_MULTIMODAL
        return MultimodalCapability(supports_images=True, supports_documents=False, supports_history_multimodal=True)
    return NO_MULTIMODAL


# ---------------------------------------------------------------------------
# Thinking disclosure
# ---------------------------------------------------------------------------


def round_start_indices(history: list[Content]) -> list[int]:
    return [i for i, m in enumerate(history) if m.is_genuine_user]


@dataclass
class HistoryOptions:
    """How a channel wants history rendered for a request."""

    send_history_thoughts: bool = False
    send_history_thought_signatures: bool = False
    send_current_thoughts: bool = False
    send_current_thought_signatures: bool = False
    history_thinking_rounds: int = -1  # -1 = all, 0 = none
    channel_type: str | None = None
    multimodal_capability: MultimodalCapability | None = None

    def thought_window(self, history: list[Content]) -> ThoughtWindow:
        starts = round_start_indices(history)
        last_user = starts[-1] if starts else -1
        min_index, max_index = 0, last_user

        if self.history_thinking_rounds == 0:
            min_index, max_index = len(history), -1
        elif self.history_thinking_rounds > 0 and len(starts) > 1:
            skip = max(0, len(starts) - 1 - self.history_thinking_rounds)
            if 0 < skip < len(starts):
                min_index = starts[skip]

        return ThoughtWindow(options=self, last_user_index=last_user, min_index=min_index, max_index=max_index)


@dataclass
class ThoughtWindow:
    """Which messages may carry thoughts/signatures to the model.

    Messages at or after the last genuine user message form the current
    round.  Earlier messages are historical; only those in
    [min_index, max_index) are eligible for historical disclosure.
    """

    options: HistoryOptions
    last_user_index: int
    min_index: int
    max_index: int

    def is_current(self, index: int) -> bool:
        return index >= self.last_user_index

    def allows(self, index: int) -> tuple[bool, bool]:
        """(send thoughts, send signatures) for the message at index."""
        opts = self.options
        if self.is_current(index):
            return opts.send_current_thoughts, opts.send_current_thought_signatures
        if self.min_index <= index < self.max_index:
            return opts.send_history_thoughts, opts.send_history_thought_signatures
        return False, False

    def includes_thought_tokens(self, index: int, content: Content) -> bool:
        thoughts, signatures = self.allows(index)
        return (thoughts and content.has_thoughts()) or (signatures and content.has_thought_signatures())


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


class ConversationStore(Protocol):
    async def ensure(self, conversation_id: str) -> None: ...

    async def get_history_ref(self, conversation_id: str) -> list[Content]: ...

    async def add_content(self, conversation_id: str, content: Content) -> int: ...

    async def add_message(self, conversation_id: str, role: str, parts: list[ContentPart]) -> int: ...

    async def get_message(self, conversation_id: str, index: int) -> Content | None: ...

    async def update_message(self, conversation_id: str, index: int, **fields: Any) -> None: ...

    async def delete_message(self, conversation_id: str, index: int) -> None: ...

    async def insert_content(self, conversation_id: str, index: int, content: Content) -> None: ...

    async def delete_to_message(self, conversation_id: str, index: int) -> int: ...

    async def get_history_for_api(self, conversation_id: str, options: HistoryOptions) -> list[Content]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


@dataclass
class _Conversation:
    id: str
    history: list[Content] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))


class InMemoryConversationStore:
    """Dict-backed ConversationStore.

    No locking: the caller guarantees one active loop per conversation.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, _Conversation] = {}

    def _get(self, conversation_id: str) -> _Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            conv = _Conversation(id=conversation_id)
            self._conversations[conversation_id] = conv
        return conv

    async def ensure(self, conversation_id: str) -> None:
        self._get(conversation_id)

    async def get_history_ref(self, conversation_id: str) -> list[Content]:
        """Live list; mutate through the store methods only."""
        return self._get(conversation_id).history

    async def add_content(self, conversation_id: str, content: Content) -> int:
        if content.timestamp is None:
            content.timestamp = int(time.time() * 1000)
        history = self._get(conversation_id).history
        history.append(content)
        return len(history) - 1

    async def add_message(self, conversation_id: str, role: str, parts: list[ContentPart]) -> int:
        return await self.add_content(conversation_id, Content(role=role, parts=parts))  # type: ignore[arg-type]

    async def get_message(self, conversation_id: str, index: int) -> Content | None:
        history = self._get(conversation_id).history
        if 0 <= index < len(history):
            return history[index]
        return None

    async def update_message(self, conversation_id: str, index: int, **fields: Any) -> None:
        target = await self.get_message(conversation_id, index)
        if target is None:
            raise IndexError(message("message_not_found", message_index=index))
        for key, value in fields.items():
            if not hasattr(target, key):
                raise AttributeError(f"Content has no field {key!r}")
            setattr(target, key, value)

    async def delete_message(self, conversation_id: str, index: int) -> None:
        history = self._get(conversation_id).history
        if not 0 <= index < len(history):
            raise IndexError(message("message_not_found", message_index=index))
        del history[index]

    async def insert_content(self, conversation_id: str, index: int, content: Content) -> None:
        if content.timestamp is None:
            content.timestamp = int(time.time() * 1000)
        history = self._get(conversation_id).history
        history.insert(max(0, min(index, len(history))), content)

    async def delete_to_message(self, conversation_id: str, index: int) -> int:
        """Delete messages from index onward; returns how many were removed."""
        history = self._get(conversation_id).history
        if index < 0 or index >= len(history):
            return 0
        deleted = len(history) - index
        del history[index:]
        logger.debug("Deleted %d messages from %s (index >= %d)", deleted, conversation_id, index)
        return deleted

    async def get_history_for_api(self, conversation_id: str, options: HistoryOptions) -> list[Content]:
        return build_api_history(self._get(conversation_id).history, options)


# ---------------------------------------------------------------------------
# Transport-ready view
# ---------------------------------------------------------------------------


def _rejected_call_ids(history: list[Content]) -> set[str]:
    return {
        p.function_call.id
        for m in history
        for p in m.parts
        if p.function_call is not None and p.function_call.rejected and p.function_call.id
    }


def _multimodal_allowed(data: InlineData, capability: MultimodalCapability, is_history: bool) -> bool:
    if data.mime_type in IMAGE_MIME_TYPES and not capability.supports_images:
        return False
    if data.mime_type in DOCUMENT_MIME_TYPES and not capability.supports_documents:
        return False
    if is_history and not capability.supports_history_multimodal:
        return False
    return True


def _clean_inline(data: InlineData, channel_type: str | None) -> InlineData:
    return InlineData(
        mime_type=data.mime_type,
        data=data.data,
        display_name=data.display_name if channel_type == "gemini" else None,
    )


def clean_part(
    part: ContentPart,
    *,
    channel_type: str | None,
    keep_signatures: bool,
    rejected_ids: set[str],
    capability: MultimodalCapability | None = None,
    is_function_response: bool = False,
    is_history: bool = False,
) -> ContentPart | None:
    """Deep-copied, API-safe version of one part, or None to drop it."""
    part = copy.deepcopy(part)

    if part.thought_signatures:
        if not keep_signatures:
            part.thought_signatures = None
        elif channel_type and channel_type in part.thought_signatures:
            part.thought_signatures = {channel_type: part.thought_signatures[channel_type]}

    if part.inline_data is not None:
        if capability is not None and is_function_response:
            if not _multimodal_allowed(part.inline_data, capability, is_history):
                return None
        part.inline_data = _clean_inline(part.inline_data, channel_type)

    if part.function_call is not None:
        part.function_call.rejected = False

    fr = part.function_response
    if fr is not None:
        if fr.id and fr.id in rejected_ids:
            fr.response = {"success": False, "error": message("user_rejected_tool"), "rejected": True}
        if fr.parts:
            kept: list[ContentPart] = []
            for inner in fr.parts:
                if inner.inline_data is not None:
                    if capability is not None and not _multimodal_allowed(inner.inline_data, capability, is_history):
                        continue
                    inner.inline_data = _clean_inline(inner.inline_data, channel_type)
                kept.append(inner)
            fr.parts = kept or None

    if (
        part.text is None
        and part.inline_data is None
        and part.function_call is None
        and part.function_response is None
        and not part.thought_signatures
    ):
        return None
    return part


def build_api_history(history: list[Content], options: HistoryOptions) -> list[Content]:
    """Filtered deep copy of history for one model request.

    Messages left without parts are dropped, so the result can be shorter
    than the stored history.
    """
    window = options.thought_window(history)
    rejected_ids = _rejected_call_ids(history)
    result: list[Content] = []

    for index, msg in enumerate(history):
        send_thoughts, send_signatures = window.allows(index)
        is_history = index < window.last_user_index
        parts: list[ContentPart] = []
        for part in msg.parts:
            if part.thought and not send_thoughts:
                continue
            cleaned = clean_part(
                part,
                channel_type=options.channel_type,
                keep_signatures=send_signatures,
                rejected_ids=rejected_ids,
                capability=options.multimodal_capability,
                is_function_response=msg.is_function_response,
                is_history=is_history,
            )
            if cleaned is not None:
                parts.append(cleaned)
        if not parts:
            continue
        result.append(
            Content(
                role=msg.role,
                parts=parts,
                is_function_response=msg.is_function_response,
                is_summary=msg.is_summary,
            )
        )
    return result
