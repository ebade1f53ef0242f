"""Checkpoint records and the collaborator protocol.

Checkpoints snapshot the workspace around tool batches and around user or
model messages.  Snapshot mechanics live outside the orchestration loop;
the loop only asks for creation at defined points and forwards whatever
record comes back, unmodified.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from conductor.config import Settings

logger = logging.getLogger(__name__)

Phase = Literal["before", "after"]

USER_MESSAGE_TOOL = "user_message"
MODEL_MESSAGE_TOOL = "model_message"
BATCH_TOOL = "tool_batch"


@dataclass
class CheckpointRecord:
    id: str
    conversation_id: str
    message_index: int
    tool_name: str
    phase: Phase
    timestamp: int  # ms since epoch
    extra: dict[str, Any] = field(default_factory=dict)


class CheckpointManager(Protocol):
    async def create_checkpoint(
        self,
        conversation_id: str,
        message_index: int,
        tool_name: str,
        phase: Phase,
    ) -> CheckpointRecord | None: ...

    async def delete_checkpoints_from_index(self, conversation_id: str, message_index: int) -> int: ...


class InMemoryCheckpointManager:
    """Records checkpoints without snapshotting anything.

    Useful when no workspace backup is wired in; keeps the record stream
    (and message-index bookkeeping for delete/edit) intact.
    """

    def __init__(self) -> None:
        self._records: dict[str, list[CheckpointRecord]] = {}

    async def create_checkpoint(
        self,
        conversation_id: str,
        message_index: int,
        tool_name: str,
        phase: Phase,
    ) -> CheckpointRecord | None:
        record = CheckpointRecord(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            message_index=message_index,
            tool_name=tool_name,
            phase=phase,
            timestamp=int(time.time() * 1000),
        )
        self._records.setdefault(conversation_id, []).append(record)
        logger.debug(
            "Checkpoint %s/%s at message %d (%s)",
            tool_name, phase, message_index, conversation_id,
        )
        return record

    async def delete_checkpoints_from_index(self, conversation_id: str, message_index: int) -> int:
        records = self._records.get(conversation_id, [])
        kept = [r for r in records if r.message_index < message_index]
        self._records[conversation_id] = kept
        return len(records) - len(kept)

    def list(self, conversation_id: str) -> list[CheckpointRecord]:
        return list(self._records.get(conversation_id, []))


class CheckpointPolicy:
    """Decides when user/model message checkpoints are requested."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def before_user_message(self) -> bool:
        return self._settings.checkpoint_before_user_message

    def after_user_message(self) -> bool:
        return self._settings.checkpoint_after_user_message

    def before_model_message(self, iteration: int) -> bool:
        """Iteration is 1-based; outer-layer-only limits this to the first."""
        if not self._settings.checkpoint_before_model_message:
            return False
        return not self._settings.checkpoint_model_outer_layer_only or iteration == 1

    def after_model_message(self) -> bool:
        return self._settings.checkpoint_after_model_message


def batch_tool_name(call_names: list[str]) -> str:
    """Checkpoint tool name for a batch: the single call's name, else tool_batch."""
    return call_names[0] if len(call_names) == 1 else BATCH_TOOL
