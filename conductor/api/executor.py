"""Batch tool execution for one model message.

Calls run strictly in emission order.  Cancellation is checked before
each call; calls already started always complete.  Every outcome,
success or failure, becomes one function_response part so the model sees
a result for each call it made.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from conductor.api.errors import message
from conductor.api.mcp import McpToolProxy
from conductor.api.models import Content, ContentPart, FunctionResponse, InlineData, ToolCall, ToolResult
from conductor.api.tools import ProxiedTool, ToolContext, ToolRegistry, parse_tool_ref
from conductor.config import ChannelConfig
from conductor.events import TOOL_EXECUTED, Event, EventBus
from conductor.storage.checkpoints import CheckpointManager, CheckpointRecord, Phase, batch_tool_name
from conductor.storage.conversation import MultimodalCapability, get_multimodal_capability

logger = logging.getLogger(__name__)


@dataclass
class ToolBatchResult:
    response_parts: list[ContentPart] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    # Inline attachments placed ahead of the responses (xml/json tool modes)
    attachment_parts: list[ContentPart] = field(default_factory=list)
    cancelled: bool = False

    def to_content(self) -> Content | None:
        """The tool-result message for this batch, or None if nothing ran."""
        parts = self.attachment_parts + self.response_parts
        if not parts:
            return None
        return Content(role="user", parts=parts, is_function_response=True)


def rejection_response() -> dict[str, Any]:
    return {"success": False, "error": message("user_rejected_tool"), "rejected": True}


class ToolExecutor:
    """Runs tool batches: checkpoints, routing, result folding."""

    def __init__(
        self,
        registry: ToolRegistry,
        checkpoints: CheckpointManager | None = None,
        mcp: McpToolProxy | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self._checkpoints = checkpoints
        self._mcp = mcp
        self._bus = bus

    async def execute(
        self,
        calls: list[ToolCall],
        *,
        conversation_id: str,
        message_index: int,
        config: ChannelConfig,
        cancel: asyncio.Event | None = None,
    ) -> ToolBatchResult:
        batch = ToolBatchResult()
        if not calls:
            return batch

        capability = get_multimodal_capability(config.type, config.tool_mode, config.multimodal_tools_enabled)
        checkpoint_name = batch_tool_name([c.name for c in calls])
        await self._checkpoint(batch, conversation_id, message_index, checkpoint_name, "before")

        for call in calls:
            if cancel is not None and cancel.is_set():
                batch.cancelled = True
                logger.info(
                    "Cancelled before %s; %d/%d calls ran (%s)",
                    call.name, len(batch.tool_results), len(calls), conversation_id,
                )
                break

            context = ToolContext(
                tool_id=call.id,
                conversation_id=conversation_id,
                cancel=cancel,
                config=config,
                bus=self._bus,
                capability=capability,
                tool_options=dict(config.tool_options.get(call.name, {}) or {}),
            )
            result = await self._run(call, context)
            self._fold(batch, call, result, config, capability)

            if self._bus is not None:
                await self._bus.emit(
                    Event(
                        type=TOOL_EXECUTED,
                        conversation_id=conversation_id,
                        tool_id=call.id,
                        data={"name": call.name, "success": result.get("success", True)},
                    )
                )
            if result.get("cancelled"):
                batch.cancelled = True
                break

        await self._checkpoint(batch, conversation_id, message_index, checkpoint_name, "after")
        return batch

    def reject(self, batch: ToolBatchResult, call: ToolCall) -> None:
        """Fold a user rejection as the call's result."""
        response = rejection_response()
        batch.tool_results.append(ToolResult(id=call.id, name=call.name, result=copy.deepcopy(response)))
        batch.response_parts.append(
            ContentPart(function_response=FunctionResponse(name=call.name, response=response, id=call.id))
        )

    async def _run(self, call: ToolCall, context: ToolContext) -> dict[str, Any]:
        ref = parse_tool_ref(call.name)
        if ref is None:
            return {"success": False, "error": message("invalid_mcp_tool_name", tool_name=call.name)}

        if isinstance(ref, ProxiedTool):
            if self._mcp is None or not self._mcp.has_server(ref.server_id):
                return {"success": False, "error": message("tool_not_found", tool_name=call.name)}
            try:
                return await self._mcp.call_tool(ref.server_id, ref.tool_name, dict(call.args))
            except Exception as e:
                logger.exception("MCP tool %s failed (call %s)", call.name, call.id)
                return {"success": False, "error": str(e) or message("mcp_tool_call_failed")}

        tool = self.registry.get_tool(ref.name)
        if tool is None:
            return {"success": False, "error": message("tool_not_found", tool_name=call.name)}

        try:
            result = await tool.handler(dict(call.args), context)
        except Exception as e:
            logger.exception("Tool %s failed (call %s)", call.name, call.id)
            return {"success": False, "error": str(e) or message("tool_execution_failed")}
        if not isinstance(result, dict):
            return {"success": True, "data": result}
        return result

    def _fold(
        self,
        batch: ToolBatchResult,
        call: ToolCall,
        result: dict[str, Any],
        config: ChannelConfig,
        capability: MultimodalCapability,
    ) -> None:
        multimodal = result.get("multimodal") or []
        response = {k: v for k, v in result.items() if k != "multimodal"}
        batch.tool_results.append(ToolResult(id=call.id, name=call.name, result=copy.deepcopy(response)))

        fr = FunctionResponse(name=call.name, response=response, id=call.id)
        inline = [
            ContentPart(
                inline_data=InlineData(
                    mime_type=item["mime_type"],
                    data=item["data"],
                    display_name=item.get("name"),
                )
            )
            for item in multimodal
            if isinstance(item, dict) and item.get("mime_type") and item.get("data")
        ]
        if inline:
            supported = capability.supports_images or capability.supports_documents
            if not supported:
                logger.debug("Dropping %d attachments from %s (unsupported)", len(inline), call.name)
            elif config.tool_mode == "function_call":
                fr.parts = inline
            else:
                batch.attachment_parts.extend(inline)
        batch.response_parts.append(ContentPart(function_response=fr))

    async def _checkpoint(
        self,
        batch: ToolBatchResult,
        conversation_id: str,
        message_index: int,
        tool_name: str,
        phase: Phase,
    ) -> None:
        if self._checkpoints is None:
            return
        try:
            record = await self._checkpoints.create_checkpoint(conversation_id, message_index, tool_name, phase)
        except Exception:
            logger.warning("Checkpoint %s/%s failed for %s", tool_name, phase, conversation_id, exc_info=True)
            return
        if record is not None:
            batch.checkpoints.append(record)
