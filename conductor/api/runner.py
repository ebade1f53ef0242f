"""Agent runner -- the orchestration loop and its entry points.

One turn: persist the user message, then iterate

  request model -> fold stream -> normalize + persist
    -> no calls: complete
    -> calls needing confirmation: pause (awaitingConfirmation)
    -> otherwise execute, persist the tool-result message, repeat

until the model stops calling tools, the caller cancels, or
max_tool_iterations is hit.  Every entry point is an async generator of
ChatEvent; run_turn() collects the same events into a ChatResult.

Pausing for confirmation returns from the generator.  confirm_tools()
resumes from persisted history, so no loop state outlives a generator.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
from collections.abc import AsyncGenerator
from typing import Any, Protocol

from conductor.api.accumulator import StreamAccumulator, now_ms
from conductor.api.compaction import (
    ContextSummarizer,
    ContextWindowManager,
    ModelTransport,
    TokenCountService,
)
from conductor.api.errors import ChannelError, ChatError, ErrorCode, ErrorInfo, ErrorType, format_error, message
from conductor.api.executor import ToolBatchResult, ToolExecutor
from conductor.api.extractor import ensure_function_call_ids, extract_function_calls, normalize_tool_calls
from conductor.api.gate import ConfirmationGate
from conductor.api.mcp import McpToolProxy
from conductor.api.models import (
    Content,
    ContentPart,
    GenerateRequest,
    GenerateResponse,
    InlineData,
    StreamChunk,
    ToolCall,
)
from conductor.api.schemas import (
    AwaitingConfirmationEvent,
    CancelledEvent,
    ChatEvent,
    ChatRequest,
    ChatResult,
    CheckpointsEvent,
    ChunkEvent,
    CompleteEvent,
    EditAndRetryRequest,
    ErrorEvent,
    MaxIterationsEvent,
    RetryRequest,
    SummarizeRequest,
    SummarizeResult,
    ToolConfirmationRequest,
    ToolIterationEvent,
    ToolsExecutingEvent,
)
from conductor.api.tools import ToolRegistry
from conductor.config import ChannelConfig, ConfigStore, Settings
from conductor.events import TURN_COMPLETED, TURN_STARTED, Event, EventBus
from conductor.storage.checkpoints import (
    MODEL_MESSAGE_TOOL,
    USER_MESSAGE_TOOL,
    CheckpointManager,
    CheckpointPolicy,
    CheckpointRecord,
    Phase,
)
from conductor.storage.conversation import (
    ConversationStore,
    HistoryOptions,
    InMemoryConversationStore,
    get_multimodal_capability,
)

logger = logging.getLogger(__name__)


class SystemPromptProvider(Protocol):
    """Builds the system prompt; called before every model request."""

    async def get_system_prompt(self) -> str: ...


class StaticPromptProvider:
    def __init__(self, prompt: str = "") -> None:
        self._prompt = prompt

    async def get_system_prompt(self) -> str:
        return self._prompt


class AgentRunner:
    """Drives conversations between a model transport and the tool registry."""

    def __init__(
        self,
        settings: Settings,
        configs: ConfigStore,
        transport: ModelTransport,
        store: ConversationStore | None = None,
        registry: ToolRegistry | None = None,
        checkpoints: CheckpointManager | None = None,
        mcp: McpToolProxy | None = None,
        token_counter: TokenCountService | None = None,
        prompts: SystemPromptProvider | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._configs = configs
        self._transport = transport
        self._store: ConversationStore = store or InMemoryConversationStore()
        self._checkpoints = checkpoints
        self._token_counter = token_counter
        self._prompts = prompts or StaticPromptProvider(settings.system_prompt)
        self.bus = bus or EventBus()
        self.registry = registry or ToolRegistry()

        self._gate = ConfirmationGate(settings)
        self._policy = CheckpointPolicy(settings)
        self._executor = ToolExecutor(self.registry, checkpoints, mcp, self.bus)
        self._window = ContextWindowManager(settings, token_counter)
        self._summarizer = ContextSummarizer(settings, configs, transport, self._store)

    @property
    def store(self) -> ConversationStore:
        return self._store

    async def start(self) -> None:
        await self.bus.start()

    async def close(self) -> None:
        await self.bus.stop()
        if self._token_counter is not None:
            await self._token_counter.close()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def stream_chat(self, request: ChatRequest) -> AsyncGenerator[ChatEvent, None]:
        """New user message, then the loop."""
        cid = request.conversation_id
        try:
            config = await self._get_config(request.config_id)
        except ChatError as e:
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
            return

        await self._store.ensure(cid)
        await self._emit(TURN_STARTED, cid, {"config_id": config.id})

        history = await self._store.get_history_ref(cid)
        if self._policy.before_user_message():
            records = await self._checkpoint(cid, len(history), USER_MESSAGE_TOOL, "before")
            if records:
                yield CheckpointsEvent(conversation_id=cid, checkpoints=records)

        parts = [ContentPart(text=request.message)]
        for attachment in request.attachments:
            parts.append(
                ContentPart(
                    inline_data=InlineData(
                        mime_type=attachment.mime_type,
                        data=attachment.data,
                        id=attachment.id,
                        name=attachment.name,
                        display_name=attachment.name,
                    )
                )
            )
        index = await self._store.add_message(cid, "user", parts)
        await self._precount_tokens(cid, config.type, index)

        if self._policy.after_user_message():
            records = await self._checkpoint(cid, index, USER_MESSAGE_TOOL, "after")
            if records:
                yield CheckpointsEvent(conversation_id=cid, checkpoints=records)

        async for event in self._run_loop(cid, config, request.cancel):
            yield event

    async def confirm_tools(self, request: ToolConfirmationRequest) -> AsyncGenerator[ChatEvent, None]:
        """Resume a paused turn with the user's per-call decisions.

        Calls without a decision count as rejected.
        """
        cid = request.conversation_id
        cancel = request.cancel
        try:
            config = await self._get_config(request.config_id)
            model_index, model_message, calls = await self._pending_calls(cid)
        except ChatError as e:
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
            return

        decisions = {r.id: r.confirmed for r in request.tool_responses}
        confirmed = [c for c in calls if decisions.get(c.id, False)]
        rejected = [c for c in calls if not decisions.get(c.id, False)]

        batch = ToolBatchResult()
        if confirmed:
            yield ToolsExecutingEvent(conversation_id=cid, content=model_message, pending_tool_calls=confirmed)
            batch = await self._executor.execute(
                confirmed,
                conversation_id=cid,
                message_index=model_index,
                config=config,
                cancel=cancel,
            )
        for call in rejected:
            self._executor.reject(batch, call)
        _order_by_calls(batch, calls)

        if rejected:
            rejected_ids = {c.id for c in rejected}
            parts = copy.deepcopy(model_message.parts)
            for part in parts:
                if part.function_call is not None and part.function_call.id in rejected_ids:
                    part.function_call.rejected = True
            await self._store.update_message(cid, model_index, parts=parts)
            logger.info("User rejected %d call(s) in %s", len(rejected), cid)

        result_content = await self._persist_batch(cid, config, batch)
        yield ToolIterationEvent(
            conversation_id=cid,
            content=result_content,
            tool_results=batch.tool_results,
            checkpoints=batch.checkpoints,
        )
        if batch.cancelled or _is_set(cancel):
            yield CancelledEvent(conversation_id=cid)
            return

        annotation = (request.annotation or "").strip()
        if annotation:
            index = await self._store.add_message(cid, "user", [ContentPart(text=annotation)])
            await self._precount_tokens(cid, config.type, index)

        async for event in self._run_loop(cid, config, cancel):
            yield event

    async def retry(self, request: RetryRequest) -> AsyncGenerator[ChatEvent, None]:
        """Re-run the loop; orphaned calls in the last model message run first."""
        cid = request.conversation_id
        try:
            config = await self._get_config(request.config_id)
        except ChatError as e:
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
            return

        await self._store.ensure(cid)
        orphaned = await self._orphaned_calls(cid)
        if orphaned is not None:
            model_index, calls = orphaned
            logger.info("Executing %d orphaned call(s) before retry in %s", len(calls), cid)
            batch = await self._executor.execute(
                calls,
                conversation_id=cid,
                message_index=model_index,
                config=config,
                cancel=request.cancel,
            )
            result_content = await self._persist_batch(cid, config, batch)
            yield ToolIterationEvent(
                conversation_id=cid,
                content=result_content,
                tool_results=batch.tool_results,
                checkpoints=batch.checkpoints,
            )
            if batch.cancelled or _is_set(request.cancel):
                yield CancelledEvent(conversation_id=cid)
                return

        async for event in self._run_loop(cid, config, request.cancel):
            yield event

    async def edit_and_retry(self, request: EditAndRetryRequest) -> AsyncGenerator[ChatEvent, None]:
        """Replace a user message's text, drop everything after it, re-run."""
        cid = request.conversation_id
        index = request.message_index
        try:
            config = await self._get_config(request.config_id)
            target = await self._store.get_message(cid, index)
            if target is None:
                raise ChatError(ErrorCode.MESSAGE_NOT_FOUND, message("message_not_found", message_index=index))
            if target.role != "user":
                raise ChatError(
                    ErrorCode.INVALID_MESSAGE_ROLE,
                    message("can_only_edit_user_message", role=target.role),
                )
        except ChatError as e:
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
            return

        # Text is replaced; attachments stay
        parts = [ContentPart(text=request.new_message)]
        parts.extend(copy.deepcopy(p) for p in target.parts if p.text is None)
        await self._store.update_message(cid, index, parts=parts)
        await self._precount_tokens(cid, config.type, index, force=True)

        if self._checkpoints is not None:
            await self._checkpoints.delete_checkpoints_from_index(cid, index + 1)
        deleted = await self._store.delete_to_message(cid, index + 1)
        logger.debug("Edited message %d in %s; dropped %d later messages", index, cid, deleted)

        async for event in self._run_loop(cid, config, request.cancel):
            yield event

    async def run_turn(self, request: ChatRequest) -> ChatResult:
        """Non-streaming chat: drive stream_chat() and collect the outcome."""
        return await collect_result(self.stream_chat(request))

    async def delete_to_message(self, conversation_id: str, index: int) -> int:
        """Delete messages (and their checkpoints) from index onward."""
        if self._checkpoints is not None:
            await self._checkpoints.delete_checkpoints_from_index(conversation_id, index)
        return await self._store.delete_to_message(conversation_id, index)

    async def summarize_context(self, request: SummarizeRequest) -> SummarizeResult:
        return await self._summarizer.summarize(request)

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        cid: str,
        config: ChannelConfig,
        cancel: asyncio.Event | None,
    ) -> AsyncGenerator[ChatEvent, None]:
        max_iterations = self._settings.max_tool_iterations
        iteration = 0
        try:
            while max_iterations == -1 or iteration < max_iterations:
                iteration += 1
                if _is_set(cancel):
                    yield CancelledEvent(conversation_id=cid)
                    return
                logger.debug("Loop iteration %d for %s (%s)", iteration, cid, config.id)

                if self._policy.before_model_message(iteration):
                    history = await self._store.get_history_ref(cid)
                    records = await self._checkpoint(cid, len(history), MODEL_MESSAGE_TOOL, "before")
                    if records:
                        yield CheckpointsEvent(conversation_id=cid, checkpoints=records)

                system_prompt = await self._prompts.get_system_prompt()
                options = self.build_history_options(config)
                full_history = await self._store.get_history_ref(cid)
                api_history = await self._store.get_history_for_api(cid, options)
                trimmed = await self._window.trim(full_history, api_history, config, options, system_prompt)

                request = GenerateRequest(
                    config_id=config.id,
                    history=trimmed.history,
                    dynamic_system_prompt=system_prompt or None,
                    cancel=cancel,
                )
                request_start = now_ms()
                accumulator = StreamAccumulator(
                    request_start_time=request_start,
                    provider_type=config.type,
                    tool_mode=config.tool_mode,
                )
                content: Content | None = None
                try:
                    response = await self._transport.generate(request)
                    if isinstance(response, GenerateResponse):
                        content = response.content
                        content.response_duration = now_ms() - request_start
                        content.chunk_count = 1
                        yield ChunkEvent(
                            conversation_id=cid,
                            chunk=StreamChunk(
                                delta=list(content.parts),
                                done=True,
                                usage=content.usage_metadata,
                                model_version=content.model_version,
                            ),
                        )
                    else:
                        emitted_calls = 0
                        async for chunk in response:
                            accumulator.add(chunk)
                            if config.tool_mode != "function_call":
                                chunk, emitted_calls = _with_converted_calls(chunk, accumulator, emitted_calls)
                            yield ChunkEvent(
                                conversation_id=cid,
                                chunk=chunk,
                                thinking_start_time=accumulator.thinking_start_time,
                            )
                            if _is_set(cancel):
                                break
                except ChannelError as e:
                    if e.type == ErrorType.CANCELLED_ERROR or _is_set(cancel):
                        partial = await self._persist_partial(cid, accumulator)
                        yield CancelledEvent(conversation_id=cid, content=partial)
                        return
                    await self._persist_partial(cid, accumulator)
                    raise
                except Exception:
                    await self._persist_partial(cid, accumulator)
                    raise

                if content is None:
                    if _is_set(cancel):
                        partial = await self._persist_partial(cid, accumulator)
                        yield CancelledEvent(conversation_id=cid, content=partial)
                        return
                    content = accumulator.get_content()

                normalize_tool_calls(content)
                ensure_function_call_ids(content)
                model_index = -1
                if content.parts:
                    model_index = await self._store.add_content(cid, content)

                calls = extract_function_calls(content)
                if not calls:
                    checkpoints: list[CheckpointRecord] = []
                    if self._policy.after_model_message() and model_index >= 0:
                        checkpoints = await self._checkpoint(cid, model_index, MODEL_MESSAGE_TOOL, "after")
                    await self._emit(TURN_COMPLETED, cid, {"iterations": iteration})
                    yield CompleteEvent(conversation_id=cid, content=content, checkpoints=checkpoints)
                    return

                _, needs_confirmation = self._gate.split(calls)
                if needs_confirmation:
                    logger.info(
                        "Awaiting confirmation in %s for: %s",
                        cid, ", ".join(c.name for c in needs_confirmation),
                    )
                    yield AwaitingConfirmationEvent(conversation_id=cid, content=content, pending_tool_calls=calls)
                    return

                yield ToolsExecutingEvent(conversation_id=cid, content=content, pending_tool_calls=calls)
                batch = await self._executor.execute(
                    calls,
                    conversation_id=cid,
                    message_index=model_index,
                    config=config,
                    cancel=cancel,
                )
                result_content = await self._persist_batch(cid, config, batch)
                yield ToolIterationEvent(
                    conversation_id=cid,
                    content=result_content,
                    tool_results=batch.tool_results,
                    checkpoints=batch.checkpoints,
                )
                if batch.cancelled or _is_set(cancel):
                    yield CancelledEvent(conversation_id=cid)
                    return

            logger.warning("Tool loop reached max_tool_iterations=%d for %s", max_iterations, cid)
            yield MaxIterationsEvent(
                conversation_id=cid,
                max_iterations=max_iterations,
                message=message("max_tool_iterations", max_iterations=max_iterations),
            )

        except ChannelError as e:
            if e.type == ErrorType.CANCELLED_ERROR:
                yield CancelledEvent(conversation_id=cid)
                return
            logger.warning("Transport error in %s: %s (%s)", cid, e.message, e.type)
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
        except ChatError as e:
            yield ErrorEvent(conversation_id=cid, error=format_error(e))
        except Exception as e:
            logger.exception("Loop failed for %s", cid)
            yield ErrorEvent(conversation_id=cid, error=format_error(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def build_history_options(self, config: ChannelConfig) -> HistoryOptions:
        """Thinking disclosure and multimodal capability for a channel.

        Unset current-round flags take the provider default: Anthropic
        needs its current thoughts back; Gemini and OpenAI Responses need
        their current signatures.
        """
        send_current_thoughts = (
            config.send_current_thoughts
            if config.send_current_thoughts is not None
            else config.type == "anthropic"
        )
        send_current_signatures = (
            config.send_current_thought_signatures
            if config.send_current_thought_signatures is not None
            else config.type in ("gemini", "openai-responses")
        )
        any_history = config.send_history_thoughts or config.send_history_thought_signatures
        return HistoryOptions(
            send_history_thoughts=config.send_history_thoughts,
            send_history_thought_signatures=config.send_history_thought_signatures,
            send_current_thoughts=send_current_thoughts,
            send_current_thought_signatures=send_current_signatures,
            history_thinking_rounds=config.history_thinking_rounds if any_history else -1,
            channel_type=config.type,
            multimodal_capability=get_multimodal_capability(
                config.type, config.tool_mode, config.multimodal_tools_enabled
            ),
        )

    async def _get_config(self, config_id: str) -> ChannelConfig:
        config = await self._configs.get_config(config_id)
        if config is None:
            raise ChatError(ErrorCode.CONFIG_NOT_FOUND, message("config_not_found", config_id=config_id))
        if not config.enabled:
            raise ChatError(ErrorCode.CONFIG_DISABLED, message("config_disabled", config_id=config_id))
        return config

    async def _pending_calls(self, cid: str) -> tuple[int, Content, list[ToolCall]]:
        """The last model message and its calls, for confirmation."""
        history = await self._store.get_history_ref(cid)
        if not history:
            raise ChatError(ErrorCode.NO_HISTORY, message("no_history"))
        last = history[-1]
        if last.role != "model":
            raise ChatError(ErrorCode.INVALID_STATE, message("last_message_not_model"))
        calls = extract_function_calls(last)
        if not calls:
            raise ChatError(ErrorCode.NO_FUNCTION_CALLS, message("no_function_calls"))
        return len(history) - 1, last, calls

    async def _orphaned_calls(self, cid: str) -> tuple[int, list[ToolCall]] | None:
        """Calls in a trailing model message that has no text and no results."""
        history = await self._store.get_history_ref(cid)
        if not history or history[-1].role != "model":
            return None
        last = history[-1]
        if last.text().strip():
            return None
        calls = extract_function_calls(last)
        if not calls:
            return None
        return len(history) - 1, calls

    async def _persist_batch(self, cid: str, config: ChannelConfig, batch: ToolBatchResult) -> Content | None:
        content = batch.to_content()
        if content is None:
            return None
        index = await self._store.add_content(cid, content)
        await self._precount_tokens(cid, config.type, index)
        return content

    async def _persist_partial(self, cid: str, accumulator: StreamAccumulator) -> Content | None:
        """Best-effort save of whatever streamed before a cancel or error."""
        try:
            content = accumulator.get_content()
            if not content.parts:
                return None
            normalize_tool_calls(content)
            ensure_function_call_ids(content)
            await self._store.add_content(cid, content)
            return content
        except Exception:
            logger.warning("Failed to persist partial content for %s", cid, exc_info=True)
            return None

    async def _precount_tokens(
        self,
        cid: str,
        channel_type: str,
        index: int,
        force: bool = False,
    ) -> None:
        """Store a token count on a user message (skipped if already counted)."""
        msg = await self._store.get_message(cid, index)
        if msg is None or msg.role != "user":
            return
        if not force and channel_type in msg.token_count_by_channel:
            return
        tokens = await self._window.count_content_tokens(msg, channel_type)
        counts = {} if force else dict(msg.token_count_by_channel)
        counts[channel_type] = tokens
        await self._store.update_message(
            cid, index, estimated_token_count=tokens, token_count_by_channel=counts
        )

    async def _checkpoint(self, cid: str, index: int, tool_name: str, phase: Phase) -> list[CheckpointRecord]:
        if self._checkpoints is None:
            return []
        try:
            record = await self._checkpoints.create_checkpoint(cid, index, tool_name, phase)
        except Exception:
            logger.warning("Checkpoint %s/%s failed for %s", tool_name, phase, cid, exc_info=True)
            return []
        return [record] if record is not None else []

    async def _emit(self, event_type: str, cid: str, data: dict[str, Any]) -> None:
        await self.bus.emit(Event(type=event_type, conversation_id=cid, data=data))


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _is_set(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _order_by_calls(batch: ToolBatchResult, calls: list[ToolCall]) -> None:
    """Sort results back into the order the model emitted the calls."""
    order = {c.id: i for i, c in enumerate(calls)}
    batch.tool_results.sort(key=lambda r: order.get(r.id, len(order)))
    batch.response_parts.sort(
        key=lambda p: order.get(p.function_response.id if p.function_response else None, len(order))
    )


def _with_converted_calls(
    chunk: StreamChunk,
    accumulator: StreamAccumulator,
    emitted: int,
) -> tuple[StreamChunk, int]:
    """Append call parts the accumulator converted from markup since last time."""
    calls = accumulator.call_parts()
    if len(calls) <= emitted:
        return chunk, emitted
    return dataclasses.replace(chunk, delta=list(chunk.delta) + calls[emitted:]), len(calls)


async def collect_result(events: AsyncGenerator[ChatEvent, None]) -> ChatResult:
    """Fold an event stream into a ChatResult."""
    result = ChatResult(success=False)
    async for event in events:
        if isinstance(event, ToolIterationEvent):
            result.tool_results.extend(event.tool_results)
            result.checkpoints.extend(event.checkpoints)
        elif isinstance(event, CheckpointsEvent):
            result.checkpoints.extend(event.checkpoints)
        elif isinstance(event, CompleteEvent):
            result.success = True
            result.content = event.content
            result.checkpoints.extend(event.checkpoints)
        elif isinstance(event, AwaitingConfirmationEvent):
            result.success = True
            result.content = event.content
            result.pending_tool_calls = list(event.pending_tool_calls)
        elif isinstance(event, CancelledEvent):
            result.cancelled = True
            result.content = event.content
        elif isinstance(event, ErrorEvent):
            result.error = event.error
        elif isinstance(event, MaxIterationsEvent):
            result.error = ErrorInfo(code=event.code, message=event.message)
    return result
