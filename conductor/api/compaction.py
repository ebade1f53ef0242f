"""Context-window accounting -- token estimates, trimming and summaries.

Three layers:
  TokenEstimator       - deterministic local estimate (chars/4, mime-based
                         costs for attachments)
  TokenCountService    - provider count-tokens endpoints over httpx;
                         never raises, callers fall back to the estimator
  ContextWindowManager - decides which suffix of history is sent, given
                         the latest summary and the channel's threshold
  ContextSummarizer    - LLM-powered compaction into one summary message

This module is independent of AgentRunner to avoid circular imports and
keep runner.py focused on orchestration.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from conductor.api.accumulator import StreamAccumulator, now_ms
from conductor.api.errors import ChannelError, ChatError, ErrorCode, ErrorType, format_error, message
from conductor.api.models import (
    Content,
    ContentPart,
    ConversationRound,
    GenerateRequest,
    GenerateResponse,
    InlineData,
    StreamChunk,
    TrimResult,
    UsageMetadata,
)
from conductor.api.schemas import SummarizeRequest, SummarizeResult
from conductor.config import ChannelConfig, ConfigStore, Settings, resolve_extra_cut, resolve_threshold
from conductor.storage.conversation import ConversationStore, HistoryOptions, clean_part

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts (co-located with compaction logic)
# ------------------------------------------------------------------

DEFAULT_SUMMARIZE_PROMPT = """\
Please summarize the above conversation content concisely, output the summary directly without any format markers.

Requirements:
1. Keep key information and context points
2. Remove redundant content and tool call details
3. Summarize the topic, discussed problems, and conclusions
4. Keep important technical details and decisions
5. Output summary content directly without any prefix, title, or format markers"""

SUMMARY_PREFIX = "[Conversation Summary]"

# Mime types with page- or size-derived costs
_DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
})
_SPREADSHEET_MIME_TYPES = frozenset({
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "text/csv",
})

_ANTHROPIC_VERSION = "2023-06-01"


# ------------------------------------------------------------------
# Protocol for transport injection
# ------------------------------------------------------------------


class ModelTransport(Protocol):
    """Provider-agnostic model call.

    Returns either a complete GenerateResponse or an async iterator of
    StreamChunk increments.
    """

    async def generate(
        self, request: GenerateRequest
    ) -> GenerateResponse | AsyncIterator[StreamChunk]: ...


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Deterministic token estimates.

    Text costs ceil(chars/4).  Attachments are costed by mime type from
    the decoded size (base64 length * 0.75): fixed for images,
    duration-derived for audio/video, page-derived for documents.
    """

    def estimate_text(self, text: str) -> int:
        return math.ceil(len(text) / 4)

    def estimate_inline(self, data: InlineData) -> int:
        mime = data.mime_type.lower()
        size = math.floor(len(data.data) * 0.75)

        if mime.startswith("image/"):
            return 500
        if mime.startswith("audio/"):
            # ~10 KB/s, 32 tokens/s
            tokens = math.ceil(size / (10 * 1024) * 32)
            return max(100, min(tokens, 50000))
        if mime.startswith("video/"):
            # ~17 KB/s, 295 tokens/s (frames + audio)
            tokens = math.ceil(size / (17 * 1024) * 295)
            return max(500, min(tokens, 200000))
        if mime in _DOCUMENT_MIME_TYPES:
            pages = max(1, math.ceil(size / (75 * 1024)))
            return max(500, min(pages * 500, 100000))
        if mime in _SPREADSHEET_MIME_TYPES:
            tokens = math.ceil(size / 1024) * 100
            return max(200, min(tokens, 50000))
        if mime.startswith("text/"):
            return math.ceil(size / 4)
        return 1000

    def estimate_part(self, part: ContentPart) -> int:
        tokens = 0
        if part.text:
            tokens += self.estimate_text(part.text)
        if part.inline_data is not None:
            tokens += self.estimate_inline(part.inline_data)
        if part.function_call is not None:
            fc = part.function_call
            tokens += math.ceil((len(fc.name) + len(_compact_json(fc.args))) / 4)
        if part.function_response is not None:
            fr = part.function_response
            tokens += math.ceil((len(fr.name) + len(_compact_json(fr.response))) / 4)
            for inner in fr.parts or []:
                if inner.inline_data is not None:
                    tokens += self.estimate_inline(inner.inline_data)
        return tokens

    def estimate_message(self, content: Content) -> int:
        """Estimate one message; never less than 1."""
        return max(1, sum(self.estimate_part(p) for p in content.parts))


# ------------------------------------------------------------------
# Remote token counting
# ------------------------------------------------------------------


@dataclass
class TokenCountResult:
    success: bool
    total_tokens: int | None = None
    error: str | None = None


def _part_as_text(part: ContentPart) -> str:
    if part.text is not None:
        return part.text
    if part.function_call is not None:
        return _compact_json({"name": part.function_call.name, "args": part.function_call.args})
    if part.function_response is not None:
        return _compact_json({"name": part.function_response.name, "response": part.function_response.response})
    return ""


class TokenCountService:
    """Counts tokens through provider endpoints.

    Supported channel types: anthropic, gemini, openai-responses.  Any
    failure (disabled, unsupported, HTTP error, bad payload) yields an
    unsuccessful TokenCountResult rather than an exception.
    """

    SUPPORTED = ("anthropic", "gemini", "openai-responses")

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    def is_enabled(self, channel_type: str | None) -> bool:
        if channel_type not in self.SUPPORTED:
            return False
        cfg = self._settings.token_count.get(channel_type)
        return bool(cfg and cfg.enabled)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._settings.token_count_timeout)
        return self._http

    async def count_tokens(self, channel_type: str, contents: list[Content]) -> TokenCountResult:
        if not self.is_enabled(channel_type):
            return TokenCountResult(success=False, error=f"Token counting not enabled for {channel_type}")
        cfg = self._settings.token_count[channel_type]
        try:
            if channel_type == "anthropic":
                return await self._count_anthropic(cfg.base_url, cfg.api_key, cfg.model, contents)
            if channel_type == "gemini":
                return await self._count_gemini(cfg.base_url, cfg.api_key, cfg.model, contents)
            return await self._count_openai_responses(cfg.base_url, cfg.api_key, cfg.model, contents)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Token count request failed for %s: %s", channel_type, e)
            return TokenCountResult(success=False, error=str(e))

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str], params: dict[str, str] | None = None) -> dict[str, Any] | str:
        response = await self._client().post(url, json=body, headers=headers, params=params)
        if response.status_code >= 400:
            return f"HTTP {response.status_code}: {response.text}"
        return response.json()

    async def _count_anthropic(self, base_url: str, api_key: str, model: str, contents: list[Content]) -> TokenCountResult:
        base = (base_url or "https://api.anthropic.com").rstrip("/")
        body = {
            "model": model,
            "messages": [
                {
                    "role": "assistant" if c.role == "model" else "user",
                    "content": [{"type": "text", "text": _part_as_text(p)} for p in c.parts if not p.thought],
                }
                for c in contents
            ],
        }
        headers = {"x-api-key": api_key, "anthropic-version": _ANTHROPIC_VERSION}
        data = await self._post(f"{base}/v1/messages/count_tokens", body, headers)
        if isinstance(data, str):
            return TokenCountResult(success=False, error=f"Anthropic API error: {data}")
        return TokenCountResult(success=True, total_tokens=int(data["input_tokens"]))

    async def _count_gemini(self, base_url: str, api_key: str, model: str, contents: list[Content]) -> TokenCountResult:
        base = (base_url or "https://generativelanguage.googleapis.com").rstrip("/")
        rendered = []
        for c in contents:
            parts: list[dict[str, Any]] = []
            for p in c.parts:
                if p.thought:
                    continue
                if p.inline_data is not None:
                    parts.append({"inlineData": {"mimeType": p.inline_data.mime_type, "data": p.inline_data.data}})
                else:
                    parts.append({"text": _part_as_text(p)})
            rendered.append({"role": c.role, "parts": parts})
        data = await self._post(
            f"{base}/v1beta/models/{model}:countTokens",
            {"contents": rendered},
            {},
            params={"key": api_key},
        )
        if isinstance(data, str):
            return TokenCountResult(success=False, error=f"Gemini API error: {data}")
        return TokenCountResult(success=True, total_tokens=int(data["totalTokens"]))

    async def _count_openai_responses(self, base_url: str, api_key: str, model: str, contents: list[Content]) -> TokenCountResult:
        base = (base_url or "https://api.openai.com").rstrip("/")
        input_parts: list[dict[str, Any]] = []
        for c in contents:
            for p in c.parts:
                if p.thought:
                    continue
                if p.inline_data is not None:
                    input_parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{p.inline_data.mime_type};base64,{p.inline_data.data}"},
                    })
                else:
                    text = _part_as_text(p)
                    if text:
                        input_parts.append({"type": "text", "text": text})
        body: dict[str, Any] = {"input": input_parts}
        if model:
            body["model"] = model
        headers = {"Authorization": f"Bearer {api_key}"}
        data = await self._post(f"{base}/v1/responses/input_tokens", body, headers)
        if isinstance(data, str):
            return TokenCountResult(success=False, error=f"OpenAI Responses API error: {data}")
        if "input_tokens" not in data:
            return TokenCountResult(success=False, error="Response missing input_tokens field")
        return TokenCountResult(success=True, total_tokens=int(data["input_tokens"]))


# ------------------------------------------------------------------
# Context Window Manager
# ------------------------------------------------------------------


def find_last_summary_index(history: list[Content]) -> int:
    for i in range(len(history) - 1, -1, -1):
        if history[i].is_summary:
            return i
    return -1


def identify_rounds(history: list[Content]) -> list[ConversationRound]:
    """Group history into rounds; each starts at a genuine user message.

    Tool-result messages never start a round.  Messages before the first
    genuine user message belong to no round.
    """
    starts = [i for i, m in enumerate(history) if m.is_genuine_user]
    return [
        ConversationRound(start_index=s, end_index=starts[n + 1] if n + 1 < len(starts) else len(history))
        for n, s in enumerate(starts)
    ]


class ContextWindowManager:
    """Decides how much history is sent with each model request.

    The latest summary message is the effective start; everything before
    it is never sent.  When the running estimate from there exceeds the
    channel threshold, whole leading rounds are dropped until the rest
    fits under threshold - extra_cut, always keeping the final round.
    """

    def __init__(
        self,
        settings: Settings,
        token_counter: TokenCountService | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._settings = settings
        self.token_counter = token_counter
        self.estimator = estimator or TokenEstimator()

    async def count_content_tokens(self, content: Content, channel_type: str | None) -> int:
        """Remote count when enabled for the channel type, else the estimate."""
        if self.token_counter is not None and self.token_counter.is_enabled(channel_type):
            result = await self.token_counter.count_tokens(channel_type, [content])  # type: ignore[arg-type]
            if result.success and result.total_tokens is not None:
                return result.total_tokens
            logger.warning("Token count fallback to estimate (%s): %s", channel_type, result.error)
        return self.estimator.estimate_message(content)

    async def count_system_prompt(self, system_prompt: str, channel_type: str | None) -> int:
        if not system_prompt:
            return 0
        if self.token_counter is not None and self.token_counter.is_enabled(channel_type):
            result = await self.token_counter.count_tokens(
                channel_type,  # type: ignore[arg-type]
                [Content(role="user", parts=[ContentPart(text=system_prompt)])],
            )
            if result.success and result.total_tokens is not None:
                return result.total_tokens
            logger.warning("System prompt token count fallback to estimate: %s", result.error)
        return math.ceil(len(system_prompt) / 4)

    def _message_cost(self, index: int, msg: Content, window: Any) -> int:
        if msg.role == "user":
            if msg.estimated_token_count is not None:
                return msg.estimated_token_count
            return self.estimator.estimate_message(msg)
        if msg.usage_metadata is not None:
            usage = msg.usage_metadata
            tokens = usage.candidates_token_count or 0
            if window.includes_thought_tokens(index, msg):
                tokens += usage.thoughts_token_count or 0
            return tokens
        return self.estimator.estimate_message(msg)

    def estimate_rounds(
        self,
        full_history: list[Content],
        options: HistoryOptions,
        effective_start: int,
        system_tokens: int,
    ) -> tuple[int, list[ConversationRound], bool]:
        """Walk from effective_start; return (total, rounds, anything_estimated).

        Each round's cumulative_tokens is the running total (system prompt
        included) through the end of that round.
        """
        window = options.thought_window(full_history)
        total = system_tokens
        estimated = system_tokens > 0
        rounds: list[ConversationRound] = []
        current_start = -1

        for i in range(effective_start, len(full_history)):
            msg = full_history[i]
            if msg.is_genuine_user:
                if current_start != -1:
                    rounds.append(ConversationRound(start_index=current_start, end_index=i, cumulative_tokens=total))
                current_start = i
            cost = self._message_cost(i, msg, window)
            if msg.role == "user" or msg.usage_metadata is None or cost > 0:
                total += cost
                estimated = True

        if current_start != -1:
            rounds.append(
                ConversationRound(start_index=current_start, end_index=len(full_history), cumulative_tokens=total)
            )
        return total, rounds, estimated

    async def trim(
        self,
        full_history: list[Content],
        api_history: list[Content],
        config: ChannelConfig,
        options: HistoryOptions,
        system_prompt: str = "",
    ) -> TrimResult:
        """Pick the suffix of api_history to send.

        full_history is the stored history; api_history its transport-ready
        view (possibly shorter, since empty messages are dropped).  The
        boundary is computed on full_history and mapped proportionally.
        """
        if not full_history:
            return TrimResult(history=[], trim_start_index=0)

        effective_start = max(find_last_summary_index(full_history), 0)
        system_tokens = await self.count_system_prompt(system_prompt, config.type)
        total, rounds, estimated = self.estimate_rounds(full_history, options, effective_start, system_tokens)

        if not estimated:
            return TrimResult(history=list(api_history), trim_start_index=0)
        if not config.context_threshold_enabled:
            return self._slice(full_history, api_history, effective_start)

        threshold = resolve_threshold(config.context_threshold, config.max_context_tokens)
        if total <= threshold or len(rounds) <= 1:
            return self._slice(full_history, api_history, effective_start)

        extra_cut = resolve_extra_cut(config.context_trim_extra_cut, config.max_context_tokens)
        target = max(0, threshold - extra_cut)

        rounds_to_skip = 0
        for k in range(1, len(rounds)):
            skipped = rounds[k - 1].cumulative_tokens - system_tokens
            if total - skipped <= target:
                rounds_to_skip = k
                break
        if rounds_to_skip == 0 and total > target:
            rounds_to_skip = len(rounds) - 1
        if rounds_to_skip == 0:
            return self._slice(full_history, api_history, effective_start)

        trim_start = rounds[rounds_to_skip].start_index
        logger.info(
            "Context trim: estimate %d > threshold %d (target %d); skipping %d/%d rounds, start=%d",
            total, threshold, target, rounds_to_skip, len(rounds), trim_start,
        )
        return self._slice(full_history, api_history, trim_start)

    @staticmethod
    def _slice(full_history: list[Content], api_history: list[Content], start: int) -> TrimResult:
        """Cut api_history at the point matching full_history[start].

        The cut is mapped proportionally, then advanced to the next genuine
        user message so the kept history never opens on a tool result.

        Note: trim_start_index is start plus the number of API messages
        skipped while advancing.  When the API history is shorter than the
        full one (filtered thoughts, merged tool results) that offset is in
        API units, so the reported index can land inside a round of the full
        history rather than on its first message.
        """
        if start <= 0:
            return TrimResult(history=list(api_history), trim_start_index=0)

        api_start = math.floor(len(api_history) * start / len(full_history))
        sliced = api_history[api_start:]
        final_start = start

        if sliced and not sliced[0].is_genuine_user:
            offset = next((j for j, m in enumerate(sliced) if m.is_genuine_user), None)
            if offset is not None:
                sliced = sliced[offset:]
                final_start = start + offset
        return TrimResult(history=sliced, trim_start_index=final_start)


# ------------------------------------------------------------------
# Context Summarizer
# ------------------------------------------------------------------


class ContextSummarizer:
    """Compacts older rounds into a single summary message.

    The newest summarize_keep_recent_rounds rounds after the previous
    summary are kept verbatim.  Everything before them is sent to the
    model (with tools suppressed) and replaced by one is_summary user
    message inserted at the boundary; older summaries in that prefix are
    deleted.
    """

    def __init__(
        self,
        settings: Settings,
        configs: ConfigStore,
        transport: ModelTransport,
        store: ConversationStore,
    ) -> None:
        self._settings = settings
        self._configs = configs
        self._transport = transport
        self._store = store

    async def _resolve_config(self, config_id: str) -> tuple[ChannelConfig, str | None]:
        """Dedicated summary channel when available, else the chat channel."""
        dedicated = self._settings.summarize_config_id
        if dedicated:
            cfg = await self._configs.get_config(dedicated)
            if cfg is not None and cfg.enabled:
                return cfg, self._settings.summarize_model or None
            logger.info("Summary channel %s unavailable, falling back to chat config", dedicated)

        cfg = await self._configs.get_config(config_id)
        if cfg is None:
            raise ChatError(ErrorCode.CONFIG_NOT_FOUND, message("config_not_found", config_id=config_id))
        if not cfg.enabled:
            raise ChatError(ErrorCode.CONFIG_DISABLED, message("config_disabled", config_id=config_id))
        return cfg, None

    async def summarize(self, request: SummarizeRequest) -> SummarizeResult:
        try:
            return await self._summarize(request)
        except (ChatError, ChannelError) as e:
            return SummarizeResult(success=False, error=format_error(e))

    async def _summarize(self, request: SummarizeRequest) -> SummarizeResult:
        start_time = now_ms()
        cid = request.conversation_id
        keep = self._settings.summarize_keep_recent_rounds
        config, model_override = await self._resolve_config(request.config_id)

        full = await self._store.get_history_ref(cid)
        last_summary = find_last_summary_index(full)
        history_start = last_summary + 1 if last_summary >= 0 else 0
        after_summary = full[history_start:]
        rounds = identify_rounds(after_summary)

        if len(rounds) <= keep:
            return self._fail(
                ErrorCode.NOT_ENOUGH_ROUNDS,
                message("not_enough_rounds", current_rounds=len(rounds), keep_rounds=keep),
            )
        rounds_to_summarize = len(rounds) - keep
        if rounds_to_summarize <= 0:
            return self._fail(
                ErrorCode.NOT_ENOUGH_CONTENT,
                message("not_enough_content", current_rounds=len(rounds), keep_rounds=keep),
            )

        end_relative = (
            len(after_summary) if rounds_to_summarize >= len(rounds) else rounds[rounds_to_summarize].start_index
        )
        end = history_start + end_relative
        to_summarize = full[:end]
        if not to_summarize:
            return self._fail(ErrorCode.NO_MESSAGES_TO_SUMMARIZE, message("no_messages_to_summarize"))

        prompt = self._settings.summarize_prompt or DEFAULT_SUMMARIZE_PROMPT
        history = [self._clean(m, config.type) for m in to_summarize]
        history = [m for m in history if m.parts]
        history.append(Content(role="user", parts=[ContentPart(text=prompt)]))

        response = await self._transport.generate(
            GenerateRequest(
                config_id=config.id,
                history=history,
                cancel=request.cancel,
                skip_tools=True,
                skip_retry=True,
                model_override=model_override,
            )
        )

        if isinstance(response, GenerateResponse):
            final = response.content
        else:
            accumulator = StreamAccumulator(request_start_time=start_time, provider_type=config.type)
            async for chunk in response:
                if request.cancel is not None and request.cancel.is_set():
                    return self._fail(ErrorCode.ABORTED, message("summarize_aborted"))
                accumulator.add(chunk)
            final = accumulator.get_content()

        usage = final.usage_metadata
        before = usage.prompt_token_count if usage else None
        after = usage.candidates_token_count if usage else None

        text = "\n".join(p.text for p in final.parts if p.text and not p.thought).strip()
        if not text:
            return self._fail(ErrorCode.EMPTY_SUMMARY, message("empty_summary"))

        # Older summaries are superseded by the new one
        current = await self._store.get_history_ref(cid)
        old_summaries = [i for i in range(min(end, len(current))) if current[i].is_summary]
        for i in reversed(old_summaries):
            await self._store.delete_message(cid, i)
        insert_index = end - len(old_summaries)

        summary = Content(
            role="user",
            parts=[ContentPart(text=f"{SUMMARY_PREFIX}\n\n{text}")],
            is_summary=True,
            summarized_message_count=len(to_summarize),
            usage_metadata=UsageMetadata(prompt_token_count=before, candidates_token_count=after),
        )
        await self._store.insert_content(cid, insert_index, summary)

        logger.info(
            "Summarized conversation %s: %d messages -> 1 summary at index %d (%d chars, %d ms)",
            cid, len(to_summarize), insert_index, len(text), now_ms() - start_time,
        )
        return SummarizeResult(
            success=True,
            summary_content=summary,
            summarized_message_count=len(to_summarize),
            before_token_count=before,
            after_token_count=after,
        )

    @staticmethod
    def _fail(code: ErrorCode, text: str) -> SummarizeResult:
        return SummarizeResult(success=False, error=format_error(ChatError(code, text)))

    @staticmethod
    def _clean(msg: Content, channel_type: str) -> Content:
        """Strip thoughts, signatures, rejected flags and attachment metadata."""
        parts: list[ContentPart] = []
        for part in msg.parts:
            if part.thought:
                continue
            cleaned = clean_part(part, channel_type=channel_type, keep_signatures=False, rejected_ids=set())
            if cleaned is not None:
                parts.append(cleaned)
        return Content(role=msg.role, parts=parts, is_function_response=msg.is_function_response)
