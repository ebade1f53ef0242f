"""Tests for token estimation, context trimming and summarization."""

from __future__ import annotations

import asyncio
import json
import math

import httpx
import pytest

from conductor.api.compaction import (
    DEFAULT_SUMMARIZE_PROMPT,
    SUMMARY_PREFIX,
    ContextSummarizer,
    ContextWindowManager,
    TokenCountService,
    TokenEstimator,
    find_last_summary_index,
    identify_rounds,
)
from conductor.api.errors import ErrorCode
from conductor.api.models import (
    Content,
    ContentPart,
    FunctionCall,
    FunctionResponse,
    InlineData,
    UsageMetadata,
)
from conductor.api.schemas import SummarizeRequest
from conductor.config import ChannelConfig, TokenCountConfig
from conductor.storage.conversation import HistoryOptions, build_api_history
from tests.conftest import ScriptedTransport, done_chunk, model, text_chunk, tool_result, user


def _b64_of_size(n_bytes: int) -> str:
    # floor(len * 0.75) == n_bytes for multiples of 3
    return "A" * math.ceil(n_bytes / 3) * 4


def _round(user_tokens: int = 100, model_tokens: int = 100, **user_kwargs) -> list[Content]:
    return [
        user("question", estimated_token_count=user_tokens, **user_kwargs),
        model("answer", usage_metadata=UsageMetadata(candidates_token_count=model_tokens)),
    ]


def _config(**kwargs) -> ChannelConfig:
    return ChannelConfig(id="test", type="custom", **kwargs)


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def setup_method(self):
        self.est = TokenEstimator()

    def test_text_is_chars_over_four(self):
        assert self.est.estimate_text("abcdefgh") == 2
        assert self.est.estimate_text("abcdefghi") == 3

    def test_image_fixed_cost(self):
        assert self.est.estimate_inline(InlineData(mime_type="image/png", data=_b64_of_size(900_000))) == 500

    def test_audio_clamped(self):
        tiny = InlineData(mime_type="audio/mpeg", data=_b64_of_size(30))
        huge = InlineData(mime_type="audio/mpeg", data=_b64_of_size(50_000_000))
        assert self.est.estimate_inline(tiny) == 100
        assert self.est.estimate_inline(huge) == 50000

    def test_audio_duration_derived(self):
        # 100 KB at 10 KB/s = 10 s -> 320 tokens
        data = InlineData(mime_type="audio/wav", data=_b64_of_size(100 * 1024 + 2))
        assert self.est.estimate_inline(data) in (320, 321)

    def test_video_minimum(self):
        assert self.est.estimate_inline(InlineData(mime_type="video/mp4", data=_b64_of_size(300))) == 500

    def test_pdf_page_derived(self):
        # ~3 pages of 75 KB
        data = InlineData(mime_type="application/pdf", data=_b64_of_size(3 * 75 * 1024))
        assert self.est.estimate_inline(data) == 1500

    def test_pdf_minimum_one_page(self):
        assert self.est.estimate_inline(InlineData(mime_type="application/pdf", data="QUJD")) == 500

    def test_unknown_binary_flat(self):
        data = InlineData(mime_type="application/octet-stream", data=_b64_of_size(10))
        assert self.est.estimate_inline(data) == 1000

    def test_text_attachment_bytes_over_four(self):
        data = InlineData(mime_type="text/plain", data=_b64_of_size(399))
        assert self.est.estimate_inline(data) == 100

    def test_function_call_and_response(self):
        call = ContentPart(function_call=FunctionCall(name="read", args={"p": "a"}))
        assert self.est.estimate_part(call) == math.ceil((4 + len('{"p":"a"}')) / 4)
        response = ContentPart(
            function_response=FunctionResponse(
                name="img",
                response={"ok": True},
                parts=[ContentPart(inline_data=InlineData(mime_type="image/png", data="AAAA"))],
            )
        )
        assert self.est.estimate_part(response) == math.ceil((3 + len('{"ok":true}')) / 4) + 500

    def test_message_minimum_one(self):
        assert self.est.estimate_message(Content(role="model", parts=[ContentPart(text="")])) == 1


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


class TestRounds:
    def test_tool_result_does_not_start_round(self):
        history = [
            user("U1"),
            model("M1"),
            tool_result("t"),
            model("M2"),
            user("U3"),
            model("M3"),
        ]
        rounds = identify_rounds(history)
        assert [(r.start_index, r.end_index) for r in rounds] == [(0, 4), (4, 6)]

    def test_last_summary_index(self):
        history = [user("a", is_summary=True), model("b"), user("c", is_summary=True), model("d")]
        assert find_last_summary_index(history) == 2
        assert find_last_summary_index([user("a")]) == -1


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------


class TestContextTrim:
    def setup_method(self):
        self.manager = ContextWindowManager(settings=None)
        self.options = HistoryOptions()

    async def _trim(self, history, config, system_prompt=""):
        api = build_api_history(history, self.options)
        return await self.manager.trim(history, api, config, self.options, system_prompt)

    @pytest.mark.asyncio
    async def test_empty_history(self):
        result = await self.manager.trim([], [], _config(), self.options)
        assert result.history == []
        assert result.trim_start_index == 0

    @pytest.mark.asyncio
    async def test_summary_is_effective_start_when_threshold_disabled(self):
        history = [user("u0"), model("m0"), user("u1"), user("summary", is_summary=True)]
        for i in range(5):
            history += [model(f"m{i}"), user(f"u{i}")]
        assert len(history) == 14

        result = await self._trim(history, _config(context_threshold_enabled=False))
        assert result.trim_start_index == 3
        assert result.history[0].is_summary
        assert len(result.history) == 11

    @pytest.mark.asyncio
    async def test_under_threshold_keeps_everything(self):
        history = _round() + _round()
        result = await self._trim(history, _config(context_threshold_enabled=True, context_threshold=10_000))
        assert result.trim_start_index == 0
        assert len(result.history) == 4

    @pytest.mark.asyncio
    async def test_skips_fewest_leading_rounds(self):
        history = _round() + _round() + _round() + _round()  # 800 tokens
        result = await self._trim(history, _config(context_threshold_enabled=True, context_threshold=500))
        assert result.trim_start_index == 4
        assert len(result.history) == 4
        assert result.history[0].is_genuine_user

    @pytest.mark.asyncio
    async def test_extra_cut_skips_more(self):
        history = _round() + _round() + _round() + _round()
        config = _config(context_threshold_enabled=True, context_threshold=500, context_trim_extra_cut=150)
        result = await self._trim(history, config)
        assert result.trim_start_index == 6

    @pytest.mark.asyncio
    async def test_percent_threshold(self):
        history = _round() + _round() + _round() + _round()
        config = _config(context_threshold_enabled=True, context_threshold="50%", max_context_tokens=1000)
        result = await self._trim(history, config)
        assert result.trim_start_index == 4

    @pytest.mark.asyncio
    async def test_always_keeps_final_round(self):
        history = _round() + _round() + _round()
        result = await self._trim(history, _config(context_threshold_enabled=True, context_threshold=10))
        assert result.trim_start_index == 4
        assert len(result.history) == 2

    @pytest.mark.asyncio
    async def test_single_round_over_threshold_not_trimmed(self):
        history = _round(user_tokens=5000)
        result = await self._trim(history, _config(context_threshold_enabled=True, context_threshold=10))
        assert result.trim_start_index == 0

    @pytest.mark.asyncio
    async def test_system_prompt_counts_toward_threshold(self):
        history = _round() + _round()  # 400
        config = _config(context_threshold_enabled=True, context_threshold=450)
        assert (await self._trim(history, config)).trim_start_index == 0
        result = await self._trim(history, config, system_prompt="x" * 400)  # +100
        assert result.trim_start_index == 2

    @pytest.mark.asyncio
    async def test_post_trim_estimate_within_target(self):
        history = []
        for tokens in (300, 50, 50, 400, 100):
            history += _round(user_tokens=tokens, model_tokens=10)
        config = _config(context_threshold_enabled=True, context_threshold=600, context_trim_extra_cut=50)
        result = await self._trim(history, config)

        total, rounds, _ = self.manager.estimate_rounds(history, self.options, result.trim_start_index, 0)
        assert total <= 550
        assert result.trim_start_index in [r.start_index for r in identify_rounds(history)]

    @pytest.mark.asyncio
    async def test_summary_and_threshold_together(self):
        history = _round() + [user("summary", is_summary=True, estimated_token_count=50), model("ok")]
        history[-1].usage_metadata = UsageMetadata(candidates_token_count=50)
        history += _round() + _round()
        config = _config(context_threshold_enabled=True, context_threshold=300)
        result = await self._trim(history, config)
        # total from summary = 100 + 400; skipping the summary round leaves 400 > 300
        assert result.trim_start_index == 6
        assert all(not m.is_summary for m in result.history)

    def test_slice_advances_past_tool_result(self):
        full = [user(f"u{i}") for i in range(10)]
        api = [user("a"), model("b"), tool_result("t"), model("c"), user("d")]
        result = ContextWindowManager._slice(full, api, 4)
        assert [m.text() for m in result.history] == ["d"]
        assert result.trim_start_index == 6

    def test_slice_without_genuine_user_left_unchanged(self):
        full = [user(f"u{i}") for i in range(4)]
        api = [user("a"), user("b"), tool_result("t"), model("c")]
        result = ContextWindowManager._slice(full, api, 2)
        assert len(result.history) == 2
        assert result.trim_start_index == 2


class TestThinkingTokens:
    def _thinking_model(self) -> Content:
        return Content(
            role="model",
            parts=[ContentPart(text="reasoning", thought=True), ContentPart(text="answer")],
            usage_metadata=UsageMetadata(candidates_token_count=10, thoughts_token_count=100),
        )

    def test_current_round_thoughts_counted_only_when_sent(self):
        manager = ContextWindowManager(settings=None)
        history = [user("q", estimated_token_count=10), self._thinking_model()]

        total, _, _ = manager.estimate_rounds(history, HistoryOptions(send_current_thoughts=False), 0, 0)
        assert total == 20
        total, _, _ = manager.estimate_rounds(history, HistoryOptions(send_current_thoughts=True), 0, 0)
        assert total == 120

    def test_history_thought_range_with_summary_boundary(self):
        manager = ContextWindowManager(settings=None)
        history = [
            user("u0", estimated_token_count=10),
            self._thinking_model(),
            user("summary", is_summary=True, estimated_token_count=10),
            self._thinking_model(),
            user("u4", estimated_token_count=10),
            self._thinking_model(),
            user("u6", estimated_token_count=10),
            self._thinking_model(),
        ]
        options = HistoryOptions(
            send_history_thoughts=True,
            send_current_thoughts=True,
            history_thinking_rounds=1,
        )
        total, rounds, _ = manager.estimate_rounds(history, options, 2, 0)
        # index 3 is outside the one-round window; 5 is inside; 7 is current
        assert total == 10 + 10 + 10 + 110 + 10 + 110
        assert [r.start_index for r in rounds] == [2, 4, 6]

    def test_zero_history_rounds_excludes_all_history(self):
        manager = ContextWindowManager(settings=None)
        history = [
            user("u0", estimated_token_count=10),
            self._thinking_model(),
            user("u2", estimated_token_count=10),
            self._thinking_model(),
        ]
        options = HistoryOptions(send_history_thoughts=True, history_thinking_rounds=0)
        total, _, _ = manager.estimate_rounds(history, options, 0, 0)
        assert total == 40

    @pytest.mark.asyncio
    async def test_system_prompt_estimate(self):
        manager = ContextWindowManager(settings=None)
        assert await manager.count_system_prompt("x" * 9, "custom") == 3
        assert await manager.count_system_prompt("", "custom") == 0


# ---------------------------------------------------------------------------
# Remote token counting
# ---------------------------------------------------------------------------


def _counter(settings, handler, channel_type: str) -> TokenCountService:
    counted = settings.model_copy(
        update={
            "token_count": {
                channel_type: TokenCountConfig(enabled=True, base_url="https://example.test", api_key="k", model="m")
            }
        }
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenCountService(counted, http)


class TestTokenCountService:
    @pytest.mark.asyncio
    async def test_anthropic(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"input_tokens": 42})

        service = _counter(settings, handler, "anthropic")
        result = await service.count_tokens("anthropic", [user("hi"), model("yo")])
        assert result.success and result.total_tokens == 42
        assert seen["url"] == "https://example.test/v1/messages/count_tokens"
        assert seen["headers"]["x-api-key"] == "k"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert [m["role"] for m in seen["body"]["messages"]] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_gemini(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1beta/models/m:countTokens"
            assert request.url.params["key"] == "k"
            return httpx.Response(200, json={"totalTokens": 7})

        result = await _counter(settings, handler, "gemini").count_tokens("gemini", [user("hi")])
        assert result.success and result.total_tokens == 7

    @pytest.mark.asyncio
    async def test_openai_responses(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/responses/input_tokens"
            assert request.headers["authorization"] == "Bearer k"
            return httpx.Response(200, json={"input_tokens": 11})

        service = _counter(settings, handler, "openai-responses")
        result = await service.count_tokens("openai-responses", [user("hi")])
        assert result.success and result.total_tokens == 11

    @pytest.mark.asyncio
    async def test_http_error_is_unsuccessful(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="overloaded")

        result = await _counter(settings, handler, "anthropic").count_tokens("anthropic", [user("hi")])
        assert not result.success
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_network_error_is_unsuccessful(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        result = await _counter(settings, handler, "gemini").count_tokens("gemini", [user("hi")])
        assert not result.success

    @pytest.mark.asyncio
    async def test_disabled_type_is_unsuccessful(self, settings):
        service = TokenCountService(settings)
        result = await service.count_tokens("anthropic", [user("hi")])
        assert not result.success
        assert not service.is_enabled("custom")

    @pytest.mark.asyncio
    async def test_manager_falls_back_to_estimate(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "bad"})

        manager = ContextWindowManager(settings, _counter(settings, handler, "anthropic"))
        assert await manager.count_content_tokens(user("x" * 40), "anthropic") == 10

    @pytest.mark.asyncio
    async def test_manager_uses_remote_count(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"input_tokens": 99})

        manager = ContextWindowManager(settings, _counter(settings, handler, "anthropic"))
        assert await manager.count_content_tokens(user("x"), "anthropic") == 99
        assert await manager.count_system_prompt("prompt", "anthropic") == 99


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------


def _four_rounds() -> list[Content]:
    history = []
    for i in range(4):
        history.append(user(f"q{i}"))
        history.append(
            Content(
                role="model",
                parts=[
                    ContentPart(text=f"thinking {i}", thought=True),
                    ContentPart(text=f"a{i}", thought_signatures={"custom": "sig"}),
                ],
            )
        )
    return history


async def _seed(store, history: list[Content], cid: str = "c1") -> None:
    for content in history:
        await store.add_content(cid, content)


class TestContextSummarizer:
    @pytest.mark.asyncio
    async def test_not_enough_rounds(self, settings, configs, store):
        await _seed(store, _four_rounds()[:4])
        transport = ScriptedTransport()
        summarizer = ContextSummarizer(settings, configs, transport, store)

        result = await summarizer.summarize(SummarizeRequest(conversation_id="c1", config_id="test"))
        assert not result.success
        assert result.error.code == ErrorCode.NOT_ENOUGH_ROUNDS
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_summarizes_prefix_and_inserts_summary(self, settings, configs, store):
        await _seed(store, _four_rounds())
        transport = ScriptedTransport([[text_chunk("The gist."), done_chunk(prompt=400, candidates=20)]])
        summarizer = ContextSummarizer(settings, configs, transport, store)

        result = await summarizer.summarize(SummarizeRequest(conversation_id="c1", config_id="test"))

        assert result.success
        assert result.summarized_message_count == 4
        assert result.before_token_count == 400
        assert result.after_token_count == 20

        history = await store.get_history_ref("c1")
        assert len(history) == 9
        summary = history[4]
        assert summary.is_summary and summary.role == "user"
        assert summary.parts[0].text == f"{SUMMARY_PREFIX}\n\nThe gist."
        assert summary.summarized_message_count == 4

        request = transport.requests[0]
        assert request.skip_tools and request.skip_retry
        assert request.history[-1].parts[0].text == DEFAULT_SUMMARIZE_PROMPT
        sent_parts = [p for m in request.history[:-1] for p in m.parts]
        assert not any(p.thought for p in sent_parts)
        assert not any(p.thought_signatures for p in sent_parts)

    @pytest.mark.asyncio
    async def test_previous_summary_replaced(self, settings, configs, store):
        history = [user("old summary", is_summary=True), model("m1")]
        history += [user("u2"), model("m3"), user("u4"), model("m5"), user("u6"), model("m7")]
        await _seed(store, history)
        settings = settings.model_copy(update={"summarize_keep_recent_rounds": 1})
        transport = ScriptedTransport([[text_chunk("new"), done_chunk()]])

        result = await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test")
        )

        assert result.success
        stored = await store.get_history_ref("c1")
        summaries = [i for i, m in enumerate(stored) if m.is_summary]
        assert summaries == [5]
        assert stored[6].text() == "u6"

    @pytest.mark.asyncio
    async def test_empty_summary(self, settings, configs, store):
        await _seed(store, _four_rounds())
        transport = ScriptedTransport([[text_chunk("thoughts only", thought=True), done_chunk()]])

        result = await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test")
        )

        assert result.error.code == ErrorCode.EMPTY_SUMMARY
        assert len(await store.get_history_ref("c1")) == 8

    @pytest.mark.asyncio
    async def test_cancelled_while_streaming(self, settings, configs, store):
        await _seed(store, _four_rounds())
        cancel = asyncio.Event()
        cancel.set()
        transport = ScriptedTransport([[text_chunk("partial"), done_chunk()]])

        result = await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test", cancel=cancel)
        )

        assert result.error.code == ErrorCode.ABORTED
        assert len(await store.get_history_ref("c1")) == 8

    @pytest.mark.asyncio
    async def test_dedicated_config_falls_back_when_missing(self, settings, configs, store):
        await _seed(store, _four_rounds())
        settings = settings.model_copy(update={"summarize_config_id": "missing", "summarize_model": "small"})
        transport = ScriptedTransport([[text_chunk("s"), done_chunk()]])

        result = await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test")
        )

        assert result.success
        assert transport.requests[0].config_id == "test"
        assert transport.requests[0].model_override is None

    @pytest.mark.asyncio
    async def test_dedicated_config_used_with_model_override(self, settings, configs, store):
        configs.add(ChannelConfig(id="summary", type="custom"))
        await _seed(store, _four_rounds())
        settings = settings.model_copy(update={"summarize_config_id": "summary", "summarize_model": "small"})
        transport = ScriptedTransport([[text_chunk("s"), done_chunk()]])

        await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test")
        )

        assert transport.requests[0].config_id == "summary"
        assert transport.requests[0].model_override == "small"

    @pytest.mark.asyncio
    async def test_unknown_config(self, settings, configs, store):
        result = await ContextSummarizer(settings, configs, ScriptedTransport(), store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="nope")
        )
        assert result.error.code == ErrorCode.CONFIG_NOT_FOUND

    @pytest.mark.asyncio
    async def test_summary_becomes_trim_start(self, settings, configs, store):
        await _seed(store, _four_rounds())
        transport = ScriptedTransport([[text_chunk("gist"), done_chunk()]])
        await ContextSummarizer(settings, configs, transport, store).summarize(
            SummarizeRequest(conversation_id="c1", config_id="test")
        )

        history = await store.get_history_ref("c1")
        options = HistoryOptions()
        result = await ContextWindowManager(settings).trim(
            history, build_api_history(history, options), _config(), options
        )
        assert result.trim_start_index == 4
        assert result.history[0].is_summary
