"""Stream accumulator -- folds streaming increments into one Content.

One instance per outbound model request.  get_content() can be called at
any time (including after cancellation) and always returns an independent
snapshot of what has been folded so far.
"""

from __future__ import annotations

import copy
import json
import logging
import time

from conductor.api.extractor import split_text_part
from conductor.api.models import Content, ContentPart, FunctionCall, StreamChunk, UsageMetadata

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class StreamAccumulator:
    """Folds StreamChunk deltas into a single model Content.

    - consecutive text of the same kind (thought / not thought) merges
    - call fragments merge by index, else id, else into the trailing call
    - usage, model version and finish reason are attached whenever they
      arrive (some providers send usage in a trailing chunk after done)
    - in xml/json tool modes complete markup blocks are converted into call
      parts as soon as they close
    """

    def __init__(
        self,
        request_start_time: int | None = None,
        provider_type: str = "custom",
        tool_mode: str = "function_call",
    ) -> None:
        self._parts: list[ContentPart] = []
        # Call parts produced from markup; text right after one is trimmed on read
        self._converted: list[ContentPart] = []
        self._done = False
        self._usage: UsageMetadata | None = None
        self._finish_reason: str | None = None
        self._model_version: str | None = None
        self._signatures: dict[str, str] = {}
        self._provider_type = provider_type
        self._tool_mode = tool_mode

        self._request_start_time = request_start_time
        self._thinking_start_time: int | None = None
        self._thinking_duration: int | None = None
        self._seen_normal_text = False
        self._chunk_count = 0
        self._first_chunk_time: int | None = None
        self._last_chunk_time: int | None = None

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def add(self, chunk: StreamChunk) -> None:
        now = now_ms()
        self._chunk_count += 1
        if self._first_chunk_time is None:
            self._first_chunk_time = now
        self._last_chunk_time = now

        for part in chunk.delta:
            self._add_part(part)

        if chunk.thought_signature:
            self._signatures[self._provider_type] = chunk.thought_signature
        if chunk.usage is not None:
            self._usage = copy.copy(chunk.usage)
        if chunk.finish_reason:
            self._finish_reason = chunk.finish_reason
        if chunk.model_version:
            self._model_version = chunk.model_version
        if chunk.done:
            self._done = True

    def _add_part(self, part: ContentPart) -> None:
        if part.thought_signatures:
            self._signatures.update(part.thought_signatures)

        if part.function_call is not None:
            self._add_call(part)
            return

        if part.text is None:
            # Attachments and signature carriers are kept as-is
            if not part.is_signature_only:
                self._parts.append(copy.deepcopy(part))
            return

        if part.thought:
            if self._thinking_start_time is None:
                self._thinking_start_time = now_ms()
        elif part.text and self._thinking_start_time is not None and not self._seen_normal_text:
            self._seen_normal_text = True
            self._thinking_duration = now_ms() - self._thinking_start_time

        last = self._parts[-1] if self._parts else None
        if last is not None and last.text is not None and last.thought == part.thought:
            last.text += part.text
        else:
            self._parts.append(ContentPart(text=part.text, thought=part.thought))
        self._convert_markup()

    def _add_call(self, part: ContentPart) -> None:
        fc = part.function_call
        assert fc is not None

        for i in range(len(self._parts) - 1, -1, -1):
            existing = self._parts[i].function_call
            if existing is None:
                continue
            if fc.index is not None and existing.index is not None:
                can_merge = fc.index == existing.index
            elif fc.id and existing.id:
                can_merge = fc.id == existing.id
            else:
                # Bare fragment: only the trailing call can absorb it
                can_merge = (
                    not fc.id
                    and fc.index is None
                    and fc.partial_args is not None
                    and i == len(self._parts) - 1
                )
            if not can_merge:
                continue

            if fc.name and not existing.name:
                existing.name = fc.name
            if fc.id and not existing.id:
                existing.id = fc.id
            if fc.index is not None and existing.index is None:
                existing.index = fc.index
            if part.thought_signatures:
                merged = dict(self._parts[i].thought_signatures or {})
                merged.update(part.thought_signatures)
                self._parts[i].thought_signatures = merged
            if fc.partial_args is not None:
                existing.partial_args = (existing.partial_args or "") + fc.partial_args
                parsed = _try_parse_args(existing.partial_args)
                if parsed is not None:
                    existing.args = parsed
            return

        logger.debug("New call part %r (index=%s, id=%s)", fc.name, fc.index, fc.id)
        new_fc = copy.deepcopy(fc)
        if new_fc.partial_args:
            parsed = _try_parse_args(new_fc.partial_args)
            if parsed is not None:
                new_fc.args = parsed
        self._parts.append(
            ContentPart(
                function_call=new_fc,
                thought_signatures=dict(part.thought_signatures) if part.thought_signatures else None,
            )
        )

    def _convert_markup(self) -> None:
        if self._tool_mode not in ("xml", "json"):
            return
        formats = (self._tool_mode,)
        new_parts: list[ContentPart] = []
        changed = False
        for part in self._parts:
            if part.text is not None:
                split = split_text_part(part, formats=formats, trim_tail=False)
                if split is not None:
                    new_parts.extend(split)
                    self._converted.extend(p for p in split if p.function_call is not None)
                    changed = True
                    continue
            new_parts.append(part)
        if changed:
            self._parts = new_parts

    def _follows_converted_call(self, part: ContentPart) -> bool:
        """True for the text part right after a call converted from markup.

        Live conversion keeps that tail verbatim so later chunks can extend
        it; snapshots trim it the way normalize_tool_calls would.
        """
        index = next(i for i, p in enumerate(self._parts) if p is part)
        if index == 0:
            return False
        previous = self._parts[index - 1]
        return any(previous is c for c in self._converted)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_content(self) -> Content:
        """Snapshot of the folded response; safe to call repeatedly."""
        parts: list[ContentPart] = []
        for part in self._parts:
            text = part.text
            if text is not None and self._follows_converted_call(part):
                text = text.strip()
                if not text:
                    continue
            elif text == "" and not part.thought:
                continue
            snapshot = copy.deepcopy(part)
            snapshot.text = text
            if snapshot.function_call is not None:
                _finalize_call(snapshot.function_call)
            parts.append(snapshot)

        if self._signatures and not any(p.thought_signatures for p in parts):
            parts.append(ContentPart(thought_signatures=dict(self._signatures)))

        content = Content(role="model", parts=parts)
        content.model_version = self._model_version
        content.usage_metadata = copy.copy(self._usage) if self._usage else None
        content.chunk_count = self._chunk_count
        content.first_chunk_time = self._first_chunk_time

        if self._thinking_start_time is not None:
            content.thinking_start_time = self._thinking_start_time
            if self._thinking_duration is not None:
                content.thinking_duration = self._thinking_duration
            elif not self._seen_normal_text:
                content.thinking_duration = now_ms() - self._thinking_start_time

        if self._request_start_time is not None:
            end = self._last_chunk_time if self._last_chunk_time is not None else now_ms()
            content.response_duration = end - self._request_start_time
        if self._first_chunk_time is not None:
            content.stream_duration = (self._last_chunk_time or now_ms()) - self._first_chunk_time
        return content

    def get_text(self, include_thoughts: bool = False) -> str:
        return "".join(
            p.text
            for p in self._parts
            if p.text is not None and (include_thoughts or not p.thought)
        )

    def get_thoughts(self) -> str:
        return "".join(p.text for p in self._parts if p.text is not None and p.thought)

    def call_parts(self) -> list[ContentPart]:
        """Finalized copies of the call parts folded so far, in order."""
        calls: list[ContentPart] = []
        for part in self._parts:
            if part.function_call is not None:
                snapshot = copy.deepcopy(part)
                _finalize_call(snapshot.function_call)
                calls.append(snapshot)
        return calls

    def is_complete(self) -> bool:
        return self._done

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def thinking_start_time(self) -> int | None:
        return self._thinking_start_time

    @property
    def part_count(self) -> int:
        return len(self._parts)


def _try_parse_args(raw: str) -> dict | None:
    if not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None  # incomplete, wait for more fragments
    return parsed if isinstance(parsed, dict) else None


def _finalize_call(fc: FunctionCall) -> None:
    """Drop streaming-only fields from a snapshot call."""
    if fc.partial_args and not fc.args:
        parsed = _try_parse_args(fc.partial_args)
        if parsed is not None:
            fc.args = parsed
    fc.index = None
    fc.partial_args = None
