"""Tool-call extraction from model output.

A model response can request tools three ways, and all three may appear
in the same message:
  - native function_call parts
  - <tool_use><name>..</name><args>{..}</args></tool_use> blocks in text
  - <<<TOOL_CALL>>>{"tool": .., "parameters": {..}}<<<END_TOOL_CALL>>> blocks

Malformed blocks are left alone as plain text.  Everything here is
stateless apart from the in-place rewrites done by normalize_tool_calls()
and ensure_function_call_ids().
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any

from conductor.api.models import Content, ContentPart, FunctionCall, ToolCall

logger = logging.getLogger(__name__)

XML_START = "<tool_use>"
XML_END = "</tool_use>"
JSON_START = "<<<TOOL_CALL>>>"
JSON_END = "<<<END_TOOL_CALL>>>"

_NAME_RE = re.compile(r"<name>(.*?)</name>", re.DOTALL)
_ARGS_RE = re.compile(r"<args>(.*?)</args>", re.DOTALL)
_CHILD_TAG_RE = re.compile(r"<([A-Za-z_][\w\-]*)>(.*?)</\1>", re.DOTALL)


def generate_tool_call_id() -> str:
    """Opaque call id: fc_<ms since epoch>_<random>."""
    return f"fc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class MarkupMatch:
    """One well-formed markup block found in a text part."""

    start: int
    end: int
    name: str
    args: dict[str, Any]


# ---------------------------------------------------------------------------
# Markup parsing
# ---------------------------------------------------------------------------


def _parse_xml_body(body: str) -> tuple[str, dict[str, Any]] | None:
    name_match = _NAME_RE.search(body)
    if not name_match:
        return None
    name = name_match.group(1).strip()
    if not name:
        return None

    args_match = _ARGS_RE.search(body)
    if not args_match:
        return name, {}
    raw = args_match.group(1).strip()
    if not raw:
        return name, {}

    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        # Some models emit <args><path>a.txt</path></args>
        children = _CHILD_TAG_RE.findall(raw)
        if not children:
            return None
        return name, {key: value.strip() for key, value in children}
    if not isinstance(args, dict):
        return None
    return name, args


def _parse_json_body(body: str) -> tuple[str, dict[str, Any]] | None:
    try:
        payload = json.loads(body.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    name = payload.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None
    params = payload.get("parameters", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return None
    return name.strip(), params


_FORMATS = {
    "xml": (XML_START, XML_END, _parse_xml_body),
    "json": (JSON_START, JSON_END, _parse_json_body),
}
ALL_FORMATS = ("xml", "json")


def scan_markup(text: str, formats: tuple[str, ...] = ALL_FORMATS) -> list[MarkupMatch]:
    """Find all non-overlapping well-formed tool-call blocks, in order."""
    matches: list[MarkupMatch] = []
    pos = 0
    while pos < len(text):
        best: tuple[int, str, str, Any] | None = None
        for fmt in formats:
            start_marker, end_marker, parser = _FORMATS[fmt]
            idx = text.find(start_marker, pos)
            if idx != -1 and (best is None or idx < best[0]):
                best = (idx, start_marker, end_marker, parser)
        if best is None:
            break

        idx, start_marker, end_marker, parser = best
        body_start = idx + len(start_marker)
        end_idx = text.find(end_marker, body_start)
        if end_idx == -1:
            # Unclosed block; later blocks of the other format may still close
            pos = body_start
            continue

        block_end = end_idx + len(end_marker)
        parsed = parser(text[body_start:end_idx])
        if parsed is not None:
            name, args = parsed
            matches.append(MarkupMatch(start=idx, end=block_end, name=name, args=args))
        else:
            logger.debug("Ignoring malformed tool-call markup at offset %d", idx)
        pos = block_end
    return matches


def has_markup(text: str, formats: tuple[str, ...] = ALL_FORMATS) -> bool:
    return any(_FORMATS[fmt][0] in text for fmt in formats)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


def extract_function_calls(content: Content) -> list[ToolCall]:
    """Ordered tool calls requested by a message.

    Native calls without an id get one assigned in place, so repeated
    extraction from the same message yields the same id.  Calls found in
    markup get a fresh id each time; normalize first to pin them.
    """
    calls: list[ToolCall] = []
    for part in content.parts:
        if part.function_call is not None:
            fc = part.function_call
            if not fc.id:
                fc.id = generate_tool_call_id()
            calls.append(ToolCall(id=fc.id, name=fc.name, args=fc.args))
        elif part.text and has_markup(part.text):
            for m in scan_markup(part.text):
                calls.append(ToolCall(id=generate_tool_call_id(), name=m.name, args=m.args))
    return calls


def split_text_part(
    part: ContentPart,
    formats: tuple[str, ...] = ALL_FORMATS,
    trim_tail: bool = True,
) -> list[ContentPart] | None:
    """Split one text part around its markup blocks.

    Returns None when the part holds no well-formed block.  With
    trim_tail=False the text after the last block is kept verbatim, so a
    stream can keep appending to it.
    """
    text = part.text or ""
    matches = scan_markup(text, formats) if has_markup(text, formats) else []
    if not matches:
        return None

    parts: list[ContentPart] = []
    cursor = 0
    for m in matches:
        segment = text[cursor:m.start].strip()
        if segment:
            parts.append(ContentPart(text=segment, thought=part.thought))
        parts.append(
            ContentPart(
                function_call=FunctionCall(name=m.name, args=m.args, id=generate_tool_call_id())
            )
        )
        cursor = m.end
    tail = text[cursor:].strip() if trim_tail else text[cursor:]
    if tail:
        parts.append(ContentPart(text=tail, thought=part.thought))
    if part.thought_signatures:
        parts[0].thought_signatures = part.thought_signatures
    return parts


def normalize_tool_calls(content: Content) -> Content:
    """Rewrite markup blocks into native call parts, in place.

    Surrounding text is kept (whitespace-trimmed) in order.  Idempotent:
    after one pass no text part holds a well-formed block.
    """
    new_parts: list[ContentPart] = []
    for part in content.parts:
        if part.text is not None and part.function_call is None:
            split = split_text_part(part)
            if split is not None:
                new_parts.extend(split)
                continue
        new_parts.append(part)
    content.parts = new_parts
    return content


def ensure_function_call_ids(content: Content) -> Content:
    """Assign an id to every native call lacking one."""
    for part in content.parts:
        if part.function_call is not None and not part.function_call.id:
            part.function_call.id = generate_tool_call_id()
    return content
