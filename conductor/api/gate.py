"""Confirmation gate -- which tool calls may run without a human."""

from __future__ import annotations

from conductor.api.models import ToolCall
from conductor.config import Settings


class ConfirmationGate:
    """Stateless predicate over Settings.tool_auto_exec.

    Tools without an explicit entry follow tool_auto_exec_default.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def is_auto_exec(self, tool_name: str) -> bool:
        return self._settings.tool_auto_exec.get(tool_name, self._settings.tool_auto_exec_default)

    def needs_confirmation(self, tool_name: str) -> bool:
        return not self.is_auto_exec(tool_name)

    def split(self, calls: list[ToolCall]) -> tuple[list[ToolCall], list[ToolCall]]:
        """Partition calls into (auto-run, must-confirm), preserving order."""
        auto: list[ToolCall] = []
        confirm: list[ToolCall] = []
        for call in calls:
            (confirm if self.needs_confirmation(call.name) else auto).append(call)
        return auto, confirm
