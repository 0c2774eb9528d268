"""Prompt-side views of the tool catalog."""

from __future__ import annotations

import json
from typing import Iterable, Protocol

from taskpilot.models import ToolDefinition

# Ordered: the first matching rule wins.
DEFAULT_CATEGORY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("email", "gmail"), "Email"),
    (("calendar", "event"), "Calendar"),
    (("drive", "file"), "Files"),
    (("slack",), "Slack"),
    (("imessage", "sms", "text"), "iMessage"),
    (("telegram",), "Telegram"),
    (("discord",), "Discord"),
    (("browser", "navigate", "click"), "Browser"),
    (("task",), "Tasks"),
    (("memory",), "Memory"),
    (("profile", "user"), "Profile"),
    (("weather",), "Weather"),
    (("time", "reminder"), "Time & Reminders"),
    (("spotify", "music"), "Music"),
)


class ToolCategorizer(Protocol):
    def categorize(self, tool_name: str) -> str: ...


class KeywordToolCategorizer:
    """Label tools by substrings of their names."""

    def __init__(
        self,
        rules: Iterable[tuple[tuple[str, ...], str]] = DEFAULT_CATEGORY_RULES,
        *,
        default: str = "General",
    ) -> None:
        self.rules = tuple(rules)
        self.default = default

    def categorize(self, tool_name: str) -> str:
        lowered = tool_name.lower()
        for keywords, category in self.rules:
            if any(keyword in lowered for keyword in keywords):
                return category
        return self.default


def format_tool_categories(
    tools: Iterable[ToolDefinition],
    categorizer: ToolCategorizer | None = None,
) -> str:
    active = categorizer or KeywordToolCategorizer()
    grouped: dict[str, list[str]] = {}
    for tool in tools:
        grouped.setdefault(active.categorize(tool.name), []).append(tool.name)
    return "\n".join(f"{category}: {', '.join(names)}" for category, names in grouped.items())


def format_tool_definitions(tools: Iterable[ToolDefinition]) -> str:
    payload = []
    for tool in tools:
        schema = tool.input_schema or {}
        payload.append(
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": schema.get("properties", {}),
                "required": schema.get("required", []),
            }
        )
    return json.dumps(payload, indent=2, ensure_ascii=False)
