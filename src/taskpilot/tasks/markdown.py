"""Human-readable markdown form of a task record.

The structured store is the source of truth; this codec is the export/import
format. ``parse_task_markdown(serialize_task(task))`` reproduces ``task``.

Single-line values that would not survive a plain write (empty, multi-line,
padded with whitespace or starting with a double quote) are written as JSON
strings, and anything else is written verbatim. Free-text bodies (the original
request and message bodies) sit inside a backtick fence longer than any run of
backticks they contain.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from taskpilot.models import PlanStep
from taskpilot.tasks.models import (
    CurrentStep,
    LogEntry,
    PendingMessage,
    PollFrequency,
    Task,
)

REQUIRED_MARKERS = ("## Metadata", "**Status**")

_TITLE_RE = re.compile(r"^#\s+Task:\s?(.*)$")
_BULLET_FIELD_RE = re.compile(r"^-\s+\*\*(.+?)\*\*:\s?(.*)$")
_PLAN_ITEM_RE = re.compile(r"^\d+\.\s?(.*)$")
_LOG_ENTRY_RE = re.compile(r"^-\s+\[([^\]]+)\]\s?(.*)$")
_FENCE_RE = re.compile(r"^(`{3,})(\w*)\s*$")


class TaskMarkdownError(ValueError):
    """Raised when a markdown document is not a task record."""


def _encode_inline(value: str) -> str:
    if (
        value == ""
        or "\n" in value
        or "\r" in value
        or value != value.strip()
        or value.startswith('"')
    ):
        return json.dumps(value, ensure_ascii=False)
    return value


def _decode_inline(raw: str) -> str:
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        if isinstance(decoded, str):
            return decoded
    return raw


def _format_datetime(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def _parse_datetime(raw: str | None) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    try:
        return datetime.fromisoformat(raw.strip())
    except ValueError as exc:
        raise TaskMarkdownError(f"Invalid timestamp: {raw!r}") from exc


def _fence_for(body: str) -> str:
    longest = max((len(run) for run in re.findall(r"`+", body)), default=0)
    return "`" * max(3, longest + 1)


def serialize_task(task: Task) -> str:
    lines: list[str] = [f"# Task: {_encode_inline(task.title)}", ""]

    lines.append("## Metadata")
    metadata = [
        ("ID", _encode_inline(task.id)),
        ("Status", task.status),
        ("Task Type", task.task_type),
        ("Created", _format_datetime(task.created)),
        ("Last Updated", _format_datetime(task.last_updated)),
        ("Next Check", _format_datetime(task.next_check)),
        ("Hidden", "true" if task.hidden else "false"),
        ("Auto-Send", "true" if task.auto_send else "false"),
        ("Poll Frequency", task.poll_frequency.encode()),
    ]
    lines.extend(f"- **{key}**: {value}".rstrip() for key, value in metadata)
    lines.append("")

    lines.append("## Original Request")
    request_fence = _fence_for(task.original_request)
    lines.append(request_fence)
    lines.append(task.original_request)
    lines.append(request_fence)
    lines.append("")

    lines.append("## Plan")
    lines.extend(
        f"{index}. {_encode_inline(item)}".rstrip() for index, item in enumerate(task.plan, 1)
    )
    lines.append("")

    if task.structured_plan is not None:
        lines.append("## Structured Plan")
        lines.append("```json")
        lines.append(
            json.dumps(
                [step.model_dump(mode="json") for step in task.structured_plan],
                indent=2,
                ensure_ascii=False,
            )
        )
        lines.append("```")
        lines.append("")

    lines.append("## Current Step")
    step = task.current_step
    lines.append(f"Step: {step.step}")
    lines.append(f"Description: {_encode_inline(step.description)}")
    lines.append(f"State: {_encode_inline(step.state)}")
    poll_interval = "" if step.poll_interval is None else str(step.poll_interval)
    lines.append(f"Poll Interval: {poll_interval}".rstrip())
    lines.append("")

    lines.append("## Execution Log")
    lines.extend(
        f"- [{_format_datetime(entry.timestamp)}] {_encode_inline(entry.message)}"
        for entry in task.execution_log
    )
    lines.append("")

    lines.append("## Context Memory")
    for key, value in task.context_memory.items():
        encoded_key = json.dumps(key, ensure_ascii=False) if ":" in key else _encode_inline(key)
        lines.append(f"- {encoded_key}: {_encode_inline(value)}")
    lines.append("")

    if task.pending_messages:
        lines.append("## Pending Messages")
        lines.append("")
        for index, message in enumerate(task.pending_messages, 1):
            lines.append(f"### Message {index}")
            fields = [
                ("ID", _encode_inline(message.id)),
                ("Tool", _encode_inline(message.tool_name)),
                ("Platform", _encode_inline(message.platform)),
                ("Recipient", _encode_inline(message.recipient)),
            ]
            if message.subject is not None:
                fields.append(("Subject", _encode_inline(message.subject)))
            fields.append(("Created", _format_datetime(message.created)))
            fields.append(
                ("ToolInput", json.dumps(message.tool_input, ensure_ascii=False, sort_keys=True))
            )
            lines.extend(f"- **{key}**: {value}" for key, value in fields)
            lines.append("")
            fence = _fence_for(message.message)
            lines.append(fence)
            lines.append(message.message)
            lines.append(fence)
            lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def _split_sections(text: str) -> tuple[str | None, dict[str, list[str]]]:
    title: str | None = None
    sections: dict[str, list[str]] = {}
    current: list[str] | None = None
    fence: str | None = None
    for line in text.splitlines():
        if fence is None and line.startswith("## "):
            current = sections.setdefault(line[3:].strip().lower(), [])
            continue
        if fence is None and current is None and title is None:
            match = _TITLE_RE.match(line)
            if match:
                title = _decode_inline(match.group(1))
                continue
        if current is not None:
            current.append(line)
            fence_match = _FENCE_RE.match(line)
            if fence is None and fence_match:
                fence = fence_match.group(1)
            elif fence is not None and line.strip() == fence:
                fence = None
    return title, sections


def _trim_blank(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _bullet_fields(lines: list[str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in lines:
        match = _BULLET_FIELD_RE.match(line.strip())
        if match:
            fields[match.group(1).strip()] = match.group(2)
    return fields


def _parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() == "true"


def _parse_structured_plan(lines: list[str]) -> list[PlanStep] | None:
    body = [line for line in _trim_blank(lines) if not _FENCE_RE.match(line.strip())]
    if not body:
        return None
    try:
        payload = json.loads("\n".join(body))
    except json.JSONDecodeError as exc:
        raise TaskMarkdownError("Structured Plan is not valid JSON") from exc
    if not isinstance(payload, list):
        raise TaskMarkdownError("Structured Plan must be a JSON array")
    try:
        return [PlanStep.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise TaskMarkdownError(f"Structured Plan step is invalid: {exc}") from exc


def _parse_current_step(lines: list[str]) -> CurrentStep:
    values: dict[str, str] = {}
    for line in lines:
        key, separator, value = line.partition(":")
        if separator:
            values[key.strip().lower()] = value[1:] if value.startswith(" ") else value
    step = values.get("step", "").strip()
    poll_interval = values.get("poll interval", "").strip()
    return CurrentStep(
        step=int(step) if step.isdigit() else 1,
        description=_decode_inline(values.get("description", "")),
        state=_decode_inline(values.get("state", "")) or "pending",
        poll_interval=int(poll_interval) if poll_interval.isdigit() else None,
    )


def _parse_log(lines: list[str]) -> list[LogEntry]:
    entries: list[LogEntry] = []
    for line in lines:
        match = _LOG_ENTRY_RE.match(line.strip())
        if not match:
            continue
        timestamp = _parse_datetime(match.group(1))
        if timestamp is None:
            continue
        entries.append(LogEntry(timestamp=timestamp, message=_decode_inline(match.group(2))))
    return entries


def _parse_context_memory(lines: list[str]) -> dict[str, str]:
    memory: dict[str, str] = {}
    decoder = json.JSONDecoder()
    for line in lines:
        if not line.startswith("- "):
            continue
        rest = line[2:]
        if rest.startswith('"'):
            try:
                key, end = decoder.raw_decode(rest)
            except json.JSONDecodeError:
                continue
            remainder = rest[end:]
            if not isinstance(key, str) or not remainder.startswith(":"):
                continue
            value = remainder[1:]
        else:
            key, separator, value = rest.partition(":")
            if not separator:
                continue
            key = key.strip()
        memory[key] = _decode_inline(value[1:] if value.startswith(" ") else value)
    return memory


def _parse_pending_messages(lines: list[str]) -> list[PendingMessage]:
    blocks: list[list[str]] = []
    fence: str | None = None
    for line in lines:
        if fence is None and line.startswith("### "):
            blocks.append([])
            continue
        if blocks:
            blocks[-1].append(line)
        fence_match = _FENCE_RE.match(line.strip())
        if fence is None and fence_match:
            fence = fence_match.group(1)
        elif fence is not None and line.strip() == fence:
            fence = None

    messages: list[PendingMessage] = []
    for block in blocks:
        fields = _bullet_fields([line for line in block if line.startswith("- ")])
        body = _fenced_body(block)
        created = _parse_datetime(fields.get("Created")) or datetime.now(UTC)
        try:
            tool_input: Any = json.loads(fields.get("ToolInput", "") or "{}")
        except json.JSONDecodeError:
            tool_input = {}
        messages.append(
            PendingMessage(
                id=_decode_inline(fields.get("ID", "")),
                tool_name=_decode_inline(fields.get("Tool", "")),
                platform=_decode_inline(fields.get("Platform", "unknown")),
                recipient=_decode_inline(fields.get("Recipient", "")),
                subject=_decode_inline(fields["Subject"]) if "Subject" in fields else None,
                message=body,
                created=created,
                tool_input=tool_input if isinstance(tool_input, dict) else {},
            )
        )
    return messages


def _fenced_body(block: list[str]) -> str:
    fence: str | None = None
    body: list[str] = []
    for line in block:
        stripped = line.strip()
        if fence is None:
            match = _FENCE_RE.match(stripped)
            if match:
                fence = match.group(1)
            continue
        if stripped == fence:
            return "\n".join(body)
        body.append(line)
    return "\n".join(body)


def parse_task_markdown(text: str, *, task_id: str | None = None) -> Task:
    """Parse a task document; ``task_id`` fills in documents without an ID field."""
    if any(marker not in text for marker in REQUIRED_MARKERS):
        raise TaskMarkdownError("Task markdown must contain a Metadata section with a Status")

    title, sections = _split_sections(text)
    metadata = _bullet_fields(sections.get("metadata", []))
    if "Status" not in metadata:
        raise TaskMarkdownError("Task markdown must contain a Metadata section with a Status")

    identifier = _decode_inline(metadata["ID"]) if "ID" in metadata else task_id
    if not identifier:
        raise TaskMarkdownError("Task markdown has no ID and none was supplied")

    memory = _parse_context_memory(sections.get("context memory", []))
    last_updated = _parse_datetime(metadata.get("Last Updated"))
    created = _parse_datetime(metadata.get("Created")) or last_updated or datetime.now(UTC)
    poll_raw = metadata.get("Poll Frequency", "").strip()
    plan = [
        _decode_inline(match.group(1))
        for match in (_PLAN_ITEM_RE.match(line.strip()) for line in sections.get("plan", []))
        if match
    ]
    request_lines = _trim_blank(sections.get("original request", []))
    if request_lines and _FENCE_RE.match(request_lines[0].strip()):
        original_request = _fenced_body(request_lines)
    else:
        original_request = "\n".join(request_lines)

    try:
        return Task(
            id=identifier,
            title=title if title is not None else "Untitled Task",
            status=metadata["Status"].strip(),
            task_type=(metadata.get("Task Type") or memory.get("task_type") or "discrete").strip(),
            created=created,
            last_updated=last_updated or created,
            next_check=_parse_datetime(metadata.get("Next Check")),
            poll_frequency=PollFrequency.decode(poll_raw) if poll_raw else PollFrequency(),
            hidden=_parse_bool(metadata.get("Hidden")),
            auto_send=_parse_bool(metadata.get("Auto-Send")),
            original_request=original_request,
            plan=plan,
            structured_plan=_parse_structured_plan(sections.get("structured plan", [])),
            current_step=_parse_current_step(sections.get("current step", [])),
            execution_log=_parse_log(sections.get("execution log", [])),
            context_memory=memory,
            pending_messages=_parse_pending_messages(sections.get("pending messages", [])),
        )
    except ValidationError as exc:
        raise TaskMarkdownError(f"Task markdown has invalid fields: {exc}") from exc
