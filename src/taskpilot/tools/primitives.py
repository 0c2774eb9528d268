"""Execution of the primitive toolset.

Primitives are pure: they read the task's context memory and the current time
from ``PrimitiveContext`` and return a result dict. Side effects on the task
(saving variables, jumping, pausing, notifying) are requested through the
``action`` key and carried out by the task executor.

Every result has the shape ``{"success": bool, ..., "error"?: str}``; invalid
input never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from taskpilot.tools.conditions import compare, parse_number, to_text
from taskpilot.tools.schemas import (
    PRIMITIVE_CALL_ADAPTER,
    PRIMITIVE_INPUT_MODELS,
    PRIMITIVE_MODELS,
    AskUserQuestionInput,
    CheckTimePassedInput,
    CheckVariableInput,
    CompleteTaskInput,
    EvaluateConditionInput,
    FormatStringInput,
    GetCurrentTimeInput,
    GetVariableInput,
    GotoStepInput,
    IncrementCounterInput,
    IsNewDayInput,
    LogEventInput,
    NotifyUserInput,
    ParseTimeInput,
    PrimitiveInput,
    SaveVariableInput,
    SendChatMessageInput,
    SendReminderInput,
    WaitForReplyInput,
)

logger = logging.getLogger(__name__)

_TIME_12H_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$", re.IGNORECASE)
_TIME_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

_NOTIFY_EMOJI = {"info": "ℹ️", "success": "✅", "warning": "⚠️", "question": "❓"}


@dataclass(frozen=True)
class PrimitiveContext:
    now: datetime
    memory: Mapping[str, str] = field(default_factory=dict)


def is_primitive(tool_name: str) -> bool:
    return tool_name in PRIMITIVE_MODELS


def execute_primitive(
    tool_name: str,
    args: Mapping[str, Any],
    context: PrimitiveContext,
) -> dict[str, Any]:
    if tool_name not in PRIMITIVE_MODELS:
        return {"success": False, "error": f"Unknown primitive tool: {tool_name}"}
    try:
        call = PRIMITIVE_CALL_ADAPTER.validate_python({**dict(args), "tool": tool_name})
    except ValidationError as exc:
        return {"success": False, "error": describe_validation_error(tool_name, exc)}

    result = _HANDLERS[type(call)](call, context)
    logger.debug("primitive executed tool=%s success=%s", tool_name, result.get("success"))
    return result


def describe_validation_error(tool_name: str, exc: ValidationError) -> str:
    problems: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != tool_name)
        if item.get("type") == "missing":
            problems.append(f"{location} is required")
        else:
            problems.append(f"{location}: {item.get('msg', 'invalid value')}")
    return f"{tool_name}: " + "; ".join(problems)


def parse_time_string(raw: str) -> dict[str, Any] | None:
    text = raw.strip().lower()
    match_12h = _TIME_12H_RE.match(text)
    match_24h = _TIME_24H_RE.match(text)
    if text == "noon":
        hour, minute = 12, 0
    elif text == "midnight":
        hour, minute = 0, 0
    elif match_12h:
        hour = int(match_12h.group(1))
        minute = int(match_12h.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        if match_12h.group(3) == "a":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
    elif match_24h:
        hour = int(match_24h.group(1))
        minute = int(match_24h.group(2))
        if hour > 23 or minute > 59:
            return None
    else:
        return None

    display_hour = hour % 12 or 12
    suffix = "AM" if hour < 12 else "PM"
    return {
        "hour": hour,
        "minute": minute,
        "formatted_24h": f"{hour:02d}:{minute:02d}",
        "formatted_12h": f"{display_hour}:{minute:02d} {suffix}",
    }


def _save_variable(call: SaveVariableInput, _: PrimitiveContext) -> dict[str, Any]:
    return {
        "success": True,
        "action": "save_variable",
        "name": call.name,
        "value": to_text(call.value),
        "description": call.description,
    }


def _get_variable(call: GetVariableInput, ctx: PrimitiveContext) -> dict[str, Any]:
    value = ctx.memory.get(call.name)
    exists = value is not None
    return {
        "success": True,
        "name": call.name,
        "value": value,
        "exists": exists,
        "message": (
            f"Variable '{call.name}' = '{value}'"
            if exists
            else f"Variable '{call.name}' not found"
        ),
    }


def _check_variable(call: CheckVariableInput, ctx: PrimitiveContext) -> dict[str, Any]:
    value = ctx.memory.get(call.name)
    exists = value is not None
    matches: bool | None = None
    if call.equals is not None:
        matches = exists and value == to_text(call.equals)
    elif call.not_equals is not None:
        matches = not exists or value != to_text(call.not_equals)
    return {
        "success": True,
        "name": call.name,
        "value": value,
        "exists": exists,
        "matches": matches,
    }


def _get_current_time(call: GetCurrentTimeInput, ctx: PrimitiveContext) -> dict[str, Any]:
    now = ctx.now
    if call.timezone:
        try:
            now = now.astimezone(ZoneInfo(call.timezone))
        except (ZoneInfoNotFoundError, ValueError):
            return {"success": False, "error": f"Unknown timezone: {call.timezone}"}
    display_hour = now.hour % 12 or 12
    suffix = "AM" if now.hour < 12 else "PM"
    return {
        "success": True,
        "timestamp": now.isoformat(),
        "date": now.date().isoformat(),
        "time": f"{now.hour:02d}:{now.minute:02d}",
        "hour": now.hour,
        "minute": now.minute,
        "day_of_week": now.strftime("%A"),
        "formatted": f"{now.strftime('%A, %B')} {now.day}, {now.year} at "
        f"{display_hour}:{now.minute:02d} {suffix}",
        "timezone": call.timezone or (now.tzname() or "local"),
    }


def _parse_time(call: ParseTimeInput, _: PrimitiveContext) -> dict[str, Any]:
    parsed = parse_time_string(call.time_string)
    if parsed is None:
        return {"success": False, "error": f"Could not parse time: '{call.time_string}'"}
    return {"success": True, **parsed}


def _check_time_passed(call: CheckTimePassedInput, ctx: PrimitiveContext) -> dict[str, Any]:
    current_total = ctx.now.hour * 60 + ctx.now.minute
    target_total = call.target_hour * 60 + call.target_minute
    minutes_past = current_total - target_total
    passed = minutes_past >= 0
    within_window = passed and minutes_past <= call.tolerance_minutes

    current_time = f"{ctx.now.hour:02d}:{ctx.now.minute:02d}"
    target_time = f"{call.target_hour:02d}:{call.target_minute:02d}"
    if not passed:
        message = f"Target time {target_time} not reached yet ({-minutes_past} minutes remaining)"
    elif within_window:
        message = (
            f"Target time {target_time} passed {minutes_past} minutes ago "
            f"(within {call.tolerance_minutes}min window)"
        )
    else:
        message = f"Target time {target_time} passed {minutes_past} minutes ago (outside window)"
    return {
        "success": True,
        "passed": passed,
        "within_window": within_window,
        "current_time": current_time,
        "target_time": target_time,
        "minutes_past": minutes_past,
        "tolerance_minutes": call.tolerance_minutes,
        "message": message,
    }


def _is_new_day(call: IsNewDayInput, ctx: PrimitiveContext) -> dict[str, Any]:
    current_date = ctx.now.date().isoformat()
    last_date = (call.last_date or "").strip()
    if not last_date or last_date.startswith("{{"):
        # Nothing recorded yet counts as a new day.
        last_date = ""
        is_new = True
    else:
        is_new = current_date != last_date
    return {
        "success": True,
        "is_new_day": is_new,
        "current_date": current_date,
        "last_date": last_date or None,
    }


def _evaluate_condition(call: EvaluateConditionInput, _: PrimitiveContext) -> dict[str, Any]:
    try:
        result = compare(call.left, call.operator, call.right)
    except ValueError as exc:
        return {"success": False, "error": str(exc)}
    return {
        "success": True,
        "result": result,
        "expression": f"{to_text(call.left)} {call.operator} {to_text(call.right)}",
    }


def _goto_step(call: GotoStepInput, _: PrimitiveContext) -> dict[str, Any]:
    suffix = f": {call.reason}" if call.reason else ""
    return {
        "success": True,
        "action": "goto_step",
        "step_number": call.step_number,
        "reason": call.reason,
        "message": f"Will jump to step {call.step_number}{suffix}",
    }


def _complete_task(call: CompleteTaskInput, _: PrimitiveContext) -> dict[str, Any]:
    return {
        "success": True,
        "action": "complete_task",
        "summary": call.summary,
        "message": f"Task completed: {call.summary}",
    }


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        if value and isinstance(value[0], dict):
            lines: list[str] = []
            for item in value:
                if not isinstance(item, dict):
                    lines.append(to_text(item))
                elif item.get("text") and item.get("from") and item.get("date"):
                    lines.append(f"[{item['date']}] {item['from']}: {item['text']}")
                else:
                    lines.append(", ".join(f"{key}: {to_text(val)}" for key, val in item.items()))
            return "\n".join(lines)
        return ", ".join(to_text(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, indent=2, ensure_ascii=False)
    return to_text(value)


def _format_string(call: FormatStringInput, _: PrimitiveContext) -> dict[str, Any]:
    result = call.template
    for key, value in call.variables.items():
        result = result.replace("{" + key + "}", _format_value(value))
    return {
        "success": True,
        "result": result,
        "formatted": result,
        "formatted_messages": result,
        "template": call.template,
        "variables_used": list(call.variables),
    }


def _plain_number(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def _increment_counter(call: IncrementCounterInput, ctx: PrimitiveContext) -> dict[str, Any]:
    previous = parse_number(ctx.memory.get(call.name))
    if previous is None:
        previous = 0.0
    current = previous + call.amount
    return {
        "success": True,
        "action": "save_variable",
        "name": call.name,
        "value": to_text(_plain_number(current)),
        "previous": _plain_number(previous),
        "current": _plain_number(current),
        "amount": _plain_number(call.amount),
    }


def _log_event(call: LogEventInput, _: PrimitiveContext) -> dict[str, Any]:
    return {
        "success": True,
        "action": "log_event",
        "level": call.level,
        "message": call.message,
        "log_entry": f"[{call.level.upper()}] {call.message}",
    }


def _send_reminder(call: SendReminderInput, _: PrimitiveContext) -> dict[str, Any]:
    return {
        "success": True,
        "action": "notify",
        "message": call.message,
        "chat_message": f"⏰ **Reminder**\n\n{call.message}",
    }


def _notify_user(call: NotifyUserInput, _: PrimitiveContext) -> dict[str, Any]:
    chat_message = f"{_NOTIFY_EMOJI[call.type]} {call.message}"
    if call.type == "question":
        return {
            "success": True,
            "action": "wait_for_user_input",
            "question": call.message,
            "save_response_as": None,
            "chat_message": chat_message,
        }
    return {
        "success": True,
        "action": "notify",
        "type": call.type,
        "message": call.message,
        "chat_message": chat_message,
    }


def _send_chat_message(call: SendChatMessageInput, _: PrimitiveContext) -> dict[str, Any]:
    return {
        "success": True,
        "action": "notify",
        "format": call.format,
        "message": call.message,
        "chat_message": call.message,
    }


def _ask_user_question(call: AskUserQuestionInput, _: PrimitiveContext) -> dict[str, Any]:
    chat_message = f"❓ **Question from Task**\n\n{call.question}"
    if call.options:
        numbered = "\n".join(f"{index}. {option}" for index, option in enumerate(call.options, 1))
        chat_message += f"\n\n**Options:**\n{numbered}"
    return {
        "success": True,
        "action": "wait_for_user_input",
        "question": call.question,
        "save_response_as": call.save_response_as,
        "options": call.options,
        "chat_message": chat_message,
    }


def _wait_for_reply(call: WaitForReplyInput, _: PrimitiveContext) -> dict[str, Any]:
    chat_message = (
        f"⏳ **Waiting for reply from {call.contact}**\n\n"
        f"I'll check for their response every {call.poll_interval_minutes} minutes. "
        f"If they don't reply within {_plain_number(call.followup_after_hours)} hours, "
        f"I'll send a follow-up (up to {call.max_followups} times)."
    )
    return {
        "success": True,
        "action": "wait_for_reply",
        "platform": call.platform,
        "contact": call.contact,
        "original_request": call.original_request,
        "success_criteria": call.success_criteria,
        "conversation_id": call.conversation_id,
        "poll_interval_minutes": call.poll_interval_minutes,
        "followup_after_hours": call.followup_after_hours,
        "max_followups": call.max_followups,
        "save_reply_as": call.save_reply_as,
        "chat_message": chat_message,
    }


_HANDLERS: dict[type[PrimitiveInput], Callable[[Any, PrimitiveContext], dict[str, Any]]] = {
    SaveVariableInput: _save_variable,
    GetVariableInput: _get_variable,
    CheckVariableInput: _check_variable,
    GetCurrentTimeInput: _get_current_time,
    ParseTimeInput: _parse_time,
    CheckTimePassedInput: _check_time_passed,
    IsNewDayInput: _is_new_day,
    EvaluateConditionInput: _evaluate_condition,
    GotoStepInput: _goto_step,
    CompleteTaskInput: _complete_task,
    FormatStringInput: _format_string,
    IncrementCounterInput: _increment_counter,
    LogEventInput: _log_event,
    SendReminderInput: _send_reminder,
    NotifyUserInput: _notify_user,
    SendChatMessageInput: _send_chat_message,
    AskUserQuestionInput: _ask_user_question,
    WaitForReplyInput: _wait_for_reply,
}

_unhandled = [model.__name__ for model in PRIMITIVE_INPUT_MODELS if model not in _HANDLERS]
if _unhandled:
    raise RuntimeError(f"Primitive inputs without a handler: {', '.join(_unhandled)}")
