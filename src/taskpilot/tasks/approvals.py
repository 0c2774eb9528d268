"""Approval gate for side-effecting tool calls, plus human-attention escalation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from taskpilot.tasks.models import PendingMessage, Task
from taskpilot.tasks.updates import ExecutionContext, publish_task_update
from taskpilot.tools.conditions import to_text

logger = logging.getLogger(__name__)

RECIPIENT_KEYS = ("to", "recipient", "contact", "channel", "chat_id", "user")
BODY_KEYS = ("body", "message", "text", "content")

REPLY_WAIT_KEY = "reply_wait"
ATTENTION_KEY = "attention_reason"


@dataclass
class DispatchOutcome:
    staged: bool
    result: dict[str, Any] | None = None
    message: PendingMessage | None = None

    @property
    def succeeded(self) -> bool:
        if self.staged:
            return True
        return bool(self.result and self.result.get("success"))


def platform_for_tool(tool_name: str) -> str:
    name = tool_name.lower()
    if "email" in name or "gmail" in name:
        return "email"
    if "slack" in name:
        return "slack"
    if "telegram" in name:
        return "telegram"
    if "discord" in name:
        return "discord"
    if "imessage" in name or "sms" in name or "text" in name:
        return "imessage"
    if "tweet" in name or "twitter" in name or name.endswith("_x") or "_x_" in name:
        return "x"
    return "unknown"


def _first_text(args: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = args.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, list):
            return ", ".join(to_text(item) for item in value)
        return to_text(value)
    return None


def derive_pending_message(
    tool_name: str,
    args: dict[str, Any],
    now: datetime,
    *,
    message_id: str | None = None,
) -> PendingMessage:
    subject = args.get("subject")
    return PendingMessage(
        id=message_id or f"msg-{uuid.uuid4().hex[:12]}",
        tool_name=tool_name,
        platform=platform_for_tool(tool_name),
        recipient=_first_text(args, RECIPIENT_KEYS) or "",
        subject=to_text(subject) if subject is not None else None,
        message=_first_text(args, BODY_KEYS) or "",
        created=now,
        tool_input=dict(args),
    )


def dispatch_tool(
    context: ExecutionContext,
    tool_name: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    if context.gateway is None:
        return {"success": False, "error": "No tool gateway configured"}
    return context.gateway.execute(tool_name, args)


def stage_or_dispatch(
    task: Task,
    tool_name: str,
    args: dict[str, Any],
    now: datetime,
    context: ExecutionContext,
) -> DispatchOutcome:
    """Send right away for auto-send tasks, otherwise stage for approval."""
    if task.auto_send:
        result = dispatch_tool(context, tool_name, args)
        if result.get("success"):
            task.log(f"Auto-sent {tool_name}", now)
        else:
            task.log(f"Auto-send of {tool_name} failed: {result.get('error')}", now)
        return DispatchOutcome(staged=False, result=result)

    message = derive_pending_message(tool_name, args, now)
    task.pending_messages.append(message)
    task.status = "waiting_approval"
    recipient = f" to {message.recipient}" if message.recipient else ""
    task.log(f"Message pending approval: {tool_name}{recipient}", now)
    publish_task_update(
        context.updates,
        task_id=task.id,
        title=task.title,
        message=f"A {message.platform} message{recipient} is waiting for your approval.",
        now=now,
        emoji="📤",
    )
    logger.info(
        "approval staged task_id=%s message_id=%s tool=%s",
        task.id,
        message.id,
        tool_name,
    )
    return DispatchOutcome(staged=True, message=message)


def _find_message(task: Task, message_id: str) -> PendingMessage | None:
    for message in task.pending_messages:
        if message.id == message_id:
            return message
    return None


def _resume_after_review(task: Task, now: datetime) -> None:
    if task.pending_messages or task.status != "waiting_approval":
        return
    task.status = "waiting" if REPLY_WAIT_KEY in task.context_memory else "active"
    task.next_check = now


def approve_pending_message(
    task: Task,
    message_id: str,
    now: datetime,
    context: ExecutionContext,
    *,
    edited_message: str | None = None,
) -> str | None:
    """Send a staged message. Returns an error string, or None on success."""
    if task.is_terminal:
        logger.warning(
            "approval refused task_id=%s message_id=%s status=%s",
            task.id,
            message_id,
            task.status,
        )
        return f"Task is {task.status}; staged messages can no longer be sent"
    message = _find_message(task, message_id)
    if message is None:
        return f"Pending message not found: {message_id}"

    args = dict(message.tool_input)
    if edited_message is not None:
        body_key = next((key for key in BODY_KEYS if key in args), "message")
        args[body_key] = edited_message

    result = dispatch_tool(context, message.tool_name, args)
    if not result.get("success"):
        error = str(result.get("error") or "Tool reported failure")
        task.log(f"Failed to send approved message {message.id}: {error}", now)
        logger.warning(
            "approval dispatch failed task_id=%s message_id=%s reason=%s",
            task.id,
            message.id,
            error,
        )
        return error

    task.pending_messages.remove(message)
    edited = " (edited)" if edited_message is not None else ""
    recipient = f" to {message.recipient}" if message.recipient else ""
    task.log(f"Approved and sent {message.tool_name}{recipient}{edited}", now)
    _resume_after_review(task, now)
    return None


def reject_pending_message(task: Task, message_id: str, now: datetime) -> str | None:
    message = _find_message(task, message_id)
    if message is None:
        return f"Pending message not found: {message_id}"
    task.pending_messages.remove(message)
    task.log(f"Rejected pending {message.tool_name} message {message.id}", now)
    _resume_after_review(task, now)
    return None


def request_attention(
    task: Task,
    reason: str,
    message: str,
    now: datetime,
    context: ExecutionContext,
) -> None:
    task.status = "waiting_for_input"
    task.context_memory[ATTENTION_KEY] = reason
    task.log(f"Needs attention: {message}", now)
    publish_task_update(
        context.updates,
        task_id=task.id,
        title=task.title,
        message=message,
        now=now,
        emoji="⚠️",
    )
    logger.warning("task needs attention task_id=%s reason=%s", task.id, reason)
