"""Wait-for-reply workflow.

Once a ``wait_for_reply`` step runs, the task sits in ``waiting`` and every
poll does the following:

1. ask the messaging integration for messages from the contact since the last check
2. have the generator judge new messages against the success criteria
3. resolve on a satisfying reply, otherwise send a follow-up when the
   follow-up window has elapsed
4. after ``max_followups`` unanswered follow-ups, hand the task to the user
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from taskpilot.llm import TextGenerator, extract_json_object, generate_text
from taskpilot.tasks.approvals import (
    ATTENTION_KEY,
    REPLY_WAIT_KEY,
    request_attention,
    stage_or_dispatch,
)
from taskpilot.tasks.models import Task
from taskpilot.tasks.updates import ExecutionContext, publish_task_update
from taskpilot.tools.catalog import PLATFORM_SEND_TOOLS

logger = logging.getLogger(__name__)

REPLY_JUDGE_PROMPT = """You check whether a reply satisfies a request that was sent
on the user's behalf.

Original request: "{original_request}"
Success criteria: "{success_criteria}"

New messages from {contact}:
{messages}

Respond with JSON only:
{{"satisfied": true or false, "reasoning": "one sentence"}}
"""

FOLLOWUP_PROMPT = """Write a short, polite follow-up message to {contact}.
They have not yet answered this request: "{original_request}"
This is follow-up {number} of {max_followups}. Output only the message text."""


class InboundMessage(BaseModel):
    text: str
    sender: str = ""
    received_at: datetime | None = None
    id: str | None = None


class ReplyChecker(Protocol):
    """Messaging integration that can list inbound messages from a contact."""

    def check_for_replies(
        self,
        platform: str,
        contact: str,
        since: datetime,
        conversation_id: str | None,
    ) -> list[InboundMessage]: ...


class ReplyWaitState(BaseModel):
    platform: str
    contact: str
    original_request: str = ""
    success_criteria: str = ""
    conversation_id: str | None = None
    poll_interval_minutes: int = 5
    followup_after_hours: float = 24
    max_followups: int = 3
    followups_sent: int = 0
    started_at: datetime
    last_checked_at: datetime
    last_contacted_at: datetime
    save_reply_as: str = "reply_text"

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(minutes=max(1, self.poll_interval_minutes))

    @property
    def followup_window(self) -> timedelta:
        return timedelta(hours=self.followup_after_hours)


class ReplyVerdict(BaseModel):
    satisfied: bool
    reasoning: str = ""


class ReplyJudge:
    def __init__(self, generator: TextGenerator | None) -> None:
        self.generator = generator

    def judge(self, state: ReplyWaitState, messages: list[InboundMessage]) -> ReplyVerdict | None:
        """Return the verdict, or None when no verdict could be produced."""
        prompt = REPLY_JUDGE_PROMPT.format(
            original_request=state.original_request,
            success_criteria=state.success_criteria,
            contact=state.contact,
            messages="\n".join(f"- {message.text}" for message in messages),
        )
        payload = extract_json_object(generate_text(self.generator, prompt, max_tokens=300))
        if payload is None or "satisfied" not in payload:
            return None
        try:
            return ReplyVerdict.model_validate(payload)
        except ValidationError as exc:
            logger.warning("reply judge payload invalid error=%s", exc)
            return None


def arm_reply_wait(task: Task, result: dict[str, Any], now: datetime) -> ReplyWaitState:
    """Store the wait state from a ``wait_for_reply`` result and park the task."""
    state = ReplyWaitState(
        platform=result["platform"],
        contact=result["contact"],
        original_request=result.get("original_request") or "",
        success_criteria=result.get("success_criteria") or "",
        conversation_id=result.get("conversation_id"),
        poll_interval_minutes=result.get("poll_interval_minutes", 5),
        followup_after_hours=result.get("followup_after_hours", 24),
        max_followups=result.get("max_followups", 3),
        started_at=now,
        last_checked_at=now,
        last_contacted_at=now,
        save_reply_as=result.get("save_reply_as") or "reply_text",
    )
    save_reply_wait(task, state)
    task.status = "waiting"
    return state


def load_reply_wait(task: Task) -> ReplyWaitState | None:
    raw = task.context_memory.get(REPLY_WAIT_KEY)
    if not raw:
        return None
    try:
        return ReplyWaitState.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("reply wait state unreadable task_id=%s error=%s", task.id, exc)
        return None


def save_reply_wait(task: Task, state: ReplyWaitState) -> None:
    task.context_memory[REPLY_WAIT_KEY] = state.model_dump_json()


def resolve_reply_wait(task: Task, reply_text: str, now: datetime) -> None:
    state = load_reply_wait(task)
    target = state.save_reply_as if state is not None else "reply_text"
    task.context_memory[target] = reply_text
    task.context_memory["reply_received"] = "true"
    task.context_memory.pop(REPLY_WAIT_KEY, None)
    task.context_memory.pop(ATTENTION_KEY, None)
    task.context_memory.pop("unverified_reply", None)
    task.status = "active"
    task.next_check = now


def followup_args(state: ReplyWaitState, text: str) -> dict[str, Any]:
    if state.platform == "email":
        args: dict[str, Any] = {"to": state.contact, "subject": "Following up", "body": text}
    else:
        args = {"to": state.contact, "message": text}
    if state.conversation_id:
        args["conversation_id"] = state.conversation_id
    return args


def draft_followup(generator: TextGenerator | None, state: ReplyWaitState) -> str:
    prompt = FOLLOWUP_PROMPT.format(
        contact=state.contact,
        original_request=state.original_request,
        number=state.followups_sent + 1,
        max_followups=state.max_followups,
    )
    text = generate_text(generator, prompt, max_tokens=300)
    if text:
        return text.strip()
    return f"Hi, just following up on my earlier message: {state.original_request}".strip()


def poll_reply_wait(task: Task, now: datetime, context: ExecutionContext) -> None:
    """Advance one reply-wait poll; mutates ``task`` in place."""
    state = load_reply_wait(task)
    if state is None:
        task.status = "active"
        task.next_check = now
        task.log("Reply wait state missing; resuming plan", now)
        return

    if context.reply_checker is None:
        request_attention(
            task,
            "reply_unavailable",
            f"Cannot check {state.platform} for replies from {state.contact}. "
            "Tell me what they said to continue.",
            now,
            context,
        )
        return

    try:
        messages = context.reply_checker.check_for_replies(
            state.platform,
            state.contact,
            state.last_checked_at,
            state.conversation_id,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("reply check failed task_id=%s reason=%s", task.id, exc)
        task.log(f"Reply check failed: {exc}", now)
        return

    state.last_checked_at = now
    messages = [message for message in messages if message.text.strip()]
    if messages:
        verdict = ReplyJudge(context.generator).judge(state, messages)
        latest = messages[-1].text
        if verdict is None:
            save_reply_wait(task, state)
            task.context_memory["unverified_reply"] = latest
            request_attention(
                task,
                "reply_unverified",
                f"{state.contact} replied but I could not check it against the request: "
                f"{latest}",
                now,
                context,
            )
            return
        if verdict.satisfied:
            reply_text = "\n".join(message.text for message in messages)
            resolve_reply_wait(task, reply_text, now)
            task.log(f"Reply from {state.contact} received: {verdict.reasoning}", now)
            publish_task_update(
                context.updates,
                task_id=task.id,
                title=task.title,
                message=f"{state.contact} replied: {latest}",
                now=now,
                emoji="📬",
            )
            return
        task.log(
            f"Reply from {state.contact} did not satisfy the request: {verdict.reasoning}",
            now,
        )

    if now - state.last_contacted_at < state.followup_window:
        save_reply_wait(task, state)
        return

    if state.followups_sent >= state.max_followups:
        save_reply_wait(task, state)
        request_attention(
            task,
            "reply_timeout",
            f"No satisfying reply from {state.contact} after "
            f"{state.followups_sent} follow-ups.",
            now,
            context,
        )
        return

    tool_name = PLATFORM_SEND_TOOLS.get(state.platform)
    if tool_name is None:
        save_reply_wait(task, state)
        request_attention(
            task,
            "reply_timeout",
            f"No follow-up tool for platform {state.platform}.",
            now,
            context,
        )
        return

    outcome = stage_or_dispatch(
        task,
        tool_name,
        followup_args(state, draft_followup(context.generator, state)),
        now,
        context,
    )
    if outcome.succeeded:
        state.followups_sent += 1
        state.last_contacted_at = now
        task.log(
            f"Follow-up {state.followups_sent}/{state.max_followups} to {state.contact} "
            f"{'staged for approval' if outcome.staged else 'sent'}",
            now,
        )
    save_reply_wait(task, state)
