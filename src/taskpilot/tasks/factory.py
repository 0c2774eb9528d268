"""Create task records from decomposition results."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Iterable, Mapping

from taskpilot.models import DecompositionResult
from taskpilot.tasks.models import (
    DEFAULT_POLL_PRESET,
    CurrentStep,
    LogEntry,
    PollFrequency,
    Task,
    resolve_poll_frequency,
)
from taskpilot.tasks.skills import KeywordSkillMatcher, Skill, SkillMatcher

logger = logging.getLogger(__name__)

_X_RE = re.compile(r"\bx\b")
_MESSAGE_RE = re.compile(r"\bmessage\b")

GENERIC_PLAN = ["Execute the requested action", "Verify completion", "Report results"]


def task_id_for(title: str, suffix: str | None = None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())[:30].strip("-") or "task"
    return f"{slug}-{suffix or uuid.uuid4().hex[:8]}"


def detect_messaging_channel(request: str) -> str | None:
    text = request.lower()
    if "slack" in text:
        return "slack"
    if "telegram" in text:
        return "telegram"
    if "discord" in text:
        return "discord"
    if "tweet" in text or "twitter" in text or _X_RE.search(text):
        return "x"
    if "email" in text or "mail" in text:
        return "email"
    if "text" in text or "imessage" in text or "sms" in text or _MESSAGE_RE.search(text):
        return "imessage"
    return None


def fallback_plan(request: str) -> list[str]:
    text = request.lower()
    if "email" in text or "mail" in text:
        return [
            "Send initial email with the request",
            "Wait for response",
            "If no response, send follow-up email",
            "Process response and complete task",
        ]
    if "slack" in text:
        return [
            "Send initial Slack message",
            "Wait for response",
            "If no response, send follow-up",
            "Process response and complete task",
        ]
    if "text" in text or "imessage" in text or "sms" in text:
        return [
            "Send initial text message",
            "Wait for response",
            "If no response, send follow-up",
            "Process response and complete task",
        ]
    return list(GENERIC_PLAN)


def create_task(
    request: str,
    decomposition: DecompositionResult | None = None,
    *,
    now: datetime,
    poll_frequency: str | PollFrequency | dict[str, Any] | None = None,
    default_poll_frequency: str = DEFAULT_POLL_PRESET,
    auto_send: bool = False,
    messaging_channel: str | None = None,
    skills: Iterable[Skill] = (),
    skill_matcher: SkillMatcher | None = None,
    context: Mapping[str, str] | None = None,
    id_suffix: str | None = None,
) -> Task:
    """Build a new active task; nothing is persisted here."""
    decomposition = decomposition or DecompositionResult.empty()
    has_plan = bool(decomposition.plan)
    title = " ".join(decomposition.title.split()) if has_plan else ""
    title = title or "Untitled Task"
    task_type = decomposition.task_type

    channel = messaging_channel or detect_messaging_channel(request)
    if has_plan:
        plan = [step.description or step.tool for step in decomposition.plan]
    else:
        plan = fallback_plan(request)

    memory: dict[str, str] = dict(context or {})
    if channel:
        memory["messaging_channel"] = channel

    skill_list = list(skills)
    matched: Skill | None = None
    if skill_list and request.strip():
        match = (skill_matcher or KeywordSkillMatcher()).match(request, skill_list)
        if match is not None:
            matched = match.skill
            if matched.procedure:
                plan = list(matched.procedure)
            memory["skill_name"] = matched.name
            memory["skill_constraints"] = "; ".join(matched.constraints)

    memory["task_type"] = task_type
    if task_type == "discrete" and decomposition.success_criteria:
        memory["success_criteria"] = decomposition.success_criteria
    else:
        memory.pop("success_criteria", None)

    frequency = resolve_poll_frequency(poll_frequency, default=default_poll_frequency)

    created_message = "Task created"
    if channel:
        created_message += f" (using {channel})"
    if matched is not None:
        created_message += f" (skill: {matched.name})"
    if task_type == "continuous":
        created_message += " (continuous monitoring)"
    if has_plan:
        created_message += " (direct execution)"
    created_message += f" [Poll: {frequency.label}]"

    task = Task(
        id=task_id_for(title, id_suffix),
        title=title,
        status="active",
        task_type=task_type,
        created=now,
        last_updated=now,
        next_check=None,
        poll_frequency=frequency,
        auto_send=auto_send,
        original_request=request,
        plan=plan,
        structured_plan=list(decomposition.plan) if has_plan else None,
        current_step=CurrentStep(step=1, description=plan[0] if plan else "", state="active"),
        execution_log=[LogEntry(timestamp=now, message=created_message)],
        context_memory=memory,
    )
    logger.info(
        "task created task_id=%s type=%s steps=%d channel=%s skill=%s",
        task.id,
        task.task_type,
        len(task.structured_plan or []),
        channel,
        matched.name if matched else None,
    )
    return task
