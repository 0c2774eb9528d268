"""Task record models.

A task is the durable unit of work: its plan, where execution currently is,
the variables it keeps between polls and the messages waiting for approval.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from taskpilot.models import PlanStep, TaskType

TaskStatus = Literal[
    "pending",
    "active",
    "waiting",
    "waiting_approval",
    "waiting_for_input",
    "completed",
    "failed",
    "cancelled",
]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
# Statuses that only an explicit user action can move forward.
USER_BLOCKED_STATUSES = frozenset({"waiting_approval", "waiting_for_input"})

ON_LOGIN = "on_login"


class PollFrequency(BaseModel):
    """Fixed interval in milliseconds, or the ``on_login`` event tag."""

    type: Literal["preset", "event"] = "preset"
    value: int | str = 60_000
    label: str = "Every 1 minute"

    @property
    def is_event(self) -> bool:
        return self.type == "event"

    @property
    def interval(self) -> timedelta | None:
        if self.is_event or not isinstance(self.value, int):
            return None
        return timedelta(milliseconds=self.value)

    def encode(self) -> str:
        return f"{self.type}:{self.value}:{self.label}"

    @classmethod
    def decode(cls, raw: str) -> PollFrequency:
        text = raw.strip()
        if ":" not in text:
            return resolve_poll_frequency(text)
        kind, _, rest = text.partition(":")
        value, _, label = rest.partition(":")
        if kind == "event":
            return cls(type="event", value=value or ON_LOGIN, label=label or "On login only")
        try:
            milliseconds = int(value)
        except ValueError:
            return resolve_poll_frequency(None)
        return cls(type="preset", value=milliseconds, label=label or f"Every {milliseconds} ms")


POLL_FREQUENCY_PRESETS: dict[str, PollFrequency] = {
    "1min": PollFrequency(value=60_000, label="Every 1 minute"),
    "5min": PollFrequency(value=300_000, label="Every 5 minutes"),
    "15min": PollFrequency(value=900_000, label="Every 15 minutes"),
    "30min": PollFrequency(value=1_800_000, label="Every 30 minutes"),
    "1hour": PollFrequency(value=3_600_000, label="Every hour"),
    "daily": PollFrequency(value=86_400_000, label="Daily"),
    ON_LOGIN: PollFrequency(type="event", value=ON_LOGIN, label="On login only"),
}

DEFAULT_POLL_PRESET = "1min"


def resolve_poll_frequency(
    raw: str | PollFrequency | dict[str, Any] | None,
    *,
    default: str = DEFAULT_POLL_PRESET,
) -> PollFrequency:
    if isinstance(raw, PollFrequency):
        return raw.model_copy()
    if isinstance(raw, dict):
        return PollFrequency.model_validate(raw)
    if isinstance(raw, str) and raw.strip() in POLL_FREQUENCY_PRESETS:
        return POLL_FREQUENCY_PRESETS[raw.strip()].model_copy()
    fallback = POLL_FREQUENCY_PRESETS.get(default, POLL_FREQUENCY_PRESETS[DEFAULT_POLL_PRESET])
    return fallback.model_copy()


class CurrentStep(BaseModel):
    step: int = 1
    description: str = ""
    state: str = "pending"
    # Milliseconds; None means the task's poll frequency applies.
    poll_interval: int | None = None


class LogEntry(BaseModel):
    timestamp: datetime
    message: str


class PendingMessage(BaseModel):
    """A side-effecting tool call staged until the user approves or rejects it."""

    id: str
    tool_name: str
    platform: str = "unknown"
    recipient: str = ""
    subject: str | None = None
    message: str = ""
    created: datetime
    tool_input: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    id: str
    title: str
    status: TaskStatus = "pending"
    task_type: TaskType = "discrete"
    created: datetime
    last_updated: datetime
    next_check: datetime | None = None
    poll_frequency: PollFrequency = Field(default_factory=PollFrequency)
    hidden: bool = False
    auto_send: bool = False
    original_request: str = ""
    plan: list[str] = Field(default_factory=list)
    structured_plan: list[PlanStep] | None = None
    current_step: CurrentStep = Field(default_factory=CurrentStep)
    execution_log: list[LogEntry] = Field(default_factory=list)
    context_memory: dict[str, str] = Field(default_factory=dict)
    pending_messages: list[PendingMessage] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def log(self, message: str, now: datetime) -> None:
        """Append one execution-log entry and bump ``last_updated``."""
        single_line = " ".join(message.split())
        self.execution_log.append(LogEntry(timestamp=now, message=single_line))
        self.last_updated = now
