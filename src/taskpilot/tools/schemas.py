"""Pydantic input models for the primitive toolset.

Every primitive is one model tagged by a ``tool`` literal. ``PrimitiveCall`` is
the closed union of all of them; ``taskpilot.tools.primitives`` checks at import
time that each member has a handler.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class PrimitiveInput(BaseModel):
    # Builder output routinely carries extra keys; they are ignored.
    model_config = ConfigDict(extra="ignore")


class SaveVariableInput(PrimitiveInput):
    """Save a named variable to the task's persistent memory (flags, counters, dates)."""

    tool: Literal["save_variable"] = "save_variable"
    name: str = Field(min_length=1, description="Variable name, e.g. 'reminded_today'")
    value: Any = Field(description="Value to store; stored as a string")
    description: str | None = Field(default=None, description="What the variable is for")


class GetVariableInput(PrimitiveInput):
    """Read a previously saved variable; value is null when it was never set."""

    tool: Literal["get_variable"] = "get_variable"
    name: str = Field(min_length=1, description="Variable name to read")


class CheckVariableInput(PrimitiveInput):
    """Check whether a variable exists and optionally compare its value."""

    tool: Literal["check_variable"] = "check_variable"
    name: str = Field(min_length=1, description="Variable name to check")
    equals: Any = Field(default=None, description="Optional: value must equal this")
    not_equals: Any = Field(default=None, description="Optional: value must differ from this")


class GetCurrentTimeInput(PrimitiveInput):
    """Get the current date and time."""

    tool: Literal["get_current_time"] = "get_current_time"
    timezone: str | None = Field(default=None, description="IANA timezone, e.g. 'Europe/Berlin'")


class ParseTimeInput(PrimitiveInput):
    """Parse a time string such as '12pm', '2:30 PM' or '14:00' into hour and minute."""

    tool: Literal["parse_time"] = "parse_time"
    time_string: str = Field(min_length=1, description="Time to parse")


class CheckTimePassedInput(PrimitiveInput):
    """Check whether today's target time has passed, with a tolerance window for late polls."""

    tool: Literal["check_time_passed"] = "check_time_passed"
    target_hour: int = Field(ge=0, le=23, description="Target hour, 24-hour clock")
    target_minute: int = Field(default=0, ge=0, le=59, description="Target minute")
    tolerance_minutes: int = Field(
        default=60,
        ge=0,
        description="Minutes past the target that still count as on time",
    )


class IsNewDayInput(PrimitiveInput):
    """Check whether the calendar day changed since a recorded YYYY-MM-DD date."""

    tool: Literal["is_new_day"] = "is_new_day"
    last_date: str | None = Field(default=None, description="Last recorded date, YYYY-MM-DD")


class EvaluateConditionInput(PrimitiveInput):
    """Compare two values; numeric when both parse as numbers, otherwise as strings."""

    tool: Literal["evaluate_condition"] = "evaluate_condition"
    left: Any = Field(description="Left operand")
    # Plain str so unknown operators reach the handler and report an error result.
    operator: str = Field(
        min_length=1,
        description="One of ==, !=, >, <, >=, <=, contains, starts_with, ends_with",
    )
    right: Any = Field(description="Right operand")


class GotoStepInput(PrimitiveInput):
    """Jump to another step of the plan (1-indexed) on the next iteration."""

    tool: Literal["goto_step"] = "goto_step"
    step_number: int = Field(ge=1, description="Step number to go to")
    reason: str | None = Field(default=None, description="Why the jump happens")


class CompleteTaskInput(PrimitiveInput):
    """Mark a discrete task as completed."""

    tool: Literal["complete_task"] = "complete_task"
    summary: str = Field(min_length=1, description="What was accomplished")


class FormatStringInput(PrimitiveInput):
    """Substitute {placeholder} values into a template string."""

    tool: Literal["format_string"] = "format_string"
    template: str = Field(min_length=1, description="Template with {placeholder} markers")
    variables: dict[str, Any] = Field(default_factory=dict, description="Values to substitute")


class IncrementCounterInput(PrimitiveInput):
    """Increment a numeric counter variable, starting from 0 when absent."""

    tool: Literal["increment_counter"] = "increment_counter"
    name: str = Field(min_length=1, description="Counter variable name")
    amount: float = Field(default=1, description="Amount to add; negative to decrement")


class LogEventInput(PrimitiveInput):
    """Add an entry to the task's execution log."""

    tool: Literal["log_event"] = "log_event"
    message: str = Field(min_length=1, description="Log message")
    level: Literal["info", "warning", "error", "debug"] = "info"


class SendReminderInput(PrimitiveInput):
    """Send a reminder message to the user's chat."""

    tool: Literal["send_reminder"] = "send_reminder"
    message: str = Field(min_length=1, description="Reminder text")


class NotifyUserInput(PrimitiveInput):
    """Notify the user in chat; type 'question' pauses the task until they answer."""

    tool: Literal["notify_user"] = "notify_user"
    message: str = Field(min_length=1, description="Notification text")
    type: Literal["info", "success", "warning", "question"] = "info"


class SendChatMessageInput(PrimitiveInput):
    """Send a general message to the user's chat."""

    tool: Literal["send_chat_message"] = "send_chat_message"
    message: str = Field(min_length=1, description="Message text")
    format: Literal["plain", "markdown"] = "markdown"


class AskUserQuestionInput(PrimitiveInput):
    """Ask the user a question and pause until they reply."""

    tool: Literal["ask_user_question"] = "ask_user_question"
    question: str = Field(min_length=1, description="Question to ask")
    save_response_as: str | None = Field(
        default=None,
        description="Variable that receives the answer (default 'user_response')",
    )
    options: list[str] | None = Field(default=None, description="Suggested answers")


class WaitForReplyInput(PrimitiveInput):
    """Wait for a reply to a sent message, following up when none satisfies the request."""

    tool: Literal["wait_for_reply"] = "wait_for_reply"
    platform: Literal["email", "imessage", "slack", "telegram", "discord"]
    contact: str = Field(min_length=1, description="Who the reply should come from")
    original_request: str = Field(min_length=1, description="What the original message asked for")
    success_criteria: str = Field(min_length=1, description="What a satisfying reply contains")
    conversation_id: str | None = Field(default=None, description="Thread or chat id to filter on")
    poll_interval_minutes: int = Field(default=5, ge=1)
    followup_after_hours: float = Field(default=24, gt=0)
    max_followups: int = Field(default=3, ge=0)
    save_reply_as: str = Field(default="reply_text", min_length=1)


PRIMITIVE_INPUT_MODELS: tuple[type[PrimitiveInput], ...] = (
    SaveVariableInput,
    GetVariableInput,
    CheckVariableInput,
    GetCurrentTimeInput,
    ParseTimeInput,
    CheckTimePassedInput,
    IsNewDayInput,
    EvaluateConditionInput,
    GotoStepInput,
    CompleteTaskInput,
    FormatStringInput,
    IncrementCounterInput,
    LogEventInput,
    SendReminderInput,
    NotifyUserInput,
    SendChatMessageInput,
    AskUserQuestionInput,
    WaitForReplyInput,
)

PrimitiveCall = Annotated[Union[PRIMITIVE_INPUT_MODELS], Field(discriminator="tool")]

PRIMITIVE_CALL_ADAPTER: TypeAdapter[Any] = TypeAdapter(PrimitiveCall)

PRIMITIVE_MODELS: dict[str, type[PrimitiveInput]] = {
    model.model_fields["tool"].default: model for model in PRIMITIVE_INPUT_MODELS
}
