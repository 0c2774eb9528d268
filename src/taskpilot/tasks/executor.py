"""Polling state machine that advances a task's structured plan.

A tick takes a task and the current time and returns an updated copy for the
caller to persist. Within one tick:

- steps without side effects run back-to-back
- the tick stops at a blocking step (question, reply wait, approval staging),
  after a side-effecting tool is sent, at the end of a cycle, on a failed step,
  or once ``max_steps_per_tick`` steps have run
- waits suspend by persisting state; nothing blocks a thread
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Literal

from taskpilot.config.settings import Settings
from taskpilot.models import PlanStep
from taskpilot.tasks.approvals import (
    ATTENTION_KEY,
    REPLY_WAIT_KEY,
    approve_pending_message,
    dispatch_tool,
    reject_pending_message,
    request_attention,
    stage_or_dispatch,
)
from taskpilot.tasks.models import USER_BLOCKED_STATUSES, CurrentStep, Task
from taskpilot.tasks.replies import (
    arm_reply_wait,
    load_reply_wait,
    poll_reply_wait,
    resolve_reply_wait,
)
from taskpilot.tasks.templates import (
    interpolate,
    load_step_output,
    resolve_templates,
    step_output_key,
)
from taskpilot.tasks.updates import ExecutionContext, publish_task_update
from taskpilot.tools.catalog import is_side_effecting
from taskpilot.tools.conditions import evaluate_expression, is_truthy, to_text
from taskpilot.tools.primitives import PrimitiveContext, execute_primitive, is_primitive

logger = logging.getLogger(__name__)

Trigger = Literal["schedule", "login", "manual"]

AWAITING_INPUT_KEY = "awaiting_input_var"
DEFAULT_INPUT_VAR = "user_response"

# Keys a null condition gates on, in priority order.
GATE_KEYS = ("result", "matches", "within_window", "passed", "is_new_day", "exists")
PRIMARY_VALUE_KEYS = ("result", "value", "formatted", "current")
REPLY_ATTENTION_REASONS = frozenset({"reply_timeout", "reply_unverified", "reply_unavailable"})

_CYCLE_KEY_RE = re.compile(r"^(?:step_\d+|retries_step_\d+)$")
_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class TickResult:
    task: Task
    executed_steps: list[int] = field(default_factory=list)
    events: list[str] = field(default_factory=list)
    skipped_reason: str | None = None
    error: str | None = None

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


def _retry_key(step_id: int) -> str:
    return f"retries_step_{step_id}"


def _compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def primary_value(output: dict[str, Any]) -> str:
    for key in PRIMARY_VALUE_KEYS:
        if output.get(key) is not None:
            return to_text(output[key])
    return _compact_json({k: v for k, v in output.items() if k not in {"success", "action"}})


class TaskExecutor:
    def __init__(
        self,
        context: ExecutionContext | None = None,
        *,
        max_steps_per_tick: int = 25,
        max_step_retries: int = 2,
        timezone: tzinfo | None = None,
    ) -> None:
        self.context = context or ExecutionContext()
        self.max_steps_per_tick = max(1, max_steps_per_tick)
        self.max_step_retries = max(0, max_step_retries)
        # Zone for time-of-day primitives; None keeps the zone of the tick time.
        self.timezone = timezone

    @classmethod
    def from_settings(cls, settings: Settings, context: ExecutionContext) -> TaskExecutor:
        return cls(
            context,
            max_steps_per_tick=settings.max_steps_per_tick,
            max_step_retries=settings.max_step_retries,
            timezone=settings.resolved_timezone(),
        )

    def _local(self, now: datetime) -> datetime:
        return now.astimezone(self.timezone) if self.timezone is not None else now

    def skip_reason(self, task: Task, now: datetime, trigger: Trigger = "schedule") -> str | None:
        if task.is_terminal:
            return f"status_{task.status}"
        if task.status in USER_BLOCKED_STATUSES:
            return f"status_{task.status}"
        if task.poll_frequency.is_event:
            return None if trigger in ("login", "manual") else "on_login_only"
        if trigger != "manual" and task.next_check is not None and task.next_check > now:
            return "not_due"
        return None

    def tick(self, task: Task, now: datetime, *, trigger: Trigger = "schedule") -> TickResult:
        """Run whatever is due for ``task``; the input task is never mutated."""
        task = task.model_copy(deep=True)
        result = TickResult(task=task)
        reason = self.skip_reason(task, now, trigger)
        if reason is not None:
            result.skipped_reason = reason
            logger.debug("task_tick event=skipped task_id=%s reason=%s", task.id, reason)
            return result

        if task.status == "pending":
            task.status = "active"
            task.log("Task activated", now)

        if task.status == "waiting":
            poll_reply_wait(task, now, self.context)
            result.events.append("reply_poll")
        if task.status == "active":
            self._run_steps(task, now, result)

        self._schedule(task, now)
        logger.info(
            "task_tick event=done task_id=%s status=%s steps=%s next_check=%s",
            task.id,
            task.status,
            result.executed_steps,
            task.next_check.isoformat() if task.next_check else None,
        )
        return result

    def _schedule(self, task: Task, now: datetime) -> None:
        if task.is_terminal or task.status in USER_BLOCKED_STATUSES:
            task.next_check = None
            return
        if task.status == "waiting":
            state = load_reply_wait(task)
            if state is not None:
                task.next_check = now + state.poll_interval
                return
        interval = task.poll_frequency.interval
        task.next_check = now + interval if interval is not None else None

    def _run_steps(self, task: Task, now: datetime, result: TickResult) -> None:
        plan = task.structured_plan
        if not plan:
            request_attention(
                task,
                "no_structured_plan",
                "This task has no executable plan. Tell me how you would like to proceed.",
                now,
                self.context,
            )
            result.events.append("attention:no_structured_plan")
            return

        executed = 0
        while task.status == "active":
            if executed >= self.max_steps_per_tick:
                task.log(f"Paused after {executed} steps in one poll; resuming next poll", now)
                logger.warning(
                    "task_tick event=loop_guard task_id=%s steps=%d",
                    task.id,
                    executed,
                )
                result.events.append("loop_guard")
                return
            index = self._step_index(plan, task.current_step.step)
            if index is None:
                self._finish_cycle(task, plan, now, result)
                return
            executed += 1
            if not self._execute_step(task, plan, index, now, result):
                return

    @staticmethod
    def _step_index(plan: list[PlanStep], step_number: int) -> int | None:
        for index, step in enumerate(plan):
            if step.step_id == step_number:
                return index
        # Unknown ids resume at the next step that exists.
        for index, step in enumerate(plan):
            if step.step_id > step_number:
                return index
        return None

    @staticmethod
    def _point_at(task: Task, plan: list[PlanStep], index: int) -> None:
        if index < len(plan):
            step = plan[index]
            task.current_step = CurrentStep(step=step.step_id, description=step.description)
        else:
            task.current_step = CurrentStep(step=plan[-1].step_id + 1, state="done")

    def _advance(self, task: Task, plan: list[PlanStep], index: int) -> None:
        self._point_at(task, plan, index + 1)

    def _finish_cycle(
        self,
        task: Task,
        plan: list[PlanStep],
        now: datetime,
        result: TickResult,
    ) -> None:
        if task.task_type == "continuous":
            for key in [key for key in task.context_memory if _CYCLE_KEY_RE.match(key)]:
                del task.context_memory[key]
            self._point_at(task, plan, 0)
            result.events.append("cycle_complete")
            logger.debug("task_tick event=cycle_complete task_id=%s", task.id)
            return

        task.status = "completed"
        task.current_step = CurrentStep(step=task.current_step.step, state="completed")
        task.log("All plan steps executed", now)
        publish_task_update(
            self.context.updates,
            task_id=task.id,
            title=task.title,
            message="Task completed.",
            now=now,
            emoji="✅",
        )
        result.events.append("completed")

    def _gate_open(self, task: Task, plan: list[PlanStep], index: int) -> bool:
        step = plan[index]
        if step.condition:
            memory = task.context_memory
            return evaluate_expression(
                step.condition,
                resolve=lambda text: interpolate(text, memory),
            )

        if step.dependencies:
            source_id: int | None = step.dependencies[-1]
        elif index > 0:
            source_id = plan[index - 1].step_id
        else:
            source_id = None
        if source_id is None:
            return True

        output = load_step_output(task.context_memory, source_id)
        if not isinstance(output, dict):
            return False
        for key in GATE_KEYS:
            if output.get(key) is not None:
                return is_truthy(output[key])
        return output.get("success") is True

    def _execute_step(
        self,
        task: Task,
        plan: list[PlanStep],
        index: int,
        now: datetime,
        result: TickResult,
    ) -> bool:
        """Run one step; returns True when the tick may continue with the next one."""
        step = plan[index]
        task.current_step = CurrentStep(
            step=step.step_id,
            description=step.description,
            state="running",
        )
        result.executed_steps.append(step.step_id)

        if step.is_conditional:
            try:
                gate_open = self._gate_open(task, plan, index)
            except ValueError as exc:
                return self._fail_step(task, plan, index, f"Invalid condition: {exc}", now, result)
            if not gate_open:
                task.log(f"Step {step.step_id} skipped (condition not met)", now)
                result.events.append(f"step_skipped:{step.step_id}")
                self._advance(task, plan, index)
                return True

        if step.is_error:
            error = "No tool available for this step"
            return self._fail_step(task, plan, index, error, now, result)

        args = resolve_templates(step.args, task.context_memory)
        if not isinstance(args, dict):
            args = {}
        if is_primitive(step.tool):
            output = execute_primitive(
                step.tool,
                args,
                PrimitiveContext(now=self._local(now), memory=dict(task.context_memory)),
            )
            return self._apply_primitive(task, plan, index, output, now, result)
        return self._run_external(task, plan, index, args, now, result)

    def _record_output(self, task: Task, step: PlanStep, output: dict[str, Any]) -> None:
        stored = {key: value for key, value in output.items() if key != "chat_message"}
        task.context_memory[step_output_key(step.step_id)] = _compact_json(stored)
        if step.output_var:
            task.context_memory[step.output_var] = primary_value(output)
        task.context_memory.pop(_retry_key(step.step_id), None)

    def _apply_primitive(
        self,
        task: Task,
        plan: list[PlanStep],
        index: int,
        output: dict[str, Any],
        now: datetime,
        result: TickResult,
    ) -> bool:
        step = plan[index]
        if not output.get("success"):
            return self._fail_step(task, plan, index, output.get("error"), now, result)

        self._record_output(task, step, output)
        action = output.get("action")
        task.log(_step_log_message(step, output), now)
        logger.info(
            "task_tick event=step_executed task_id=%s step=%s tool=%s action=%s",
            task.id,
            step.step_id,
            step.tool,
            action,
        )

        if action == "save_variable":
            task.context_memory[output["name"]] = output["value"]
        elif action == "log_event":
            logger.log(
                _LOG_LEVELS.get(output.get("level", "info"), logging.INFO),
                "task_event task_id=%s message=%s",
                task.id,
                output.get("message"),
            )
        elif action == "notify":
            self._publish_chat(task, output, now)
        elif action == "goto_step":
            target = int(output["step_number"])
            target_index = self._step_index(plan, target)
            if target_index is None:
                task.current_step = CurrentStep(step=target, state="done")
            else:
                self._point_at(task, plan, target_index)
            result.events.append(f"goto:{target}")
            return True
        elif action == "complete_task":
            if task.task_type == "continuous":
                task.log("complete_task ignored for a continuous task", now)
            else:
                task.status = "completed"
                task.current_step = CurrentStep(step=step.step_id, state="completed")
                publish_task_update(
                    self.context.updates,
                    task_id=task.id,
                    title=task.title,
                    message=output.get("summary") or "Task completed.",
                    now=now,
                    emoji="✅",
                )
                result.events.append("completed")
                return False
        elif action == "wait_for_user_input":
            task.context_memory[AWAITING_INPUT_KEY] = (
                output.get("save_response_as") or DEFAULT_INPUT_VAR
            )
            task.status = "waiting_for_input"
            self._publish_chat(task, output, now)
            self._advance(task, plan, index)
            result.events.append("waiting_for_input")
            return False
        elif action == "wait_for_reply":
            arm_reply_wait(task, output, now)
            self._publish_chat(task, output, now)
            self._advance(task, plan, index)
            result.events.append("waiting_for_reply")
            return False

        self._advance(task, plan, index)
        return True

    def _run_external(
        self,
        task: Task,
        plan: list[PlanStep],
        index: int,
        args: dict[str, Any],
        now: datetime,
        result: TickResult,
    ) -> bool:
        step = plan[index]
        gateway = self.context.gateway
        definition = gateway.definition(step.tool) if gateway is not None else None

        if is_side_effecting(step.tool, definition):
            outcome = stage_or_dispatch(task, step.tool, args, now, self.context)
            if outcome.staged:
                assert outcome.message is not None
                self._record_output(
                    task,
                    step,
                    {"success": True, "staged": True, "message_id": outcome.message.id},
                )
                self._advance(task, plan, index)
                result.events.append(f"approval_pending:{outcome.message.id}")
                return False
            output = outcome.result or {}
            if not output.get("success"):
                return self._fail_step(task, plan, index, output.get("error"), now, result)
            self._record_output(task, step, output)
            self._advance(task, plan, index)
            result.events.append(f"sent:{step.tool}")
            return False

        output = dispatch_tool(self.context, step.tool, args)
        if not output.get("success"):
            return self._fail_step(task, plan, index, output.get("error"), now, result)
        self._record_output(task, step, output)
        task.log(f"Step {step.step_id} ({step.tool}) completed", now)
        logger.info(
            "task_tick event=step_executed task_id=%s step=%s tool=%s",
            task.id,
            step.step_id,
            step.tool,
        )
        self._advance(task, plan, index)
        return True

    def _fail_step(
        self,
        task: Task,
        plan: list[PlanStep],
        index: int,
        error: Any,
        now: datetime,
        result: TickResult,
    ) -> bool:
        step = plan[index]
        message = str(error or "Step failed")
        key = _retry_key(step.step_id)
        attempts = int(task.context_memory.get(key, "0") or 0) + 1
        task.log(f"Step {step.step_id} ({step.tool}) failed: {message}", now)
        logger.warning(
            "task_tick event=step_failed task_id=%s step=%s tool=%s attempt=%d reason=%s",
            task.id,
            step.step_id,
            step.tool,
            attempts,
            message,
        )
        result.error = message
        result.events.append(f"step_failed:{step.step_id}")

        if attempts <= self.max_step_retries:
            task.context_memory[key] = str(attempts)
            task.current_step.state = "retrying"
            return False

        task.context_memory.pop(key, None)
        if task.task_type == "continuous":
            task.log(f"Skipping step {step.step_id} after {attempts} failed attempts", now)
            self._advance(task, plan, index)
            return True

        task.status = "failed"
        task.current_step.state = "failed"
        task.log(f"Task failed at step {step.step_id} after {attempts} attempts", now)
        publish_task_update(
            self.context.updates,
            task_id=task.id,
            title=task.title,
            message=f"Task failed at step {step.step_id}: {message}",
            now=now,
            emoji="❌",
        )
        return False

    def _publish_chat(self, task: Task, output: dict[str, Any], now: datetime) -> None:
        chat_message = output.get("chat_message")
        publish_task_update(
            self.context.updates,
            task_id=task.id,
            title=task.title,
            message=str(output.get("message") or output.get("question") or chat_message or ""),
            now=now,
            chat_message=chat_message,
        )

    # User actions mutate ``task`` in place and return an error string or None.

    def approve_pending_message(
        self,
        task: Task,
        message_id: str,
        now: datetime,
        *,
        edited_message: str | None = None,
    ) -> str | None:
        return approve_pending_message(
            task,
            message_id,
            now,
            self.context,
            edited_message=edited_message,
        )

    def reject_pending_message(self, task: Task, message_id: str, now: datetime) -> str | None:
        return reject_pending_message(task, message_id, now)

    def provide_user_input(self, task: Task, text: str, now: datetime) -> str | None:
        if task.status != "waiting_for_input":
            return f"Task is not waiting for input (status: {task.status})"

        reason = task.context_memory.pop(ATTENTION_KEY, None)
        if reason in REPLY_ATTENTION_REASONS and REPLY_WAIT_KEY in task.context_memory:
            resolve_reply_wait(task, text, now)
            task.log("Reply provided by user", now)
            return None

        variable = task.context_memory.pop(AWAITING_INPUT_KEY, None) or DEFAULT_INPUT_VAR
        task.context_memory[variable] = text
        task.status = "active"
        task.next_check = now
        task.log(f"User responded: {text}", now)
        return None

    def cancel(self, task: Task, now: datetime) -> str | None:
        if task.is_terminal:
            return f"Task is already {task.status}"
        task.status = "cancelled"
        task.next_check = None
        task.log("Task cancelled by user", now)
        return None

    def hide(self, task: Task, now: datetime) -> str | None:
        task.hidden = True
        task.log("Task hidden from UI", now)
        return None


def _step_log_message(step: PlanStep, output: dict[str, Any]) -> str:
    action = output.get("action")
    if action == "log_event":
        return str(output.get("log_entry"))
    if action == "wait_for_reply":
        return (
            f"Step {step.step_id}: waiting for reply from {output.get('contact')} "
            f"via {output.get('platform')}"
        )
    if action == "wait_for_user_input":
        return f"Step {step.step_id}: asked user: {output.get('question')}"
    detail = output.get("message")
    if not isinstance(detail, str) or not detail:
        detail = step.description
    prefix = f"Step {step.step_id} ({step.tool})"
    return f"{prefix}: {detail}" if detail else prefix
