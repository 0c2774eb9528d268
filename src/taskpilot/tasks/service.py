"""Application service: persistence, per-task locking and user actions.

Every public method returns a result value; storage and codec failures are
reported through ``TaskActionResult.error`` instead of being raised.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any, Callable, Iterable, Literal

from pydantic import BaseModel, Field

from taskpilot.models import DecompositionResult, ToolDefinition
from taskpilot.planning.workflow import RequestDecomposer
from taskpilot.storage.base import StorageError, TaskStorage
from taskpilot.tasks.executor import TaskExecutor, Trigger
from taskpilot.tasks.factory import create_task
from taskpilot.tasks.markdown import TaskMarkdownError, parse_task_markdown, serialize_task
from taskpilot.tasks.models import DEFAULT_POLL_PRESET, PollFrequency, Task
from taskpilot.tasks.skills import Skill, SkillMatcher

logger = logging.getLogger(__name__)

ErrorCode = Literal["not_found", "invalid", "conflict", "storage"]


class TaskActionResult(BaseModel):
    success: bool
    task: Task | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    decomposition: DecompositionResult | None = None
    markdown: str | None = None
    events: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None

    @classmethod
    def failure(cls, error: str, code: ErrorCode) -> TaskActionResult:
        return cls(success=False, error=error, error_code=code)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskService:
    def __init__(
        self,
        storage: TaskStorage,
        executor: TaskExecutor,
        *,
        skills: Iterable[Skill] = (),
        skill_matcher: SkillMatcher | None = None,
        default_poll_frequency: str = DEFAULT_POLL_PRESET,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.storage = storage
        self.executor = executor
        self.skills = list(skills)
        self.skill_matcher = skill_matcher
        self.default_poll_frequency = default_poll_frequency
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[task_id] = lock
            return lock

    def _guarded(self, operation: str, func: Callable[[], TaskActionResult]) -> TaskActionResult:
        try:
            return func()
        except StorageError as exc:
            logger.warning("task service storage error operation=%s reason=%s", operation, exc)
            return TaskActionResult.failure(str(exc), "storage")
        except Exception as exc:  # noqa: BLE001
            logger.exception("task service failed operation=%s", operation)
            return TaskActionResult.failure(f"{operation} failed: {exc}", "storage")

    def create_from_request(
        self,
        request: str,
        decomposer: RequestDecomposer | None,
        tools: Iterable[ToolDefinition],
        *,
        poll_frequency: str | PollFrequency | dict[str, Any] | None = None,
        auto_send: bool = False,
        messaging_channel: str | None = None,
    ) -> TaskActionResult:
        if not request.strip():
            return TaskActionResult.failure("Request must not be empty", "invalid")

        def _create() -> TaskActionResult:
            decomposition = (
                decomposer.decompose(request, tools)
                if decomposer is not None
                else DecompositionResult.empty()
            )
            task = create_task(
                request,
                decomposition,
                now=self.clock(),
                poll_frequency=poll_frequency,
                default_poll_frequency=self.default_poll_frequency,
                auto_send=auto_send,
                messaging_channel=messaging_channel,
                skills=self.skills,
                skill_matcher=self.skill_matcher,
            )
            self.storage.save_task(task)
            return TaskActionResult(success=True, task=task, decomposition=decomposition)

        return self._guarded("create", _create)

    def get_task(self, task_id: str) -> TaskActionResult:
        def _get() -> TaskActionResult:
            task = self.storage.get_task(task_id)
            if task is None:
                return TaskActionResult.failure(f"Task not found: {task_id}", "not_found")
            return TaskActionResult(success=True, task=task)

        return self._guarded("get", _get)

    def list_tasks(self, *, include_hidden: bool = False) -> list[Task]:
        try:
            return self.storage.list_tasks(include_hidden=include_hidden)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task service list failed reason=%s", exc)
            return []

    def tick_task(self, task_id: str, *, trigger: Trigger = "manual") -> TaskActionResult:
        def _tick() -> TaskActionResult:
            with self._lock_for(task_id):
                task = self.storage.get_task(task_id)
                if task is None:
                    return TaskActionResult.failure(f"Task not found: {task_id}", "not_found")
                tick = self.executor.tick(task, self.clock(), trigger=trigger)
                if tick.ran:
                    self.storage.save_task(tick.task)
                return TaskActionResult(
                    success=True,
                    task=tick.task,
                    error=tick.error,
                    events=tick.events,
                    skipped_reason=tick.skipped_reason,
                )

        return self._guarded("tick", _tick)

    def poll_due(self, *, trigger: Trigger = "schedule") -> list[TaskActionResult]:
        """Tick every stored task that is due for ``trigger``."""
        results: list[TaskActionResult] = []
        now = self.clock()
        for task in self.list_tasks(include_hidden=True):
            if self.executor.skip_reason(task, now, trigger) is not None:
                continue
            results.append(self.tick_task(task.id, trigger=trigger))
        logger.info("task poll finished trigger=%s ticked=%d", trigger, len(results))
        return results

    def _mutate(
        self,
        task_id: str,
        operation: str,
        action: Callable[[Task, datetime], str | None],
    ) -> TaskActionResult:
        def _run() -> TaskActionResult:
            with self._lock_for(task_id):
                task = self.storage.get_task(task_id)
                if task is None:
                    return TaskActionResult.failure(f"Task not found: {task_id}", "not_found")
                error = action(task, self.clock())
                if error is not None:
                    self.storage.save_task(task)
                    result = TaskActionResult.failure(error, "conflict")
                    result.task = task
                    return result
                self.storage.save_task(task)
                logger.info("task action applied operation=%s task_id=%s", operation, task_id)
                return TaskActionResult(success=True, task=task)

        return self._guarded(operation, _run)

    def approve_message(
        self,
        task_id: str,
        message_id: str,
        *,
        edited_message: str | None = None,
    ) -> TaskActionResult:
        return self._mutate(
            task_id,
            "approve",
            lambda task, now: self.executor.approve_pending_message(
                task,
                message_id,
                now,
                edited_message=edited_message,
            ),
        )

    def reject_message(self, task_id: str, message_id: str) -> TaskActionResult:
        return self._mutate(
            task_id,
            "reject",
            lambda task, now: self.executor.reject_pending_message(task, message_id, now),
        )

    def provide_input(self, task_id: str, text: str) -> TaskActionResult:
        return self._mutate(
            task_id,
            "reply",
            lambda task, now: self.executor.provide_user_input(task, text, now),
        )

    def cancel(self, task_id: str) -> TaskActionResult:
        return self._mutate(task_id, "cancel", self.executor.cancel)

    def hide(self, task_id: str) -> TaskActionResult:
        return self._mutate(task_id, "hide", self.executor.hide)

    def export_markdown(self, task_id: str) -> TaskActionResult:
        result = self.get_task(task_id)
        if result.task is not None:
            result.markdown = serialize_task(result.task)
        return result

    def import_markdown(self, text: str, *, task_id: str | None = None) -> TaskActionResult:
        try:
            task = parse_task_markdown(text, task_id=task_id)
        except TaskMarkdownError as exc:
            return TaskActionResult.failure(str(exc), "invalid")
        if task_id is not None and task.id != task_id:
            return TaskActionResult.failure(
                f"Document ID {task.id} does not match task {task_id}",
                "invalid",
            )

        def _save() -> TaskActionResult:
            with self._lock_for(task.id):
                self.storage.save_task(task)
            return TaskActionResult(success=True, task=task)

        return self._guarded("import", _save)
