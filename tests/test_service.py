from __future__ import annotations

from datetime import datetime, timedelta

from conftest import NOON, RecordingDispatcher, make_task

from taskpilot.storage.base import StorageError
from taskpilot.storage.memory import InMemoryTaskStorage
from taskpilot.tasks.executor import TaskExecutor
from taskpilot.tasks.markdown import serialize_task
from taskpilot.tasks.models import Task
from taskpilot.tasks.service import TaskService
from taskpilot.tasks.skills import Skill
from taskpilot.tasks.updates import ExecutionContext
from taskpilot.tools.catalog import ToolGateway

REMINDER = [{"step_id": 1, "tool": "send_reminder", "args": {"message": "Stretch"}}]


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class BrokenStorage(InMemoryTaskStorage):
    def get_task(self, task_id: str) -> Task | None:
        raise StorageError("database unavailable")


def _service(storage: InMemoryTaskStorage | None = None, clock: Clock | None = None, **kwargs):
    context = ExecutionContext(gateway=ToolGateway(RecordingDispatcher()))
    return TaskService(
        storage or InMemoryTaskStorage(),
        TaskExecutor(context),
        clock=clock or Clock(NOON),
        **kwargs,
    )


def test_create_without_decomposer_persists_fallback_task() -> None:
    service = _service(default_poll_frequency="30min")

    result = service.create_from_request("Slack the team about lunch", None, [])

    assert result.success is True
    assert result.task is not None
    assert result.decomposition is not None and result.decomposition.plan == []
    stored = service.get_task(result.task.id).task
    assert stored == result.task
    assert stored.poll_frequency.label == "Every 30 minutes"
    assert stored.context_memory["messaging_channel"] == "slack"


def test_create_applies_skills() -> None:
    skill = Skill(
        id="standup",
        name="Standup notes",
        description="Collect standup notes",
        keywords=["standup", "notes"],
        procedure=["Ask each person", "Summarize"],
    )
    service = _service(skills=[skill])

    task = service.create_from_request("Collect standup notes", None, []).task

    assert task is not None
    assert task.plan == ["Ask each person", "Summarize"]


def test_empty_request_is_invalid() -> None:
    result = _service().create_from_request("  ", None, [])

    assert result.success is False
    assert result.error_code == "invalid"


def test_tick_persists_only_when_the_task_ran() -> None:
    storage = InMemoryTaskStorage()
    clock = Clock(NOON)
    service = _service(storage, clock)
    task = make_task(REMINDER + [{"step_id": 2, "tool": "log_event", "args": {"message": "x"}}])
    storage.save_task(task)

    ran = service.tick_task(task.id)
    skipped = service.tick_task("test-task-0001", trigger="schedule")

    assert ran.success is True
    assert ran.task.status == "completed"
    assert storage.get_task(task.id).status == "completed"
    assert skipped.skipped_reason == "status_completed"
    assert service.tick_task("missing").error_code == "not_found"


def test_poll_due_ticks_due_tasks_only() -> None:
    storage = InMemoryTaskStorage()
    clock = Clock(NOON)
    service = _service(storage, clock)
    due = make_task(REMINDER, task_type="continuous")
    later = make_task(REMINDER, task_type="continuous").model_copy(
        update={"id": "later", "next_check": NOON + timedelta(hours=1)}
    )
    login = make_task(REMINDER, task_type="continuous", poll="on_login").model_copy(
        update={"id": "login"}
    )
    for task in (due, later, login):
        storage.save_task(task)

    scheduled = service.poll_due()
    on_login = service.poll_due(trigger="login")

    assert [result.task.id for result in scheduled] == [due.id]
    assert [result.task.id for result in on_login] == ["login"]
    assert storage.get_task(due.id).next_check == NOON + timedelta(minutes=1)


def test_storage_errors_become_results() -> None:
    service = _service(BrokenStorage())

    result = service.get_task("anything")

    assert result.success is False
    assert result.error_code == "storage"
    assert result.error == "database unavailable"
    assert service.cancel("anything").error_code == "storage"


def test_user_actions_return_conflicts() -> None:
    storage = InMemoryTaskStorage()
    service = _service(storage)
    storage.save_task(make_task(REMINDER))

    hidden = service.hide("test-task-0001")
    rejected = service.reject_message("test-task-0001", "msg-1")

    assert hidden.success is True
    assert storage.get_task("test-task-0001").hidden is True
    assert rejected.success is False
    assert rejected.error_code == "conflict"
    assert rejected.task is not None


def test_markdown_round_trip_through_the_service() -> None:
    storage = InMemoryTaskStorage()
    service = _service(storage)
    task = make_task(REMINDER)
    storage.save_task(task)

    exported = service.export_markdown(task.id)
    imported = service.import_markdown(
        exported.markdown.replace("Test task", "Renamed task"),
        task_id=task.id,
    )

    assert exported.markdown == serialize_task(task)
    assert imported.success is True
    assert storage.get_task(task.id).title == "Renamed task"
    assert service.import_markdown("not a task").error_code == "invalid"
    assert service.export_markdown("missing").error_code == "not_found"
