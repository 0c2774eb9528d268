"""Task records and the engine that advances them."""

from taskpilot.tasks.executor import TaskExecutor, TickResult
from taskpilot.tasks.markdown import TaskMarkdownError, parse_task_markdown, serialize_task
from taskpilot.tasks.models import PendingMessage, PollFrequency, Task
from taskpilot.tasks.service import TaskActionResult, TaskService
from taskpilot.tasks.updates import ExecutionContext, TaskUpdate, TaskUpdateQueue

__all__ = [
    "ExecutionContext",
    "PendingMessage",
    "PollFrequency",
    "Task",
    "TaskActionResult",
    "TaskExecutor",
    "TaskMarkdownError",
    "TaskService",
    "TaskUpdate",
    "TaskUpdateQueue",
    "TickResult",
    "parse_task_markdown",
    "serialize_task",
]
