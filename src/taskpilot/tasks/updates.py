"""Task update plumbing between the executor and whatever presents updates."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel

if TYPE_CHECKING:
    from taskpilot.llm import TextGenerator
    from taskpilot.tasks.replies import ReplyChecker
    from taskpilot.tools.catalog import ToolGateway

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 50


class TaskUpdate(BaseModel):
    task_id: str
    message: str
    timestamp: datetime
    to_chat: bool = True
    chat_message: str | None = None


class UpdateSink(Protocol):
    def publish(self, update: TaskUpdate) -> None: ...


def render_chat_message(message: str, *, title: str | None = None, emoji: str = "📋") -> str:
    header = f"**Task: {title}**" if title else "**Task Update**"
    return f"{emoji} {header}\n\n{message}"


def publish_task_update(
    sink: UpdateSink | None,
    *,
    task_id: str,
    title: str | None,
    message: str,
    now: datetime,
    emoji: str = "📋",
    to_chat: bool = True,
    chat_message: str | None = None,
) -> TaskUpdate:
    """Publish an update; ``chat_message`` replaces the rendered chat text when given."""
    if to_chat and chat_message is None:
        chat_message = render_chat_message(message, title=title, emoji=emoji)
    update = TaskUpdate(
        task_id=task_id,
        message=message,
        timestamp=now,
        to_chat=to_chat,
        chat_message=chat_message if to_chat else None,
    )
    if sink is not None:
        sink.publish(update)
    return update


class TaskUpdateQueue:
    """Bounded in-process queue; the oldest update is dropped when full."""

    def __init__(self, max_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._updates: deque[TaskUpdate] = deque(maxlen=max(1, max_size))
        self._lock = threading.Lock()

    def publish(self, update: TaskUpdate) -> None:
        with self._lock:
            if len(self._updates) == self._updates.maxlen:
                logger.debug(
                    "update queue full; dropping oldest task_id=%s",
                    self._updates[0].task_id,
                )
            self._updates.append(update)

    def drain(self) -> list[TaskUpdate]:
        with self._lock:
            updates = list(self._updates)
            self._updates.clear()
        return updates

    def __len__(self) -> int:
        with self._lock:
            return len(self._updates)


@dataclass
class ExecutionContext:
    """Process-owned collaborators handed to the executor on every tick."""

    updates: UpdateSink = field(default_factory=TaskUpdateQueue)
    gateway: ToolGateway | None = None
    reply_checker: ReplyChecker | None = None
    generator: TextGenerator | None = None
