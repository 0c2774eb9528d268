from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import pytest

from taskpilot.llm import GenerationError
from taskpilot.models import PlanStep, ToolDefinition
from taskpilot.tasks.models import PollFrequency, Task, resolve_poll_frequency
from taskpilot.tasks.replies import InboundMessage
from taskpilot.tasks.updates import ExecutionContext, TaskUpdateQueue
from taskpilot.tools.catalog import ToolGateway

NOON = datetime(2026, 3, 2, 12, 5, tzinfo=UTC)


class FakeGenerator:
    """Returns scripted responses in order; raises once the script runs out."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.prompts: list[str] = []
        self.system_prompts: list[str | None] = []

    def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 2048,
    ) -> str:
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        if not self.responses:
            raise GenerationError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, (dict, list)):
            return json.dumps(response)
        return str(response)


class RecordingDispatcher:
    """External tool host that records calls instead of performing them."""

    def __init__(
        self,
        tools: list[ToolDefinition] | None = None,
        outputs: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.tools = tools or [
            ToolDefinition(name="send_email", description="Send an email"),
            ToolDefinition(name="send_slack_message", description="Post to Slack"),
            ToolDefinition(name="get_weather", description="Current weather"),
        ]
        self.outputs = outputs or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def definitions(self) -> list[ToolDefinition]:
        return list(self.tools)

    def call(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((tool_name, dict(args)))
        output = self.outputs.get(tool_name, {"success": True})
        if isinstance(output, Exception):
            raise output
        return dict(output)


class ScriptedReplyChecker:
    """Hands out one scripted batch of inbound messages per poll."""

    def __init__(self, batches: list[list[str]] | None = None) -> None:
        self.batches = list(batches or [])
        self.calls: list[dict[str, Any]] = []

    def check_for_replies(
        self,
        platform: str,
        contact: str,
        since: datetime,
        conversation_id: str | None,
    ) -> list[InboundMessage]:
        self.calls.append(
            {
                "platform": platform,
                "contact": contact,
                "since": since,
                "conversation_id": conversation_id,
            }
        )
        batch = self.batches.pop(0) if self.batches else []
        return [InboundMessage(text=text, sender=contact) for text in batch]


def make_task(
    steps: list[dict[str, Any]] | None,
    *,
    task_type: str = "discrete",
    auto_send: bool = False,
    poll: str | PollFrequency = "1min",
    memory: dict[str, str] | None = None,
    now: datetime = NOON,
) -> Task:
    plan = [PlanStep.model_validate(step) for step in steps] if steps is not None else None
    return Task(
        id="test-task-0001",
        title="Test task",
        status="active",
        task_type=task_type,
        created=now,
        last_updated=now,
        poll_frequency=resolve_poll_frequency(poll),
        auto_send=auto_send,
        original_request="test request",
        plan=[step.description for step in plan or []],
        structured_plan=plan,
        context_memory=dict(memory or {}),
    )


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def updates() -> TaskUpdateQueue:
    return TaskUpdateQueue()


@pytest.fixture
def context(dispatcher: RecordingDispatcher, updates: TaskUpdateQueue) -> ExecutionContext:
    return ExecutionContext(updates=updates, gateway=ToolGateway(dispatcher))
