import pytest
from conftest import NOON

from taskpilot.models import DecompositionResult, PlanStep
from taskpilot.tasks.factory import (
    GENERIC_PLAN,
    create_task,
    detect_messaging_channel,
    fallback_plan,
    task_id_for,
)
from taskpilot.tasks.skills import Skill

DECOMPOSITION = DecompositionResult(
    title="  Daily   lunch reminder ",
    task_type="continuous",
    success_criteria="ignored for continuous tasks",
    requires_task=True,
    plan=[
        PlanStep(step_id=1, tool="check_time_passed", description="Check if noon passed"),
        PlanStep(step_id=2, tool="send_reminder"),
    ],
)


def test_task_from_decomposition() -> None:
    task = create_task(
        "Remind me at 12pm daily",
        DECOMPOSITION,
        now=NOON,
        poll_frequency="5min",
        id_suffix="abcd1234",
    )

    assert task.id == "daily-lunch-reminder-abcd1234"
    assert task.title == "Daily lunch reminder"
    assert task.status == "active"
    assert task.task_type == "continuous"
    assert task.plan == ["Check if noon passed", "send_reminder"]
    assert task.structured_plan == DECOMPOSITION.plan
    assert task.current_step.step == 1
    assert task.current_step.state == "active"
    assert task.context_memory == {"task_type": "continuous"}
    assert task.poll_frequency.label == "Every 5 minutes"
    assert task.next_check is None
    assert task.execution_log[0].message == (
        "Task created (continuous monitoring) (direct execution) [Poll: Every 5 minutes]"
    )


def test_task_without_plan_uses_fallback_steps() -> None:
    task = create_task(
        "Email Sam about the Q3 report",
        None,
        now=NOON,
        poll_frequency="unknown-preset",
        default_poll_frequency="15min",
    )

    assert task.title == "Untitled Task"
    assert task.id.startswith("untitled-task-")
    assert task.structured_plan is None
    assert task.plan[0] == "Send initial email with the request"
    assert task.context_memory["messaging_channel"] == "email"
    assert task.poll_frequency.label == "Every 15 minutes"
    assert task.execution_log[0].message == "Task created (using email) [Poll: Every 15 minutes]"


def test_discrete_task_keeps_success_criteria() -> None:
    decomposition = DECOMPOSITION.model_copy(
        update={"task_type": "discrete", "success_criteria": "Report received"}
    )

    task = create_task("Get the report", decomposition, now=NOON, auto_send=True)

    assert task.context_memory["success_criteria"] == "Report received"
    assert task.auto_send is True


def test_matched_skill_replaces_display_plan() -> None:
    skill = Skill(
        id="expense-report",
        name="Expense report",
        description="File monthly expense reports",
        keywords=["expense", "report", "receipts"],
        procedure=["Collect receipts", "Fill the form", "Submit"],
        constraints=["Never submit without receipts", "Use the company template"],
    )

    task = create_task(
        "File my expense report with the receipts",
        DECOMPOSITION,
        now=NOON,
        skills=[skill],
    )

    assert task.plan == ["Collect receipts", "Fill the form", "Submit"]
    assert task.structured_plan == DECOMPOSITION.plan
    assert task.context_memory["skill_name"] == "Expense report"
    assert task.context_memory["skill_constraints"] == (
        "Never submit without receipts; Use the company template"
    )
    assert "(skill: Expense report)" in task.execution_log[0].message


@pytest.mark.parametrize(
    ("request_text", "channel"),
    [
        ("Ask the team on Slack", "slack"),
        ("Post it to x", "x"),
        ("Tweet the launch", "x"),
        ("Email Dana", "email"),
        ("Send a message to mom", "imessage"),
        ("Text John about dinner", "imessage"),
        ("Remind me at noon", None),
    ],
)
def test_detect_messaging_channel(request_text: str, channel: str | None) -> None:
    assert detect_messaging_channel(request_text) == channel


def test_fallback_plan_and_ids() -> None:
    assert fallback_plan("Ping me on slack")[0] == "Send initial Slack message"
    assert fallback_plan("Water the plants") == GENERIC_PLAN
    assert task_id_for("!!!", "00000000") == "task-00000000"
    assert task_id_for("A very long title that keeps going on", "x") == (
        "a-very-long-title-that-keeps-g-x"
    )
