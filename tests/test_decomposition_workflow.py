from conftest import FakeGenerator

from taskpilot.models import ToolDefinition
from taskpilot.planning.workflow import RequestDecomposer
from taskpilot.tools.catalog import build_tool_catalog

TOOLS = build_tool_catalog([ToolDefinition(name="send_email")])

ARCHITECT = {
    "title": "Daily noon reminder",
    "task_type": "continuous",
    "user_intent": "Get reminded at 12pm every day",
    "logical_steps": [
        "Check whether it is a new day",
        "Check whether 12pm has passed",
        "Send the reminder once per day",
        "Remember the date of the last reminder",
    ],
    "data_flow": {"step_3": ["step_1", "step_2"], "step_4": ["step_1"]},
}

GATE = "{{step_1.is_new_day}} == true and {{step_2.within_window}} == true"

VALID_PLAN = {
    "title": "Daily noon reminder",
    "task_type": "continuous",
    "plan": [
        {"step_id": 1, "tool": "is_new_day", "args": {"last_date": "{{last_reminder_date}}"}},
        {"step_id": 2, "tool": "check_time_passed", "args": {"target_hour": 12}},
        {
            "step_id": 3,
            "tool": "send_reminder",
            "args": {"message": "Time for lunch"},
            "dependencies": [1, 2],
            "is_conditional": True,
            "condition": GATE,
        },
        {
            "step_id": 4,
            "tool": "save_variable",
            "args": {"name": "last_reminder_date", "value": "{{step_1.current_date}}"},
            "dependencies": [1],
            "is_conditional": True,
            "condition": GATE,
        },
    ],
}

BROKEN_PLAN = {
    "title": "Daily noon reminder",
    "plan": [{"step_id": 1, "tool": "order_lunch", "args": {}}],
}


def test_daily_reminder_request_decomposes_into_validated_plan() -> None:
    generator = FakeGenerator([ARCHITECT, VALID_PLAN, {"isValid": True, "reasoning": "ok"}])

    result = RequestDecomposer(generator).decompose("Remind me at 12pm daily", TOOLS)

    assert result.title == "Daily noon reminder"
    assert result.task_type == "continuous"
    assert result.requires_task is True
    assert result.success_criteria is None
    assert [step.tool for step in result.plan] == [
        "is_new_day",
        "check_time_passed",
        "send_reminder",
        "save_variable",
    ]
    assert result.validation is not None and result.validation.is_valid
    assert result.attempts == 1
    assert result.architect is not None
    assert result.architect.data_flow == {3: [1, 2], 4: [1]}
    assert result.steps[2].may_require_waiting is True
    assert all(step.is_recurring for step in result.steps)


def test_refinement_is_bounded_and_returns_last_plan() -> None:
    generator = FakeGenerator([ARCHITECT, BROKEN_PLAN, BROKEN_PLAN, BROKEN_PLAN, VALID_PLAN])

    result = RequestDecomposer(generator, max_refinement_attempts=3).decompose(
        "Remind me at 12pm daily",
        TOOLS,
    )

    assert result.attempts == 3
    assert [step.tool for step in result.plan] == ["order_lunch"]
    assert result.validation is not None and result.validation.is_valid is False
    # architect + three builder calls; static failures never reach the semantic review
    assert len(generator.prompts) == 4
    assert generator.responses == [VALID_PLAN]


def test_retry_prompt_carries_validator_feedback() -> None:
    generator = FakeGenerator([ARCHITECT, BROKEN_PLAN, VALID_PLAN, {"isValid": True}])

    result = RequestDecomposer(generator).decompose("Remind me at 12pm daily", TOOLS)

    first_build, second_build = generator.prompts[1], generator.prompts[2]
    assert "Previous attempt feedback" not in first_build
    assert 'Step 1 uses unknown tool "order_lunch"' in second_build
    assert result.attempts == 2
    assert result.validation is not None and result.validation.is_valid


def test_unparseable_builder_output_is_retried() -> None:
    generator = FakeGenerator([ARCHITECT, "sorry, no plan", VALID_PLAN, {"isValid": True}])

    result = RequestDecomposer(generator).decompose("Remind me at 12pm daily", TOOLS)

    assert result.attempts == 2
    assert len(result.plan) == 4


def test_failed_architect_yields_empty_result() -> None:
    result = RequestDecomposer(FakeGenerator(["not json"])).decompose("Remind me", TOOLS)

    assert result.requires_task is False
    assert result.plan == []
    assert result.title == "Unknown"


def test_blank_request_skips_generation() -> None:
    generator = FakeGenerator([ARCHITECT])

    result = RequestDecomposer(generator).decompose("   ", TOOLS)

    assert result.plan == []
    assert generator.prompts == []
