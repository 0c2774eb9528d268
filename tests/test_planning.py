import json

from conftest import FakeGenerator

from taskpilot.models import ArchitectResult, BuilderResult, ToolDefinition, ValidationResult
from taskpilot.planning.architect import architect_decompose
from taskpilot.planning.builder import BUILDER_SYSTEM_PROMPT, builder_map_to_tools
from taskpilot.planning.catalog import KeywordToolCategorizer, format_tool_categories
from taskpilot.planning.validator import static_validate, validate_plan
from taskpilot.tools.catalog import build_tool_catalog

TOOLS = build_tool_catalog([ToolDefinition(name="send_email"), ToolDefinition(name="get_weather")])
TOOL_NAMES = {tool.name for tool in TOOLS}

ARCHITECT_PAYLOAD = {
    "title": "Daily lunch reminder",
    "task_type": "continuous",
    "user_intent": "Remind the user about lunch every day at noon",
    "success_criteria": "never used for continuous tasks",
    "logical_steps": [
        "Step 1: Check whether 12pm has passed. Output: within_window",
        "Step 2: Send the reminder when it has",
    ],
    "data_flow": {"step_2": ["step_1"], "step_1": ["step_3"]},
}


def _builder_payload(*steps: dict) -> dict:
    return {"title": "Lunch reminder", "task_type": "continuous", "plan": list(steps)}


def test_architect_parses_payload_and_drops_forward_data_flow() -> None:
    generator = FakeGenerator([f"Here you go:\n{json.dumps(ARCHITECT_PAYLOAD)}"])

    result = architect_decompose("Remind me at 12pm daily", TOOLS, generator)

    assert result is not None
    assert result.task_type == "continuous"
    assert result.success_criteria is None
    assert result.data_flow == {2: [1], 1: []}
    assert "Remind me at 12pm daily" in generator.prompts[0]
    assert "Time & Reminders" in generator.prompts[0]


def test_architect_returns_none_without_steps_or_generator() -> None:
    empty = FakeGenerator([{"title": "Nothing", "logical_steps": []}])

    assert architect_decompose("do it", TOOLS, empty) is None
    assert architect_decompose("do it", TOOLS, None) is None
    assert architect_decompose("do it", TOOLS, FakeGenerator(["no json here"])) is None


def test_builder_maps_steps_and_defaults_missing_tool_to_error() -> None:
    generator = FakeGenerator(
        [
            _builder_payload(
                {"step_id": 1, "tool": "check_time_passed", "args": {"target_hour": 12}},
                {"step_id": 2, "tool": "", "description": "Order lunch"},
            )
        ]
    )
    architect = ArchitectResult.model_validate(ARCHITECT_PAYLOAD)

    result = builder_map_to_tools(architect, TOOLS, generator)

    assert result is not None
    assert [step.tool for step in result.plan] == ["check_time_passed", "ERROR"]
    assert result.plan[1].is_error
    assert generator.system_prompts == [BUILDER_SYSTEM_PROMPT]
    assert "Previous attempt feedback" not in generator.prompts[0]


def test_builder_embeds_validation_feedback() -> None:
    generator = FakeGenerator([_builder_payload({"step_id": 1, "tool": "send_reminder"})])
    feedback = ValidationResult(
        is_valid=False,
        issues=["Step 2 uses unknown tool \"order_food\""],
        suggestions=["Use send_reminder"],
    )

    builder_map_to_tools(
        ArchitectResult.model_validate(ARCHITECT_PAYLOAD),
        TOOLS,
        generator,
        feedback=feedback,
    )

    prompt = generator.prompts[0]
    assert "Previous attempt feedback" in prompt
    assert '- Step 2 uses unknown tool "order_food"' in prompt
    assert "- Use send_reminder" in prompt


def test_static_validation_reports_structural_issues() -> None:
    builder = BuilderResult.model_validate(
        _builder_payload(
            {"step_id": 1, "tool": "teleport"},
            {"step_id": 2, "tool": "send_reminder", "dependencies": [3]},
            {"step_id": 3, "tool": "send_reminder", "args": {"message": "{{step_4.result}}"}},
            {"step_id": 3, "tool": "ERROR"},
        )
    )

    result = static_validate(builder, TOOL_NAMES)

    assert result.is_valid is False
    assert 'Step 1 uses unknown tool "teleport"' in result.issues
    assert "Step 2 depends on future step 3" in result.issues
    assert "Step 3 references future step 4" in result.issues
    assert "Step 3 is out of order or duplicates step 3" in result.issues
    assert not any("ERROR" in issue for issue in result.issues)


def test_static_validation_checks_required_args_and_goto_targets() -> None:
    builder = BuilderResult.model_validate(
        _builder_payload(
            {"step_id": 1, "tool": "check_time_passed", "args": {"target_minute": 30}},
            {"step_id": 2, "tool": "send_reminder", "args": {"message": "{{step_1.message}}"}},
            {"step_id": 3, "tool": "goto_step", "args": {"step_number": 7}},
            {"step_id": 4, "tool": "goto_step", "args": {"step_number": "1"}},
        )
    )
    generator = FakeGenerator([{"isValid": True}])

    result = validate_plan(builder, "remind me at noon", TOOLS, generator)

    assert result.is_valid is False
    assert result.issues == [
        "Step 1 (check_time_passed) is missing required args: target_hour",
        "Step 3 jumps to missing step 7",
    ]
    assert generator.prompts == []


def test_static_validation_rejects_empty_plan() -> None:
    result = static_validate(None, TOOL_NAMES)

    assert result.is_valid is False
    assert result.issues == ["Empty plan"]


def test_semantic_review_runs_only_after_static_pass() -> None:
    builder = BuilderResult.model_validate(_builder_payload({"step_id": 1, "tool": "teleport"}))
    generator = FakeGenerator([{"isValid": True}])

    result = validate_plan(builder, "remind me", TOOLS, generator)

    assert result.is_valid is False
    assert generator.prompts == []


def test_semantic_review_verdict_and_fallback() -> None:
    builder = BuilderResult.model_validate(
        _builder_payload({"step_id": 1, "tool": "send_reminder", "args": {"message": "Lunch"}})
    )
    rejecting = FakeGenerator(
        [{"isValid": False, "reasoning": "No time check", "issues": ["Fires every poll"]}]
    )

    rejected = validate_plan(builder, "remind me at noon", TOOLS, rejecting)
    fallback = validate_plan(builder, "remind me at noon", TOOLS, FakeGenerator(["garbage"]))

    assert rejected.is_valid is False
    assert rejected.issues == ["Fires every poll"]
    assert "[send_reminder]" in rejecting.prompts[0]
    assert fallback.is_valid is True
    assert fallback.reasoning == "Plan passes static validation"


def test_keyword_categorizer_groups_tools() -> None:
    categorizer = KeywordToolCategorizer()
    text = format_tool_categories(
        [ToolDefinition(name="send_email"), ToolDefinition(name="list_tasks")],
        categorizer,
    )

    assert categorizer.categorize("send_imessage") == "iMessage"
    assert categorizer.categorize("mystery") == "General"
    assert text == "Email: send_email\nTasks: list_tasks"
