"""Validator stage: structural checks first, then a semantic review.

The semantic review costs a generation call, so it only runs for plans that are
already structurally sound. If it cannot run, the static verdict stands.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from taskpilot.llm import TextGenerator, extract_json_object, generate_text
from taskpilot.models import ERROR_TOOL, BuilderResult, PlanStep, ToolDefinition, ValidationResult

logger = logging.getLogger(__name__)

STEP_REFERENCE_RE = re.compile(r"\{\{\s*step_(\d+)\s*(?:\.|\}\})")

VALIDATION_PROMPT = """You review execution plans. Decide whether executing this plan
accomplishes the user's goal.

# Original request
"{request}"

# Execution plan
Title: {title}
Type: {task_type}

Steps:
{steps}

# Review checklist
1. Does executing the steps do what the user asked?
2. Are tool arguments correct and complete?
3. Does data flow logically between steps?
4. For time-based requests, does the plan check the time and act at the right moment
   without firing twice?
5. Are steps missing or redundant? Steps with tool ERROR are coverage gaps.

# Response format
{{
  "isValid": true or false,
  "reasoning": "Brief explanation",
  "issues": ["Specific problems when invalid"],
  "suggestions": ["Specific corrections when invalid"]
}}
"""


def template_references(step: PlanStep) -> list[int]:
    serialized = json.dumps(step.args, ensure_ascii=False)
    if step.condition:
        serialized += " " + step.condition
    return [int(match) for match in STEP_REFERENCE_RE.findall(serialized)]


def _goto_target(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def static_validate(
    builder: BuilderResult | None,
    tool_names: set[str],
    *,
    required_inputs: Mapping[str, Iterable[str]] | None = None,
) -> ValidationResult:
    """Structural checks; ``required_inputs`` maps tool names to required arg names."""
    if builder is None or not builder.plan:
        return ValidationResult(
            is_valid=False,
            reasoning="No plan steps generated",
            issues=["Empty plan"],
            suggestions=["Regenerate the plan"],
        )

    issues: list[str] = []
    suggestions: list[str] = []
    step_ids = {step.step_id for step in builder.plan}
    previous_id: int | None = None
    for step in builder.plan:
        if previous_id is not None and step.step_id <= previous_id:
            issues.append(f"Step {step.step_id} is out of order or duplicates step {previous_id}")
            suggestions.append("Number steps with unique, ascending step_ids")
        previous_id = step.step_id

        if step.tool != ERROR_TOOL and step.tool not in tool_names:
            issues.append(f'Step {step.step_id} uses unknown tool "{step.tool}"')
            suggestions.append(f"Use one of the available tools for step {step.step_id}")

        missing = [
            name
            for name in (required_inputs or {}).get(step.tool, ())
            if step.args.get(name) is None
        ]
        if missing:
            issues.append(
                f"Step {step.step_id} ({step.tool}) is missing required args: {', '.join(missing)}"
            )
            suggestions.append(f"Provide {', '.join(missing)} for step {step.step_id}")

        if step.tool == "goto_step":
            target = _goto_target(step.args.get("step_number"))
            if target is not None and target not in step_ids:
                issues.append(f"Step {step.step_id} jumps to missing step {target}")
                suggestions.append(f"Point step {step.step_id} at an existing step_id")

        for dependency in step.dependencies:
            if dependency >= step.step_id:
                issues.append(f"Step {step.step_id} depends on future step {dependency}")
                suggestions.append("Reorder steps so dependencies come before dependent steps")

        for reference in template_references(step):
            if reference >= step.step_id:
                issues.append(f"Step {step.step_id} references future step {reference}")
                suggestions.append(f"Ensure step {reference} comes before step {step.step_id}")

    is_valid = not issues
    return ValidationResult(
        is_valid=is_valid,
        reasoning=(
            "Plan passes static validation"
            if is_valid
            else f"Found {len(issues)} structural issues"
        ),
        issues=issues,
        suggestions=suggestions,
    )


def validate_plan(
    builder: BuilderResult | None,
    request: str,
    tools: Iterable[ToolDefinition],
    generator: TextGenerator | None,
) -> ValidationResult:
    catalog = list(tools)
    static_result = static_validate(
        builder,
        {tool.name for tool in catalog},
        required_inputs={tool.name: tool.input_schema.get("required", []) for tool in catalog},
    )
    if not static_result.is_valid or builder is None:
        logger.info("validator static_invalid issues=%d", len(static_result.issues))
        return static_result

    prompt = VALIDATION_PROMPT.format(
        request=request.strip(),
        title=builder.title,
        task_type=builder.task_type,
        steps="\n".join(
            f"{step.step_id}. [{step.tool}] {step.description} - Args: "
            f"{json.dumps(step.args, ensure_ascii=False)}"
            + (f" - Condition: {step.condition}" if step.condition else "")
            for step in builder.plan
        ),
    )
    payload = extract_json_object(generate_text(generator, prompt, max_tokens=800))
    if payload is None or "isValid" not in payload:
        logger.warning("validator semantic check unavailable; using static result")
        return static_result

    try:
        semantic = ValidationResult.model_validate(payload)
    except ValidationError as exc:
        logger.warning("validator semantic payload invalid error=%s; using static result", exc)
        return static_result

    logger.info(
        "validator semantic valid=%s issues=%d reasoning=%r",
        semantic.is_valid,
        len(semantic.issues),
        semantic.reasoning,
    )
    return semantic
