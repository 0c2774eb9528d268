"""Builder stage: ground logical steps in concrete tool invocations."""

from __future__ import annotations

import json
import logging
from typing import Iterable

from pydantic import ValidationError

from taskpilot.llm import TextGenerator, extract_json_object, generate_text
from taskpilot.models import ArchitectResult, BuilderResult, ToolDefinition, ValidationResult
from taskpilot.planning.catalog import format_tool_definitions

logger = logging.getLogger(__name__)

BUILDER_SYSTEM_PROMPT = (
    "You are a precise JSON generator. Output only valid JSON with no additional text."
)

BUILDER_PROMPT = """# Role
You are the Builder. Convert the Architect's logical steps into a JSON execution
plan that uses ONLY the tools defined below.

# Execution model
The plan runs on every poll. Store values that must survive between polls with
save_variable and read them back with get_variable or check_variable. Use
parse_time, check_time_passed and is_new_day for time-based logic; they tolerate
late polls. evaluate_condition returns a boolean "result" that later conditional
steps can test.

# Tool definitions
{tool_definitions}

# Logical steps
Title: {title}
Task type: {task_type}
User intent: {user_intent}

Steps:
{logical_steps}
{feedback}
# Rules
1. Output ONLY valid JSON, no prose and no markdown fences.
2. Map every logical step to exactly ONE tool from the definitions.
3. If a step cannot be done with any defined tool, use "tool": "ERROR" for it; never drop it.
4. Capture results with "output_var" and reference earlier outputs as {{{{step_N.field_name}}}}.
5. A step may only reference or depend on steps with a smaller step_id.
6. Mark steps that should only run when a condition holds with "is_conditional": true and
   give the condition as an expression, for example
   "{{{{step_4.within_window}}}} == true and {{{{step_3.value}}}} != true".
7. List the step_ids a step depends on in "dependencies".

# Output format
{{
  "title": {title_json},
  "task_type": "{task_type}",
  "success_criteria": {success_criteria_json},
  "plan": [
    {{
      "step_id": 1,
      "tool": "tool_name",
      "description": "What this step does",
      "args": {{"param": "value"}},
      "output_var": "descriptive_name",
      "dependencies": [],
      "is_conditional": false,
      "condition": null
    }}
  ],
  "requires_task": true
}}
"""

FEEDBACK_SECTION = """
# Previous attempt feedback
Your previous plan was rejected. Issues found:
{issues}

Suggestions:
{suggestions}

Fix these problems in the new plan.
"""


def build_feedback_section(feedback: ValidationResult | None) -> str:
    if feedback is None:
        return ""
    issues = "\n".join(f"- {issue}" for issue in feedback.issues) or "- Unspecified issues"
    suggestions = "\n".join(f"- {item}" for item in feedback.suggestions) or "- None"
    return FEEDBACK_SECTION.format(issues=issues, suggestions=suggestions)


def builder_map_to_tools(
    architect: ArchitectResult,
    tools: Iterable[ToolDefinition],
    generator: TextGenerator | None,
    *,
    feedback: ValidationResult | None = None,
) -> BuilderResult | None:
    """Return a grounded plan or None when the builder produced nothing usable."""
    prompt = BUILDER_PROMPT.format(
        tool_definitions=format_tool_definitions(tools),
        title=architect.title,
        title_json=json.dumps(architect.title),
        task_type=architect.task_type,
        user_intent=architect.user_intent,
        success_criteria_json=json.dumps(architect.success_criteria),
        logical_steps="\n".join(
            f"{index}. {step}" for index, step in enumerate(architect.logical_steps, 1)
        ),
        feedback=build_feedback_section(feedback),
    )
    text = generate_text(generator, prompt, system_prompt=BUILDER_SYSTEM_PROMPT, max_tokens=2500)
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("builder failed reason=no_json")
        return None

    try:
        result = BuilderResult.model_validate(payload)
    except ValidationError as exc:
        logger.warning("builder failed reason=invalid_payload error=%s", exc)
        return None
    if not result.plan:
        logger.warning("builder failed reason=empty_plan")
        return None

    for step in result.plan:
        if step.is_error:
            logger.warning(
                "builder could not ground step step_id=%d description=%r",
                step.step_id,
                step.description,
            )
    logger.info("builder mapped steps=%d with_feedback=%s", len(result.plan), feedback is not None)
    return result
