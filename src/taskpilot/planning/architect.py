"""Architect stage: break a request into tool-agnostic logical steps."""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import ValidationError

from taskpilot.llm import TextGenerator, extract_json_object, generate_text
from taskpilot.models import ArchitectResult, ToolDefinition
from taskpilot.planning.catalog import ToolCategorizer, format_tool_categories

logger = logging.getLogger(__name__)

ARCHITECT_PROMPT = """# Role
You are the Architect. Break the user's request into a strictly sequential list
of logical steps that fit the execution model described below.

# How tasks run
- The host application is not always running. Tasks are advanced by POLLING at an
  interval (for example every minute); each poll runs the steps again.
- Nothing can "wait until" a time. A step can only CHECK whether a target time
  has already passed.
- Polls may arrive late, so time checks compare current_time >= target_time with
  a tolerance window.
- State that must survive between polls lives in variables (for example
  "reminded_today" or "last_check_date").

# Building blocks
Variables: save_variable, get_variable, check_variable
Time: get_current_time, parse_time, check_time_passed, is_new_day
Control flow: evaluate_condition, goto_step, complete_task
Data: format_string, increment_counter
Communication: send_reminder, notify_user, send_chat_message,
ask_user_question (pauses the task), wait_for_reply (follows up automatically)

## Example: "Remind me at 12pm daily"
1. Parse the time "12pm" and save the hour to variable "target_hour"
2. Check whether it is a new day; if so reset "reminded_today" to false
3. Read variable "reminded_today"
4. Check whether the target time has passed (within the tolerance window)
5. If it passed and the user was not reminded today, send the reminder
6. Save "reminded_today" = true
7. End of poll cycle; the plan repeats at the next interval

# Available tool categories
{tool_categories}

# Output
Respond with ONLY a JSON object:
{{
  "title": "Brief 3-5 word title",
  "task_type": "discrete" or "continuous",
  "user_intent": "One sentence describing what the user wants",
  "success_criteria": "What completes the task (null for continuous tasks)",
  "logical_steps": [
    "Step 1: <action>. Output: <what it produces>",
    "Step 2: <action>. Requires: <earlier data>. Output: <what it produces>"
  ],
  "data_flow": {{"step_2": ["step_1"]}}
}}

# User request
"{request}"
"""


def architect_decompose(
    request: str,
    tools: Iterable[ToolDefinition],
    generator: TextGenerator | None,
    *,
    categorizer: ToolCategorizer | None = None,
) -> ArchitectResult | None:
    """Return the logical breakdown of ``request`` or None when generation fails."""
    prompt = ARCHITECT_PROMPT.format(
        tool_categories=format_tool_categories(tools, categorizer),
        request=request.strip(),
    )
    payload = extract_json_object(generate_text(generator, prompt, max_tokens=1500))
    if payload is None:
        logger.warning("architect failed reason=no_json")
        return None

    try:
        result = ArchitectResult.model_validate(payload)
    except ValidationError as exc:
        logger.warning("architect failed reason=invalid_payload error=%s", exc)
        return None
    if not result.logical_steps:
        logger.warning("architect failed reason=no_steps")
        return None

    logger.info(
        "architect decomposed title=%r task_type=%s steps=%d",
        result.title,
        result.task_type,
        len(result.logical_steps),
    )
    return result
