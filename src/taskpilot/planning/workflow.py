"""LangGraph workflow: architect once, then bounded build/validate refinement.

    architect -> build -> validate -> finalize
                   ^          |
                   +-- retry -+

The builder gets the previous validation result as feedback on every retry.
When attempts run out, the last plan the builder produced is still returned.
"""

from __future__ import annotations

import logging
from typing import Iterable

from langgraph.graph import END, StateGraph

from taskpilot.llm import TextGenerator
from taskpilot.models import (
    ArchitectSummary,
    BuilderResult,
    DecompositionResult,
    DisplayStep,
    ToolDefinition,
)
from taskpilot.planning.architect import architect_decompose
from taskpilot.planning.builder import builder_map_to_tools
from taskpilot.planning.catalog import ToolCategorizer
from taskpilot.planning.state import DecompositionState, initial_state
from taskpilot.planning.validator import validate_plan

logger = logging.getLogger(__name__)


def build_decomposition_graph(
    generator: TextGenerator | None,
    *,
    categorizer: ToolCategorizer | None = None,
):
    def architect_node(state: DecompositionState) -> DecompositionState:
        architect = architect_decompose(
            state["request"],
            state.get("tools", []),
            generator,
            categorizer=categorizer,
        )
        return {"architect": architect}

    def build_node(state: DecompositionState) -> DecompositionState:
        architect = state.get("architect")
        attempts = int(state.get("attempts", 0)) + 1
        if architect is None:
            return {"builder": None, "attempts": attempts}

        validation = state.get("validation")
        feedback = validation if validation is not None and not validation.is_valid else None
        builder = builder_map_to_tools(
            architect,
            state.get("tools", []),
            generator,
            feedback=feedback,
        )
        update: DecompositionState = {"builder": builder, "attempts": attempts}
        if builder is not None:
            update["best_builder"] = builder
        return update

    def validate_node(state: DecompositionState) -> DecompositionState:
        validation = validate_plan(
            state.get("builder"),
            state["request"],
            state.get("tools", []),
            generator,
        )
        return {"validation": validation}

    def finalize_node(state: DecompositionState) -> DecompositionState:
        return {"result": normalize_result(state)}

    def _after_architect(state: DecompositionState) -> str:
        return "build" if state.get("architect") is not None else "done"

    def _after_build(state: DecompositionState) -> str:
        if state.get("builder") is not None:
            return "validate"
        if _has_attempts_left(state):
            return "retry"
        return "done"

    def _after_validate(state: DecompositionState) -> str:
        validation = state.get("validation")
        if validation is not None and validation.is_valid:
            return "done"
        if _has_attempts_left(state):
            return "retry"
        return "done"

    graph = StateGraph(DecompositionState)

    graph.add_node("architect", architect_node)
    graph.add_node("build", build_node)
    graph.add_node("validate", validate_node)
    graph.add_node("finalize", finalize_node)

    graph.set_entry_point("architect")
    graph.add_conditional_edges(
        "architect",
        _after_architect,
        {"build": "build", "done": "finalize"},
    )
    graph.add_conditional_edges(
        "build",
        _after_build,
        {"validate": "validate", "retry": "build", "done": "finalize"},
    )
    graph.add_conditional_edges("validate", _after_validate, {"retry": "build", "done": "finalize"})
    graph.add_edge("finalize", END)

    return graph.compile()


def _has_attempts_left(state: DecompositionState) -> bool:
    return int(state.get("attempts", 0)) < int(state.get("max_attempts", 1))


def normalize_result(state: DecompositionState) -> DecompositionResult:
    architect = state.get("architect")
    builder = state.get("best_builder")
    if architect is None or builder is None:
        return DecompositionResult.empty()

    task_type = builder.task_type or architect.task_type
    success_criteria = builder.success_criteria or architect.success_criteria
    if task_type == "continuous":
        success_criteria = None

    return DecompositionResult(
        title=builder.title or architect.title,
        task_type=task_type,
        success_criteria=success_criteria,
        requires_task=builder.requires_task,
        plan=list(builder.plan),
        steps=display_steps(builder, task_type=task_type),
        architect=ArchitectSummary(
            logical_steps=architect.logical_steps,
            user_intent=architect.user_intent,
            data_flow=architect.data_flow,
        ),
        validation=state.get("validation"),
        attempts=int(state.get("attempts", 0)),
    )


def display_steps(builder: BuilderResult, *, task_type: str) -> list[DisplayStep]:
    steps: list[DisplayStep] = []
    for step in builder.plan:
        steps.append(
            DisplayStep(
                step=step.step_id,
                action=step.description,
                tools_needed=[step.tool],
                tool_args=dict(step.args),
                output_var=step.output_var,
                dependencies=list(step.dependencies),
                depends_on_previous=bool(step.dependencies),
                may_require_waiting="wait" in step.tool.lower() or step.is_conditional,
                is_recurring=task_type == "continuous",
            )
        )
    return steps


class RequestDecomposer:
    """Entry point of the decomposition pipeline; never raises."""

    def __init__(
        self,
        generator: TextGenerator | None,
        *,
        max_refinement_attempts: int = 3,
        categorizer: ToolCategorizer | None = None,
    ) -> None:
        self.max_refinement_attempts = max(1, max_refinement_attempts)
        self.graph = build_decomposition_graph(generator, categorizer=categorizer)

    def decompose(self, request: str, tools: Iterable[ToolDefinition]) -> DecompositionResult:
        if not request or not request.strip():
            return DecompositionResult.empty()

        state = initial_state(request, list(tools), max_attempts=self.max_refinement_attempts)
        try:
            final_state = self.graph.invoke(
                state,
                config={"recursion_limit": 2 * self.max_refinement_attempts + 10},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("decomposition failed unexpectedly reason=%s", exc)
            return DecompositionResult.empty()

        result = final_state.get("result") or DecompositionResult.empty()
        logger.info(
            "decomposition finished title=%r steps=%d attempts=%d valid=%s",
            result.title,
            len(result.plan),
            result.attempts,
            result.validation.is_valid if result.validation else None,
        )
        return result
