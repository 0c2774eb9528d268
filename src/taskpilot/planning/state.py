"""Typed state contract for the decomposition graph."""

from typing import TypedDict

from taskpilot.models import (
    ArchitectResult,
    BuilderResult,
    DecompositionResult,
    ToolDefinition,
    ValidationResult,
)


class DecompositionState(TypedDict, total=False):
    request: str
    tools: list[ToolDefinition]
    architect: ArchitectResult | None
    builder: BuilderResult | None
    # Most recent non-empty builder plan; returned when refinement runs out.
    best_builder: BuilderResult | None
    validation: ValidationResult | None
    attempts: int
    max_attempts: int
    result: DecompositionResult


def initial_state(
    request: str,
    tools: list[ToolDefinition],
    *,
    max_attempts: int = 3,
) -> DecompositionState:
    return {
        "request": request,
        "tools": list(tools),
        "architect": None,
        "builder": None,
        "best_builder": None,
        "validation": None,
        "attempts": 0,
        "max_attempts": max_attempts,
    }
