"""Pydantic models for the request decomposition pipeline.

Terms used in this file:
- Logical step: a tool-agnostic sentence produced by the architect.
- Plan step: one concrete tool invocation produced by the builder.
- Data flow: which earlier logical steps feed a given step.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

TaskType = Literal["discrete", "continuous"]

ERROR_TOOL = "ERROR"

_STEP_REF_RE = re.compile(r"^\s*(?:step[_\s-]*)?(\d+)\s*$", re.IGNORECASE)


def _step_number(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str):
        match = _STEP_REF_RE.match(raw)
        if match:
            return int(match.group(1))
    return None


def _normalize_task_type(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip().lower() == "continuous":
        return "continuous"
    return "discrete"


class ToolDefinition(BaseModel):
    """One entry of the tool catalog a plan may reference."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    # None means "decide from the tool name".
    requires_approval: bool | None = None


class ArchitectResult(BaseModel):
    """Tool-agnostic breakdown of a user request."""

    title: str = "Untitled Task"
    task_type: TaskType = "discrete"
    user_intent: str = ""
    success_criteria: str | None = None
    logical_steps: list[str] = Field(default_factory=list)
    # Step number -> earlier step numbers it consumes.
    data_flow: dict[int, list[int]] = Field(default_factory=dict)

    @field_validator("task_type", mode="before")
    @classmethod
    def _coerce_task_type(cls, value: Any) -> str:
        return _normalize_task_type(value)

    @field_validator("logical_steps", mode="before")
    @classmethod
    def _coerce_steps(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("data_flow", mode="before")
    @classmethod
    def _coerce_data_flow(cls, value: Any) -> dict[int, list[int]]:
        if not isinstance(value, dict):
            return {}
        flow: dict[int, list[int]] = {}
        for raw_key, raw_sources in value.items():
            step = _step_number(raw_key)
            if step is None:
                continue
            if not isinstance(raw_sources, list):
                raw_sources = [raw_sources]
            sources: list[int] = []
            for raw_source in raw_sources:
                source = _step_number(raw_source)
                if source is None:
                    continue
                if source >= step:
                    logger.warning(
                        "architect data_flow dropped forward reference step=%d source=%d",
                        step,
                        source,
                    )
                    continue
                if source not in sources:
                    sources.append(source)
            flow[step] = sorted(sources)
        return flow

    @model_validator(mode="after")
    def _continuous_has_no_success_criteria(self) -> ArchitectResult:
        if self.task_type == "continuous":
            self.success_criteria = None
        return self


class PlanStep(BaseModel):
    """One grounded tool invocation inside a builder plan."""

    step_id: int
    tool: str
    description: str = ""
    # Values may embed {{step_N.field}} references to earlier outputs.
    args: dict[str, Any] = Field(default_factory=dict)
    output_var: str | None = None
    dependencies: list[int] = Field(default_factory=list)
    is_conditional: bool = False
    condition: str | None = None

    @field_validator("tool", mode="before")
    @classmethod
    def _coerce_tool(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            return ERROR_TOOL
        return str(value).strip()

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, dict) else {}

    @field_validator("output_var", "condition", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[int]:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        deps: list[int] = []
        for item in value:
            number = _step_number(item)
            if number is not None and number not in deps:
                deps.append(number)
        return sorted(deps)

    @property
    def is_error(self) -> bool:
        return self.tool == ERROR_TOOL


class BuilderResult(BaseModel):
    """Plan produced by the builder for one refinement attempt."""

    title: str = ""
    # None when the builder left it out; the architect's value applies then.
    task_type: TaskType | None = None
    success_criteria: str | None = None
    requires_task: bool = True
    plan: list[PlanStep] = Field(default_factory=list)

    @field_validator("task_type", mode="before")
    @classmethod
    def _coerce_task_type(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return _normalize_task_type(value)

    @field_validator("requires_task", mode="before")
    @classmethod
    def _coerce_requires_task(cls, value: Any) -> bool:
        # Only an explicit false opts out.
        return value is not False


class ValidationResult(BaseModel):
    """Outcome of static and semantic plan validation."""

    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    reasoning: str = ""
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("issues", "suggestions", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        return [str(item) for item in value if str(item).strip()]


class ArchitectSummary(BaseModel):
    logical_steps: list[str] = Field(default_factory=list)
    user_intent: str = ""
    data_flow: dict[int, list[int]] = Field(default_factory=dict)


class DisplayStep(BaseModel):
    """Presentation-friendly view of one plan step."""

    step: int
    action: str
    tools_needed: list[str] = Field(default_factory=list)
    tool_args: dict[str, Any] = Field(default_factory=dict)
    output_var: str | None = None
    dependencies: list[int] = Field(default_factory=list)
    depends_on_previous: bool = False
    may_require_waiting: bool = False
    is_recurring: bool = False


class DecompositionResult(BaseModel):
    """Normalized output of the decomposition pipeline."""

    title: str = "Unknown"
    task_type: TaskType = "discrete"
    success_criteria: str | None = None
    requires_task: bool = False
    plan: list[PlanStep] = Field(default_factory=list)
    steps: list[DisplayStep] = Field(default_factory=list)
    architect: ArchitectSummary | None = None
    validation: ValidationResult | None = None
    attempts: int = 0

    @classmethod
    def empty(cls) -> DecompositionResult:
        return cls()
