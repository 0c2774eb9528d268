"""Tool catalog assembly and the gateway for host-provided external tools."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any, Iterable, Protocol

from taskpilot.models import ToolDefinition
from taskpilot.tools.primitives import is_primitive
from taskpilot.tools.schemas import PRIMITIVE_MODELS

logger = logging.getLogger(__name__)

SIDE_EFFECT_PREFIXES = ("send_", "reply_", "post_", "forward_", "create_", "delete_", "update_")

# Send tool used for follow-ups on each messaging platform.
PLATFORM_SEND_TOOLS = {
    "email": "send_email",
    "slack": "send_slack_message",
    "imessage": "send_imessage",
    "telegram": "send_telegram_message",
    "discord": "send_discord_message",
}


class ToolDispatcher(Protocol):
    """Host integration that knows how to run external (non-primitive) tools."""

    def definitions(self) -> list[ToolDefinition]: ...

    def call(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]: ...


def primitive_tool_definitions() -> list[ToolDefinition]:
    definitions: list[ToolDefinition] = []
    for name, model in PRIMITIVE_MODELS.items():
        schema = model.model_json_schema()
        properties = dict(schema.get("properties", {}))
        properties.pop("tool", None)
        for prop in properties.values():
            prop.pop("title", None)
        required = [field for field in schema.get("required", []) if field != "tool"]
        definitions.append(
            ToolDefinition(
                name=name,
                description=(model.__doc__ or "").strip(),
                input_schema={"type": "object", "properties": properties, "required": required},
                requires_approval=False,
            )
        )
    return definitions


def build_tool_catalog(extra: Iterable[ToolDefinition] = ()) -> list[ToolDefinition]:
    """Merge primitives with external tools; primitives win on name clashes."""
    catalog = primitive_tool_definitions()
    seen = {tool.name for tool in catalog}
    for tool in extra:
        if tool.name in seen:
            logger.warning("tool catalog ignored duplicate tool=%s", tool.name)
            continue
        seen.add(tool.name)
        catalog.append(tool)
    return catalog


def is_side_effecting(tool_name: str, definition: ToolDefinition | None = None) -> bool:
    if is_primitive(tool_name):
        return False
    if definition is not None and definition.requires_approval is not None:
        return definition.requires_approval
    return tool_name.lower().startswith(SIDE_EFFECT_PREFIXES)


class ToolGateway:
    """Execute external tools with timeout and retry controls."""

    def __init__(
        self,
        dispatcher: ToolDispatcher | None = None,
        *,
        tool_timeout_s: float = 15.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        definitions = dispatcher.definitions() if dispatcher is not None else []
        self._definitions = {tool.name: tool for tool in definitions}

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    def definition(self, tool_name: str) -> ToolDefinition | None:
        return self._definitions.get(tool_name)

    def knows(self, tool_name: str) -> bool:
        return tool_name in self._definitions

    def execute(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        started_at = time.perf_counter()
        if self.dispatcher is None or not self.knows(tool_name):
            return {
                "success": False,
                "error": f"Unknown tool: {tool_name}",
                "attempts": 0,
                "duration_ms": _duration_ms(started_at),
            }

        attempts = 0
        final_error = "unknown error"
        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = self._execute_once(tool_name, args)
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "external tool failed tool=%s attempt=%d/%d reason=%s",
                    tool_name,
                    attempts,
                    self.max_retries + 1,
                    final_error,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
                continue
            success = output.get("success", True) is not False
            result = {**output, "success": success}
            result.setdefault("error", None if success else "Tool reported failure")
            result["attempts"] = attempts
            result["duration_ms"] = _duration_ms(started_at)
            return result

        return {
            "success": False,
            "error": final_error,
            "attempts": attempts,
            "duration_ms": _duration_ms(started_at),
        }

    def _execute_once(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        assert self.dispatcher is not None
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tool-gateway")
        future = pool.submit(self.dispatcher.call, tool_name, dict(args))
        try:
            raw_output = future.result(timeout=self.tool_timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(
                f"Tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s"
            ) from exc
        finally:
            # Never join the worker: a hung call is left running in the background.
            pool.shutdown(wait=False, cancel_futures=True)
        if isinstance(raw_output, dict):
            return raw_output
        return {"result": raw_output}


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
