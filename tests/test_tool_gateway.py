import threading
import time
from typing import Any

from conftest import RecordingDispatcher

from taskpilot.tools.catalog import ToolGateway


class BlockingDispatcher(RecordingDispatcher):
    """Hangs inside ``call`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def call(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        self.release.wait(timeout=2.0)
        return super().call(tool_name, args)


def test_gateway_runs_known_tools_with_telemetry(dispatcher: RecordingDispatcher) -> None:
    result = ToolGateway(dispatcher).execute("get_weather", {"city": "Lisbon"})

    assert result["success"] is True
    assert result["error"] is None
    assert result["attempts"] == 1
    assert result["duration_ms"] >= 0
    assert dispatcher.calls == [("get_weather", {"city": "Lisbon"})]


def test_gateway_rejects_unknown_tools(dispatcher: RecordingDispatcher) -> None:
    result = ToolGateway(dispatcher).execute("launch_rocket", {})

    assert result["success"] is False
    assert result["error"] == "Unknown tool: launch_rocket"
    assert result["attempts"] == 0


def test_gateway_timeout_does_not_wait_for_a_hung_tool() -> None:
    dispatcher = BlockingDispatcher()
    gateway = ToolGateway(dispatcher, tool_timeout_s=0.1, max_retries=1)

    started = time.perf_counter()
    result = gateway.execute("get_weather", {})
    elapsed = time.perf_counter() - started
    dispatcher.release.set()

    assert elapsed < 1.0
    assert result["success"] is False
    assert result["attempts"] == 2
    assert "timed out after 0.10s" in result["error"]


def test_gateway_retries_raised_errors() -> None:
    dispatcher = RecordingDispatcher(outputs={"send_email": RuntimeError("smtp down")})

    result = ToolGateway(dispatcher, max_retries=2).execute("send_email", {"to": "a@b.c"})

    assert result["success"] is False
    assert result["error"] == "smtp down"
    assert result["attempts"] == 3
    assert len(dispatcher.calls) == 3
