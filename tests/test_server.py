"""Tests for the RX Sandbox MCP server."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rx_sandbox_mcp_server import (
    MAX_MAX_RESULTS,
    MAX_TIMEOUT_MS,
    TOOL_DEFINITIONS,
    TOOL_HANDLERS,
    _error_response,
    _format_execution,
    _handle_detect_memory_leak,
    _handle_execute_stream,
    _handle_generate_marble,
    _text_response,
    boundary,
    call_tool,
    list_tools,
)
from stream_types import (
    EmissionError,
    ExecutionError,
    ExecutionResult,
    ForcedTerminationError,
    SoftTimeoutError,
)


class TestPureFunctions:
    """Tests for pure helper functions."""

    def test_text_response_with_string(self):
        """Text response should return string as-is."""
        result = _text_response("hello")
        assert len(result) == 1
        assert result[0].text == "hello"

    def test_text_response_with_dict(self):
        """Text response should JSON-encode dicts."""
        result = _text_response({"key": "value"})
        parsed = json.loads(result[0].text)
        assert parsed == {"key": "value"}

    def test_error_response_structure(self):
        """Error response should have error code and message."""
        result = _error_response("TEST_ERROR", "Something went wrong")
        parsed = json.loads(result[0].text)
        assert parsed["error"] == "TEST_ERROR"
        assert parsed["message"] == "Something went wrong"

    def test_error_response_hides_internal_details(self):
        """Internal details should be logged, not returned."""
        result = _error_response("E", "generic", internal_details="secret trace")
        assert "secret trace" not in result[0].text


class TestFormatExecution:
    """Tests for rendering execution results."""

    def test_completed_result(self):
        result = ExecutionResult(values=[1, 2], completed_normally=True, wall_clock_ms=12)
        text = _format_execution(result, capture_timeline=True, capture_memory=False)
        assert "## Stream Execution Result" in text
        assert "**Status:** ✅ Completed" in text
        assert "**Execution Time:** 12ms" in text
        assert "**Values Emitted:** 2" in text
        assert "### Memory Usage" not in text

    def test_stream_error_result(self):
        result = ExecutionResult(
            values=[1],
            errors=[ExecutionError.from_exception(EmissionError("boom"))],
        )
        text = _format_execution(result, capture_timeline=True, capture_memory=False)
        assert "⚠️ Completed with errors" in text
        assert "**Errors:** 1" in text
        assert "1. **EmissionError**: boom" in text

    def test_soft_timeout_result(self):
        result = ExecutionResult.failure(SoftTimeoutError("Stream execution timeout after 100ms"))
        text = _format_execution(result, capture_timeline=True, capture_memory=False)
        assert "⚠️ Not completed" in text
        assert "SoftTimeoutError" in text

    def test_forced_termination_result(self):
        result = ExecutionResult.failure(ForcedTerminationError("killed"), wall_clock_ms=5000)
        text = _format_execution(result, capture_timeline=True, capture_memory=False)
        assert "⛔ Forcefully terminated" in text
        assert "**Values Emitted:** 0" in text

    def test_memory_section(self):
        result = ExecutionResult(completed_normally=True)
        text = _format_execution(result, capture_timeline=False, capture_memory=True)
        assert "### Memory Usage" in text
        assert "Delta: 0.00 MB" in text


class TestToolRegistry:
    """Tests for tool listing and dispatch."""

    @pytest.mark.asyncio
    async def test_list_tools(self):
        tools = await list_tools()
        names = {tool.name for tool in tools}
        assert names == {"execute_stream", "generate_marble", "detect_memory_leak"}
        assert tools is TOOL_DEFINITIONS

    def test_every_tool_has_handler(self):
        assert {tool.name for tool in TOOL_DEFINITIONS} == set(TOOL_HANDLERS)

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Unknown tools should return a text error, not raise."""
        result = await call_tool("analyze_operators", {})
        assert "Unknown tool: analyze_operators" in result[0].text


class TestExecuteStreamValidation:
    """Tests for execute_stream argument validation."""

    @pytest.mark.asyncio
    async def test_missing_code(self):
        result = await _handle_execute_stream({})
        assert json.loads(result[0].text)["error"] == "invalid_code"

    @pytest.mark.asyncio
    async def test_blank_code(self):
        result = await _handle_execute_stream({"code": "   "})
        assert json.loads(result[0].text)["error"] == "invalid_code"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, MAX_MAX_RESULTS + 1, "10", True, 2.5])
    async def test_bad_max_results(self, value):
        result = await _handle_execute_stream({"code": "return of(1)", "maxResults": value})
        assert json.loads(result[0].text)["error"] == "invalid_max_results"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, MAX_TIMEOUT_MS + 1, -5, None])
    async def test_bad_timeout(self, value):
        result = await _handle_execute_stream({"code": "return of(1)", "timeoutMs": value})
        assert json.loads(result[0].text)["error"] == "invalid_timeout"

    @pytest.mark.asyncio
    async def test_bad_flags(self):
        result = await _handle_execute_stream({"code": "return of(1)", "captureMemory": "yes"})
        assert json.loads(result[0].text)["error"] == "invalid_flags"

    @pytest.mark.asyncio
    async def test_validation_spawns_no_worker(self):
        """Rejected requests should never reach the boundary."""
        await _handle_execute_stream({"code": "return of(1)", "maxResults": 0})
        assert boundary.in_flight == 0


class TestExecuteStream:
    """End-to-end execute_stream calls through a real worker."""

    @pytest.mark.asyncio
    async def test_simple_stream(self):
        result = await _handle_execute_stream({"code": "return of(1, 2, 3)"})
        text = result[0].text
        assert "✅ Completed" in text
        assert "**Values Emitted:** 3" in text
        assert "### Emitted Values" in text
        assert "### Emission Timeline" in text
        assert "### Marble Diagram" in text

    @pytest.mark.asyncio
    async def test_timeline_can_be_hidden(self):
        result = await _handle_execute_stream({"code": "return of(1)", "captureTimeline": False})
        assert "### Emission Timeline" not in result[0].text

    @pytest.mark.asyncio
    async def test_memory_can_be_shown(self):
        result = await _handle_execute_stream({"code": "return of(1)", "captureMemory": True})
        assert "### Memory Usage" in result[0].text

    @pytest.mark.asyncio
    async def test_max_results_cutoff(self):
        result = await _handle_execute_stream({"code": "return interval(10)", "maxResults": 3})
        text = result[0].text
        assert "**Values Emitted:** 3" in text
        assert "✅ Completed" in text

    @pytest.mark.asyncio
    async def test_error_stream(self):
        result = await _handle_execute_stream({"code": "return throwError(lambda: Exception('boom'))"})
        text = result[0].text
        assert "⚠️ Completed with errors" in text
        assert "EmissionError**: boom" in text

    @pytest.mark.asyncio
    async def test_via_call_tool(self):
        result = await call_tool("execute_stream", {"code": "return of('a')"})
        assert '"a"' in result[0].text


class TestGenerateMarble:
    """Tests for the generate_marble tool."""

    @pytest.mark.asyncio
    async def test_events(self):
        result = await _handle_generate_marble({
            "events": [
                {"time": 0, "value": 1},
                {"time": 100, "value": 2},
                {"time": 200, "type": "complete"},
            ],
        })
        text = result[0].text
        assert "1-2-|-" in text
        assert "Stream with 3 event(s):" in text

    @pytest.mark.asyncio
    async def test_marble_syntax(self):
        result = await _handle_generate_marble({"marble": "-a-b|", "values": {"a": 1}, "scale": 10})
        assert "-1-b|-" in result[0].text

    @pytest.mark.asyncio
    async def test_empty_events(self):
        result = await _handle_generate_marble({"events": []})
        assert "Empty stream with no emissions" in result[0].text

    @pytest.mark.asyncio
    async def test_bad_scale(self):
        result = await _handle_generate_marble({"events": [], "scale": 0})
        assert json.loads(result[0].text)["error"] == "invalid_scale"

    @pytest.mark.asyncio
    async def test_bad_event_type(self):
        result = await _handle_generate_marble({"events": [{"time": 0, "type": "boom"}]})
        assert json.loads(result[0].text)["error"] == "invalid_events"

    @pytest.mark.asyncio
    async def test_negative_time(self):
        result = await _handle_generate_marble({"events": [{"time": -1}]})
        assert json.loads(result[0].text)["error"] == "invalid_events"

    @pytest.mark.asyncio
    async def test_too_wide(self):
        result = await _handle_generate_marble({"events": [{"time": 10_000_000}], "scale": 1})
        assert json.loads(result[0].text)["error"] == "diagram_too_wide"


class TestDetectMemoryLeak:
    """Tests for the detect_memory_leak tool."""

    @pytest.mark.asyncio
    async def test_leaky_interval(self):
        result = await _handle_detect_memory_leak({"code": "interval(1000).subscribe(print)"})
        text = result[0].text
        assert "⚠️ Potential leaks detected" in text
        assert "Infinite interval/timer without limiting operators" in text

    @pytest.mark.asyncio
    async def test_clean_code(self):
        code = "sub = of(1).pipe(take(1)).subscribe(print)\nsub.dispose()"
        result = await _handle_detect_memory_leak({"code": code})
        assert "✅ No obvious leaks detected" in result[0].text

    @pytest.mark.asyncio
    async def test_lifecycle_example(self):
        result = await _handle_detect_memory_leak({"code": "x.subscribe(f)", "lifecycle": "qt"})
        assert "closeEvent" in result[0].text

    @pytest.mark.asyncio
    async def test_unknown_lifecycle(self):
        result = await _handle_detect_memory_leak({"code": "", "lifecycle": "react"})
        assert json.loads(result[0].text)["error"] == "invalid_lifecycle"
