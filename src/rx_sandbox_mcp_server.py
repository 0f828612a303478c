#!/usr/bin/env python3
"""
RX Sandbox MCP Server - execute and inspect reactive streams from an MCP client.

Snippets of ReactiveX code run in throwaway worker processes with a curated
namespace, a result cap and two timeouts (a cooperative one inside the worker
and a hard kill at the boundary). Results come back as readable markdown.
"""

import asyncio
import json
import logging
import os
from typing import Any

# Configure logging for server-side error tracking. stderr only: stdout
# carries the JSON-RPC stream.
logging.basicConfig(
    level=os.environ.get("RX_SANDBOX_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("rx-sandbox-mcp")

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from isolation import DEFAULT_GRACE_MS, IsolationBoundary
from leak_detector import LIFECYCLES, analyze_memory_leaks, cleanup_example
from marble import (
    DEFAULT_SCALE_MS,
    MarbleEvent,
    generate_marble_diagram,
    parse_marble_syntax,
    timeline_to_events,
)
from stream_catalog import CATALOG_VERSION
from stream_types import EventKind, ExecutionRequest, ExecutionResult

# Execution limits
DEFAULT_MAX_RESULTS = 10
DEFAULT_TIMEOUT_MS = 5000
MIN_MAX_RESULTS = 1
MAX_MAX_RESULTS = 1000
MIN_TIMEOUT_MS = 1
MAX_TIMEOUT_MS = 60000
MAX_CODE_SIZE = 100 * 1024  # 100KB per snippet

# Marble limits
MIN_SCALE_MS = 1
MAX_SCALE_MS = 60000
MAX_MARBLE_EVENTS = 1000
MAX_DIAGRAM_WIDTH = 2000

GRACE_MS = int(os.environ.get("RX_SANDBOX_GRACE_MS", DEFAULT_GRACE_MS))
WORKER_PYTHON = os.environ.get("RX_SANDBOX_PYTHON") or None

boundary = IsolationBoundary(grace_ms=GRACE_MS, python=WORKER_PYTHON)

server = Server("rx-sandbox")


def _text_response(data: Any) -> list[TextContent]:
    """Create a text response; non-strings are JSON-encoded."""
    if isinstance(data, str):
        return [TextContent(type="text", text=data)]
    return [TextContent(type="text", text=json.dumps(data, indent=2))]


def _error_response(code: str, message: str, internal_details: str = None) -> list[TextContent]:
    """Create a structured error response.

    Logs full details server-side while returning a generic message to the client.
    """
    if internal_details:
        logger.error(f"Error {code}: {message} | Details: {internal_details}")
    else:
        logger.error(f"Error {code}: {message}")
    return _text_response({"error": code, "message": message})


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _dump(value: Any) -> str:
    return json.dumps(value, default=repr)


def _status_line(result: ExecutionResult) -> str:
    if result.forcefully_terminated:
        return "⛔ Forcefully terminated"
    if result.completed_normally:
        return "✅ Completed"
    if result.ended_on_emission_error:
        return "⚠️ Completed with errors"
    return "⚠️ Not completed"


def _format_execution(result: ExecutionResult, capture_timeline: bool, capture_memory: bool) -> str:
    """Render an execution result as markdown."""
    parts = [
        "## Stream Execution Result\n",
        f"**Status:** {_status_line(result)}",
        f"**Execution Time:** {result.wall_clock_ms}ms",
        f"**Values Emitted:** {len(result.values)}",
    ]
    if result.errors:
        parts.append(f"**Errors:** {len(result.errors)}")
    parts.append("")

    if result.values:
        parts.extend([
            "### Emitted Values",
            "```json",
            json.dumps(result.values, indent=2),
            "```",
            "",
        ])

    if result.errors:
        parts.append("### Errors")
        for i, error in enumerate(result.errors, start=1):
            parts.append(f"{i}. **{error.kind.value}**: {error.message}")
        parts.append("")

    if capture_timeline and result.timeline:
        markers = {EventKind.NEXT: "→", EventKind.ERROR: "✗", EventKind.COMPLETE: "|"}
        parts.extend(["### Emission Timeline", "```"])
        for event in result.timeline:
            value = f" {_dump(event.value)}" if event.value is not None else ""
            parts.append(f"{event.offset_ms:>5}ms {markers[event.kind]}{value}")
        parts.extend(["```", ""])

        marble = generate_marble_diagram(
            timeline_to_events(result.timeline),
            scale=_timeline_scale(result),
            show_values=False,
        )
        parts.extend(["### Marble Diagram", "```", marble.diagram, "```", ""])

    if capture_memory:
        mb = 1024 * 1024
        memory = result.memory
        parts.extend([
            "### Memory Usage",
            f"- Before: {memory.before_bytes / mb:.2f} MB",
            f"- After: {memory.after_bytes / mb:.2f} MB",
            f"- Peak (sampled): {memory.peak_bytes / mb:.2f} MB",
            f"- Delta: {memory.delta_bytes / mb:.2f} MB",
        ])

    return "\n".join(parts).rstrip() + "\n"


def _timeline_scale(result: ExecutionResult) -> int:
    """Pick a marble scale that keeps the diagram under ~60 columns."""
    last = result.timeline[-1].offset_ms if result.timeline else 0
    return max(10, -(-last // 50))


# Tool definitions
TOOL_DEFINITIONS = [
    Tool(
        name="execute_stream",
        description=(
            "Execute ReactiveX (Python) code in an isolated worker and capture the stream's "
            "emissions, timeline and performance metrics. The code is a function body that "
            "must return an Observable, e.g. 'return of(1, 2, 3)'."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Code to execute. Must return an Observable.",
                },
                "maxResults": {
                    "type": "integer",
                    "description": f"Maximum number of values to take from the stream (default {DEFAULT_MAX_RESULTS})",
                    "default": DEFAULT_MAX_RESULTS,
                    "minimum": MIN_MAX_RESULTS,
                    "maximum": MAX_MAX_RESULTS,
                },
                "timeoutMs": {
                    "type": "integer",
                    "description": f"Timeout in milliseconds (default {DEFAULT_TIMEOUT_MS})",
                    "default": DEFAULT_TIMEOUT_MS,
                    "minimum": MIN_TIMEOUT_MS,
                    "maximum": MAX_TIMEOUT_MS,
                },
                "captureTimeline": {
                    "type": "boolean",
                    "description": "Whether to show the emission timeline",
                    "default": True,
                },
                "captureMemory": {
                    "type": "boolean",
                    "description": "Whether to show memory usage",
                    "default": False,
                },
            },
            "required": ["code"],
        },
    ),
    Tool(
        name="generate_marble",
        description="Generate ASCII marble diagrams to visualize stream emissions over time.",
        inputSchema={
            "type": "object",
            "properties": {
                "events": {
                    "type": "array",
                    "description": "Events to visualize",
                    "items": {
                        "type": "object",
                        "properties": {
                            "time": {"type": "number", "description": "Time in milliseconds"},
                            "value": {"description": "Value emitted at this time"},
                            "type": {
                                "type": "string",
                                "enum": ["next", "error", "complete"],
                                "default": "next",
                            },
                        },
                        "required": ["time"],
                    },
                },
                "marble": {
                    "type": "string",
                    "description": "Marble syntax such as '-a-b-c|' (10ms per frame), used instead of events",
                },
                "values": {
                    "type": "object",
                    "description": "Optional mapping from marble characters to values",
                },
                "duration": {"type": "number", "description": "Total duration to show in the diagram"},
                "scale": {
                    "type": "number",
                    "description": f"Milliseconds per character (default {DEFAULT_SCALE_MS})",
                    "default": DEFAULT_SCALE_MS,
                },
                "showValues": {
                    "type": "boolean",
                    "description": "Whether to list values below the timeline",
                    "default": True,
                },
            },
        },
    ),
    Tool(
        name="detect_memory_leak",
        description="Analyze reactive stream code for potential memory leaks and subscription management issues.",
        inputSchema={
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Code to analyze"},
                "lifecycle": {
                    "type": "string",
                    "enum": list(LIFECYCLES),
                    "description": "Lifecycle context the code runs in",
                    "default": "none",
                },
            },
            "required": ["code"],
        },
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return TOOL_DEFINITIONS


# Tool handlers
async def _handle_execute_stream(arguments: dict) -> list[TextContent]:
    """Run a snippet in an isolated worker and format what it did."""
    code = arguments.get("code")
    max_results = arguments.get("maxResults", DEFAULT_MAX_RESULTS)
    timeout_ms = arguments.get("timeoutMs", DEFAULT_TIMEOUT_MS)
    capture_timeline = arguments.get("captureTimeline", True)
    capture_memory = arguments.get("captureMemory", False)

    if not isinstance(code, str) or not code.strip():
        return _error_response("invalid_code", "code must be a non-empty string")

    if len(code.encode("utf-8")) > MAX_CODE_SIZE:
        return _error_response(
            "code_too_large",
            f"Code size exceeds limit of {MAX_CODE_SIZE} bytes"
        )

    if not _is_int(max_results) or not (MIN_MAX_RESULTS <= max_results <= MAX_MAX_RESULTS):
        return _error_response(
            "invalid_max_results",
            f"maxResults must be an integer between {MIN_MAX_RESULTS} and {MAX_MAX_RESULTS}"
        )

    if not _is_int(timeout_ms) or not (MIN_TIMEOUT_MS <= timeout_ms <= MAX_TIMEOUT_MS):
        return _error_response(
            "invalid_timeout",
            f"timeoutMs must be an integer between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS}"
        )

    if not isinstance(capture_timeline, bool) or not isinstance(capture_memory, bool):
        return _error_response(
            "invalid_flags",
            "captureTimeline and captureMemory must be booleans"
        )

    request = ExecutionRequest(
        code=code,
        max_results=max_results,
        timeout_ms=timeout_ms,
        capture_timeline=capture_timeline,
        capture_memory=capture_memory,
    )

    try:
        result = await boundary.run(request)
    except Exception as e:
        logger.error(f"Execution error: {e}", exc_info=True)
        return _error_response("execution_error", "Stream execution failed", str(e))

    logger.info(
        f"execute_stream: {len(result.values)} value(s), "
        f"errors={[kind.value for kind in result.error_kinds]}, {result.wall_clock_ms}ms"
    )
    return _text_response(_format_execution(result, request.capture_timeline, request.capture_memory))


def _events_from_arguments(raw_events: Any) -> list[MarbleEvent]:
    if not isinstance(raw_events, list):
        raise ValueError("events must be an array")
    if len(raw_events) > MAX_MARBLE_EVENTS:
        raise ValueError(f"At most {MAX_MARBLE_EVENTS} events are supported")

    kinds = {kind.value for kind in EventKind}
    events = []
    for i, raw in enumerate(raw_events):
        if not isinstance(raw, dict):
            raise ValueError(f"events[{i}] must be an object")
        time = raw.get("time")
        if isinstance(time, bool) or not isinstance(time, (int, float)) or time < 0:
            raise ValueError(f"events[{i}].time must be a non-negative number")
        event_type = raw.get("type", EventKind.NEXT.value)
        if event_type not in kinds:
            raise ValueError(f"events[{i}].type must be one of: {', '.join(sorted(kinds))}")
        events.append(MarbleEvent(time=time, value=raw.get("value"), type=event_type))
    return events


async def _handle_generate_marble(arguments: dict) -> list[TextContent]:
    """Render a marble diagram from events or marble syntax."""
    scale = arguments.get("scale", DEFAULT_SCALE_MS)
    duration = arguments.get("duration")
    show_values = arguments.get("showValues", True)

    if isinstance(scale, bool) or not isinstance(scale, (int, float)) or not (MIN_SCALE_MS <= scale <= MAX_SCALE_MS):
        return _error_response(
            "invalid_scale",
            f"scale must be a number between {MIN_SCALE_MS} and {MAX_SCALE_MS}"
        )

    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0):
        return _error_response("invalid_duration", "duration must be a non-negative number")

    try:
        if "marble" in arguments:
            marble = arguments["marble"]
            values = arguments.get("values") or {}
            if not isinstance(marble, str) or not isinstance(values, dict):
                raise ValueError("marble must be a string and values an object")
            events = parse_marble_syntax(marble, values)
        else:
            events = _events_from_arguments(arguments.get("events", []))
    except ValueError as e:
        return _error_response("invalid_events", str(e))

    max_time = max((event.time for event in events), default=0)
    width = (duration or max_time + scale * 2) / scale
    if width > MAX_DIAGRAM_WIDTH:
        return _error_response(
            "diagram_too_wide",
            f"Diagram would be {int(width)} characters wide (max {MAX_DIAGRAM_WIDTH}); increase scale"
        )

    result = generate_marble_diagram(events, duration=duration, scale=scale, show_values=bool(show_values))

    output = "\n".join([
        "## Marble Diagram",
        "",
        "```",
        result.diagram,
        "```",
        "",
        "### Explanation",
        result.explanation,
        "",
        "### Legend",
        f"- `-` : Time frame (each represents ~{scale}ms)",
        "- `|` : Stream completion",
        "- `#` : Error",
        "- Letters/Numbers: Emitted values",
    ])
    return _text_response(output)


async def _handle_detect_memory_leak(arguments: dict) -> list[TextContent]:
    """Scan code for subscription-management problems."""
    code = arguments.get("code")
    lifecycle = arguments.get("lifecycle", "none")

    if not isinstance(code, str):
        return _error_response("invalid_code", "code must be a string")

    if len(code.encode("utf-8")) > MAX_CODE_SIZE:
        return _error_response(
            "code_too_large",
            f"Code size exceeds limit of {MAX_CODE_SIZE} bytes"
        )

    try:
        report = analyze_memory_leaks(code, lifecycle)
    except ValueError as e:
        return _error_response("invalid_lifecycle", str(e))
    except TimeoutError:
        return _error_response("regex_timeout", "Leak analysis timed out on this input")

    status = "⚠️ Potential leaks detected" if report.has_leak else "✅ No obvious leaks detected"
    parts = ["## Memory Leak Analysis", "", f"**Status:** {status}", ""]

    if report.sources:
        icons = {"high": "🔴", "medium": "🟡", "low": "🟢"}
        parts.append("### Detected Issues")
        for i, leak in enumerate(report.sources, start=1):
            parts.append(f"{i}. {icons[leak.severity]} **{leak.type}** ({leak.severity} severity)")
            parts.append(f"   - {leak.description}")
            parts.append(f"   - **Fix:** {leak.suggestion}")
            parts.append("")

    if report.recommendations:
        parts.append("### Recommendations")
        parts.extend(f"- {recommendation}" for recommendation in report.recommendations)
        parts.append("")

    parts.extend([
        "### Proper Cleanup Pattern",
        "```python",
        cleanup_example(lifecycle),
        "```",
        "",
        "### Best Practices",
        "1. **Always dispose** subscriptions to infinite streams (interval, Subjects, callbacks)",
        "2. **Use limiting operators** (take, take_until, first) when possible",
        "3. **Complete Subjects** in cleanup to release observers",
        "4. **Group disposables** in a CompositeDisposable tied to the owner's lifetime",
        "5. **Use replay carefully**: pair it with ref_count() for shared streams",
    ])
    return _text_response("\n".join(parts))


# Tool dispatch table
TOOL_HANDLERS = {
    "execute_stream": _handle_execute_stream,
    "generate_marble": _handle_generate_marble,
    "detect_memory_leak": _handle_detect_memory_leak,
}


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Route tool calls to their handlers."""
    handler = TOOL_HANDLERS.get(name)
    if handler:
        return await handler(arguments or {})
    return _text_response(
        f"Unknown tool: {name}. Available tools: {', '.join(TOOL_HANDLERS)}"
    )


async def main():
    """Run the MCP server."""
    logger.info(f"RX Sandbox MCP server starting (catalog {CATALOG_VERSION}, grace {GRACE_MS}ms)")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await boundary.shutdown()


def run():
    """Sync entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
