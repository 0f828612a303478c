"""ASCII marble diagrams for stream timelines."""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from stream_types import EventKind, TimelineEvent

MARBLE_FRAME_MS = 10
DEFAULT_SCALE_MS = 50


@dataclass
class MarbleEvent:
    time: float
    value: Any = None
    type: str = EventKind.NEXT.value


@dataclass
class MarbleDiagram:
    diagram: str
    explanation: str
    timeline: list[dict] = field(default_factory=list)


def _dump(value: Any) -> str:
    return json.dumps(value, default=repr)


def _marker_for(event: MarbleEvent, legend_size: int) -> tuple[str, bool]:
    """Return (marker, needs_legend) for a next event."""
    value = event.value
    if isinstance(value, str) and len(value) == 1:
        return value, False
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 9:
        return str(value), False
    return chr(ord("a") + legend_size % 26), True


def generate_marble_diagram(
    events: Iterable[MarbleEvent],
    duration: Optional[float] = None,
    scale: float = DEFAULT_SCALE_MS,
    show_values: bool = True,
) -> MarbleDiagram:
    """Lay events out on a dash timeline, one character per ``scale`` ms."""
    if scale <= 0:
        raise ValueError(f"scale must be positive, got {scale}")

    ordered = sorted(events, key=lambda e: e.time)
    max_time = max((e.time for e in ordered), default=0)
    width = int((duration or max_time + scale * 2) // scale)

    frames = ["-"] * width
    legend: dict[int, str] = {}
    letters_used = 0
    for event in ordered:
        position = int(event.time // scale)
        if position < 0 or position >= width:
            continue
        needs_legend = False
        if event.type == EventKind.ERROR.value:
            marker = "#"
        elif event.type == EventKind.COMPLETE.value:
            marker = "|"
        else:
            marker, needs_legend = _marker_for(event, letters_used)
        # the legend always describes the marker that ends up in the cell
        if needs_legend:
            letters_used += 1
            legend[position] = _dump(event.value)
        else:
            legend.pop(position, None)
        frames[position] = marker

    timeline_line = "".join(frames)
    parts = [timeline_line]
    if show_values and legend:
        entries = [
            f"  {timeline_line[position]} = {value}"
            for position, value in legend.items()
            if timeline_line[position] not in "-|#"
        ]
        if entries:
            parts.extend(["", "Values:", *entries])

    return MarbleDiagram(
        diagram="\n".join(parts),
        explanation=explain_events(ordered, scale),
        timeline=[{"time": e.time, "value": e.value} for e in ordered],
    )


def explain_events(events: list[MarbleEvent], scale: float = DEFAULT_SCALE_MS) -> str:
    if not events:
        return "Empty stream with no emissions"

    lines = [f"Stream with {len(events)} event(s):"]
    for event in events:
        at = f"{event.time:g}ms"
        if event.type == EventKind.ERROR.value:
            lines.append(f"- Error at {at}: {event.value}")
        elif event.type == EventKind.COMPLETE.value:
            lines.append(f"- Completed at {at}")
        else:
            lines.append(f"- Emitted {_dump(event.value)} at {at}")

    if len(events) > 2:
        gaps = [
            current.time - previous.time
            for previous, current in zip(events, events[1:])
            if previous.type == EventKind.NEXT.value and current.type == EventKind.NEXT.value
        ]
        if gaps:
            average = sum(gaps) / len(gaps)
            if all(abs(gap - average) < scale / 2 for gap in gaps):
                lines.append(f"\nPattern: Regular interval of ~{round(average)}ms")
            else:
                lines.append(f"\nPattern: Irregular intervals (avg: {round(average)}ms)")

    return "\n".join(lines)


def parse_marble_syntax(marble: str, values: Optional[dict] = None) -> list[MarbleEvent]:
    """Parse RxJS-style marble syntax with 10ms frames.

    ``-`` is an empty frame, ``|`` completion, ``#`` an error; ``(`` and ``)``
    grouping is ignored. Any other character is a value, looked up in
    ``values`` when given.
    """
    values = values or {}
    events = []
    for index, char in enumerate(marble):
        time = index * MARBLE_FRAME_MS
        if char in "-()" or char.isspace():
            continue
        if char == "|":
            events.append(MarbleEvent(time, None, EventKind.COMPLETE.value))
        elif char == "#":
            events.append(MarbleEvent(time, "Error", EventKind.ERROR.value))
        else:
            events.append(MarbleEvent(time, values.get(char, char), EventKind.NEXT.value))
    return events


def timeline_to_events(timeline: Iterable[TimelineEvent]) -> list[MarbleEvent]:
    """Convert a captured execution timeline into marble events."""
    return [MarbleEvent(event.offset_ms, event.value, event.kind.value) for event in timeline]
