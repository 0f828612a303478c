"""Data model shared by the sandbox executor, the worker and the server.

Everything here must survive a trip through JSON: the worker process hands
its result back to the host as a single JSON line, so each type knows how to
turn itself into (and back from) the camelCase wire form.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure taxonomy for one execution attempt."""
    CONSTRUCTION = "ConstructionError"
    TYPE_CONTRACT = "TypeContractError"
    EMISSION = "EmissionError"
    SOFT_TIMEOUT = "SoftTimeoutError"
    FORCED_TERMINATION = "ForcedTerminationError"
    INFRASTRUCTURE = "InfrastructureError"


class EventKind(str, Enum):
    NEXT = "next"
    ERROR = "error"
    COMPLETE = "complete"


class StreamSandboxError(Exception):
    """Base class for failures raised while running a stream snippet."""
    kind: ErrorKind = ErrorKind.INFRASTRUCTURE


class ConstructionError(StreamSandboxError):
    """The snippet failed before producing a stream (syntax, name errors...)."""
    kind = ErrorKind.CONSTRUCTION


class TypeContractError(StreamSandboxError):
    """The snippet returned something that is not an Observable."""
    kind = ErrorKind.TYPE_CONTRACT


class EmissionError(StreamSandboxError):
    kind = ErrorKind.EMISSION


class SoftTimeoutError(StreamSandboxError):
    kind = ErrorKind.SOFT_TIMEOUT


class ForcedTerminationError(StreamSandboxError):
    kind = ErrorKind.FORCED_TERMINATION


class InfrastructureError(StreamSandboxError):
    kind = ErrorKind.INFRASTRUCTURE


def describe_exception(exc: BaseException) -> str:
    """Render an exception the way it is reported back to callers."""
    message = str(exc)
    if isinstance(exc, StreamSandboxError):
        return message or exc.kind.value
    if not message:
        return type(exc).__name__
    return message


MAX_WIRE_DEPTH = 32


def _safe_repr(value: Any) -> str:
    try:
        return repr(value)
    except Exception:
        return f"<unrepresentable {type(value).__name__}>"


def _wire_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    try:
        return str(key)
    except Exception:
        return _safe_repr(key)


def to_wire(value: Any) -> Any:
    """Normalise an emitted value into plain JSON data.

    Scalars pass through, sequences become lists, mappings become dicts with
    string keys and anything else is represented by its repr(). Never
    raises: self-references and containers nested deeper than
    MAX_WIRE_DEPTH are represented by their repr() as well.
    """
    return _to_wire(value, 0, set())


def _to_wire(value: Any, depth: int, active: set) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        # NaN and infinities are not valid JSON
        if value != value or value in (float("inf"), float("-inf")):
            return repr(value)
        return value
    if not isinstance(value, (list, tuple, dict)):
        return _safe_repr(value)
    if depth >= MAX_WIRE_DEPTH or id(value) in active:
        return _safe_repr(value)

    active.add(id(value))
    try:
        if isinstance(value, dict):
            return {_wire_key(key): _to_wire(item, depth + 1, active) for key, item in value.items()}
        return [_to_wire(item, depth + 1, active) for item in value]
    finally:
        active.discard(id(value))


@dataclass(frozen=True)
class ExecutionRequest:
    """One accepted request. Immutable once constructed."""
    code: str
    max_results: int = 10
    timeout_ms: int = 5000
    capture_timeline: bool = True
    capture_memory: bool = False

    def __post_init__(self):
        if not isinstance(self.code, str):
            raise ValueError("code must be a string")
        for name in ("max_results", "timeout_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    def to_worker_payload(self) -> dict:
        """The subset of the request that crosses the isolation boundary."""
        return {
            "code": self.code,
            "maxResults": self.max_results,
            "timeoutMs": self.timeout_ms,
        }


@dataclass(frozen=True)
class TimelineEvent:
    offset_ms: int
    kind: EventKind
    value: Any = None

    def to_dict(self) -> dict:
        data = {"offsetMs": self.offset_ms, "kind": self.kind.value}
        if self.value is not None:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TimelineEvent":
        return cls(
            offset_ms=int(data["offsetMs"]),
            kind=EventKind(data["kind"]),
            value=data.get("value"),
        )


@dataclass(frozen=True)
class ExecutionError:
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ExecutionError":
        kind = exc.kind if isinstance(exc, StreamSandboxError) else ErrorKind.INFRASTRUCTURE
        return cls(kind=kind, message=describe_exception(exc))


@dataclass(frozen=True)
class MemoryUsage:
    before_bytes: int = 0
    after_bytes: int = 0
    peak_bytes: int = 0

    @classmethod
    def sampled(cls, before: int, after: int) -> "MemoryUsage":
        """Point samples only; the peak is the larger of the two."""
        return cls(before_bytes=before, after_bytes=after, peak_bytes=max(before, after))

    @property
    def delta_bytes(self) -> int:
        return self.after_bytes - self.before_bytes

    def to_dict(self) -> dict:
        return {
            "beforeBytes": self.before_bytes,
            "afterBytes": self.after_bytes,
            "peakBytes": self.peak_bytes,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "MemoryUsage":
        data = data or {}
        return cls(
            before_bytes=int(data.get("beforeBytes", 0)),
            after_bytes=int(data.get("afterBytes", 0)),
            peak_bytes=int(data.get("peakBytes", 0)),
        )


@dataclass
class ExecutionResult:
    """Outcome of one execution attempt, built once and then only read."""
    values: list = field(default_factory=list)
    errors: list[ExecutionError] = field(default_factory=list)
    completed_normally: bool = False
    timeline: list[TimelineEvent] = field(default_factory=list)
    wall_clock_ms: int = 0
    memory: MemoryUsage = field(default_factory=MemoryUsage)

    @property
    def error_messages(self) -> list[str]:
        return [error.message for error in self.errors]

    @property
    def error_kinds(self) -> list[ErrorKind]:
        return [error.kind for error in self.errors]

    @property
    def forcefully_terminated(self) -> bool:
        return ErrorKind.FORCED_TERMINATION in self.error_kinds

    @property
    def ended_on_emission_error(self) -> bool:
        return bool(self.errors) and all(kind == ErrorKind.EMISSION for kind in self.error_kinds)

    @classmethod
    def failure(cls, exc: StreamSandboxError, wall_clock_ms: int = 0) -> "ExecutionResult":
        """A terminal result carrying a single error and nothing else."""
        return cls(
            errors=[ExecutionError.from_exception(exc)],
            completed_normally=False,
            wall_clock_ms=wall_clock_ms,
        )

    def to_dict(self) -> dict:
        return {
            "values": self.values,
            "errorMessages": self.error_messages,
            "errorKinds": [kind.value for kind in self.error_kinds],
            "completedNormally": self.completed_normally,
            "timeline": [event.to_dict() for event in self.timeline],
            "wallClockMs": self.wall_clock_ms,
            "memory": self.memory.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        messages = list(data.get("errorMessages", []))
        kinds = list(data.get("errorKinds", []))
        if len(kinds) != len(messages):
            raise ValueError("errorKinds and errorMessages differ in length")
        return cls(
            values=list(data.get("values", [])),
            errors=[
                ExecutionError(kind=ErrorKind(kind), message=str(message))
                for kind, message in zip(kinds, messages)
            ],
            completed_normally=bool(data.get("completedNormally", False)),
            timeline=[TimelineEvent.from_dict(event) for event in data.get("timeline", [])],
            wall_clock_ms=int(data.get("wallClockMs", 0)),
            memory=MemoryUsage.from_dict(data.get("memory")),
        )
