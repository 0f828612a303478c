"""Tests for the shared data model."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stream_types import (
    ConstructionError,
    ErrorKind,
    EventKind,
    ExecutionError,
    ExecutionRequest,
    ExecutionResult,
    MAX_WIRE_DEPTH,
    ForcedTerminationError,
    MemoryUsage,
    TimelineEvent,
    describe_exception,
    to_wire,
)


class TestExecutionRequest:
    """Tests for request validation."""

    def test_defaults(self):
        request = ExecutionRequest(code="return of(1)")
        assert request.max_results == 10
        assert request.timeout_ms == 5000
        assert request.capture_timeline is True
        assert request.capture_memory is False

    @pytest.mark.parametrize("field", ["max_results", "timeout_ms"])
    @pytest.mark.parametrize("value", [0, -1, True, 1.5])
    def test_rejects_bad_limits(self, field, value):
        with pytest.raises(ValueError):
            ExecutionRequest(code="return of(1)", **{field: value})

    def test_immutable(self):
        request = ExecutionRequest(code="return of(1)")
        with pytest.raises(AttributeError):
            request.code = "return EMPTY"

    def test_worker_payload_is_camel_case(self):
        payload = ExecutionRequest(code="x", max_results=3, timeout_ms=100).to_worker_payload()
        assert payload == {"code": "x", "maxResults": 3, "timeoutMs": 100}


class TestToWire:
    def test_scalars_unchanged(self):
        assert to_wire(1) == 1
        assert to_wire("a") == "a"
        assert to_wire(None) is None
        assert to_wire(1.5) == 1.5

    def test_non_finite_floats(self):
        assert to_wire(float("inf")) == "inf"
        assert to_wire(float("nan")) == "nan"

    def test_nested_containers(self):
        assert to_wire({1: (2, [3])}) == {"1": [2, [3]]}

    def test_unknown_objects_use_repr(self):
        assert to_wire({1, 2}) == repr({1, 2})

    def test_cyclic_list(self):
        items = [1]
        items.append(items)
        assert to_wire(items) == [1, "[1, [...]]"]

    def test_cyclic_dict(self):
        node = {"name": "a"}
        node["self"] = node
        assert to_wire(node) == {"name": "a", "self": "{'name': 'a', 'self': {...}}"}

    def test_shared_reference_is_not_a_cycle(self):
        shared = [1]
        assert to_wire([shared, shared]) == [[1], [1]]

    def test_deep_nesting_is_cut_off(self):
        value = []
        for _ in range(MAX_WIRE_DEPTH + 10):
            value = [value]
        wired = to_wire(value)
        json.dumps(wired)
        for _ in range(MAX_WIRE_DEPTH):
            wired = wired[0]
        assert isinstance(wired, str)

    def test_failing_repr(self):
        class Broken:
            def __repr__(self):
                raise RuntimeError("no repr")

        assert to_wire([Broken()]) == ["<unrepresentable Broken>"]


class TestDescribeException:
    def test_message(self):
        assert describe_exception(ValueError("bad")) == "bad"

    def test_empty_message_falls_back_to_type(self):
        assert describe_exception(ValueError()) == "ValueError"
        assert describe_exception(ConstructionError()) == "ConstructionError"


class TestExecutionResult:
    """Tests for result serialization and derived properties."""

    def test_wire_form(self):
        result = ExecutionResult(
            values=[1, "two"],
            errors=[ExecutionError(ErrorKind.EMISSION, "boom")],
            completed_normally=False,
            timeline=[TimelineEvent(0, EventKind.NEXT, 1), TimelineEvent(3, EventKind.ERROR, "boom")],
            wall_clock_ms=4,
            memory=MemoryUsage.sampled(100, 150),
        )
        data = json.loads(json.dumps(result.to_dict()))
        assert data["errorMessages"] == ["boom"]
        assert data["errorKinds"] == ["EmissionError"]
        assert data["timeline"][0] == {"offsetMs": 0, "kind": "next", "value": 1}
        assert data["memory"] == {"beforeBytes": 100, "afterBytes": 150, "peakBytes": 150}
        assert ExecutionResult.from_dict(data) == result

    def test_mismatched_error_lists_rejected(self):
        with pytest.raises(ValueError):
            ExecutionResult.from_dict({"errorMessages": ["a"], "errorKinds": []})

    def test_unknown_error_kind_rejected(self):
        with pytest.raises(ValueError):
            ExecutionResult.from_dict({"errorMessages": ["a"], "errorKinds": ["Nope"]})

    def test_failure(self):
        result = ExecutionResult.failure(ForcedTerminationError("killed"), wall_clock_ms=100)
        assert result.values == []
        assert result.completed_normally is False
        assert result.forcefully_terminated is True
        assert result.wall_clock_ms == 100

    def test_ended_on_emission_error(self):
        assert ExecutionResult(errors=[ExecutionError(ErrorKind.EMISSION, "x")]).ended_on_emission_error
        assert not ExecutionResult(errors=[ExecutionError(ErrorKind.SOFT_TIMEOUT, "x")]).ended_on_emission_error
        assert not ExecutionResult().ended_on_emission_error

    def test_memory_delta(self):
        assert MemoryUsage.sampled(100, 40).delta_bytes == -60
        assert MemoryUsage.sampled(100, 40).peak_bytes == 100
