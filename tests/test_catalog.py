"""Tests for the stream primitives injected into snippets."""

import inspect
import sys
from pathlib import Path

import pytest
import reactivex
from reactivex import operators

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stream_catalog import EXCLUDED_NAMES, build_primitives
from stream_sandbox import build_namespace, execute_stream
from stream_types import ErrorKind

CAMEL_CASE_ALIASES = [
    "bufferWhen",
    "bufferToggle",
    "window",
    "windowToggle",
    "windowWhen",
    "audit",
    "auditTime",
    "distinctUntilKeyChanged",
    "mergeScan",
    "retryWhen",
    "throwIfEmpty",
    "switchMapTo",
    "mergeMapTo",
    "concatMapTo",
    "delayWhen",
    "combineLatestAll",
    "zipAll",
    "refCount",
    "connect",
    "connectable",
    "scheduled",
]


def _exported(module):
    return [
        name for name in module.__all__
        if name not in EXCLUDED_NAMES and not inspect.ismodule(getattr(module, name, None))
    ]


class TestNativeNamespaces:
    """Tests for the rx and ops namespaces."""

    def test_every_operator_reachable(self):
        ops = build_namespace()["ops"]
        missing = [name for name in _exported(operators) if not hasattr(ops, name)]
        assert missing == []

    def test_every_creation_function_reachable(self):
        rx = build_namespace()["rx"]
        missing = [name for name in _exported(reactivex) if not hasattr(rx, name)]
        assert missing == []

    def test_functions_missing_from_all_are_included(self):
        """interval and friends are defined by reactivex but not listed in __all__."""
        rx = build_primitives()["rx"]
        for name in ("interval", "merge", "generate", "if_then", "from_iterable"):
            assert getattr(rx, name) is getattr(reactivex, name)

    def test_submodules_not_exposed(self):
        """Only primitives are exposed, never the modules that carry them."""
        primitives = build_primitives()
        for namespace in (primitives["rx"], primitives["ops"]):
            assert not any(inspect.ismodule(member) for member in vars(namespace).values())
        assert not hasattr(primitives["rx"], "typing")
        assert not hasattr(primitives["rx"], "__version__")

    def test_fresh_namespaces_per_call(self):
        assert build_primitives()["ops"] is not build_primitives()["ops"]


class TestCamelCaseAliases:
    """Tests for the millisecond-based camelCase catalog."""

    @pytest.mark.parametrize("name", CAMEL_CASE_ALIASES)
    def test_alias_present(self, name):
        assert callable(build_namespace()[name])

    def test_switch_map_to(self):
        result = execute_stream("return of(1, 2, 3).pipe(switchMapTo(of('x')))")
        assert result.values == ["x", "x", "x"]
        assert result.completed_normally is True

    def test_merge_scan(self):
        """Each inner value becomes the accumulator for the next source value."""
        result = execute_stream("return of(1, 2).pipe(mergeScan(lambda acc, x: of(acc + x), 0))")
        assert result.values == [1, 3]

    def test_distinct_until_key_changed(self):
        result = execute_stream("return of({'k': 1}, {'k': 1}, {'k': 2}).pipe(distinctUntilKeyChanged('k'))")
        assert result.values == [{"k": 1}, {"k": 2}]

    def test_throw_if_empty_on_empty_stream(self):
        result = execute_stream("return EMPTY.pipe(throwIfEmpty())")
        assert result.error_kinds == [ErrorKind.EMISSION]
        assert result.error_messages == ["no elements in sequence"]

    def test_throw_if_empty_passes_values(self):
        result = execute_stream("return of(1, 2).pipe(throwIfEmpty())")
        assert result.values == [1, 2]
        assert result.completed_normally is True

    def test_delay_when(self):
        result = execute_stream("return of(1, 2).pipe(delayWhen(lambda x: timer(10 * x)))", timeout_ms=2000)
        assert result.values == [1, 2]
        assert result.completed_normally is True

    def test_audit_time_emits_latest(self):
        result = execute_stream("return of(1, 2, 3).pipe(auditTime(20))", timeout_ms=2000)
        assert result.values == [3]
        assert result.completed_normally is True

    def test_retry_when_resubscribes(self):
        code = (
            "state = {'attempts': 0}\n"
            "def subscribe(observer):\n"
            "    state['attempts'] += 1\n"
            "    if state['attempts'] < 3:\n"
            "        observer.on_error(Exception('fail'))\n"
            "    else:\n"
            "        observer.on_next(state['attempts'])\n"
            "        observer.on_completed()\n"
            "return create(subscribe).pipe(retryWhen(lambda errors: errors))\n"
        )
        result = execute_stream(code, timeout_ms=2000)
        assert result.values == [3]
        assert result.completed_normally is True
