"""Sandbox executor: run one untrusted stream snippet and record what it does.

The snippet is the body of a function that must ``return`` an Observable.
It runs against a curated namespace (see ``stream_catalog``), with its
output capabilities replaced by no-op sinks. The executor never raises for
snippet faults; every outcome is folded into an ``ExecutionResult``.

This module is not a security boundary on its own. Python objects can be
introspected back to process-level capabilities, which is why the host only
ever runs it inside a disposable worker process (see ``isolation``).
"""

import ast
import builtins
import contextlib
import io
import threading
import time
import tracemalloc
from types import SimpleNamespace
from typing import Any, Optional

from reactivex import Observable, operators as ops
from reactivex.subject import Subject

from stream_catalog import build_primitives
from stream_types import (
    ConstructionError,
    ErrorKind,
    EventKind,
    ExecutionError,
    ExecutionResult,
    MemoryUsage,
    SoftTimeoutError,
    TimelineEvent,
    TypeContractError,
    describe_exception,
    to_wire,
)

SNIPPET_FILENAME = "<stream>"
SNIPPET_FUNCTION = "__stream__"

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes",
    "callable", "chr", "classmethod", "complex", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hasattr", "hash",
    "hex", "id", "int", "isinstance", "issubclass", "iter", "len", "list",
    "map", "max", "min", "next", "object", "oct", "ord", "pow", "property",
    "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "staticmethod", "str", "sum", "super", "tuple", "zip",
    "__build_class__",
    # exceptions snippets may raise or catch
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NameError",
    "NotImplementedError", "OverflowError", "RuntimeError", "StopIteration",
    "TimeoutError", "TypeError", "ValueError", "ZeroDivisionError",
)

# Process-level capabilities bound to an inert value so a snippet that names
# them gets None instead of reaching the real thing.
INERT_NAMES = (
    "os", "sys", "subprocess", "shutil", "socket", "importlib", "builtins",
    "open", "__import__", "exec", "eval", "compile", "input", "breakpoint",
    "globals", "locals", "vars", "exit", "quit",
    "process", "require", "module", "exports", "global", "globalThis",
)


def _discard(*args: Any, **kwargs: Any) -> None:
    return None


def _null_console() -> SimpleNamespace:
    return SimpleNamespace(log=_discard, info=_discard, warn=_discard, error=_discard, debug=_discard)


def build_namespace() -> dict[str, Any]:
    """Fresh globals for one snippet evaluation."""
    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    safe_builtins["print"] = _discard
    namespace: dict[str, Any] = {
        "__builtins__": safe_builtins,
        "__name__": SNIPPET_FUNCTION,
    }
    namespace.update({name: None for name in INERT_NAMES})
    namespace.update(build_primitives())
    namespace["print"] = _discard
    namespace["console"] = _null_console()
    return namespace


def compile_snippet(code: str) -> Any:
    """Compile ``code`` as the body of a zero-argument function.

    Grafting the parsed statements into a function keeps the snippet's own
    line numbers and lets ``return`` appear at its top level.
    """
    try:
        body = ast.parse(code, filename=SNIPPET_FILENAME, mode="exec").body
        template = ast.parse(f"def {SNIPPET_FUNCTION}():\n    pass\n", filename=SNIPPET_FILENAME)
        template.body[0].body = body or [ast.Pass()]
        ast.fix_missing_locations(template)
        return compile(template, SNIPPET_FILENAME, "exec")
    except SyntaxError as e:
        raise ConstructionError(f"SyntaxError: {e.msg} (line {e.lineno})") from e


def construct_stream(code: str, namespace: Optional[dict] = None) -> Observable:
    """Evaluate the snippet and return the Observable it produced.

    Raises ConstructionError if the snippet fails before returning and
    TypeContractError if it returns anything other than an Observable.
    """
    compiled = compile_snippet(code)
    namespace = build_namespace() if namespace is None else namespace
    try:
        exec(compiled, namespace)
        produced = namespace[SNIPPET_FUNCTION]()
    except (Exception, SystemExit) as e:
        raise ConstructionError(f"{type(e).__name__}: {describe_exception(e)}") from e

    if not isinstance(produced, Observable):
        raise TypeContractError(
            f"Code must return an Observable, got {type(produced).__name__}"
        )
    return produced


class EmissionRecorder:
    """Thread-safe sink for one subscription's signals.

    Scheduler threads may deliver concurrently, so every append happens under
    one lock and offsets are taken inside it. After the first terminal signal
    (complete, error or soft timeout) nothing else is recorded.
    """

    def __init__(self, max_results: int, started_at: Optional[float] = None):
        self.max_results = max_results
        self.started_at = time.monotonic() if started_at is None else started_at
        self.values: list = []
        self.errors: list[ExecutionError] = []
        self.timeline: list[TimelineEvent] = []
        self.completed = False
        self.finished = threading.Event()
        self._lock = threading.Lock()
        self._terminal = False

    def _offset_ms(self) -> int:
        return max(0, int((time.monotonic() - self.started_at) * 1000))

    @property
    def terminal(self) -> bool:
        with self._lock:
            return self._terminal

    def on_next(self, value: Any) -> None:
        wire_value = to_wire(value)
        with self._lock:
            if self._terminal or len(self.values) >= self.max_results:
                return
            self.values.append(wire_value)
            self.timeline.append(TimelineEvent(self._offset_ms(), EventKind.NEXT, wire_value))

    def on_error(self, error: Exception) -> None:
        message = describe_exception(error)
        with self._lock:
            if self._terminal:
                return
            self._terminal = True
            self.errors.append(ExecutionError(ErrorKind.EMISSION, message))
            self.timeline.append(TimelineEvent(self._offset_ms(), EventKind.ERROR, message))
        self.finished.set()

    def on_completed(self) -> None:
        with self._lock:
            if self._terminal:
                return
            self._terminal = True
            self.completed = True
            self.timeline.append(TimelineEvent(self._offset_ms(), EventKind.COMPLETE))
        self.finished.set()

    def expire(self, timeout_ms: int) -> bool:
        """Record a soft timeout unless the stream already terminated."""
        with self._lock:
            if self._terminal:
                return False
            self._terminal = True
            self.errors.append(
                ExecutionError.from_exception(
                    SoftTimeoutError(f"Stream execution timeout after {timeout_ms}ms")
                )
            )
        self.finished.set()
        return True


def _subscribe_in_background(observable: Observable, recorder: EmissionRecorder,
                             cancel: Subject) -> tuple[threading.Thread, list]:
    """Subscribe on a daemon thread.

    Synchronous sources emit inside subscribe(); running it off the calling
    thread keeps the soft timeout effective even for a runaway source.
    """
    subscriptions: list = []

    def _run():
        try:
            subscription = observable.pipe(
                ops.take_until(cancel),
                ops.take(recorder.max_results),
            ).subscribe(
                on_next=recorder.on_next,
                on_error=recorder.on_error,
                on_completed=recorder.on_completed,
            )
        except Exception as e:
            recorder.on_error(e)
        else:
            subscriptions.append(subscription)

    thread = threading.Thread(target=_run, name="stream-subscription", daemon=True)
    thread.start()
    return thread, subscriptions


def _heap_bytes() -> int:
    return tracemalloc.get_traced_memory()[0]


def execute_stream(code: str, max_results: int = 10, timeout_ms: int = 5000) -> ExecutionResult:
    """Run a snippet to completion, error, cutoff or soft timeout."""
    started_tracing = not tracemalloc.is_tracing()
    if started_tracing:
        tracemalloc.start()

    started_at = time.monotonic()
    memory_before = _heap_bytes()
    recorder = EmissionRecorder(max_results, started_at=started_at)
    cancel = Subject()
    subscriptions: list = []

    try:
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
            try:
                observable = construct_stream(code)
            except (ConstructionError, TypeContractError) as e:
                recorder.errors.append(ExecutionError.from_exception(e))
            else:
                _, subscriptions = _subscribe_in_background(observable, recorder, cancel)
                if not recorder.finished.wait(timeout_ms / 1000.0):
                    if recorder.expire(timeout_ms):
                        cancel.on_next(True)
        for subscription in subscriptions:
            subscription.dispose()

        memory_after = _heap_bytes()
    finally:
        if started_tracing:
            tracemalloc.stop()

    return ExecutionResult(
        values=list(recorder.values),
        errors=list(recorder.errors),
        completed_normally=recorder.completed,
        timeline=list(recorder.timeline),
        wall_clock_ms=int((time.monotonic() - started_at) * 1000),
        memory=MemoryUsage.sampled(memory_before, memory_after),
    )
