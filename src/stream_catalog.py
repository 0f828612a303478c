"""Whitelisted stream primitives injected into sandboxed snippets.

Three views of the same ReactiveX library are exposed:

- ``rx``: the native creation functions (times in seconds)
- ``ops``: the native pipeable operators (times in seconds)
- bare camelCase names modelled on the RxJS catalog (``of``, ``interval``,
  ``mergeMap``, ``debounceTime``...). Every time argument here is in
  milliseconds, the same unit the execution timeline uses.

Bare names that would shadow a Python builtin (``map``, ``filter``, ``range``,
``zip``, ``min``, ``max``) are left out so that ordinary Python
inside a snippet keeps working; use ``ops.map``, ``rx.range`` and friends.
"""

import inspect
from types import SimpleNamespace
from typing import Any, Callable, Optional

import reactivex as rx
from reactivex import Observable, compose, operators as ops
from reactivex.disposable import CompositeDisposable, SerialDisposable
from reactivex.scheduler import TimeoutScheduler
from reactivex.subject import AsyncSubject, BehaviorSubject, ReplaySubject, Subject

CATALOG_VERSION = "2024.1"

# Public names of the installed reactivex release that are not stream
# primitives. Submodules are always skipped as well.
EXCLUDED_NAMES = frozenset({"__version__"})


def _public_names(module: Any) -> list[str]:
    """``__all__`` plus public functions the module defines but does not list.

    reactivex leaves several creation functions (``interval``, ``merge``,
    ``generate``...) out of ``__all__``.
    """
    names = list(getattr(module, "__all__", ()))
    for name, member in vars(module).items():
        if name in names or name.startswith("_"):
            continue
        if inspect.isfunction(member) and member.__module__ == module.__name__:
            names.append(name)
    return names


def _catalog(module: Any) -> SimpleNamespace:
    """Every public primitive ``module`` exports."""
    members = {}
    for name in _public_names(module):
        if name in EXCLUDED_NAMES or name.startswith("_") or not hasattr(module, name):
            continue
        member = getattr(module, name)
        if inspect.ismodule(member):
            continue
        members[name] = member
    return SimpleNamespace(**members)


def _seconds(ms: Optional[float]) -> Optional[float]:
    return None if ms is None else ms / 1000.0


def _positional_arity(func: Callable) -> int:
    """How many positional arguments ``func`` accepts (-1 for *args)."""
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return 1
    arity = 0
    for param in params:
        if param.kind == param.VAR_POSITIONAL:
            return -1
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            arity += 1
    return arity


def call_with_arity(func: Callable, *args: Any) -> Any:
    """Call ``func`` with as many leading ``args`` as it accepts.

    RxJS callbacks routinely ignore trailing arguments (index, source...);
    ReactiveX passes them anyway, so adapt instead of failing.
    """
    arity = _positional_arity(func)
    if arity < 0:
        return func(*args)
    return func(*args[:arity])


def _sources(args: tuple) -> tuple:
    # combineLatest([a, b]) and combineLatest(a, b) are both accepted
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        return tuple(args[0])
    return args


# Creation functions

def of(*values: Any) -> Observable:
    return rx.of(*values)


def from_(iterable: Any) -> Observable:
    return rx.from_iterable(iterable)


def interval(period_ms: float) -> Observable:
    return rx.interval(_seconds(period_ms))


def timer(due_ms: float = 0, period_ms: Optional[float] = None) -> Observable:
    return rx.timer(_seconds(due_ms), _seconds(period_ms))


def generate(initial_state: Any, condition: Callable, iterate: Callable) -> Observable:
    return rx.generate(initial_state, condition, iterate)


def concat(*sources: Observable) -> Observable:
    return rx.concat(*_sources(sources))


def merge(*sources: Observable) -> Observable:
    return rx.merge(*_sources(sources))


def combineLatest(*sources: Observable) -> Observable:
    return rx.combine_latest(*_sources(sources))


def forkJoin(*sources: Observable) -> Observable:
    return rx.fork_join(*_sources(sources))


def race(*sources: Observable) -> Observable:
    return rx.amb(*_sources(sources))


def iif(condition: Callable[[], bool], true_source: Observable, false_source: Optional[Observable] = None) -> Observable:
    return rx.if_then(condition, true_source, false_source or rx.empty())


def defer(factory: Callable) -> Observable:
    return rx.defer(lambda scheduler: call_with_arity(factory, scheduler))


def create(subscribe: Callable) -> Observable:
    return rx.create(lambda observer, scheduler=None: call_with_arity(subscribe, observer, scheduler))


def throwError(error: Any) -> Observable:
    """Error immediately. Accepts an exception, a message or a factory."""
    if isinstance(error, BaseException) or isinstance(error, str):
        return rx.throw(error)
    if callable(error):
        return rx.defer(lambda scheduler: rx.throw(error()))
    return rx.throw(Exception(str(error)))


def partition(source: Observable, predicate: Callable) -> list:
    return source.pipe(ops.partition(predicate))


# Operators

def scan(accumulator: Callable, *seed: Any) -> Callable:
    return ops.scan(accumulator, *seed)


def reduce(accumulator: Callable, *seed: Any) -> Callable:
    return ops.reduce(accumulator, *seed)


def mergeMap(project: Callable) -> Callable:
    return ops.flat_map(project)


def switchMap(project: Callable) -> Callable:
    return compose(ops.map(project), ops.switch_latest())


def concatMap(project: Callable) -> Callable:
    return compose(ops.map(project), ops.merge(max_concurrent=1))


def exhaustMap(project: Callable) -> Callable:
    return compose(ops.map(project), ops.exclusive())


def catchError(handler: Any) -> Callable:
    if isinstance(handler, Observable):
        return ops.catch(handler)
    return ops.catch(lambda error, source: call_with_arity(handler, error, source))


def tap(on_next: Optional[Callable] = None, on_error: Optional[Callable] = None,
        on_completed: Optional[Callable] = None) -> Callable:
    return ops.do_action(on_next, on_error, on_completed)


def find(predicate: Callable) -> Callable:
    return ops.find(lambda value, index, source: call_with_arity(predicate, value, index, source))


def findIndex(predicate: Callable) -> Callable:
    return ops.find_index(lambda value, index, source: call_with_arity(predicate, value, index, source))


def distinctUntilChanged(comparer: Optional[Callable] = None, key_mapper: Optional[Callable] = None) -> Callable:
    return ops.distinct_until_changed(key_mapper, comparer)


def shareReplay(buffer_size: Optional[int] = None) -> Callable:
    return compose(ops.replay(buffer_size=buffer_size), ops.ref_count())


def endWith(*values: Any) -> Callable:
    return ops.concat(rx.of(*values))


def mapTo(value: Any) -> Callable:
    return ops.map(lambda _: value)


def raceWith(*others: Observable) -> Callable:
    return lambda source: rx.amb(source, *others)


def debounceTime(duetime_ms: float) -> Callable:
    return ops.debounce(_seconds(duetime_ms))


def throttleTime(duration_ms: float) -> Callable:
    return ops.throttle_first(_seconds(duration_ms))


def sampleTime(period_ms: float) -> Callable:
    return ops.sample(_seconds(period_ms))


def delay(duetime_ms: float) -> Callable:
    return ops.delay(_seconds(duetime_ms))


def timeout(duetime_ms: float) -> Callable:
    return ops.timeout(_seconds(duetime_ms))


def bufferTime(timespan_ms: float) -> Callable:
    return ops.buffer_with_time(_seconds(timespan_ms))


def windowTime(timespan_ms: float) -> Callable:
    return ops.window_with_time(_seconds(timespan_ms))


def audit(duration_selector: Callable) -> Callable:
    """Emit the latest value once the duration started by the first one ends."""
    def _audit(source: Observable) -> Observable:
        return source.pipe(ops.publish(lambda shared: shared.pipe(
            ops.map(lambda value: call_with_arity(duration_selector, value).pipe(ops.take(1))),
            ops.exclusive(),
            ops.with_latest_from(shared),
            ops.map(lambda pair: pair[1]),
        )))
    return _audit


def auditTime(duration_ms: float) -> Callable:
    return audit(lambda _: rx.timer(_seconds(duration_ms)))


def delayWhen(delay_selector: Callable) -> Callable:
    return ops.flat_map_indexed(
        lambda value, index: call_with_arity(delay_selector, value, index).pipe(
            ops.take(1), ops.map(lambda _: value)
        )
    )


def distinctUntilKeyChanged(key: Any, comparer: Optional[Callable] = None) -> Callable:
    def key_of(value: Any) -> Any:
        if isinstance(value, dict):
            return value.get(key)
        return getattr(value, key, None)
    return ops.distinct_until_changed(key_of, comparer)


def mergeScan(accumulator: Callable, seed: Any) -> Callable:
    """scan whose accumulator returns an Observable; its values become the state."""
    def _merge_scan(source: Observable) -> Observable:
        def factory(scheduler: Any) -> Observable:
            state = {"acc": seed}

            def remember(value: Any) -> None:
                state["acc"] = value

            return source.pipe(ops.flat_map_indexed(
                lambda value, index: call_with_arity(accumulator, state["acc"], value, index).pipe(
                    ops.do_action(remember)
                )
            ))
        return rx.defer(factory)
    return _merge_scan


def retryWhen(notifier: Callable) -> Callable:
    """Resubscribe to the source whenever ``notifier(errors)`` emits."""
    def _retry_when(source: Observable) -> Observable:
        def subscribe(observer: Any, scheduler: Any = None) -> CompositeDisposable:
            errors = Subject()
            attempt = SerialDisposable()

            def resubscribe(_: Any = None) -> None:
                attempt.disposable = source.subscribe(
                    observer.on_next, errors.on_next, observer.on_completed, scheduler=scheduler
                )

            signals = call_with_arity(notifier, errors).subscribe(
                resubscribe, observer.on_error, observer.on_completed, scheduler=scheduler
            )
            resubscribe()
            return CompositeDisposable(attempt, signals)
        return Observable(subscribe)
    return _retry_when


def throwIfEmpty(error_factory: Optional[Callable] = None) -> Callable:
    empty = object()

    def raise_or_pass(value: Any) -> Observable:
        if value is not empty:
            return rx.of(value)
        return rx.throw(error_factory() if error_factory else Exception("no elements in sequence"))

    return compose(ops.default_if_empty(empty), ops.flat_map(raise_or_pass))


def switchMapTo(inner: Observable) -> Callable:
    return switchMap(lambda _: inner)


def mergeMapTo(inner: Observable) -> Callable:
    return mergeMap(lambda _: inner)


def concatMapTo(inner: Observable) -> Callable:
    return concatMap(lambda _: inner)


def combineLatestAll() -> Callable:
    return compose(ops.to_list(), ops.flat_map(lambda sources: rx.combine_latest(*sources)))


def zipAll() -> Callable:
    return compose(ops.to_list(), ops.flat_map(lambda sources: rx.zip(*sources)))


def connect(selector: Callable) -> Callable:
    return ops.publish(selector)


def connectable(source: Observable, connector: Optional[Callable] = None) -> Observable:
    """A connectable view of ``source``; call ``.connect()`` to start it."""
    if connector is None:
        return source.pipe(ops.publish())
    return source.pipe(ops.multicast(connector()))


def scheduled(values: Any, scheduler: Any = None) -> Observable:
    return rx.from_iterable(values, scheduler=scheduler)


def setTimeout(callback: Callable, delay_ms: float = 0) -> Any:
    """Schedule ``callback`` on the timeout scheduler; returns a disposable."""
    return TimeoutScheduler().schedule_relative(
        _seconds(delay_ms), lambda scheduler, state: callback()
    )


def clearTimeout(handle: Any) -> None:
    if handle is not None:
        handle.dispose()


def build_primitives() -> dict[str, Any]:
    """Fresh dict of every primitive a snippet may reference.

    A new dict is built per call so that no two executions share a
    namespace object.
    """
    return {
        "rx": _catalog(rx),
        "ops": _catalog(ops),
        "pipe": rx.pipe,
        "compose": compose,
        # Observable and Subject classes
        "Observable": Observable,
        "Subject": Subject,
        "BehaviorSubject": BehaviorSubject,
        "ReplaySubject": ReplaySubject,
        "AsyncSubject": AsyncSubject,
        # Creation
        "of": of,
        "from_": from_,
        "fromIterable": from_,
        "interval": interval,
        "timer": timer,
        "generate": generate,
        "concat": concat,
        "merge": merge,
        "combineLatest": combineLatest,
        "forkJoin": forkJoin,
        "race": race,
        "partition": partition,
        "iif": iif,
        "defer": defer,
        "create": create,
        "throwError": throwError,
        "scheduled": scheduled,
        "EMPTY": rx.empty(),
        "NEVER": rx.never(),
        # Transformation
        "scan": scan,
        "reduce": reduce,
        "pairwise": ops.pairwise,
        "groupBy": ops.group_by,
        "mergeMap": mergeMap,
        "flatMap": mergeMap,
        "switchMap": switchMap,
        "concatMap": concatMap,
        "exhaustMap": exhaustMap,
        "expand": ops.expand,
        "buffer": ops.buffer,
        "bufferCount": ops.buffer_with_count,
        "bufferTime": bufferTime,
        "windowCount": ops.window_with_count,
        "windowTime": windowTime,
        "window": ops.window,
        "windowToggle": ops.window_toggle,
        "windowWhen": ops.window_when,
        "bufferWhen": ops.buffer_when,
        "bufferToggle": ops.buffer_toggle,
        "mergeScan": mergeScan,
        "mapTo": mapTo,
        "switchMapTo": switchMapTo,
        "mergeMapTo": mergeMapTo,
        "concatMapTo": concatMapTo,
        "pluck": ops.pluck,
        # Filtering
        "take": ops.take,
        "takeLast": ops.take_last,
        "takeWhile": ops.take_while,
        "takeUntil": ops.take_until,
        "skip": ops.skip,
        "skipLast": ops.skip_last,
        "skipWhile": ops.skip_while,
        "skipUntil": ops.skip_until,
        "first": ops.first,
        "last": ops.last,
        "elementAt": ops.element_at,
        "find": find,
        "findIndex": findIndex,
        "debounceTime": debounceTime,
        "throttleTime": throttleTime,
        "sampleTime": sampleTime,
        "audit": audit,
        "auditTime": auditTime,
        "sample": ops.sample,
        "ignoreElements": ops.ignore_elements,
        "distinct": ops.distinct,
        "distinctUntilChanged": distinctUntilChanged,
        "distinctUntilKeyChanged": distinctUntilKeyChanged,
        "single": ops.single,
        # Combination
        "concatWith": ops.concat,
        "mergeWith": ops.merge,
        "zipWith": ops.zip,
        "combineLatestWith": ops.combine_latest,
        "raceWith": raceWith,
        "withLatestFrom": ops.with_latest_from,
        "mergeAll": ops.merge_all,
        "concatAll": lambda: ops.merge(max_concurrent=1),
        "switchAll": ops.switch_latest,
        "combineLatestAll": combineLatestAll,
        "zipAll": zipAll,
        "exhaustAll": ops.exclusive,
        "startWith": ops.start_with,
        "endWith": endWith,
        # Utility
        "tap": tap,
        "delay": delay,
        "delayWhen": delayWhen,
        "timeout": timeout,
        "finalize": ops.finally_action,
        "repeat": ops.repeat,
        "retry": ops.retry,
        "toArray": ops.to_list,
        "materialize": ops.materialize,
        "dematerialize": ops.dematerialize,
        "timestamp": ops.timestamp,
        "observeOn": ops.observe_on,
        "subscribeOn": ops.subscribe_on,
        # Conditional and error handling
        "defaultIfEmpty": ops.default_if_empty,
        "every": ops.all,
        "isEmpty": ops.is_empty,
        "catchError": catchError,
        "retryWhen": retryWhen,
        "throwIfEmpty": throwIfEmpty,
        "count": ops.count,
        # Multicasting
        "share": ops.share,
        "shareReplay": shareReplay,
        "refCount": ops.ref_count,
        "connect": connect,
        "connectable": connectable,
        # Timers
        "setTimeout": setTimeout,
        "clearTimeout": clearTimeout,
    }
