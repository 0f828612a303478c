"""Heuristic subscription-leak detection over stream source text.

Pure pattern matching: nothing is executed. Patterns run through the
``regex`` library with a timeout so hostile input cannot stall the server.
Both ReactiveX-for-Python spellings (``dispose``, ``take_until``,
``on_completed``) and the camelCase catalog names are recognised.
"""

from dataclasses import dataclass, field

import regex as regex_lib

REGEX_TIMEOUT = 2  # seconds per pattern
LIFECYCLES = ("none", "asyncio", "qt")

SUBSCRIBE = regex_lib.compile(r"\.subscribe\s*\(")
DISPOSE = regex_lib.compile(r"\.dispose\s*\(\s*\)")
TAKE_UNTIL = regex_lib.compile(r"\b(?:take_until|takeUntil)\s*\(")
TAKE_WHILE = regex_lib.compile(r"\b(?:take_while|takeWhile)\s*\(")
TAKE = regex_lib.compile(r"\btake\s*\(")
FIRST = regex_lib.compile(r"\bfirst\s*\(")
INTERVAL = regex_lib.compile(r"\binterval\s*\(")
PERIODIC_TIMER = regex_lib.compile(r"\btimer\s*\([^,)]+,[^)]+\)")
SUBJECT = regex_lib.compile(r"\b(?:Subject|BehaviorSubject|ReplaySubject|AsyncSubject)\s*\(")
COMPLETE = regex_lib.compile(r"\.(?:on_completed|complete)\s*\(\s*\)")
REPLAY = regex_lib.compile(r"\b(?:replay|share_replay|shareReplay)\s*\(")
REF_COUNT = regex_lib.compile(r"\b(?:ref_count|refCount)\b")
EXTERNAL_SOURCE = regex_lib.compile(r"\b(?:from_callback|from_future|from_event|fromEvent)\s*\(")
COMPOSITE = regex_lib.compile(r"\bCompositeDisposable\s*\(")

# asyncio
TASK_CANCEL = regex_lib.compile(r"\bexcept\s+(?:asyncio\.)?CancelledError|\bfinally\s*:")
ASYNC_DEF = regex_lib.compile(r"\basync\s+def\b")
# Qt
QT_CLEANUP = regex_lib.compile(r"\b(?:closeEvent|destroyed\.connect|aboutToQuit)\b")


@dataclass
class LeakSource:
    type: str  # subscription | subject | operator
    description: str
    severity: str  # low | medium | high
    suggestion: str


@dataclass
class LeakReport:
    has_leak: bool = False
    sources: list[LeakSource] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _count(pattern, code: str) -> int:
    return len(pattern.findall(code, timeout=REGEX_TIMEOUT))


def _found(pattern, code: str) -> bool:
    return pattern.search(code, timeout=REGEX_TIMEOUT) is not None


def analyze_memory_leaks(code: str, lifecycle: str = "none") -> LeakReport:
    """Scan ``code`` for common subscription-management mistakes.

    Raises ValueError for an unknown lifecycle and TimeoutError if a pattern
    takes longer than REGEX_TIMEOUT.
    """
    if lifecycle not in LIFECYCLES:
        raise ValueError(f"Unknown lifecycle '{lifecycle}'. Use one of: {', '.join(LIFECYCLES)}")

    report = LeakReport()
    subscribes = _count(SUBSCRIBE, code)
    disposes = _count(DISPOSE, code)
    has_take_until = _found(TAKE_UNTIL, code)
    has_take_while = _found(TAKE_WHILE, code)
    has_take = _found(TAKE, code)
    has_first = _found(FIRST, code)
    has_composite = _found(COMPOSITE, code)

    if subscribes > disposes and not has_composite:
        report.has_leak = True
        report.sources.append(LeakSource(
            type="subscription",
            description=f"Found {subscribes} subscribe() calls but only {disposes} dispose() calls",
            severity="high",
            suggestion="Keep the disposables returned by subscribe() and dispose them on cleanup",
        ))

    if subscribes and not (has_take_until or has_take_while or has_take or has_first):
        report.has_leak = True
        report.sources.append(LeakSource(
            type="subscription",
            description="Subscriptions without completion operators (take_until, take, first)",
            severity="medium",
            suggestion="Use take_until with a stop Subject so subscriptions end with their owner",
        ))

    if (_found(INTERVAL, code) or _found(PERIODIC_TIMER, code)) and not (
        has_take or has_take_until or has_take_while
    ):
        report.has_leak = True
        report.sources.append(LeakSource(
            type="operator",
            description="Infinite interval/timer without limiting operators",
            severity="high",
            suggestion="Add take() or take_until() to limit emissions",
        ))

    subjects = _count(SUBJECT, code)
    completes = _count(COMPLETE, code)
    if subjects > completes:
        report.has_leak = True
        report.sources.append(LeakSource(
            type="subject",
            description=f"{subjects} Subject(s) created but only {completes} on_completed() calls",
            severity="medium",
            suggestion="Call on_completed() on Subjects during cleanup to release observers",
        ))

    if _found(REPLAY, code) and not _found(REF_COUNT, code):
        report.sources.append(LeakSource(
            type="operator",
            description="replay() without ref_count() keeps the source subscription alive",
            severity="low",
            suggestion="Follow replay(buffer_size=1) with ops.ref_count()",
        ))

    if _found(EXTERNAL_SOURCE, code) and not has_take_until:
        report.has_leak = True
        report.sources.append(LeakSource(
            type="operator",
            description="Callback/future/event sources register handlers that may never be removed",
            severity="high",
            suggestion="Use take_until() so handlers are released on cleanup",
        ))

    if lifecycle == "asyncio":
        if subscribes and _found(ASYNC_DEF, code) and not _found(TASK_CANCEL, code):
            report.recommendations.append(
                "Dispose subscriptions in a finally block so task cancellation releases them"
            )
        if subscribes and "AsyncIOScheduler" not in code:
            report.recommendations.append(
                "Subscribe with AsyncIOScheduler(loop) so emissions stay on the event loop"
            )
    elif lifecycle == "qt":
        if subscribes and not _found(QT_CLEANUP, code):
            report.recommendations.append(
                "Dispose subscriptions in closeEvent() or on the widget's destroyed signal"
            )

    if report.has_leak:
        report.recommendations.append(
            "Collect subscriptions in a CompositeDisposable and dispose it once"
        )
        report.recommendations.append(
            "Prefer operators that complete on their own (first, take, take_until)"
        )
        if subscribes > 3:
            report.recommendations.append(
                "With many subscriptions, consider combining streams with merge/combine_latest"
            )

    return report


CLEANUP_EXAMPLES = {
    "asyncio": '''
# asyncio task with guaranteed cleanup
async def watch(source):
    stop = Subject()
    loop = asyncio.get_running_loop()
    disposable = source.pipe(ops.take_until(stop)).subscribe(
        on_next=handle, scheduler=AsyncIOScheduler(loop)
    )
    try:
        await asyncio.Event().wait()
    finally:
        stop.on_next(None)
        stop.on_completed()
        disposable.dispose()
''',
    "qt": '''
# Qt widget disposing its subscriptions on close
class Panel(QWidget):
    def __init__(self, source):
        super().__init__()
        self._stop = Subject()
        self._disposables = CompositeDisposable()
        self._disposables.add(
            source.pipe(ops.take_until(self._stop)).subscribe(self.render)
        )

    def closeEvent(self, event):
        self._stop.on_next(None)
        self._stop.on_completed()
        self._disposables.dispose()
        super().closeEvent(event)
''',
    "none": '''
# Generic cleanup pattern
class StreamManager:
    def __init__(self):
        self._disposables = CompositeDisposable()

    def start(self, stream1, stream2):
        self._disposables.add(stream1.subscribe(print))
        self._disposables.add(stream2.subscribe(print))

    def close(self):
        self._disposables.dispose()
''',
}


def cleanup_example(lifecycle: str) -> str:
    return CLEANUP_EXAMPLES.get(lifecycle, CLEANUP_EXAMPLES["none"]).strip()
