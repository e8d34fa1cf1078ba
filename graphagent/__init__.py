import asyncio, copy, contextvars, inspect, logging, os, time, traceback, uuid, warnings
from collections.abc import Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Tuple

__version__ = "0.1.0"

DEFAULT_OUTCOME = "default"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_BACKOFF_STRATEGY = "exponential"
DEFAULT_BATCH_CONCURRENCY = 5
DEFAULT_NODE_PREFIX = "node"
DEFAULT_FORK_OUTCOME = "forked"
DEFAULT_JOIN_OUTCOME = "joined"
LOG_LEVEL_ENV_VAR = "GRAPHAGENT_LOG_LEVEL"

BackoffStrategy = Literal['linear', 'exponential', 'fixed']
BACKOFF_STRATEGIES = ('linear', 'exponential', 'fixed')

# --- Errors ---

class GraphAgentError(Exception):
    """Base class for errors raised by the engine itself."""

class ExecutionError(GraphAgentError):
    """Raised by the engine on behalf of a failed node execution."""
    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id

class RetryExhausted(ExecutionError):
    """Every attempt allowed by the retry policy failed with a retryable error."""
    def __init__(self, node_id: Optional[str], attempts: int, last_error: Exception):
        super().__init__(f"Exhausted all retry attempts ({attempts}) for {node_id}: {last_error}", node_id)
        self.attempts = attempts
        self.last_error = last_error

class NonRetryableError(GraphAgentError):
    """Raise from a node body to fail immediately, whatever the retry predicate says."""

class AsyncBatchError(GraphAgentError):
    """The async batch machinery failed outside of per-item isolation."""

class GraphError(GraphAgentError):
    """Invalid graph wiring or traversal."""

# --- Logging ---

class LogLevel(IntEnum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    NONE = 4

DEFAULT_LOG_LEVEL = LogLevel.ERROR

_LEVEL_ALIASES = {"WARNING": LogLevel.WARN, "OFF": LogLevel.NONE}
_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

def parse_log_level(value) -> LogLevel:
    """Parse a level name ("debug", "WARN", "warning") or number into a LogLevel.

    Raises:
        ValueError: If the value names no known level.
    """
    if isinstance(value, LogLevel):
        return value
    if isinstance(value, int):
        return LogLevel(value)
    text = str(value).strip().upper()
    if text.isdigit():
        return LogLevel(int(text))
    if text in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[text]
    try:
        return LogLevel[text]
    except KeyError:
        raise ValueError(f"Unknown log level: {value!r}") from None

def log_level_from_env(var: str = LOG_LEVEL_ENV_VAR, default: LogLevel = DEFAULT_LOG_LEVEL) -> LogLevel:
    """Read the minimum log level from an environment variable, falling back to default when unset."""
    raw = os.environ.get(var)
    if raw is None or not raw.strip():
        return default
    return parse_log_level(raw)

class LogSink(Protocol):
    def log(self, level: LogLevel, message: str, data: Any = None) -> None: ...

class NullSink:
    """Discards every message. Installed when nobody asked for logging."""
    def log(self, level, message, data=None): pass

class LoggingSink:
    """Forwards engine messages to a standard library logger.

    Messages below ``level`` are dropped before they reach the logger, so the
    engine's own threshold and the logging configuration both apply.

    Usage:
        sink = LoggingSink.from_env()          # reads GRAPHAGENT_LOG_LEVEL once
        executor = Executor(sink=sink)
    """
    def __init__(self, logger: Optional[logging.Logger] = None, level=DEFAULT_LOG_LEVEL):
        self.logger = logger or logging.getLogger("graphagent")
        self.level = parse_log_level(level)

    @classmethod
    def from_env(cls, logger: Optional[logging.Logger] = None, var: str = LOG_LEVEL_ENV_VAR) -> "LoggingSink":
        return cls(logger, log_level_from_env(var))

    def log(self, level, message, data=None):
        level = parse_log_level(level)
        if level >= LogLevel.NONE or level < self.level:
            return
        text = message if data is None else f"{message} | data={data}"
        self.logger.log(_STDLIB_LEVELS[level], text, extra={"data": data})

class RecordingSink:
    """Keeps every message in memory as (level, message, data) tuples."""
    def __init__(self, level=LogLevel.DEBUG):
        self.level = parse_log_level(level)
        self.records: List[Tuple[LogLevel, str, Any]] = []

    def log(self, level, message, data=None):
        level = parse_log_level(level)
        if level < LogLevel.NONE and level >= self.level:
            self.records.append((level, message, data))

    def messages(self, level: Optional[LogLevel] = None) -> List[str]:
        return [m for lvl, m, _ in self.records if level is None or lvl == level]

    def clear(self):
        self.records.clear()

# --- Tracing ---

class TraceEventType(Enum):
    NODE_START = "node_start"
    NODE_PREPARE = "node_prepare"
    NODE_EXECUTE = "node_execute"
    NODE_FINALIZE = "node_finalize"
    NODE_END = "node_end"
    NODE_ERROR = "node_error"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    FORK = "fork"
    JOIN = "join"
    BATCH_ITEM_ERROR = "batch_item_error"
    TRANSITION = "transition"

_LIGHTWEIGHT_KEYS = ('run_id', 'outcome', 'attempt', 'max_attempts', 'wait_ms', 'error', 'type', 'from_node', 'to_node',
                     'branches', 'contexts', 'item_key', 'prepare_time', 'execute_time', 'finalize_time')

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_id: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        details = "".join(f" {k}={v}" for k, v in (self.data or {}).items())
        return f"<{self.event_type.value} {self.node_id} @{self.timestamp:.4f}{details}>"

@dataclass
class NodeTiming:
    """Phase durations of a single node execution.

    Attributes:
        node_id: Id of the node that ran.
        prepare_time: Seconds spent in prepare. None if the phase did not complete.
        execute_time: Seconds spent in execute, retries and backoff waits included.
        finalize_time: Seconds spent in finalize.
        total_time: Seconds from NODE_START to NODE_END. None if the node failed.
    """
    node_id: str
    prepare_time: Optional[float] = None
    execute_time: Optional[float] = None
    finalize_time: Optional[float] = None
    total_time: Optional[float] = None

class ExecutionTracer:
    """Lightweight recorder of what the engine did while running a workflow.

    Usage:
        tracer = ExecutionTracer()
        Executor(tracer=tracer).execute(pipeline, context)
        tracer.print_summary()

    Or, without an executor:
        with use_tracer(tracer):
            node.execute(context)
    """
    def __init__(self, capture_data: bool = False, max_data_size: int = 1000):
        """
        Args:
            capture_data: If True, phase results are recorded as truncated reprs.
            max_data_size: Maximum repr length kept when capture_data is on.
        """
        self.events: List[TraceEvent] = []
        self.capture_data = capture_data
        self.max_data_size = max_data_size

    def _truncate(self, data: Any) -> Any:
        if data is None:
            return None
        s = repr(data)
        if len(s) > self.max_data_size:
            return s[:self.max_data_size] + "...[truncated]"
        return s

    def record(self, event_type: TraceEventType, node_id: str, data: Optional[Dict[str, Any]] = None):
        """Record a trace event."""
        captured = None
        if data and self.capture_data:
            captured = {k: (v if k in _LIGHTWEIGHT_KEYS else self._truncate(v)) for k, v in data.items()}
        elif data:
            captured = {k: v for k, v in data.items() if k in _LIGHTWEIGHT_KEYS} or None
        self.events.append(TraceEvent(event_type, node_id, time.time(), captured))

    def get_execution_order(self) -> List[str]:
        """Ids of the nodes that started, in order."""
        return [e.node_id for e in self.events if e.event_type == TraceEventType.NODE_START]

    def get_transitions(self) -> List[Dict[str, str]]:
        return [
            {"from": e.data.get("from_node"), "to": e.data.get("to_node"), "outcome": e.data.get("outcome")}
            for e in self.events if e.event_type == TraceEventType.TRANSITION and e.data
        ]

    def get_retries(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_id, **e.data} for e in self.events if e.event_type == TraceEventType.RETRY_WAIT and e.data]

    def get_errors(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_id, **(e.data or {})} for e in self.events if e.event_type == TraceEventType.NODE_ERROR]

    def get_batch_item_errors(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_id, **(e.data or {})} for e in self.events if e.event_type == TraceEventType.BATCH_ITEM_ERROR]

    def get_fallbacks(self) -> List[Dict[str, Any]]:
        """Failures recovered by an executor fallback or a graph error handler."""
        return [{"node": e.node_id, **(e.data or {})} for e in self.events if e.event_type == TraceEventType.FALLBACK]

    def get_duration(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1].timestamp - self.events[0].timestamp

    def get_node_timings(self) -> List[NodeTiming]:
        """Pair NODE_START with NODE_END/NODE_ERROR per run, in completion order.

        Runs are told apart by the ``run_id`` the node stamps on its events, so
        one node executing concurrently for several batch items or branches
        yields one timing per execution.
        """
        timings = []
        open_runs: Dict[Tuple[str, Any], Dict[str, Any]] = {}
        phase_keys = {
            TraceEventType.NODE_PREPARE: "prepare_time",
            TraceEventType.NODE_EXECUTE: "execute_time",
            TraceEventType.NODE_FINALIZE: "finalize_time",
        }
        for event in self.events:
            run = (event.node_id, (event.data or {}).get("run_id"))
            if event.event_type == TraceEventType.NODE_START:
                open_runs[run] = {"start": event.timestamp}
            elif event.event_type in phase_keys and run in open_runs:
                key = phase_keys[event.event_type]
                if event.data and key in event.data:
                    open_runs[run][key] = event.data[key]
            elif event.event_type in (TraceEventType.NODE_END, TraceEventType.NODE_ERROR) and run in open_runs:
                started = open_runs.pop(run)
                total = event.timestamp - started["start"] if event.event_type == TraceEventType.NODE_END else None
                timings.append(NodeTiming(event.node_id, started.get("prepare_time"), started.get("execute_time"),
                                          started.get("finalize_time"), total))
        return timings

    def print_summary(self):
        """Print a human-readable summary of the trace."""
        if not self.events:
            print("No trace events recorded.")
            return
        counts: Dict[str, int] = {}
        for e in self.events:
            counts[e.event_type.value] = counts.get(e.event_type.value, 0) + 1
        print(f"\n{'='*60}")
        print("GRAPHAGENT TRACE")
        print(f"{'='*60}")
        print(f"Duration: {self.get_duration():.4f}s over {len(self.events)} events")
        print(f"Nodes run: {' -> '.join(self.get_execution_order()) or '-'}")
        forks = [e.data.get("branches", 0) for e in self.events if e.event_type == TraceEventType.FORK and e.data]
        joins = [e.data.get("contexts", 0) for e in self.events if e.event_type == TraceEventType.JOIN and e.data]
        if forks or joins:
            print(f"Forks: {len(forks)} ({sum(forks)} branches), joins: {len(joins)} ({sum(joins)} contexts)")
        transitions = self.get_transitions()
        if transitions:
            print("\nGraph transitions:")
            for t in transitions:
                print(f"  {t['from']} --[{t['outcome']}]--> {t['to']}")
        retries = self.get_retries()
        if retries:
            print("\nRetries:")
            for r in retries:
                print(f"  {r['node']}: attempt {r.get('attempt', '?')}/{r.get('max_attempts', '?')} failed ({r.get('error')}), waited {r.get('wait_ms', 0)}ms")
        for title, rows in (("Node errors", self.get_errors()), ("Recovered by fallback", self.get_fallbacks())):
            if rows:
                print(f"\n{title}:")
                for r in rows:
                    print(f"  {r['node']}: {r.get('error')}")
        item_errors = self.get_batch_item_errors()
        if item_errors:
            print(f"\nBatch item failures ({len(item_errors)}):")
            for r in item_errors:
                print(f"  item {r.get('item_key')} in {r['node']}: {r.get('error')}")
        timings = self.get_node_timings()
        if timings:
            print("\nNode timings (ms):")
            for t in timings:
                total = f"{t.total_time * 1000:.2f}" if t.total_time is not None else "failed"
                print(f"  {t.node_id:<20} total={total}")
        print(f"\nEvent counts: {', '.join(f'{k}={v}' for k, v in counts.items())}")
        print(f"{'='*60}\n")

    def to_dict(self) -> Dict[str, Any]:
        """Export the trace as plain data."""
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "errors": self.get_errors(),
            "batch_item_errors": self.get_batch_item_errors(),
            "fallbacks": self.get_fallbacks(),
            "node_timings": [
                {"node_id": t.node_id, "prepare_time": t.prepare_time, "execute_time": t.execute_time,
                 "finalize_time": t.finalize_time, "total_time": t.total_time}
                for t in self.get_node_timings()
            ],
            "events": [
                {"type": e.event_type.value, "node": e.node_id, "timestamp": e.timestamp, "data": e.data}
                for e in self.events
            ],
        }

    def clear(self):
        self.events.clear()

# Sink and tracer are carried per task so concurrent branches each see the caller's ones
_current_sink: contextvars.ContextVar[Any] = contextvars.ContextVar('_current_sink', default=NullSink())
_current_tracer: contextvars.ContextVar[Optional[ExecutionTracer]] = contextvars.ContextVar('_current_tracer', default=None)

def _get_current_tracer() -> Optional[ExecutionTracer]:
    return _current_tracer.get()

def _log(level, message, data=None):
    _current_sink.get().log(level, message, data)

def _log_error(message, exc):
    _log(LogLevel.ERROR, f"{message}: {exc}", {
        "type": type(exc).__name__,
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    })

@contextmanager
def use_sink(sink):
    """Install a log sink for the enclosed block."""
    token = _current_sink.set(sink)
    try:
        yield sink
    finally:
        _current_sink.reset(token)

@contextmanager
def use_tracer(tracer: Optional[ExecutionTracer]):
    """Install a tracer for the enclosed block."""
    token = _current_tracer.set(tracer)
    try:
        yield tracer
    finally:
        _current_tracer.reset(token)

def _step_name(step) -> str:
    return getattr(step, "id", None) or type(step).__name__

# --- Context utilities ---

def generate_id(prefix: str = DEFAULT_NODE_PREFIX) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"

def deep_copy(value):
    return copy.deepcopy(value)

def deep_merge(*contexts) -> Dict[str, Any]:
    """Merge contexts left to right into a fresh dict. Nested dicts merge, anything else is replaced."""
    merged: Dict[str, Any] = {}
    for ctx in contexts:
        _merge_into(merged, ctx)
    return merged

def _merge_into(target, source):
    for k, v in source.items():
        if isinstance(target.get(k), dict) and isinstance(v, Mapping):
            _merge_into(target[k], v)
        else:
            target[k] = copy.deepcopy(v)

def chunk(items, size: int) -> List[list]:
    if size < 1: raise ValueError("chunk size must be at least 1")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]

async def execute_parallel(items, fn, concurrency: Optional[int] = None) -> list:
    """Await fn(item) for every item, at most ``concurrency`` at a time.

    Items are scheduled in consecutive chunks; a chunk has fully settled before
    the next one starts. Results keep the order of ``items``.
    """
    items = list(items)
    if concurrency is None:
        return list(await asyncio.gather(*(fn(i) for i in items)))
    results = []
    for part in chunk(items, concurrency):
        results.extend(await asyncio.gather(*(fn(i) for i in part)))
    return results

def set_in_context(context, key: str, value) -> Dict[str, Any]:
    return {**context, key: value}

def get_from_context(context, key: str, default=None):
    return context[key] if isinstance(context, Mapping) and key in context else default

async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value

def _outcome_of(context) -> str:
    outcome = get_from_context(context, "outcome")
    return str(outcome) if outcome is not None else DEFAULT_OUTCOME

# --- Retry ---

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_ms: int = DEFAULT_RETRY_DELAY_MS
    backoff: BackoffStrategy = DEFAULT_BACKOFF_STRATEGY
    retry_predicate: Optional[Callable[[Exception], bool]] = None

    def __post_init__(self):
        if self.max_attempts < 1: raise ValueError("max_attempts must be at least 1")
        if self.delay_ms < 0: raise ValueError("delay_ms must not be negative")
        if self.backoff not in BACKOFF_STRATEGIES: raise ValueError(f"backoff must be one of {list(BACKOFF_STRATEGIES)}, got '{self.backoff}'")

    def should_retry(self, error: Exception) -> bool:
        if isinstance(error, NonRetryableError): return False
        return self.retry_predicate is None or bool(self.retry_predicate(error))

def retry_policy(max_attempts=DEFAULT_MAX_ATTEMPTS, delay_ms=DEFAULT_RETRY_DELAY_MS, backoff=DEFAULT_BACKOFF_STRATEGY, retry_predicate=None) -> RetryPolicy:
    return RetryPolicy(max_attempts, delay_ms, backoff, retry_predicate)

def backoff_delay(attempt: int, delay_ms: int, strategy: BackoffStrategy) -> int:
    """Milliseconds to wait after the ``attempt``-th failure (1-based)."""
    if strategy == 'linear': return delay_ms * attempt
    if strategy == 'exponential': return delay_ms * 2 ** (attempt - 1)
    return delay_ms

def _on_failed_attempt(policy, node_id, i, error, tracer):
    # Returns the wait in ms before the next attempt, or raises when retrying is over
    if not policy.should_retry(error): raise error
    if i == policy.max_attempts - 1: raise RetryExhausted(node_id, policy.max_attempts, error) from error
    wait_ms = backoff_delay(i + 1, policy.delay_ms, policy.backoff)
    _log(LogLevel.INFO, f"Retrying node {node_id}, attempt {i + 2}/{policy.max_attempts}", {"error": str(error), "wait_ms": wait_ms})
    if tracer: tracer.record(TraceEventType.RETRY_WAIT, node_id, {"attempt": i + 1, "max_attempts": policy.max_attempts, "wait_ms": wait_ms, "error": str(error)})
    return wait_ms

def _call_with_retry(fn, arg, policy: RetryPolicy, node_id: str):
    tracer = _get_current_tracer()
    for i in range(policy.max_attempts):
        if tracer and policy.max_attempts > 1: tracer.record(TraceEventType.RETRY_ATTEMPT, node_id, {"attempt": i + 1, "max_attempts": policy.max_attempts})
        try: return fn(arg)
        except Exception as e:
            wait_ms = _on_failed_attempt(policy, node_id, i, e, tracer)
            if wait_ms > 0: time.sleep(wait_ms / 1000)

async def _call_with_retry_async(fn, arg, policy: RetryPolicy, node_id: str):
    tracer = _get_current_tracer()
    for i in range(policy.max_attempts):
        if tracer and policy.max_attempts > 1: tracer.record(TraceEventType.RETRY_ATTEMPT, node_id, {"attempt": i + 1, "max_attempts": policy.max_attempts})
        try: return await _maybe_await(fn(arg))
        except Exception as e:
            wait_ms = _on_failed_attempt(policy, node_id, i, e, tracer)
            if wait_ms > 0: await asyncio.sleep(wait_ms / 1000)

# --- Nodes ---

def _identity(value): return value
def _default_finalize(context, prepare_result, execute_result): return DEFAULT_OUTCOME

def _changed(base, key, value) -> bool:
    if key not in base: return True
    old = base[key]
    if old is value: return False
    try:
        return bool(old != value)
    except Exception:
        # Values without a usable truth for != (array-likes) count as changed
        return True

def _merge_prepare_result(target, prepare_result, baseline):
    """Copy top-level keys that prepare changed (relative to baseline) onto target."""
    if prepare_result is None or prepare_result is target:
        return
    if not isinstance(prepare_result, Mapping) or not isinstance(target, MutableMapping):
        if not isinstance(prepare_result, Mapping):
            _log(LogLevel.WARN, f"Attempted to merge invalid prepare result: {type(prepare_result).__name__}")
        return
    base = baseline if isinstance(baseline, Mapping) else {}
    for k, v in prepare_result.items():
        if _changed(base, k, v):
            target[k] = v

def _trace_phase(tracer, event_type, node_id, run_id, phase, start, result):
    if tracer:
        data = {"run_id": run_id, f"{phase}_time": time.time() - start}
        if tracer.capture_data: data[f"{phase}_result"] = result
        tracer.record(event_type, node_id, data)

def _node_started(node_id, label, tracer) -> str:
    run_id = uuid.uuid4().hex[:8]
    _log(LogLevel.DEBUG, f"Executing {label} {node_id}")
    if tracer: tracer.record(TraceEventType.NODE_START, node_id, {"run_id": run_id})
    return run_id

def _node_failed(node_id, run_id, exc, tracer):
    _log_error(f"Error executing node {node_id}", exc)
    if tracer: tracer.record(TraceEventType.NODE_ERROR, node_id, {"run_id": run_id, "error": str(exc), "type": type(exc).__name__})

def _node_finished(node_id, run_id, outcome, tracer):
    _log(LogLevel.DEBUG, f"Node {node_id} execution complete with outcome: {outcome}")
    if tracer: tracer.record(TraceEventType.NODE_END, node_id, {"run_id": run_id, "outcome": outcome})

@dataclass(frozen=True)
class Node:
    prepare_fn: Callable = _identity
    execute_fn: Callable = _identity
    finalize_fn: Callable = _default_finalize
    retry_policy: Optional[RetryPolicy] = None
    id: str = field(default_factory=generate_id)

    def with_prepare(self, fn): return replace(self, prepare_fn=fn, id=generate_id())
    def with_execute_logic(self, fn): return replace(self, execute_fn=fn, id=generate_id())
    def with_finalize(self, fn): return replace(self, finalize_fn=fn, id=generate_id())
    def with_retry(self, policy): return replace(self, retry_policy=policy, id=generate_id())

    def execute(self, context):
        context, _ = self._run(context)
        return context

    def _run(self, context):
        # Returns (context, outcome) so graphs can route on the outcome
        tracer = _get_current_tracer()
        run_id = _node_started(self.id, "node", tracer)
        working = deep_copy(context)
        try:
            start = time.time()
            p = self.prepare_fn(deep_copy(working))
            _trace_phase(tracer, TraceEventType.NODE_PREPARE, self.id, run_id, "prepare", start, p)
            start = time.time()
            e = self.execute_fn(p) if self.retry_policy is None else _call_with_retry(self.execute_fn, p, self.retry_policy, self.id)
            _trace_phase(tracer, TraceEventType.NODE_EXECUTE, self.id, run_id, "execute", start, e)
            start = time.time()
            outcome = self.finalize_fn(working, p, e)
            _trace_phase(tracer, TraceEventType.NODE_FINALIZE, self.id, run_id, "finalize", start, outcome)
        except Exception as exc:
            _node_failed(self.id, run_id, exc, tracer)
            raise
        _merge_prepare_result(working, p, context)
        _node_finished(self.id, run_id, outcome, tracer)
        return working, outcome

    async def _run_async(self, context):
        # Used by async containers: phases may be sync or async, retry waits are awaited
        tracer = _get_current_tracer()
        run_id = _node_started(self.id, "async node" if isinstance(self, AsyncNode) else "node", tracer)
        working = deep_copy(context)
        try:
            start = time.time()
            p = await _maybe_await(self.prepare_fn(deep_copy(working)))
            _trace_phase(tracer, TraceEventType.NODE_PREPARE, self.id, run_id, "prepare", start, p)
            start = time.time()
            e = await (_maybe_await(self.execute_fn(p)) if self.retry_policy is None else _call_with_retry_async(self.execute_fn, p, self.retry_policy, self.id))
            _trace_phase(tracer, TraceEventType.NODE_EXECUTE, self.id, run_id, "execute", start, e)
            start = time.time()
            outcome = await _maybe_await(self.finalize_fn(working, p, e))
            _trace_phase(tracer, TraceEventType.NODE_FINALIZE, self.id, run_id, "finalize", start, outcome)
        except Exception as exc:
            _node_failed(self.id, run_id, exc, tracer)
            raise
        _merge_prepare_result(working, p, context)
        _node_finished(self.id, run_id, outcome, tracer)
        return working, outcome

class AsyncNode(Node):
    async def execute(self, context):
        context, _ = await self._run_async(context)
        return context

    def _run(self, context): raise RuntimeError("Use an async container (pipe_async, fork_async, AsyncExecutor, ...) to run an AsyncNode.")

def create_node() -> Node: return Node()
def create_async_node() -> AsyncNode: return AsyncNode()

def _is_async_step(step) -> bool:
    return isinstance(step, AsyncNode) or inspect.iscoroutinefunction(getattr(step, "execute", None))

def _require_sync(steps, hint):
    for step in steps:
        if _is_async_step(step): raise TypeError(f"{_step_name(step)} is asynchronous; use {hint} instead.")
        if not callable(getattr(step, "execute", None)): raise TypeError(f"{step!r} has no execute() method")

def _require_steps(steps):
    for step in steps:
        if not callable(getattr(step, "execute", None)): raise TypeError(f"{step!r} has no execute() method")

async def _execute_async(step, context):
    # Nodes and graphs go through _run_async so sync retry waits do not block the loop
    if isinstance(step, (Node, Graph)):
        context, _ = await step._run_async(context)
        return context
    return await _maybe_await(step.execute(context))

# --- Composition ---

@dataclass(frozen=True)
class Pipeline:
    steps: Tuple[Any, ...] = ()

    def __post_init__(self): _require_sync(self.steps, "pipe_async")
    def with_node(self, node): return replace(self, steps=self.steps + (node,))

    def execute(self, context):
        _log(LogLevel.INFO, f"Executing pipeline with {len(self.steps)} nodes")
        ctx = deep_copy(context)
        for step in self.steps: ctx = step.execute(ctx)
        return ctx

@dataclass(frozen=True)
class AsyncPipeline:
    steps: Tuple[Any, ...] = ()

    def __post_init__(self): _require_steps(self.steps)
    def with_node(self, node): return replace(self, steps=self.steps + (node,))

    async def execute(self, context):
        _log(LogLevel.INFO, f"Executing async pipeline with {len(self.steps)} nodes")
        ctx = deep_copy(context)
        for step in self.steps: ctx = await _execute_async(step, ctx)
        return ctx

def pipe(*nodes) -> Pipeline: return Pipeline(tuple(nodes))
def pipe_async(*nodes) -> AsyncPipeline: return AsyncPipeline(tuple(nodes))

def _forked(context):
    return [{**deep_copy(context), "outcome": DEFAULT_FORK_OUTCOME}]

@dataclass(frozen=True)
class Fork:
    branches: Tuple[Any, ...] = ()

    def __post_init__(self): _require_sync(self.branches, "fork_async")

    def execute(self, context) -> list:
        _log(LogLevel.INFO, f"Forking execution to {len(self.branches)} paths")
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.FORK, type(self).__name__, {"branches": len(self.branches)})
        if not self.branches: return _forked(context)
        return [branch.execute(deep_copy(context)) for branch in self.branches]

@dataclass(frozen=True)
class AsyncFork:
    branches: Tuple[Any, ...] = ()
    concurrency: Optional[int] = None

    def __post_init__(self):
        _require_steps(self.branches)
        if self.concurrency is not None and self.concurrency < 1: raise ValueError("concurrency must be at least 1")

    async def execute(self, context) -> list:
        _log(LogLevel.INFO, f"Async forking execution to {len(self.branches)} paths")
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.FORK, type(self).__name__, {"branches": len(self.branches)})
        if not self.branches: return _forked(context)
        return await execute_parallel(self.branches, lambda branch: _execute_async(branch, deep_copy(context)), self.concurrency)

def fork(*branches) -> Fork: return Fork(tuple(branches))
def fork_async(*branches, concurrency=None) -> AsyncFork: return AsyncFork(tuple(branches), concurrency)
parallel = fork
parallel_async = fork_async

def _default_join(contexts):
    merged = deep_merge(*contexts)
    merged["outcome"] = DEFAULT_JOIN_OUTCOME
    return merged

@dataclass(frozen=True)
class Join:
    join_fn: Callable = _default_join

    def with_join_fn(self, fn): return replace(self, join_fn=fn)

    def execute(self, contexts):
        contexts = list(contexts)
        _log(LogLevel.INFO, f"Joining {len(contexts)} execution paths")
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.JOIN, type(self).__name__, {"contexts": len(contexts)})
        return self.join_fn(contexts)

class AsyncJoin(Join):
    async def execute(self, contexts):
        contexts = list(contexts)
        _log(LogLevel.INFO, f"Async joining {len(contexts)} paths")
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.JOIN, type(self).__name__, {"contexts": len(contexts)})
        return await _maybe_await(self.join_fn(contexts))

def join(join_fn=None) -> Join: return Join(join_fn) if join_fn else Join()
def join_async(join_fn=None) -> AsyncJoin: return AsyncJoin(join_fn) if join_fn else AsyncJoin()

@dataclass(frozen=True)
class When:
    outcome: str
    target: Any
    condition: Optional[Callable] = None

    def __post_init__(self): _require_sync((self.target,), "when_async")
    def with_condition(self, fn): return replace(self, condition=fn)

    def _matches(self, context):
        if self.condition is not None: return self.condition(context)
        return get_from_context(context, "outcome") == self.outcome

    def execute(self, context):
        if self._matches(context):
            _log(LogLevel.DEBUG, f"Condition '{self.outcome}' matched, executing target node")
            return self.target.execute(context)
        _log(LogLevel.DEBUG, f"Condition '{self.outcome}' not matched, skipping target node")
        return context

class AsyncWhen(When):
    def __post_init__(self): _require_steps((self.target,))

    async def execute(self, context):
        matches = await _maybe_await(self._matches(context))
        _log(LogLevel.DEBUG, f"Condition '{self.outcome}' {'matched' if matches else 'not matched'}")
        return await _execute_async(self.target, context) if matches else context

def when(outcome, target) -> When: return When(outcome, target)
def when_async(outcome, target) -> AsyncWhen: return AsyncWhen(outcome, target)

# --- Batch ---

def batch_failure(error) -> Dict[str, Any]:
    """The data that stands in for the result of an item whose node raised."""
    return {"processed": False, "error": str(error)}

def is_batch_failure(result) -> bool:
    return isinstance(result, Mapping) and result.get("processed") is False and "error" in result

def _lookup(obj, name):
    if obj is None: return None
    if isinstance(obj, Mapping): return obj.get(name)
    return getattr(obj, name, None)

def result_key(item, result=None) -> str:
    """Correlation key for a batch result: result.key, result.id, result.item.id, item.id, item.key, else random."""
    if result is not None:
        key = _lookup(result, "key") or _lookup(result, "id") or _lookup(_lookup(result, "item"), "id")
        if key: return str(key)
    key = _lookup(item, "id") or _lookup(item, "key")
    if key: return str(key)
    return uuid.uuid4().hex[:9]

def _no_items(context): return []
def _collect_results(context, results): return {**context, "results": results}

def _keyed(pairs) -> list:
    # Later results with an already-seen key replace the earlier one in place
    results: Dict[str, Any] = {}
    for key, result in pairs: results[key] = result
    return list(results.values())

@dataclass(frozen=True)
class BatchProcessor:
    """Runs one node over every item selected from the context.

    A failing item never aborts the batch: its result becomes
    ``{"processed": False, "error": "<message>"}`` and the rest carry on.
    """
    node: Any
    concurrency: Optional[int] = DEFAULT_BATCH_CONCURRENCY
    items_selector: Callable = _no_items
    results_collector: Callable = _collect_results

    def __post_init__(self):
        if self.concurrency is not None and self.concurrency < 1: raise ValueError("concurrency must be at least 1")
        self._check_node()

    def _check_node(self): _require_sync((self.node,), "batch_async")

    def with_concurrency(self, concurrency): return replace(self, concurrency=concurrency)
    def with_items_selector(self, selector): return replace(self, items_selector=selector)
    def with_results_collector(self, collector): return replace(self, results_collector=collector)

    def _chunks(self, items):
        return chunk(items, self.concurrency) if self.concurrency and items else ([items] if items else [])

    def _item_failed(self, item, exc):
        _log_error("Error processing batch item", exc)
        key = result_key(item)
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.BATCH_ITEM_ERROR, _step_name(self.node), {"item_key": key, "error": str(exc)})
        return key, batch_failure(exc)

    def _process(self, item):
        try: result = self.node.execute(item)
        except Exception as exc: return self._item_failed(item, exc)
        return result_key(item, result), result

    def execute(self, context):
        items = list(self.items_selector(context) or [])
        _log(LogLevel.INFO, f"Batch processing {len(items)} items", {"concurrency": self.concurrency})
        pairs = [self._process(item) for part in self._chunks(items) for item in part]
        return self.results_collector(context, _keyed(pairs))

class AsyncBatchProcessor(BatchProcessor):
    """Async variant: items of a chunk run concurrently, chunks run one after another."""
    def _check_node(self): _require_steps((self.node,))

    async def _process_async(self, item):
        try: result = await _execute_async(self.node, item)
        except Exception as exc: return self._item_failed(item, exc)
        return result_key(item, result), result

    async def execute(self, context):
        try:
            items = list(await _maybe_await(self.items_selector(context)) or [])
            _log(LogLevel.INFO, f"Async batch processing {len(items)} items with concurrency {self.concurrency}")
            pairs = await execute_parallel(items, self._process_async, self.concurrency)
            return await _maybe_await(self.results_collector(context, _keyed(pairs)))
        except Exception as exc:
            _log_error("Error in async batch execution", exc)
            raise AsyncBatchError(f"Error in async batch execution: {exc}") from exc

def batch(node) -> BatchProcessor: return BatchProcessor(node)
def batch_async(node) -> AsyncBatchProcessor: return AsyncBatchProcessor(node)

# --- Graph ---

def _graph_id(step) -> str:
    return getattr(step, "id", None) or f"{type(step).__name__}_{id(step):x}"

def _run_step(step, context):
    if hasattr(step, "_run"): return step._run(context)
    context = step.execute(context)
    return context, _outcome_of(context)

async def _run_step_async(step, context):
    if hasattr(step, "_run_async"): return await step._run_async(context)
    context = await _execute_async(step, context)
    return context, _outcome_of(context)

@dataclass(frozen=True, eq=False)
class Graph:
    """Outcome-routed workflow: ``node id -> outcome -> next node id``.

    Traversal is a loop, not recursion, so cycles are fine. After each step the
    edge for its outcome is followed, falling back to the "default" edge; the
    graph ends when neither exists.

    A step with an error handler does not abort the graph when it raises: the
    handler's ``fn(error, context)`` result stands in for the step's result
    and routing continues on its ``"outcome"`` key.

    Usage:
        g = (graph(check)
             .connect(check, big, "large")
             .connect(check, small, "small")
             .connect(big, check, "loop")
             .with_error_handler(big, lambda exc, ctx: {**ctx, "outcome": "small"}))
        result = g.execute({"value": 10})
    """
    start: Any
    steps: Dict[str, Any] = field(default_factory=dict)
    edges: Dict[str, Dict[str, str]] = field(default_factory=dict)
    max_steps: Optional[int] = None
    error_handlers: Dict[str, Callable] = field(default_factory=dict)

    def _check(self, step): _require_sync((step,), "graph_async")

    def connect(self, src, dst, outcome=DEFAULT_OUTCOME):
        steps = dict(self.steps)
        for step in (src, dst):
            self._check(step)
            sid = _graph_id(step)
            if sid in steps and steps[sid] is not step: raise GraphError(f"Two different steps share the id '{sid}'")
            steps[sid] = step
        edges = {k: dict(v) for k, v in self.edges.items()}
        out = edges.setdefault(_graph_id(src), {})
        if outcome in out: warnings.warn(f"Overwriting edge for outcome '{outcome}' from {_graph_id(src)}")
        out[outcome] = _graph_id(dst)
        return replace(self, steps=steps, edges=edges)

    def with_max_steps(self, max_steps):
        if max_steps is not None and max_steps < 1: raise ValueError("max_steps must be at least 1")
        return replace(self, max_steps=max_steps)

    def with_error_handler(self, step, fn):
        sid = _graph_id(step)
        if self.steps.get(sid) is not step: raise GraphError(f"Unknown step '{sid}'; connect it before adding an error handler")
        return replace(self, error_handlers={**self.error_handlers, sid: fn})

    def get_next(self, step, outcome):
        out = self.edges.get(_graph_id(step), {})
        nid = out.get(outcome) or out.get(DEFAULT_OUTCOME)
        if nid is None and out: warnings.warn(f"Graph ends: '{outcome}' not found in {list(out)}")
        return self.steps.get(nid) if nid else None

    def _handler_for(self, step, exc, tracer):
        sid = _graph_id(step)
        handler = self.error_handlers.get(sid)
        if handler is not None:
            _log(LogLevel.WARN, f"Step {sid} failed, using its error handler", {"error": str(exc), "type": type(exc).__name__})
            if tracer: tracer.record(TraceEventType.FALLBACK, sid, {"error": str(exc)})
        return handler

    def _advance(self, curr, outcome, taken, tracer):
        nxt = self.get_next(curr, outcome)
        if nxt is not None:
            if self.max_steps is not None and taken >= self.max_steps: raise GraphError(f"Graph exceeded max_steps={self.max_steps}")
            _log(LogLevel.DEBUG, f"Transition {_graph_id(curr)} --[{outcome}]--> {_graph_id(nxt)}")
            if tracer: tracer.record(TraceEventType.TRANSITION, type(self).__name__, {"from_node": _graph_id(curr), "to_node": _graph_id(nxt), "outcome": outcome})
        return nxt

    def _run(self, context):
        if self.start is None: raise GraphError("Graph has no start node")
        tracer = _get_current_tracer()
        curr, ctx, outcome, taken = self.start, deep_copy(context), None, 0
        while curr is not None:
            try:
                ctx, outcome = _run_step(curr, ctx)
            except Exception as exc:
                handler = self._handler_for(curr, exc, tracer)
                if handler is None: raise
                ctx = handler(exc, deep_copy(ctx))
                outcome = _outcome_of(ctx)
            taken += 1
            curr = self._advance(curr, outcome, taken, tracer)
        return ctx, outcome

    async def _run_async(self, context):
        if self.start is None: raise GraphError("Graph has no start node")
        tracer = _get_current_tracer()
        curr, ctx, outcome, taken = self.start, deep_copy(context), None, 0
        while curr is not None:
            try:
                ctx, outcome = await _run_step_async(curr, ctx)
            except Exception as exc:
                handler = self._handler_for(curr, exc, tracer)
                if handler is None: raise
                ctx = await _maybe_await(handler(exc, deep_copy(ctx)))
                outcome = _outcome_of(ctx)
            taken += 1
            curr = self._advance(curr, outcome, taken, tracer)
        return ctx, outcome

    def execute(self, context):
        context, _ = self._run(context)
        return context

    def to_mermaid(self) -> str:
        lines = ["graph LR"]
        for src, out in self.edges.items():
            for outcome, dst in out.items():
                lines.append(f"    {src} --> {dst}" if outcome == DEFAULT_OUTCOME else f"    {src} -->|{outcome}| {dst}")
        return "\n".join(lines)

class AsyncGraph(Graph):
    def _check(self, step): _require_steps((step,))
    def _run(self, context): raise RuntimeError("Use execute() on an AsyncGraph.")

    async def execute(self, context):
        context, _ = await self._run_async(context)
        return context

def graph(start) -> Graph:
    g = Graph(start)
    g._check(start)
    return replace(g, steps={_graph_id(start): start})

def graph_async(start) -> AsyncGraph:
    _require_steps((start,))
    return AsyncGraph(start, {_graph_id(start): start})

# --- Executors ---

class Executor:
    """Runs a node on a copy of the context, optionally adding fallback, logging or progress.

    The sink and tracer given here are installed for the whole call, so nested
    pipelines, forks, batches and graphs report through them too. ``None``
    keeps whatever is already installed.
    """
    def __init__(self, sink=None, tracer: Optional[ExecutionTracer] = None):
        self.sink, self.tracer = sink, tracer

    @contextmanager
    def _scope(self):
        sink_token = _current_sink.set(self.sink) if self.sink is not None else None
        tracer_token = _current_tracer.set(self.tracer) if self.tracer is not None else None
        try:
            yield
        finally:
            if tracer_token is not None: _current_tracer.reset(tracer_token)
            if sink_token is not None: _current_sink.reset(sink_token)

    def _check(self, node): _require_sync((node,), "AsyncExecutor")

    def _fallback_started(self, node, exc):
        _log(LogLevel.WARN, "Execution failed, using fallback handler", {"error": str(exc), "type": type(exc).__name__})
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.FALLBACK, _step_name(node), {"error": str(exc)})

    def execute(self, node, context):
        self._check(node)
        with self._scope():
            return node.execute(deep_copy(context))

    def execute_with_fallback(self, node, context, fallback):
        self._check(node)
        with self._scope():
            try:
                return node.execute(deep_copy(context))
            except Exception as exc:
                self._fallback_started(node, exc)
                return fallback(exc, deep_copy(context))

    def execute_with_logging(self, node, context):
        self._check(node)
        with self._scope():
            _log(LogLevel.INFO, "Starting execution with logging", {"context_keys": _keys(context)})
            start = time.perf_counter()
            try:
                result = node.execute(deep_copy(context))
            except Exception as exc:
                _log(LogLevel.ERROR, f"Execution failed after {_elapsed_ms(start):.2f}ms", {"error": str(exc), "type": type(exc).__name__})
                raise
            _log(LogLevel.INFO, f"Execution completed in {_elapsed_ms(start):.2f}ms", {"result_keys": _keys(result)})
            return result

    def execute_with_progress(self, node, context, progress):
        self._check(node)
        with self._scope():
            progress(0, 1)
            result = node.execute(deep_copy(context))
            progress(1, 1)
            return result

class AsyncExecutor(Executor):
    def _check(self, node): _require_steps((node,))

    async def execute(self, node, context):
        self._check(node)
        with self._scope():
            return await _execute_async(node, deep_copy(context))

    async def execute_with_fallback(self, node, context, fallback):
        self._check(node)
        with self._scope():
            try:
                return await _execute_async(node, deep_copy(context))
            except Exception as exc:
                self._fallback_started(node, exc)
                return await _maybe_await(fallback(exc, deep_copy(context)))

    async def execute_with_logging(self, node, context):
        self._check(node)
        with self._scope():
            _log(LogLevel.INFO, "Starting async execution with logging", {"context_keys": _keys(context)})
            start = time.perf_counter()
            try:
                result = await _execute_async(node, deep_copy(context))
            except Exception as exc:
                _log(LogLevel.ERROR, f"Async execution failed after {_elapsed_ms(start):.2f}ms", {"error": str(exc), "type": type(exc).__name__})
                raise
            _log(LogLevel.INFO, f"Async execution completed in {_elapsed_ms(start):.2f}ms", {"result_keys": _keys(result)})
            return result

    async def execute_with_progress(self, node, context, progress):
        self._check(node)
        with self._scope():
            await _maybe_await(progress(0, 1))
            result = await _execute_async(node, deep_copy(context))
            await _maybe_await(progress(1, 1))
            return result

def _elapsed_ms(start): return (time.perf_counter() - start) * 1000
def _keys(value): return list(value) if isinstance(value, Mapping) else []

def create_executor(sink=None, tracer=None) -> Executor: return Executor(sink, tracer)
def create_async_executor(sink=None, tracer=None) -> AsyncExecutor: return AsyncExecutor(sink, tracer)
