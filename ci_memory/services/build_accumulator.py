"""Per-build completeness tracking

Every (job, build) gets an accumulator the first time one of its log events
arrives. The accumulator counts categories against the expected multiset and
flips to READY exactly once, either when every expected log is in or when
the terminating log has arrived together with the required minimum.

    ACCUMULATING -> READY -> DISPATCHING -> COMPLETE
    DISPATCHING -> FAILED (retries exhausted)
"""
import logging
import threading
from collections import Counter, OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Set

from ci_memory.core.config import Settings
from ci_memory.core.models import AccumulatorState, BuildKey, Completeness


logger = logging.getLogger(__name__)


def lookup_path(document: Optional[Mapping[str, Any]], path: str) -> Any:
    """Resolve a dotted path such as 'data.source' inside a nested dict"""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


class TerminalMarker(NamedTuple):
    """Identifies the final log of a build by category and a payload field"""
    category: str
    field: str
    value: Any

    def matches(self, category: str, payload: Optional[Mapping[str, Any]]) -> bool:
        return category == self.category and lookup_path(payload, self.field) == self.value


class CompletenessPolicy:
    """Expected log multiset for a build and the rules for calling it complete"""

    def __init__(self, expected: Mapping[str, int],
                 required: Optional[Mapping[str, int]] = None,
                 terminal: Optional[TerminalMarker] = None):
        if not expected or any(count <= 0 for count in expected.values()):
            raise ValueError("expected categories must be a non-empty map of positive counts")
        self.expected: Dict[str, int] = dict(expected)
        self.required: Dict[str, int] = dict(required or {})
        self.terminal = terminal

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletenessPolicy":
        terminal = None
        if settings.terminal_category:
            terminal = TerminalMarker(settings.terminal_category,
                                      settings.terminal_field,
                                      settings.terminal_value)
        return cls(settings.expected_categories, settings.required_categories, terminal)

    @property
    def expected_total(self) -> int:
        return sum(self.expected.values())

    def limit_for(self, category: str) -> int:
        return self.expected.get(category, 0)

    def completion_reason(self, received: Mapping[str, int], terminal_seen: bool) -> Optional[str]:
        if sum(received.values()) >= self.expected_total:
            return "all expected logs received"
        if terminal_seen and all(received.get(c, 0) >= n for c, n in self.required.items()):
            return "terminal log received"
        return None


@dataclass(frozen=True)
class AccumulatorSnapshot:
    key: BuildKey
    state: AccumulatorState
    received: Dict[str, int]
    received_total: int
    expected_total: int
    terminal_seen: bool
    first_seen_at: datetime
    last_event_at: datetime
    ready_at: Optional[datetime]
    finished_at: Optional[datetime]
    last_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.key.conversation_id,
            "build_number": self.key.build_number,
            "state": self.state.value,
            "received": self.received,
            "received_total": self.received_total,
            "expected_total": self.expected_total,
            "terminal_seen": self.terminal_seen,
            "first_seen_at": self.first_seen_at.isoformat(),
            "last_event_at": self.last_event_at.isoformat(),
            "ready_at": self.ready_at.isoformat() if self.ready_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "last_error": self.last_error,
        }


@dataclass
class _Accumulator:
    key: BuildKey
    first_seen_at: datetime
    last_event_at: datetime
    state: AccumulatorState = AccumulatorState.ACCUMULATING
    received: Counter = field(default_factory=Counter)
    fingerprints: Set[str] = field(default_factory=set)
    terminal_seen: bool = False
    ready_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class BuildAccumulator:
    """Registry of accumulators, one critical section per build key"""

    def __init__(self, policy: CompletenessPolicy,
                 stale_after: timedelta = timedelta(minutes=15),
                 retired_limit: int = 10000,
                 clock: Optional[Callable[[], datetime]] = None):
        self.policy = policy
        self.stale_after = stale_after
        self.retired_limit = retired_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: Dict[BuildKey, _Accumulator] = {}
        # terminal builds, oldest first; keeps late duplicates from reopening a build
        self._retired: "OrderedDict[BuildKey, _Accumulator]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "BuildAccumulator":
        return cls(CompletenessPolicy.from_settings(settings),
                   stale_after=timedelta(minutes=settings.accumulator_stale_minutes),
                   retired_limit=settings.retired_accumulator_limit)

    def _acquire(self, key: BuildKey) -> _Accumulator:
        with self._lock:
            acc = self._active.get(key) or self._retired.get(key)
            if acc is None:
                now = self._clock()
                acc = _Accumulator(key=key, first_seen_at=now, last_event_at=now)
                self._active[key] = acc
                logger.debug(f"Opened accumulator for {key}")
            return acc

    def _find(self, key: BuildKey) -> Optional[_Accumulator]:
        with self._lock:
            return self._active.get(key) or self._retired.get(key)

    @contextmanager
    def key_lock(self, conversation_id: str, build_number: int) -> Iterator[None]:
        """Hold the build's critical section across several operations"""
        acc = self._acquire(BuildKey(conversation_id, build_number))
        with acc.lock:
            yield

    def record(self, conversation_id: str, build_number: int, category: str,
               fingerprint: Optional[str] = None,
               payload: Optional[Mapping[str, Any]] = None) -> Completeness:
        """Register one log event; `became_ready` is True for exactly one call per build"""
        key = BuildKey(conversation_id, build_number)
        acc = self._acquire(key)
        with acc.lock:
            acc.last_event_at = self._clock()
            if acc.state != AccumulatorState.ACCUMULATING:
                logger.debug(f"{key} is {acc.state.value}, {category} kept as context only")
                return self._completeness(acc, became_ready=False, counted=False)

            counted = False
            if fingerprint and fingerprint in acc.fingerprints:
                logger.debug(f"Duplicate event {fingerprint} for {key} ignored")
            else:
                if fingerprint:
                    acc.fingerprints.add(fingerprint)
                limit = self.policy.limit_for(category)
                if acc.received[category] < limit:
                    acc.received[category] += 1
                    counted = True
                elif limit:
                    logger.debug(f"{category} for {key} already at {limit}, not counted again")
                if self.policy.terminal and self.policy.terminal.matches(category, payload):
                    acc.terminal_seen = True

            reason = self.policy.completion_reason(acc.received, acc.terminal_seen)
            if reason is None:
                return self._completeness(acc, became_ready=False, counted=counted)

            acc.state = AccumulatorState.READY
            acc.ready_at = acc.last_event_at
            logger.info(f"✅ Build {key} READY ({reason}, "
                        f"{sum(acc.received.values())}/{self.policy.expected_total} logs)")
            return self._completeness(acc, became_ready=True, counted=counted)

    def claim(self, key: BuildKey) -> bool:
        """READY -> DISPATCHING. Only one caller ever wins."""
        return self._transition(key, AccumulatorState.READY, AccumulatorState.DISPATCHING)

    def release(self, key: BuildKey) -> bool:
        """DISPATCHING -> READY, for work the analysis pool could not take"""
        return self._transition(key, AccumulatorState.DISPATCHING, AccumulatorState.READY)

    def complete(self, key: BuildKey) -> bool:
        return self._transition(key, AccumulatorState.DISPATCHING, AccumulatorState.COMPLETE)

    def fail(self, key: BuildKey, error: str) -> bool:
        acc = self._find(key)
        if acc is not None:
            with acc.lock:
                acc.last_error = error
        return self._transition(key, AccumulatorState.DISPATCHING, AccumulatorState.FAILED)

    def reopen_failed(self, key: BuildKey) -> bool:
        """FAILED -> READY on operator request; the SOURCE trail is still intact"""
        acc = self._find(key)
        if acc is None:
            return False
        with acc.lock:
            if acc.state != AccumulatorState.FAILED:
                return False
            acc.state = AccumulatorState.READY
            acc.ready_at = self._clock()
            acc.finished_at = None
            with self._lock:
                self._retired.pop(key, None)
                self._active[key] = acc
        logger.info(f"Reopened failed build {key}")
        return True

    def _transition(self, key: BuildKey, expected: AccumulatorState, target: AccumulatorState) -> bool:
        acc = self._find(key)
        if acc is None:
            return False
        with acc.lock:
            if acc.state != expected:
                logger.debug(f"{key}: {expected.value} -> {target.value} refused, state is {acc.state.value}")
                return False
            acc.state = target
            if target.is_terminal:
                acc.finished_at = self._clock()
                self._retire(acc)
        logger.debug(f"{key}: {expected.value} -> {target.value}")
        return True

    def _retire(self, acc: _Accumulator):
        with self._lock:
            self._active.pop(acc.key, None)
            self._retired[acc.key] = acc
            self._retired.move_to_end(acc.key)
            while len(self._retired) > self.retired_limit:
                self._retired.popitem(last=False)

    def state(self, key: BuildKey) -> Optional[AccumulatorState]:
        acc = self._find(key)
        return acc.state if acc else None

    def snapshot(self, key: BuildKey) -> Optional[AccumulatorSnapshot]:
        acc = self._find(key)
        if acc is None:
            return None
        with acc.lock:
            return self._snapshot(acc)

    def snapshots(self, include_retired: bool = False) -> List[AccumulatorSnapshot]:
        with self._lock:
            accs = list(self._active.values())
            if include_retired:
                accs.extend(self._retired.values())
        result = []
        for acc in accs:
            with acc.lock:
                result.append(self._snapshot(acc))
        return result

    def ready(self) -> List[BuildKey]:
        return [s.key for s in self.snapshots() if s.state == AccumulatorState.READY]

    def failed(self) -> List[AccumulatorSnapshot]:
        return [s for s in self.snapshots(include_retired=True) if s.state == AccumulatorState.FAILED]

    def stale(self, now: Optional[datetime] = None) -> List[AccumulatorSnapshot]:
        """Incomplete builds that have not seen an event within the staleness window"""
        now = now or self._clock()
        return [s for s in self.snapshots()
                if s.state == AccumulatorState.ACCUMULATING
                and now - s.last_event_at > self.stale_after]

    def _completeness(self, acc: _Accumulator, became_ready: bool, counted: bool) -> Completeness:
        return Completeness(
            state=acc.state,
            became_ready=became_ready,
            counted=counted,
            received_total=sum(acc.received.values()),
            expected_total=self.policy.expected_total,
        )

    def _snapshot(self, acc: _Accumulator) -> AccumulatorSnapshot:
        return AccumulatorSnapshot(
            key=acc.key,
            state=acc.state,
            received=dict(acc.received),
            received_total=sum(acc.received.values()),
            expected_total=self.policy.expected_total,
            terminal_seen=acc.terminal_seen,
            first_seen_at=acc.first_seen_at,
            last_event_at=acc.last_event_at,
            ready_at=acc.ready_at,
            finished_at=acc.finished_at,
            last_error=acc.last_error,
        )
