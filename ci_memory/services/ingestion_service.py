"""Log event ingestion: validate, store, count, trigger"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, NamedTuple, Optional, Union

from pydantic import ValidationError

from ci_memory.core.config import Settings
from ci_memory.core.exceptions import DispatchRejectedError, EventRejectedError, MalformedEventError
from ci_memory.core.models import BuildKey, Completeness, LogEvent, Message
from ci_memory.services.analysis_dispatcher import AnalysisDispatcher
from ci_memory.services.build_accumulator import BuildAccumulator
from ci_memory.services.conversation_store import ConversationStore
from ci_memory.utils.payload_codec import decode_payload, parse_timestamp


logger = logging.getLogger(__name__)

RawEvent = Union[bytes, str, Dict[str, Any], list]

_ENVELOPE_FIELDS = {
    "category", "type", "job_name", "jobName", "build_number", "buildNumber",
    "timestamp", "payload", "data", "event_id", "sequence",
}
_MAX_UNESCAPE_DEPTH = 5


class IngestResult(NamedTuple):
    key: BuildKey
    message: Message
    completeness: Completeness
    dispatched: bool
    backpressured: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.key.conversation_id,
            "build_number": self.key.build_number,
            "message_id": self.message.id,
            "state": self.completeness.state.value,
            "counted": self.completeness.counted,
            "received_total": self.completeness.received_total,
            "expected_total": self.completeness.expected_total,
            "dispatched": self.dispatched,
            "backpressured": self.backpressured,
        }


def _load_document(raw: RawEvent) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEventError(f"Event body is not valid UTF-8: {e}") from e

    document: Any = raw
    depth = 0
    # producers sometimes double-encode: a JSON string holding JSON
    while isinstance(document, str) and depth < _MAX_UNESCAPE_DEPTH:
        try:
            document = json.loads(document)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"Invalid JSON event: {e}") from e
        depth += 1

    if isinstance(document, list):
        if not document:
            raise MalformedEventError("Empty JSON array received")
        document = document[0]

    if not isinstance(document, dict):
        raise MalformedEventError(f"Invalid JSON structure: {type(document).__name__}")
    return document


def parse_event(raw: RawEvent, received_at: Optional[datetime] = None) -> LogEvent:
    """Turn a raw message-source payload into a validated LogEvent"""
    document = _load_document(raw)

    payload = document.get("payload")
    if payload is None:
        payload = document.get("data")
    if payload is None:
        # flat events (scan results) carry their fields next to the envelope
        payload = {k: v for k, v in document.items() if k not in _ENVELOPE_FIELDS}
    if not isinstance(payload, dict):
        payload = {"value": payload}

    event_id = document.get("event_id", document.get("sequence"))
    build_number = document.get("build_number", document.get("buildNumber"))

    try:
        return LogEvent(
            category=document.get("category") or document.get("type") or "",
            job_name=document.get("job_name") or document.get("jobName") or "",
            build_number=build_number,
            timestamp=document.get("timestamp"),
            payload=decode_payload(payload),
            event_id=str(event_id) if event_id is not None else None,
            received_at=received_at,
        )
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise MalformedEventError(f"Malformed log event ({fields})") from e


class LogIngestionService:
    """Boundary between the message source and the accumulation engine.

    An event is durable once ingest() returns; callers acknowledge the
    source message only then. StorageError propagates so the source
    redelivers.
    """

    def __init__(self, store: ConversationStore, accumulator: BuildAccumulator,
                 dispatcher: AnalysisDispatcher,
                 enforce_event_age: bool = True,
                 max_event_age: timedelta = timedelta(seconds=420),
                 allowed_future_skew: timedelta = timedelta(seconds=30),
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.accumulator = accumulator
        self.dispatcher = dispatcher
        self.enforce_event_age = enforce_event_age
        self.max_event_age = max_event_age
        self.allowed_future_skew = allowed_future_skew
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings, store: ConversationStore, accumulator: BuildAccumulator,
                      dispatcher: AnalysisDispatcher) -> "LogIngestionService":
        return cls(store, accumulator, dispatcher,
                   enforce_event_age=settings.enforce_event_age,
                   max_event_age=timedelta(seconds=settings.max_event_age_seconds),
                   allowed_future_skew=timedelta(seconds=settings.allowed_future_skew_seconds))

    def parse(self, raw: RawEvent) -> LogEvent:
        now = self._clock()
        event = parse_event(raw, received_at=now)
        self._check_age(event, now)
        return event

    def _check_age(self, event: LogEvent, now: datetime):
        if not self.enforce_event_age:
            return
        event_time = parse_timestamp(event.timestamp)
        if event_time is None:
            raise EventRejectedError(f"Unparseable timestamp '{event.timestamp}' "
                                     f"for {event.job_name}#{event.build_number}")
        if event_time > now + self.allowed_future_skew:
            raise EventRejectedError(f"Future timestamp {event_time.isoformat()} "
                                     f"for {event.job_name}#{event.build_number}")
        age = now - event_time
        if age > self.max_event_age:
            raise EventRejectedError(f"Out-of-sync event (age {age.total_seconds():.0f}s) "
                                     f"for {event.job_name}#{event.build_number}")

    def ingest(self, raw: RawEvent) -> IngestResult:
        event = self.parse(raw)
        return self.ingest_event(event)

    def ingest_event(self, event: LogEvent) -> IngestResult:
        key = BuildKey(event.conversation_id, event.build_number)
        logger.info(f"Type: {event.category}, ConversationId: {event.conversation_id}, Build: {event.build_number}")

        # append + record form one critical section per build
        with self.accumulator.key_lock(*key):
            created_at = parse_timestamp(event.timestamp) or event.received_at
            stored = self.store.append(event.conversation_id, event.to_message(created_at=created_at))
            completeness = self.accumulator.record(
                event.conversation_id, event.build_number, event.category,
                fingerprint=event.fingerprint, payload=event.payload,
            )

        if not completeness.became_ready:
            return IngestResult(key, stored, completeness, dispatched=False)

        try:
            future = self.dispatcher.submit(key, stored)
        except DispatchRejectedError as e:
            # SOURCE is durable; the maintenance sweep re-submits READY builds
            logger.warning(f"⚠️  {e}")
            return IngestResult(key, stored, completeness, dispatched=False, backpressured=True)
        return IngestResult(key, stored, completeness, dispatched=future is not None)
