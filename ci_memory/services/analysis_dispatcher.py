"""Analysis dispatch: assemble -> call -> persist

Runs one analysis per READY build on a bounded worker pool that is separate
from ingestion, so a hung model call never stalls log accumulation. The
pipeline is strictly additive: it appends SOURCE (write-ahead) and ANALYSIS
messages and never touches earlier ones.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ci_memory.core.config import Settings
from ci_memory.core.exceptions import AnalysisError, DispatchRejectedError, StorageError
from ci_memory.core.models import (
    AnalysisOutcome, BuildKey, Message, MessageMetadata, MessageRole, OutcomeStatus,
)
from ci_memory.core.prompts import render_user_prompt
from ci_memory.core.verdict import AnalysisVerdict, parse_verdict
from ci_memory.services.build_accumulator import BuildAccumulator
from ci_memory.services.context_assembler import ContextWindowAssembler
from ci_memory.services.conversation_store import ConversationStore
from ci_memory.services.llm_service import LLMService


logger = logging.getLogger(__name__)

FailureListener = Callable[[AnalysisOutcome], None]


class AnalysisDispatcher:
    """Exactly-once analysis per build, on a size-bounded pool"""

    def __init__(self, store: ConversationStore, accumulator: BuildAccumulator,
                 assembler: ContextWindowAssembler, llm_service: LLMService,
                 window_size: int = 100,
                 max_workers: int = 2,
                 queue_size: int = 16,
                 queue_timeout: float = 5.0,
                 max_attempts: int = 3,
                 backoff_min: float = 2.0,
                 backoff_max: float = 30.0,
                 sleep: Optional[Callable[[float], None]] = None):
        self.store = store
        self.accumulator = accumulator
        self.assembler = assembler
        self.llm_service = llm_service
        self.window_size = window_size
        self.queue_timeout = queue_timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analysis")
        # running + queued jobs; beyond this submit() waits, then rejects
        self._slots = threading.BoundedSemaphore(max_workers + queue_size)
        self._futures: Dict[BuildKey, Future] = {}
        self._lock = threading.Lock()
        self._failure_listeners: List[FailureListener] = []

    @classmethod
    def from_settings(cls, settings: Settings, store: ConversationStore, accumulator: BuildAccumulator,
                      assembler: ContextWindowAssembler, llm_service: LLMService) -> "AnalysisDispatcher":
        return cls(store, accumulator, assembler, llm_service,
                   window_size=settings.ai_memory_window_size,
                   max_workers=settings.analysis_workers,
                   queue_size=settings.analysis_queue_size,
                   queue_timeout=settings.analysis_queue_timeout_seconds,
                   max_attempts=settings.analysis_max_attempts,
                   backoff_min=settings.analysis_backoff_min_seconds,
                   backoff_max=settings.analysis_backoff_max_seconds)

    def add_failure_listener(self, listener: FailureListener):
        self._failure_listeners.append(listener)

    # ========= SUBMISSION =========

    def submit(self, key: BuildKey, pending_message: Optional[Message] = None) -> Optional[Future]:
        """Queue a READY build for analysis.

        Returns None when the build was not READY (someone else owns it).
        Raises DispatchRejectedError when the pool stays saturated for
        `queue_timeout` seconds; the build is left READY.
        """
        if not self._slots.acquire(timeout=self.queue_timeout):
            logger.warning(f"⚠️  Analysis pool saturated, {key} stays READY")
            raise DispatchRejectedError(f"analysis pool saturated, {key} not dispatched")

        if not self.accumulator.claim(key):
            self._slots.release()
            logger.debug(f"{key} not claimable, skipping submit")
            return None

        try:
            future = self._executor.submit(self._run, key, pending_message)
        except RuntimeError as e:
            # executor already shut down
            self._slots.release()
            self.accumulator.release(key)
            raise DispatchRejectedError(f"analysis pool unavailable: {e}") from e

        with self._lock:
            self._futures[key] = future
        future.add_done_callback(lambda f, k=key: self._finished(k, f))
        logger.info(f"[DISPATCH] Queued analysis for {key}")
        return future

    def _finished(self, key: BuildKey, future: Future):
        with self._lock:
            # a redispatch may already have registered a newer future for the key
            if self._futures.get(key) is future:
                del self._futures[key]
        self._slots.release()

    def in_flight(self) -> List[BuildKey]:
        with self._lock:
            return list(self._futures)

    def resubmit_ready(self) -> int:
        """Re-queue READY builds that earlier back-pressure left behind"""
        submitted = 0
        in_flight = set(self.in_flight())
        for key in self.accumulator.ready():
            if key in in_flight:
                continue
            try:
                if self.submit(key) is not None:
                    submitted += 1
            except DispatchRejectedError:
                break
        return submitted

    def redispatch(self, conversation_id: str, build_number: int) -> Optional[Future]:
        """Send a FAILED (or stranded READY) build through analysis again"""
        key = BuildKey(conversation_id, build_number)
        if not self.accumulator.reopen_failed(key) and self.accumulator.state(key) is None:
            return None
        return self.submit(key)

    # ========= PIPELINE =========

    def dispatch(self, conversation_id: str, build_number: int,
                 pending_message: Optional[Message] = None) -> AnalysisOutcome:
        """Claim and analyse one build synchronously"""
        key = BuildKey(conversation_id, build_number)
        if not self.accumulator.claim(key):
            return AnalysisOutcome(key=key, status=OutcomeStatus.SKIPPED)
        return self._run(key, pending_message)

    def _run(self, key: BuildKey, pending_message: Optional[Message]) -> AnalysisOutcome:
        conversation_id, build_number = key
        retrying = self._retrying(key)
        try:
            pending = self._write_ahead(key, pending_message)

            if self.store.has_analysis(conversation_id, build_number):
                logger.info(f"Build {key} already has an analysis, not calling the model again")
                self.accumulator.complete(key)
                return AnalysisOutcome(key=key, status=OutcomeStatus.COMPLETE)

            window = self.assembler.assemble(conversation_id, self.window_size, pending)
            history = self.assembler.to_chat_messages(window)
            instruction = render_user_prompt(conversation_id, build_number)

            verdict = self._call_with_retry(retrying, key, history, instruction)
            attempts = self._attempts(retrying)
            stored = self.store.append(conversation_id, self._analysis_message(key, verdict, attempts))
        except (AnalysisError, StorageError) as e:
            return self._failed(key, e, self._attempts(retrying))
        except Exception as e:
            logger.exception(f"[ERROR] Unexpected dispatch error for {key}: {e}")
            return self._failed(key, e, self._attempts(retrying))

        self.accumulator.complete(key)
        logger.info(f"✅ Stored analysis {stored.id} for {key} "
                    f"(risk={verdict.risk_score.score}, anomalies={len(verdict.anomalies)})")
        return AnalysisOutcome(key=key, status=OutcomeStatus.COMPLETE, message=stored, attempts=attempts)

    def _write_ahead(self, key: BuildKey, pending_message: Optional[Message]) -> Message:
        """Make sure the triggering event is durable before the remote call"""
        if pending_message is None:
            pending_message = self.store.latest_source(*key)
            if pending_message is None:
                raise StorageError(f"no SOURCE messages stored for {key}")
            return pending_message
        if pending_message.is_persisted:
            return pending_message
        return self.store.append(key.conversation_id, pending_message)

    def _retrying(self, key: BuildKey) -> Retrying:
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return Retrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(AnalysisError),
            before_sleep=lambda state: self._log_retry(key, state),
            **kwargs,
        )

    @staticmethod
    def _attempts(retrying: Retrying) -> int:
        return retrying.statistics.get("attempt_number", 0)

    def _call_with_retry(self, retrying: Retrying, key: BuildKey, history, instruction: str) -> AnalysisVerdict:
        for attempt in retrying:
            with attempt:
                raw = self.llm_service.analyze(history, instruction)
                verdict = parse_verdict(raw, key.conversation_id, key.build_number)
        return verdict

    def _log_retry(self, key: BuildKey, state: RetryCallState):
        error = state.outcome.exception() if state.outcome else None
        wait = state.next_action.sleep if state.next_action else 0
        logger.warning(f"[RETRY] Analysis attempt {state.attempt_number}/{self.max_attempts} "
                       f"for {key} failed: {error}. Retrying in {wait:.1f}s")

    @staticmethod
    def _analysis_message(key: BuildKey, verdict: AnalysisVerdict, attempts: int) -> Message:
        return Message(
            conversation_id=key.conversation_id,
            build_number=key.build_number,
            role=MessageRole.ANALYSIS,
            content=verdict.to_content(),
            metadata=MessageMetadata(
                build_number=key.build_number,
                category="analysis",
                extra={"attempts": attempts},
            ),
        )

    def _failed(self, key: BuildKey, error: Exception, attempts: int) -> AnalysisOutcome:
        self.accumulator.fail(key, str(error))
        outcome = AnalysisOutcome(key=key, status=OutcomeStatus.FAILED, attempts=attempts, error=str(error))
        logger.error(f"❌ Analysis for {key} FAILED after {attempts} attempt(s): {error}")
        for listener in self._failure_listeners:
            try:
                listener(outcome)
            except Exception as e:
                logger.exception(f"Failure listener raised for {key}: {e}")
        return outcome

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Analysis pool stopped")
