"""Background maintenance: history pruning and accumulator monitoring"""
import logging
import time
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ci_memory.core.config import Settings
from ci_memory.core.exceptions import StorageError
from ci_memory.services.analysis_dispatcher import AnalysisDispatcher
from ci_memory.services.build_accumulator import BuildAccumulator
from ci_memory.services.conversation_store import ConversationStore


logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs the prune and monitor jobs on their own intervals in a background scheduler"""

    def __init__(self, store: ConversationStore, accumulator: BuildAccumulator,
                 dispatcher: Optional[AnalysisDispatcher] = None,
                 keep: int = 100,
                 prune_interval: float = 3600,
                 monitor_interval: float = 60):
        self.store = store
        self.accumulator = accumulator
        self.dispatcher = dispatcher
        self.keep = keep
        self.prune_interval = prune_interval
        self.monitor_interval = monitor_interval
        self._scheduler: Optional[BackgroundScheduler] = None
        self.last_prune_at: Optional[float] = None
        self.last_monitor_at: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Settings, store: ConversationStore, accumulator: BuildAccumulator,
                      dispatcher: Optional[AnalysisDispatcher] = None) -> "MaintenanceScheduler":
        return cls(store, accumulator, dispatcher,
                   keep=settings.max_messages_per_conversation,
                   prune_interval=settings.prune_interval_seconds,
                   monitor_interval=settings.monitor_interval_seconds)

    def prune_all(self) -> Dict[str, int]:
        """Prune every conversation; a failing one is logged and skipped"""
        removed: Dict[str, int] = {}
        try:
            conversations = sorted(self.store.list_conversations())
        except StorageError as e:
            logger.error(f"❌ Could not list conversations for pruning: {e}")
            return removed

        for conversation_id in conversations:
            try:
                removed[conversation_id] = self.store.prune(conversation_id, self.keep)
            except StorageError as e:
                logger.error(f"❌ Failed to prune {conversation_id}: {e}")

        total = sum(removed.values())
        if total:
            logger.info(f"🧹 Pruned {total} messages across {len(removed)} conversations (keep={self.keep})")
        return removed

    def monitor_once(self) -> int:
        """Surface stale builds and re-submit READY ones; returns the number re-submitted"""
        for snapshot in self.accumulator.stale():
            logger.warning(
                f"⏳ Build {snapshot.key} incomplete: {snapshot.received_total}/{snapshot.expected_total} "
                f"logs, last event at {snapshot.last_event_at.isoformat()}"
            )

        if self.dispatcher is None:
            return 0
        resubmitted = self.dispatcher.resubmit_ready()
        if resubmitted:
            logger.info(f"🔁 Re-submitted {resubmitted} READY build(s) for analysis")
        return resubmitted

    def _run_prune(self):
        self._safely(self.prune_all, "prune")
        self.last_prune_at = time.time()

    def _run_monitor(self):
        self._safely(self.monitor_once, "monitor")
        self.last_monitor_at = time.time()

    @staticmethod
    def _safely(job, name: str):
        try:
            job()
        except Exception as e:
            logger.exception(f"[ERROR] Maintenance job '{name}' failed: {e}")

    def start(self):
        if self.is_alive():
            return
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self._run_prune,
            trigger=IntervalTrigger(seconds=self.prune_interval),
            id="history_prune",
            name="Conversation history prune",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.add_job(
            self._run_monitor,
            trigger=IntervalTrigger(seconds=self.monitor_interval),
            id="accumulator_monitor",
            name="Accumulator monitor",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info(f"[OK] Maintenance scheduler started "
                    f"(prune every {self.prune_interval}s, monitor every {self.monitor_interval}s)")

    def stop(self, wait: bool = True):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Maintenance scheduler stopped")

    def is_alive(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
