"""Service wiring: one engine per process"""
import logging
from typing import Optional

from ci_memory.core.config import Settings, get_settings
from ci_memory.core.database import close_db_pool, create_tables, init_db_pool
from ci_memory.messaging.amqp_consumer import AmqpConsumerGroup
from ci_memory.monitoring.maintenance import MaintenanceScheduler
from ci_memory.services.analysis_dispatcher import AnalysisDispatcher
from ci_memory.services.build_accumulator import BuildAccumulator
from ci_memory.services.context_assembler import ContextWindowAssembler
from ci_memory.services.conversation_store import ConversationStore, create_conversation_store
from ci_memory.services.ingestion_service import LogIngestionService
from ci_memory.services.llm_service import LLMService


logger = logging.getLogger(__name__)


class Engine:
    """Builds the store, accumulator, dispatcher and ingestion pipeline from settings"""

    def __init__(self, settings: Optional[Settings] = None,
                 store: Optional[ConversationStore] = None,
                 llm_service: Optional[LLMService] = None):
        self.settings = settings or get_settings()
        self.store = store or create_conversation_store(self.settings)
        self.accumulator = BuildAccumulator.from_settings(self.settings)
        self.assembler = ContextWindowAssembler(self.store, self.settings.ai_memory_window_size)
        self.llm_service = llm_service or LLMService(settings=self.settings)
        self.dispatcher = AnalysisDispatcher.from_settings(
            self.settings, self.store, self.accumulator, self.assembler, self.llm_service
        )
        self.ingestion = LogIngestionService.from_settings(
            self.settings, self.store, self.accumulator, self.dispatcher
        )
        self.scheduler = MaintenanceScheduler.from_settings(
            self.settings, self.store, self.accumulator, self.dispatcher
        )
        self.consumers: Optional[AmqpConsumerGroup] = None
        self._uses_postgres = store is None and self.settings.store_backend != "memory"

    def start(self):
        if self._uses_postgres:
            logger.info("Initializing database...")
            if init_db_pool(self.settings) and create_tables():
                logger.info("Database initialized")
            else:
                logger.warning("⚠️  Database not available yet, requests will retry the pool")

        if self.settings.maintenance_enabled:
            self.scheduler.start()

        if self.settings.amqp_enabled:
            self.consumers = AmqpConsumerGroup(self.settings, self.ingestion)
            self.consumers.start()

    def stop(self):
        # stop intake first so nothing new reaches the dispatcher
        if self.consumers is not None:
            self.consumers.stop()
        self.scheduler.stop()
        self.dispatcher.shutdown(wait=True)
        if self._uses_postgres:
            close_db_pool()
        logger.info("Engine stopped")

    def status(self) -> dict:
        return {
            "store_backend": type(self.store).__name__,
            "analysis_in_flight": len(self.dispatcher.in_flight()),
            "ready_builds": len(self.accumulator.ready()),
            "failed_builds": len(self.accumulator.failed()),
            "maintenance_active": self.scheduler.is_alive(),
            "amqp_consumers_active": self.consumers.is_alive() if self.consumers else False,
        }
