"""RabbitMQ log consumer (kombu)

Jenkins pipelines publish every log document to the `Jenkins` queue. Messages
are acknowledged only after they are stored; events that can never be
ingested are rejected without requeue so the broker dead-letters them.
"""
import logging
import threading
from typing import List, Optional

from kombu import Connection, Exchange, Queue
from kombu.mixins import ConsumerMixin

from ci_memory.core.config import Settings
from ci_memory.core.exceptions import EventRejectedError, MalformedEventError, StorageError
from ci_memory.services.ingestion_service import LogIngestionService


logger = logging.getLogger(__name__)


def build_queues(settings: Settings):
    """Main queue plus its dead-letter queue, declared the same way by every consumer"""
    exchange = Exchange(settings.queue_name, type="direct", durable=True)
    dlq_exchange = Exchange(settings.queue_dlq_name, type="direct", durable=True)
    dlq = Queue(settings.queue_dlq_name, exchange=dlq_exchange,
                routing_key=settings.queue_dlq_name, durable=True)
    queue = Queue(
        settings.queue_name,
        exchange=exchange,
        routing_key=settings.queue_name,
        durable=True,
        queue_arguments={
            "x-dead-letter-exchange": settings.queue_dlq_name,
            "x-dead-letter-routing-key": settings.queue_dlq_name,
            "x-message-ttl": settings.queue_ttl_ms,
        },
    )
    return queue, dlq


class AmqpLogConsumer(ConsumerMixin):
    """One consuming connection; several run side by side for throughput"""

    def __init__(self, connection: Connection, queue: Queue, ingestion: LogIngestionService,
                 prefetch_count: int = 4, name: str = "amqp-consumer"):
        self.connection = connection
        self.queue = queue
        self.ingestion = ingestion
        self.prefetch_count = prefetch_count
        self.name = name
        self.thread: Optional[threading.Thread] = None

    def get_consumers(self, Consumer, channel):
        return [Consumer(queues=[self.queue], callbacks=[self.on_message],
                         accept=["json", "text/plain", "application/data"],
                         prefetch_count=self.prefetch_count)]

    def on_message(self, body, message):
        """Ingest one delivery; the outcome decides ack, reject or requeue"""
        # JSON content types arrive decoded; anything else is handed over raw
        raw = body if isinstance(body, (dict, list)) else message.body
        try:
            result = self.ingestion.ingest(raw)
        except EventRejectedError as e:
            logger.info(f"Skipping event: {e}")
            message.reject(requeue=False)
            return
        except MalformedEventError as e:
            logger.warning(f"⚠️  Dropping message to DLQ: {e}")
            message.reject(requeue=False)
            return
        except StorageError as e:
            logger.error(f"❌ Storage unavailable, requeueing message: {e}")
            message.requeue()
            return
        except Exception as e:
            logger.exception(f"[ERROR] Unexpected failure while ingesting message: {e}")
            message.reject(requeue=False)
            return

        message.ack()
        logger.debug(f"[{self.name}] ack {result.key} ({result.completeness.state.value})")

    def on_connection_error(self, exc, interval):
        logger.warning(f"⚠️  [{self.name}] broker connection error: {exc}, retry in {interval}s")

    def start(self):
        self.thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self.thread.start()
        logger.info(f"[OK] {self.name} listening on '{self.queue.name}'")

    def stop(self, timeout: float = 10.0):
        self.should_stop = True
        if self.thread is not None:
            self.thread.join(timeout=timeout)
        self.connection.release()


class AmqpConsumerGroup:
    """`consumer_threads` independent consumers over the same queue"""

    def __init__(self, settings: Settings, ingestion: LogIngestionService):
        self.settings = settings
        self.ingestion = ingestion
        self.consumers: List[AmqpLogConsumer] = []

    def start(self):
        queue, _ = build_queues(self.settings)
        for index in range(self.settings.consumer_threads):
            consumer = AmqpLogConsumer(
                Connection(self.settings.amqp_url),
                queue,
                self.ingestion,
                prefetch_count=self.settings.prefetch_count,
                name=f"amqp-consumer-{index + 1}",
            )
            consumer.start()
            self.consumers.append(consumer)

    def stop(self):
        for consumer in self.consumers:
            try:
                consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping {consumer.name}: {e}")
        self.consumers.clear()

    def is_alive(self) -> bool:
        return any(c.thread is not None and c.thread.is_alive() for c in self.consumers)
