"""
Main pipeline orchestrator - wires everything together
"""
import os
import sys
import logging
import threading
import time
from typing import Any, Dict

# Add scripts to path
sys.path.append(os.path.dirname(__file__))

from lib.config import get_settings
from lib.kafka_client import MessageBroker, broker
from lib.metrics import metrics
from models.moderation import UploadCompleted
from services.classification import KeywordClassifier
from services.pipeline import build_services
from streaming.classification_consumer import ClassificationWorker

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class Pipeline:
    """End-to-end pipeline orchestrator"""

    def __init__(self, sweep_interval_seconds: int = 60):
        self.settings = get_settings()
        self.services = build_services()
        self.worker = ClassificationWorker(self.services.engine, KeywordClassifier())
        self.broker: MessageBroker = self.services.broker or broker
        self.sweep_interval_seconds = sweep_interval_seconds

        if self.services.database is not None:
            self.services.database.initialize_schema()

        # Start metrics server
        metrics.start()
        logger.info("Pipeline initialized")

    def handle_upload(self, event_data: Dict[str, Any]):
        """
        Upload completed:
        1. Keep the users table populated (owner lookups, admin directory)
        2. Register the media item as pending
        3. Classify within the time-box and apply the verdict
        """
        event = UploadCompleted(**event_data)
        if self.services.database is not None:
            self.services.database.upsert_user({"id": event.owner_id})

        self.worker.on_upload_message(event.model_dump())
        logger.info(f"Upload {event.media_id} handled")

    def handle_classification(self, result_data: Dict[str, Any]):
        """Verdict from an external classifier"""
        self.worker.on_classification_message(result_data)

    def sweep(self):
        """
        Periodic housekeeping:
        - drain intents left in the outbox (e.g. after a restart)
        - report records still pending past the stale window
        """
        self.services.relay.wake()
        stale = self.services.engine.list_stale_pending()
        if stale:
            logger.warning(
                f"{len(stale)} media items pending longer than {self.settings.stale_pending_minutes} minutes"
            )
        self.services.engine.status_summary()

    def start(self):
        """Start consuming from Kafka topics"""
        logger.info("Starting pipeline consumers...")

        upload_thread = threading.Thread(
            target=self.broker.consume_uploads,
            args=(self.handle_upload,),
            daemon=True
        )
        upload_thread.start()

        classification_thread = threading.Thread(
            target=self.broker.consume_classifications,
            args=(self.handle_classification,),
            daemon=True
        )
        classification_thread.start()

        logger.info("Pipeline consumers started")

        # Keep main thread alive
        try:
            while True:
                self.sweep()
                time.sleep(self.sweep_interval_seconds)
        except KeyboardInterrupt:
            logger.info("Shutting down pipeline...")
            self.services.close()
            if self.services.broker is None:
                self.broker.close()


if __name__ == '__main__':
    pipeline = Pipeline()
    pipeline.start()
