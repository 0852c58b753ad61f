"""
Classification consumer.
Runs the classifier off the upload path and feeds verdicts into the
moderation engine. Delivery is at-least-once: a message is deleted only
after it was handled, otherwise it returns to the queue and, after
max_receive_count attempts, moves to the dead-letter queue.

The in-memory queue stands in for Kafka in development and tests; the
Kafka path goes through MessageBroker.consume_uploads/consume_classifications
with the same worker handlers.
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from lib.metrics import metrics
from models.errors import ClassifierUnavailableError, InvalidTransitionError
from models.moderation import ClassificationResult, ContentSignals, UploadCompleted, utc_now
from services.classification import ClassificationAdapter
from services.moderation_engine import ModerationEngine, TransitionOutcome

logger = logging.getLogger(__name__)

UPLOAD_COMPLETED = 'upload_completed'
CLASSIFICATION_RESULT = 'classification_result'


# ============================================
# In-memory queue
# ============================================

@dataclass
class QueueMessage:
    """A queued message and its delivery bookkeeping."""
    message_id: str
    receipt_handle: str
    body: str
    sent_timestamp: datetime = field(default_factory=utc_now)
    receive_count: int = 0

    def decode_body(self) -> Dict[str, Any]:
        return json.loads(self.body)


@dataclass
class InMemoryQueue:
    """FIFO queue with in-flight tracking and a dead-letter queue."""
    name: str
    messages: List[QueueMessage] = field(default_factory=list)
    in_flight: Dict[str, QueueMessage] = field(default_factory=dict)
    dead_letter_queue: Optional['InMemoryQueue'] = None
    max_receive_count: int = 3
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def send_message(self, body: Dict[str, Any]) -> str:
        message = QueueMessage(
            message_id=str(uuid4()),
            receipt_handle=str(uuid4()),
            body=json.dumps(body, default=str),
        )
        with self._lock:
            self.messages.append(message)
        return message.message_id

    def receive_messages(self, max_messages: int = 10) -> List[QueueMessage]:
        received = []
        with self._lock:
            while self.messages and len(received) < max_messages:
                message = self.messages.pop(0)
                message.receive_count += 1

                if message.receive_count > self.max_receive_count:
                    logger.error(f"Message {message.message_id} on {self.name} exceeded {self.max_receive_count} receives")
                    if self.dead_letter_queue is not None:
                        self.dead_letter_queue.messages.append(message)
                    continue

                message.receipt_handle = str(uuid4())
                self.in_flight[message.receipt_handle] = message
                received.append(message)
        return received

    def delete_message(self, receipt_handle: str) -> bool:
        """Acknowledge a handled message."""
        with self._lock:
            return self.in_flight.pop(receipt_handle, None) is not None

    def release_message(self, receipt_handle: str) -> bool:
        """Return an unhandled message to the queue for redelivery."""
        with self._lock:
            message = self.in_flight.pop(receipt_handle, None)
            if message is None:
                return False
            self.messages.append(message)
            return True

    def approximate_number_of_messages(self) -> int:
        return len(self.messages)


# ============================================
# Worker
# ============================================

class ClassificationWorker:
    """Calls the classifier with a time-box and applies verdicts."""

    def __init__(
        self,
        engine: ModerationEngine,
        adapter: ClassificationAdapter,
        timeout_seconds: Optional[float] = None,
    ):
        self.engine = engine
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds or engine.settings.classification_timeout_seconds

    async def handle_upload(self, event: Union[UploadCompleted, Dict[str, Any]]) -> Optional[TransitionOutcome]:
        """Register the upload as pending, then classify it."""
        if not isinstance(event, UploadCompleted):
            event = UploadCompleted(**event)
        await asyncio.to_thread(self.engine.register_media, event.to_summary())

        result = await self.classify(event.to_signals())
        if result is None:
            return None
        return await self.apply_result(result)

    async def classify(self, signals: ContentSignals) -> Optional[ClassificationResult]:
        """
        Run the adapter within the time-box.
        Returns None on timeout or unavailability; the record stays pending
        and surfaces in the stale-pending list.
        """
        start_time = time.time()
        try:
            result = await asyncio.wait_for(self.adapter.classify(signals), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            metrics.record_classification('timeout', time.time() - start_time)
            logger.warning(
                f"Classifier timed out after {self.timeout_seconds}s for media {signals.media_id}; left pending"
            )
            return None
        except ClassifierUnavailableError as e:
            metrics.record_classification('unavailable', time.time() - start_time)
            logger.warning(f"Classifier unavailable for media {signals.media_id}; left pending: {e}")
            return None

        metrics.record_classification(result.verdict.value, time.time() - start_time)
        return result

    def handle_result(self, result: Union[ClassificationResult, Dict[str, Any]]) -> Optional[TransitionOutcome]:
        """Apply a verdict. Verdicts that would move a terminal record are dropped."""
        if not isinstance(result, ClassificationResult):
            result = ClassificationResult(**result)
        try:
            return self.engine.apply_classification(result)
        except InvalidTransitionError as e:
            logger.warning(f"Dropping classifier verdict for media {result.media_id}: {e}")
            return None

    async def apply_result(self, result: Union[ClassificationResult, Dict[str, Any]]) -> Optional[TransitionOutcome]:
        """Run handle_result on a worker thread so store writes never block the loop."""
        return await asyncio.to_thread(self.handle_result, result)

    # Kafka handlers (called from the consumer thread)

    def on_upload_message(self, payload: Dict[str, Any]) -> None:
        asyncio.run(self.handle_upload(payload))

    def on_classification_message(self, payload: Dict[str, Any]) -> None:
        self.handle_result(payload)


# ============================================
# Consumer
# ============================================

class ClassificationConsumer:
    """
    Polls the in-memory queue and hands each message to the worker.
    Implements batch polling and graceful shutdown.
    """

    def __init__(
        self,
        worker: ClassificationWorker,
        queue: Optional[InMemoryQueue] = None,
        batch_size: int = 10,
        poll_interval_seconds: float = 1.0,
    ):
        self.worker = worker
        self.queue = queue or InMemoryQueue(
            name='classification',
            dead_letter_queue=InMemoryQueue(name='classification-dlq'),
        )
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.running = False
        self.stats = {
            'messages_received': 0,
            'messages_processed': 0,
            'messages_failed': 0,
        }

    def submit_upload(self, event: UploadCompleted) -> str:
        return self.queue.send_message({'type': UPLOAD_COMPLETED, 'event': event.model_dump(mode='json')})

    def submit_result(self, result: ClassificationResult) -> str:
        return self.queue.send_message({'type': CLASSIFICATION_RESULT, 'result': result.model_dump(mode='json')})

    async def _handle(self, body: Dict[str, Any]) -> None:
        message_type = body.get('type')
        if message_type == UPLOAD_COMPLETED:
            await self.worker.handle_upload(body['event'])
        elif message_type == CLASSIFICATION_RESULT:
            await self.worker.apply_result(body['result'])
        else:
            raise ValueError(f"Unknown message type: {message_type}")

    async def poll_once(self) -> int:
        """Receive and handle one batch. Returns the number of messages received."""
        messages = self.queue.receive_messages(max_messages=self.batch_size)
        self.stats['messages_received'] += len(messages)

        for message in messages:
            try:
                await self._handle(message.decode_body())
            except Exception as e:
                self.stats['messages_failed'] += 1
                logger.error(
                    f"Error processing message {message.message_id} "
                    f"(attempt {message.receive_count}): {e}"
                )
                self.queue.release_message(message.receipt_handle)
            else:
                self.queue.delete_message(message.receipt_handle)
                self.stats['messages_processed'] += 1

        return len(messages)

    async def start(self) -> None:
        """Start consuming messages."""
        self.running = True
        logger.info(f"Classification consumer started on {self.queue.name}")

        while self.running:
            received = await self.poll_once()
            if not received:
                await asyncio.sleep(self.poll_interval_seconds)

    def stop(self) -> None:
        """Stop the consumer after the current batch."""
        self.running = False

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
