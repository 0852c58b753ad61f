"""
Kafka message broker client
"""
import json
import logging
import threading
import time
from typing import Dict, Any, Callable, Optional
from kafka import KafkaProducer, KafkaConsumer
from kafka.errors import KafkaError

from lib.config import KafkaSettings

logger = logging.getLogger(__name__)


class MessageBroker:
    """Kafka producer and consumer wrapper (connects on first use)"""

    def __init__(self, settings: Optional[KafkaSettings] = None):
        self.settings = settings or KafkaSettings.from_env()
        self.bootstrap_servers = self.settings.bootstrap_servers
        self.producer = None
        self.consumers = {}
        self._producer_lock = threading.Lock()

    def _initialize_producer(self):
        """Initialize Kafka producer"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1
            )
            logger.info(f"Kafka producer initialized: {self.bootstrap_servers}")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

    def _get_producer(self) -> KafkaProducer:
        if self.producer is None:
            with self._producer_lock:
                if self.producer is None:
                    self._initialize_producer()
        return self.producer

    def publish(self, topic: str, message: Dict[str, Any], key: Optional[str] = None) -> bool:
        """Publish message to topic"""
        try:
            future = self._get_producer().send(
                topic,
                value=message,
                key=key
            )
            # Block for 'synchronous' sends
            record_metadata = future.get(timeout=10)
            logger.debug(f"Message sent to {topic} partition {record_metadata.partition} offset {record_metadata.offset}")
            return True
        except KafkaError as e:
            logger.error(f"Failed to send message to {topic}: {e}")
            return False

    def publish_upload(self, event: Dict[str, Any]) -> bool:
        """Publish an upload-completed event, keyed by media id"""
        return self.publish(self.settings.uploads_topic, event, key=event.get('media_id'))

    def publish_classification(self, result: Dict[str, Any]) -> bool:
        """Publish a classifier verdict, keyed by media id so one partition orders a media item"""
        return self.publish(self.settings.classification_topic, result, key=result.get('media_id'))

    def publish_notification(self, message: Dict[str, Any]) -> bool:
        """Hand a rendered notification to the delivery service"""
        return self.publish(self.settings.notifications_topic, message, key=message.get('recipient_id'))

    def publish_dlq(self, original_message: Dict[str, Any], error: str) -> bool:
        """Publish failed message to dead letter queue"""
        dlq_message = {
            'original_message': original_message,
            'error': error,
            'timestamp': time.time()
        }
        return self.publish(self.settings.dlq_topic, dlq_message)

    def create_consumer(self,
                        topic: str,
                        group_id: str,
                        handler: Callable[[Dict[str, Any]], None],
                        auto_offset_reset: str = 'earliest'):
        """
        Create and start a consumer.
        Offsets are committed only after the handler returns (at-least-once).
        """
        try:
            consumer = KafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=group_id,
                value_deserializer=lambda m: json.loads(m.decode('utf-8')),
                auto_offset_reset=auto_offset_reset,
                enable_auto_commit=False
            )

            self.consumers[f"{topic}_{group_id}"] = consumer
            logger.info(f"Consumer created for topic {topic} with group {group_id}")

            # Start consuming
            for message in consumer:
                try:
                    handler(message.value)
                except Exception as e:
                    logger.error(f"Error processing message: {e}")
                    self.publish_dlq(message.value, str(e))
                consumer.commit()
        except Exception as e:
            logger.error(f"Failed to create consumer: {e}")
            raise

    def consume_uploads(self, handler: Callable):
        """Consume upload-completed events"""
        self.create_consumer(self.settings.uploads_topic, self.settings.consumer_group, handler)

    def consume_classifications(self, handler: Callable):
        """Consume classifier verdicts"""
        self.create_consumer(self.settings.classification_topic, self.settings.consumer_group, handler)

    def close(self):
        """Close producer and all consumers"""
        if self.producer:
            self.producer.close()
        for consumer in self.consumers.values():
            consumer.close()
        logger.info("Kafka connections closed")


# Singleton instance
broker = MessageBroker()
