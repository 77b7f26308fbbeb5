"""
kafka_client.py - Kafka Producer Client Wrapper

PURPOSE:
    Publishes outbox entries to Kafka with per-key ordering and synchronous
    delivery confirmation. The outbox publisher marks an entry dispatched only
    after ``publish`` returns, so any delivery failure must raise.

PRODUCER FEATURES:
    - Message key = outbox partition key (reservation_id or checkout_id)
    - All replicas acknowledgment (acks=all), idempotent producer
    - Retries inside librdkafka, then a hard failure surfaced to the caller
    - Snappy compression

USAGE:
    producer = BaseKafkaProducer("localhost:9092", "reservation-service")
    producer.publish("reservation.held", payload_bytes, key="r-123")
    producer.flush()
"""

import logging  # For error and info logging
from typing import List, Optional

from confluent_kafka import KafkaException, Producer  # Kafka client library
from confluent_kafka.error import KafkaError  # Kafka error types

logger = logging.getLogger(__name__)


class BaseKafkaProducer:
    """
    Kafka producer used by the outbox publisher.

    Features:
        - Delivery acknowledgment from all replicas (acks=all)
        - Idempotent producer so librdkafka retries never reorder a key
        - Synchronous send: ``publish`` blocks until the broker answers
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "producer", delivery_timeout: float = 10.0):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
            delivery_timeout: Seconds to wait for a delivery report per message
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,  # Kafka broker addresses
            "client.id": client_id,  # Producer identifier
            "acks": "all",  # Wait for all replicas to acknowledge
            "enable.idempotence": True,  # Retries keep per-partition order
            "retries": 3,  # Retry failed sends 3 times
            "compression.type": "snappy",  # Compress before sending
        }
        self.delivery_timeout = delivery_timeout
        self.producer = Producer(self.config)

    def publish(self, topic: str, payload: bytes, key: str) -> None:
        """Publish one message and wait for its delivery report."""
        errors: List[KafkaError] = []

        def _delivery_report(err: Optional[KafkaError], msg) -> None:
            if err is not None:
                errors.append(err)
            else:
                logger.debug(
                    f"Message delivered to topic={msg.topic()}, "
                    f"partition={msg.partition()}, offset={msg.offset()}"
                )

        self.producer.produce(topic=topic, key=key.encode("utf-8"), value=payload, callback=_delivery_report)
        remaining = self.producer.flush(self.delivery_timeout)

        if errors:
            logger.error(f"Message delivery failed for {topic}: {errors[0]}")
            raise KafkaException(errors[0])
        if remaining:
            raise KafkaException(KafkaError(KafkaError._MSG_TIMED_OUT, f"{remaining} message(s) not delivered"))

        logger.info(f"Published event to {topic}", extra={"event_type": topic})

    def flush(self) -> None:
        """Flush any pending messages."""
        self.producer.flush()
