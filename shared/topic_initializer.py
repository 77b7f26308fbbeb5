"""
topic_initializer.py - Kafka Topic Auto-Creation Utility

PURPOSE:
    Creates the reservation and order topics on service startup with the
    configured partitioning and replication.

TOPICS CREATED:
    - reservation.held
    - reservation.committed
    - reservation.released
    - reservation.expired
    - order.created
    - order.failed

RETRY LOGIC:
    - Retries topic creation while brokers are not ready
    - Existing topics are ignored (idempotent)
"""

import logging  # For status and error logging
import time  # For retry delays
from typing import List, Optional, Sequence  # Type hints

from confluent_kafka.admin import AdminClient, NewTopic  # Kafka admin operations

from shared.events import ALL_TOPICS

logger = logging.getLogger(__name__)


def create_topics(
    bootstrap_servers: str,
    num_partitions: int = 3,
    replication_factor: int = 3,
    topics: Optional[Sequence[str]] = None,
    max_retries: int = 10,
    retry_delay: float = 3,
) -> None:
    """
    Create Kafka topics with the given partitions and replication factor.

    Args:
        bootstrap_servers: Comma-separated Kafka broker addresses
        num_partitions: Number of partitions per topic (default: 3)
        replication_factor: Number of replicas per partition (default: 3)
        topics: Topic names to create (default: every event topic)
    """
    admin_client = AdminClient({"bootstrap.servers": bootstrap_servers})

    topics_to_create: List[NewTopic] = [
        NewTopic(topic, num_partitions=num_partitions, replication_factor=replication_factor)
        for topic in (topics or ALL_TOPICS)
    ]

    # Brokers may not be ready immediately on startup
    for attempt in range(max_retries):
        try:
            logger.info(f"Creating topics (attempt {attempt + 1}/{max_retries})...")

            fs = admin_client.create_topics(topics_to_create, validate_only=False)

            for topic, future in fs.items():
                try:
                    future.result(timeout=10)
                    logger.info(f"Topic '{topic}' created successfully")
                except Exception as e:
                    if "already exists" in str(e) or "TOPIC_ALREADY_EXISTS" in str(e):
                        logger.info(f"Topic '{topic}' already exists")
                    else:
                        logger.warning(f"Error creating topic '{topic}': {e}")

            logger.info("All topics processed successfully")
            break

        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(f"Failed to create topics (attempt {attempt + 1}): {e}. Retrying in {retry_delay}s...")
                time.sleep(retry_delay)
            else:
                logger.error(f"Failed to create topics after {max_retries} attempts: {e}")
                raise
