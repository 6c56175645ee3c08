"""RabbitMQ publisher for deferred reconciliation runs"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pika
from pika.exceptions import AMQPChannelError, AMQPConnectionError

from ..core.config import settings

logger = logging.getLogger(__name__)


class ReconciliationQueue:
    """Publishes reconciliation requests for the consumer process to execute"""

    def __init__(self):
        self.host = os.environ.get("RABBITMQ_HOST", "localhost")
        self.port = int(os.environ.get("RABBITMQ_PORT", "5672"))
        self.username = os.environ.get("RABBITMQ_USERNAME", "guest")
        self.password = os.environ.get("RABBITMQ_PASSWORD", "guest")
        self.vhost = os.environ.get("RABBITMQ_VHOST", "/")
        self.exchange = settings.RECONCILIATION_EXCHANGE
        self.routing_key = settings.RECONCILIATION_ROUTING_KEY

        self.connection = None
        self.channel = None

    def _connect(self, max_retries: int = 3, initial_delay: float = 0.5) -> bool:
        """
        Establish connection to RabbitMQ with retry logic.

        Returns:
            True if connection successful, False otherwise
        """
        if self.connection and not self.connection.is_closed:
            return True

        delay = initial_delay
        for attempt in range(1, max_retries + 1):
            try:
                credentials = pika.PlainCredentials(self.username, self.password)
                parameters = pika.ConnectionParameters(
                    host=self.host,
                    port=self.port,
                    virtual_host=self.vhost,
                    credentials=credentials,
                    heartbeat=600,
                    blocked_connection_timeout=300,
                    connection_attempts=2,
                    retry_delay=1
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=self.exchange, exchange_type='topic', durable=True)
                logger.info(f"Connected to RabbitMQ at {self.host}:{self.port}")
                return True
            except (AMQPConnectionError, ConnectionRefusedError) as e:
                if attempt >= max_retries:
                    logger.error(f"Failed to connect to RabbitMQ after {max_retries} attempts: {e}")
                    return False
                logger.warning(
                    f"Failed to connect to RabbitMQ (attempt {attempt}/{max_retries}): {e}. "
                    f"Retrying in {delay:.1f} seconds..."
                )
                time.sleep(delay)
                delay *= 2
        return False

    def _disconnect(self):
        """Close connection to RabbitMQ"""
        try:
            if self.channel and not self.channel.is_closed:
                self.channel.close()
            if self.connection and not self.connection.is_closed:
                self.connection.close()
        except (AMQPConnectionError, AMQPChannelError) as e:
            logger.error(f"Error disconnecting from RabbitMQ: {e}")
        finally:
            self.channel = None
            self.connection = None

    def publish_run_request(
        self,
        gateway_records: Any,
        app_records: Optional[Any] = None,
        period_start: Optional[str] = None,
        period_end: Optional[str] = None,
        notes: Optional[str] = None,
        requested_by: str = "system"
    ) -> bool:
        """
        Queue a reconciliation run.

        ``app_records`` of None means the consumer loads the application ledger
        from recorded payments for the period.

        Returns:
            True if the message was published, False otherwise
        """
        message: Dict[str, Any] = {
            "app_records": app_records,
            "gateway_records": gateway_records,
            "period_start": period_start,
            "period_end": period_end,
            "notes": notes,
            "requested_by": requested_by,
            "requested_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            if not self._connect():
                logger.error("Cannot publish reconciliation request - RabbitMQ connection failed")
                return False

            self.channel.basic_publish(
                exchange=self.exchange,
                routing_key=self.routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    content_type='application/json',
                    delivery_mode=2  # Make message persistent
                )
            )
            logger.info(f"Published reconciliation request (requested by {requested_by})")
            return True

        except (AMQPConnectionError, AMQPChannelError) as e:
            logger.error(f"Error publishing reconciliation request: {e}")
            return False
        finally:
            self._disconnect()


reconciliation_queue = ReconciliationQueue()
