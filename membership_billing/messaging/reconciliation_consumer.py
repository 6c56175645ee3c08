"""
RabbitMQ consumer for deferred reconciliation runs.

Requests are published by ``membership-billing reconciliation:run`` without
``--sync`` (or by the admin API) and executed here, one at a time.
"""
import json
import logging
import os
from typing import Any, Dict, Optional

import pika
from dateutil import parser

from ..core.config import settings
from ..core.database import SessionLocal
from ..services.audit_service import ActorContext
from ..services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)


def _parse_day(value: Optional[str]):
    return parser.isoparse(value).date() if value else None


class ReconciliationConsumer:
    """Consumer for queued reconciliation requests"""

    def __init__(self):
        self.host = os.environ.get("RABBITMQ_HOST", "localhost")
        self.port = int(os.environ.get("RABBITMQ_PORT", "5672"))
        self.username = os.environ.get("RABBITMQ_USERNAME", "guest")
        self.password = os.environ.get("RABBITMQ_PASSWORD", "guest")
        self.vhost = os.environ.get("RABBITMQ_VHOST", "/")

        self.exchange_name = settings.RECONCILIATION_EXCHANGE
        self.queue_name = settings.RECONCILIATION_QUEUE
        self.routing_key = settings.RECONCILIATION_ROUTING_KEY

        self.connection = None
        self.channel = None

    def connect(self):
        """Establish connection to RabbitMQ"""
        credentials = pika.PlainCredentials(self.username, self.password)
        parameters = pika.ConnectionParameters(
            host=self.host,
            port=self.port,
            virtual_host=self.vhost,
            credentials=credentials,
            heartbeat=600,
            blocked_connection_timeout=300,
            connection_attempts=3,
            retry_delay=2
        )

        self.connection = pika.BlockingConnection(parameters)
        self.channel = self.connection.channel()
        self.channel.exchange_declare(exchange=self.exchange_name, exchange_type='topic', durable=True)
        self.channel.queue_declare(queue=self.queue_name, durable=True)
        self.channel.queue_bind(exchange=self.exchange_name, queue=self.queue_name, routing_key=self.routing_key)

        # Reconciliation runs are heavy - one at a time
        self.channel.basic_qos(prefetch_count=1)

        logger.info(f"Connected to RabbitMQ: {self.queue_name} bound to {self.exchange_name} with key {self.routing_key}")

    def handle_run_request(self, message: Dict[str, Any]) -> bool:
        """
        Execute one queued reconciliation.

        Returns:
            bool: True if the message was handled (including runs that ended
            with status=failed), False if it could not be processed
        """
        if not isinstance(message, dict) or "gateway_records" not in message:
            logger.error(f"Invalid reconciliation request: {message}")
            return False

        try:
            period_start = _parse_day(message.get("period_start"))
            period_end = _parse_day(message.get("period_end"))
        except (ValueError, OverflowError) as e:
            logger.error(f"Invalid reconciliation period: {e}")
            return False

        actor = ActorContext(actor_id=message.get("requested_by") or "system", actor_type="system")
        db = SessionLocal()
        try:
            engine = ReconciliationEngine(db)
            if message.get("app_records") is None:
                run = engine.run_for_period(
                    message["gateway_records"], period_start, period_end, actor=actor, notes=message.get("notes")
                )
            else:
                run = engine.run_from_data(
                    message["app_records"], message["gateway_records"], period_start, period_end,
                    actor=actor, notes=message.get("notes")
                )
            logger.info(f"Queued reconciliation run {run.run_id} finished with status {run.status.value}")
            return True
        except Exception as e:
            logger.error(f"Reconciliation request failed: {e}", exc_info=True)
            db.rollback()
            return False
        finally:
            db.close()

    def callback(self, ch, method, properties, body):
        try:
            if isinstance(body, bytes):
                body = body.decode('utf-8')
            message = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to parse message body: {e}")
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        if self.handle_run_request(message):
            ch.basic_ack(delivery_tag=method.delivery_tag)
        else:
            # Not requeued; a malformed request would fail again
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

    def consume(self):
        """Blocking consume loop"""
        logger.info(f"Reconciliation consumer started, listening to queue: {self.queue_name}")
        self.channel.basic_consume(queue=self.queue_name, on_message_callback=self.callback, auto_ack=False)
        try:
            self.channel.start_consuming()
        except KeyboardInterrupt:
            self.channel.stop_consuming()
        finally:
            if self.connection and self.connection.is_open:
                self.connection.close()


def main():
    """Main entry point for running the consumer standalone"""
    from dotenv import load_dotenv
    from ..core.logging_config import setup_logging

    load_dotenv()
    setup_logging()

    consumer = ReconciliationConsumer()
    consumer.connect()
    consumer.consume()
