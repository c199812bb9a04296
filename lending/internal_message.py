"""RabbitMQ entry point for borrowing maintenance requests.

Requests arrive on ``config.BORROWING_QUEUE`` as JSON ``{"action": ...}``.
The outcome, or ``{"error": ...}``, is published to the message's
``reply_to`` queue with the same ``correlation_id``.
"""

import contextlib
import json
import logging
from typing import Any, Callable, Dict

import aio_pika
from fastapi import FastAPI
from sqlalchemy.orm import Session

from lending import borrowings, config
from lending.exceptions import LendingException
from lending.storage import SessionLocal

logger = logging.getLogger(__name__)


# action name -> callable taking a session and returning a JSON-able dict
BORROWING_ACTIONS: Dict[str, Callable[[Session], Dict[str, Any]]] = {
    "check_overdue": borrowings.check_overdue_borrowings,
}


@contextlib.contextmanager
def session_scope():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_borrowing_action(body: bytes) -> Dict[str, Any]:
    request = json.loads(body.decode() or "{}")
    action = request.get("action")
    handler = BORROWING_ACTIONS.get(action)
    if handler is None:
        logger.warning(f"Unknown borrowing action received: {action}")
        return {"error": f"Unknown action: {action}"}

    with session_scope() as db:
        result = handler(db)
    logger.info(f"Borrowing action {action} finished: {result}")
    return result


async def reply(message: aio_pika.IncomingMessage, payload: Dict[str, Any]):
    if not message.reply_to:
        logger.info("Borrowing request without reply_to, result not sent")
        return
    await message.channel.default_exchange.publish(
        aio_pika.Message(
            body=json.dumps(payload).encode(), correlation_id=message.correlation_id
        ),
        routing_key=message.reply_to,
    )
    logger.info(f"Borrowing result sent to {message.reply_to}")


async def handle_borrowing_request(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            payload = run_borrowing_action(message.body)
        except json.JSONDecodeError as e:
            logger.error(f"Borrowing request is not valid JSON: {e}")
            payload = {"error": f"Invalid JSON in message body: {e}"}
        except LendingException as e:
            logger.error(f"Borrowing request failed: {e}")
            payload = {"error": str(e)}
        except Exception as e:
            logger.exception("Borrowing request crashed")
            payload = {"error": f"Unexpected error: {e}"}

        await reply(message, payload)


class BorrowingQueueConsumer:
    def __init__(self, app: FastAPI):
        self.app = app
        self.connection = None

    async def start(self):
        logger.info(f"Connecting to RabbitMQ for queue {config.BORROWING_QUEUE}")
        try:
            self.connection = await aio_pika.connect_robust(config.RABBIT_MQ_CONN_STR)
            channel = await self.connection.channel()
            queue = await channel.declare_queue(config.BORROWING_QUEUE, durable=True)
            await queue.consume(handle_borrowing_request)
        except Exception as e:
            logger.error(f"Failed to start borrowing consumer: {e}")
            raise
        self.app.state.rabbitmq_connection = self.connection
        logger.info(f"Consuming borrowing requests from {config.BORROWING_QUEUE}")

    async def stop(self):
        if self.connection is not None:
            logger.info("Closing RabbitMQ connection")
            await self.connection.close()


async def setup_messaging(app: FastAPI):
    consumer = BorrowingQueueConsumer(app)
    await consumer.start()
    app.state.borrowing_consumer = consumer


async def cleanup_messaging(app: FastAPI):
    await app.state.borrowing_consumer.stop()
