"""
mock_notification_consumer.py — Mock Implementation of the E-Mail Notification Subsystem

This module simulates the subsystem that turns notification requests from the
ordering service into e-mails. It consumes the notification queue and logs
what would be sent.

Communication Channels:
    - Input Queue: 'notifications.outbound' ← low_stock, critical_stock, report, order_status
"""

import json
import logging
import os
import time

import pika

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
NOTIFICATION_QUEUE = os.environ.get("NOTIFICATION_QUEUE", "notifications.outbound")


def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Returns:
        pika.BlockingConnection: Active connection to the RabbitMQ broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(os.environ.get("RABBITMQ_USER", "guest"),
                                        os.environ.get("RABBITMQ_PASSWORD", "guest"))
    return pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials))


def describe(message: dict) -> str:
    """Builds the subject line the e-mail subsystem would use."""
    kind = message.get("kind")
    payload = message.get("payload", {})
    if kind == "critical_stock":
        return f"CRITICAL: {payload.get('productId')} at {payload.get('currentStock')} {payload.get('unit')}"
    if kind == "low_stock":
        return f"Low stock: {payload.get('productId')} at {payload.get('currentStock')} {payload.get('unit')}"
    if kind == "report":
        summary = payload.get("summary", {})
        return (f"Inventory report: {summary.get('lowStock')} low, {summary.get('criticalStock')} critical, "
                f"{summary.get('outOfStock')} out of stock")
    if kind == "order_status":
        return f"Order {payload.get('orderNumber')} is now {payload.get('newStatus')}"
    return f"Unknown notification kind: {kind}"


def on_notification(ch, method, properties, body):
    """
    Callback for messages on the notification queue.

    Acknowledges handled messages and rejects malformed ones to the Dead Letter Queue (DLQ).
    """
    try:
        message = json.loads(body)
        logging.info(f"[MAIL] {message.get('notificationId')}: {describe(message)}")
        ch.basic_ack(delivery_tag=method.delivery_tag)
    except json.JSONDecodeError:
        logging.error(f"[MAIL] Ungültige JSON-Nachricht erhalten: {body!r}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)


def main():
    """
    Starts the consumer loop. Reconnects every 5 seconds if the broker is unavailable.
    """
    logging.info("Mock Notification Consumer startet...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=NOTIFICATION_QUEUE, durable=True)

            logging.info(f"[MAIL] Wartet auf Benachrichtigungen auf '{NOTIFICATION_QUEUE}'.")
            channel.basic_consume(queue=NOTIFICATION_QUEUE, on_message_callback=on_notification)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ-Verbindung fehlgeschlagen, versuche erneut in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()
