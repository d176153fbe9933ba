"""
This module provides communication clients for the external systems the ordering core depends on:
- Catalog Service (REST API) — read-only product lookup
- Notification queue (RabbitMQ) — stock alerts, inventory reports, order status updates
Each class encapsulates its protocol logic, error handling, timeouts and connection management.
The `CatalogLookup` and `Notifier` protocols describe what the core actually needs, so tests
and alternative deployments can substitute their own implementations.
"""

import json
import threading
import time
import uuid
from typing import Dict, Iterable, Protocol

import httpx
import pika
import pika.exceptions

from .config import (
    CATALOG_SERVICE_URL, CATALOG_TIMEOUT_SECONDS, NOTIFICATION_QUEUE, NOTIFIER_TIMEOUT_SECONDS,
    RABBITMQ_HOST, RABBITMQ_PASSWORD, RABBITMQ_USER,
)
from .errors import NotifierError, ServiceUnavailableError
from .logging_config import get_logger
from .models import NotificationKind, Product

log = get_logger(__name__)


class CatalogLookup(Protocol):
    def get_active_products(self, ids: Iterable[str]) -> Dict[str, Product]:
        ...


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, payload: dict) -> bool:
        ...


# --- Catalog Client (REST) ---
class CatalogClient:
    """
    Client for the Catalog Service (REST API).
    Resolves product ids to active products with their current price and regions.
    """
    def __init__(self, base_url: str = CATALOG_SERVICE_URL, timeout: float = CATALOG_TIMEOUT_SECONDS,
                 client: httpx.Client = None):
        """
        Initializes the HTTP client with a bounded timeout.

        Args:
            base_url (str): Root URL of the Catalog Service.
            timeout (float): Connect/read timeout in seconds.
            client (httpx.Client): Optional preconfigured client (e.g. a test client).
        """
        self.client = client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout))

    def close(self):
        self.client.close()

    def get_active_products(self, ids: Iterable[str]) -> Dict[str, Product]:
        """
        Fetches the requested products and keeps only the active ones.

        Args:
            ids (Iterable[str]): Product identifiers to resolve.
        Returns:
            Dict[str, Product]: Active products by id. Missing ids are simply absent.
        Raises:
            ServiceUnavailableError: On timeout, connection failure, an error response or an invalid body.
        """
        wanted = sorted(set(ids))
        if not wanted:
            return {}
        try:
            response = self.client.get("/v1/products", params={"ids": ",".join(wanted)})
            response.raise_for_status()
            data = response.json()
            products = {}
            for item in data.get("products", []):
                product = Product.model_validate(item)
                if product.is_active and product.id in wanted:
                    products[product.id] = product
        except httpx.TimeoutException as e:
            log.error(f"Catalog Service Timeout bei Produktabfrage {wanted}: {e}")
            raise ServiceUnavailableError("Catalog service timed out") from e
        except httpx.HTTPStatusError as e:
            log.error(f"Catalog Service HTTP-Fehler {e.response.status_code} bei Produktabfrage {wanted}.")
            raise ServiceUnavailableError(f"Catalog service returned {e.response.status_code}") from e
        except httpx.TransportError as e:
            log.error(f"Catalog Service nicht erreichbar: {e}")
            raise ServiceUnavailableError("Catalog service unavailable") from e
        except (ValueError, AttributeError, TypeError) as e:
            # ValueError covers both malformed JSON and pydantic validation errors
            log.error(f"Catalog Service lieferte eine ungültige Antwort: {e}")
            raise ServiceUnavailableError("Catalog service returned an invalid body") from e
        return products


# --- Notification Client (MQ) ---
class NotificationClient:
    """
    Publishes notification requests to the notification queue (RabbitMQ).
    The e-mail subsystem consumes the queue; this client only guarantees hand-off.
    A BlockingConnection is not thread-safe, so publishing is serialized by a lock.
    """
    def __init__(self, host: str = RABBITMQ_HOST, queue: str = NOTIFICATION_QUEUE,
                 timeout: float = NOTIFIER_TIMEOUT_SECONDS):
        """Stores the connection settings. The connection is opened lazily on first publish."""
        self.host = host
        self.queue = queue
        self.timeout = timeout
        self.connection = None
        self.channel = None
        self._lock = threading.Lock()

    def _connect(self):
        """
        Establishes a RabbitMQ connection with bounded socket and connection timeouts.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
        self.connection = pika.BlockingConnection(
            pika.ConnectionParameters(
                host=self.host,
                credentials=credentials,
                heartbeat=60,
                socket_timeout=self.timeout,
                stack_timeout=self.timeout,
                blocked_connection_timeout=self.timeout,
                connection_attempts=1,
            )
        )
        self.channel = self.connection.channel()
        self.channel.queue_declare(queue=self.queue, durable=True)
        log.info(f"Notification Client mit RabbitMQ verbunden (Queue: {self.queue}).")

    def notify(self, kind: NotificationKind, payload: dict) -> bool:
        """
        Publishes one notification request as a persistent JSON message.
        Args:
            kind (NotificationKind): Notification type (low_stock, critical_stock, report, order_status).
            payload (dict): Notification content; Decimal and datetime values are stringified.
        Returns:
            bool: True once the message was handed to the broker.
        Raises:
            NotifierError: If the broker is unreachable or publishing fails.
        """
        kind = NotificationKind(kind)
        message = {
            "notificationId": str(uuid.uuid4()),
            "kind": kind.value,
            "createdAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "payload": payload,
        }
        with self._lock:
            try:
                if not self.connection or self.connection.is_closed:
                    self._connect()
                self.channel.basic_publish(
                    exchange='',
                    routing_key=self.queue,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(delivery_mode=2, content_type="application/json"),
                )
            except pika.exceptions.AMQPError as e:
                log.error(f"FEHLER beim Senden der Benachrichtigung '{kind.value}': {e!r}")
                self.connection = None
                raise NotifierError(f"Could not publish {kind.value} notification") from e
        log.info(f"Benachrichtigung '{kind.value}' an Queue {self.queue} gesendet.")
        return True

    def close(self):
        with self._lock:
            if self.connection and self.connection.is_open:
                self.connection.close()
