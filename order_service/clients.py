"""
This module provides communication clients for external systems used by the order service:
- Inventory Service (REST API, async)
- Notification broker (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Protocol, Sequence

import httpx
import pika
from pydantic import TypeAdapter, ValidationError

from . import config
from .models import (
    InventoryCheckOutcome,
    InventoryCheckRequest,
    InventoryCheckResult,
    MalformedStockResponse,
    OrderPlacedEvent,
    StockCheckRejected,
    StockConfirmed,
)

log = logging.getLogger(__name__)

ERROR_SENTINEL = "ERROR"

_results_adapter = TypeAdapter(List[InventoryCheckResult])


# --- Inventory Client (REST) ---
class InventoryClient:
    """
    Client for the Inventory Service (REST API).
    Checks the availability of a batch of items in a single request.

    Transport problems (connection errors, HTTP 4xx/5xx, client timeouts) are
    raised; business answers are returned as tagged outcomes.
    """
    def __init__(self, base_url=config.INVENTORY_SERVICE_URL, path=config.INVENTORY_CHECK_PATH,
                 transport=None):
        """
        Initializes the async HTTP client with proper timeout configuration.

        Args:
            base_url (str): Base URL of the inventory service.
            path (str): Path of the stock check endpoint.
            transport (httpx.AsyncBaseTransport, optional): Custom transport, e.g. for tests.
        """
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.path = path
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout_config, transport=transport)

    async def aclose(self):
        """Closes the HTTP client session."""
        await self.client.aclose()

    async def check_availability(self, requests: Sequence[InventoryCheckRequest]) -> InventoryCheckOutcome:
        """
        Sends one stock check request for the whole batch.

        Args:
            requests (Sequence[InventoryCheckRequest]): Items to check, in order.

        Returns:
            StockConfirmed: One result per requested sku.
            StockCheckRejected: The service answered with the "ERROR" sentinel.
            MalformedStockResponse: The body was unparsable or incomplete.

        Raises:
            httpx.HTTPError: On connection problems, timeouts or error status codes.
        """
        payload = [r.model_dump() for r in requests]
        try:
            response = await self.client.post(self.path, json=payload)
            response.raise_for_status()  # Löst HTTPStatusError bei 4xx/5xx aus
        except httpx.HTTPStatusError as e:
            log.error(f"Inventory Service antwortet mit HTTP {e.response.status_code}.")
            raise
        except httpx.HTTPError as e:
            log.error(f"Inventory Service nicht erreichbar: {e!r}")
            raise

        return self._parse(requests, response.text)

    @staticmethod
    def _parse(requests, body: str) -> InventoryCheckOutcome:
        if body.strip() == ERROR_SENTINEL:
            return StockCheckRejected()
        try:
            data = json.loads(body)
        except ValueError:
            return MalformedStockResponse(reason="response is not valid JSON", body=body)
        if data == ERROR_SENTINEL:
            return StockCheckRejected()

        try:
            results = _results_adapter.validate_python(data)
        except ValidationError as e:
            return MalformedStockResponse(reason=f"unexpected response shape: {e.error_count()} error(s)", body=body)

        answered = {result.skuCode for result in results}
        missing = [r.skuCode for r in requests if r.skuCode not in answered]
        if missing:
            return MalformedStockResponse(reason=f"no result for sku(s) {missing}", body=body)
        return StockConfirmed(results=tuple(results))


# --- Event Publisher (MQ) ---
class EventPublisher(Protocol):
    def publish(self, topic: str, event: OrderPlacedEvent) -> None: ...


class RabbitMQEventPublisher:
    """
    Publisher for order notifications (RabbitMQ).

    `publish` hands the message to a single worker thread that owns the
    blocking pika connection and returns immediately. Delivery is best-effort:
    failures are logged and never reach the caller.

    At most `max_pending` events wait for the worker; further events are
    dropped with an error log. After a failed connect, events are dropped
    without a new connect attempt until `reconnect_interval_s` has passed, so
    an unreachable broker costs one connect timeout per interval.
    """
    def __init__(self, host=config.RABBITMQ_HOST, user=config.RABBITMQ_USER, password=config.RABBITMQ_PASSWORD,
                 connection_factory=None, max_pending=config.EVENT_PUBLISHER_MAX_PENDING,
                 reconnect_interval_s=config.EVENT_PUBLISHER_RECONNECT_INTERVAL_S, clock=time.monotonic):
        """
        Args:
            host (str): RabbitMQ host.
            user (str): RabbitMQ user.
            password (str): RabbitMQ password.
            connection_factory (callable, optional): Returns a connection object; defaults to a
                pika.BlockingConnection for the given host and credentials.
            max_pending (int): Upper bound of events queued for the worker thread.
            reconnect_interval_s (float): Minimum time between connect attempts after a failure.
            clock (callable): Monotonic time source.
        """
        self.host = host
        self._credentials = pika.PlainCredentials(user, password)
        self._connection_factory = connection_factory or self._default_connection
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-publisher")
        self.max_pending = max_pending
        self.reconnect_interval_s = reconnect_interval_s
        self._clock = clock
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._next_connect_at = None
        self.connection = None
        self.channel = None
        self._declared = set()

    def _default_connection(self):
        return pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, credentials=self._credentials, heartbeat=60)
        )

    def _connect(self):
        """
        Establishes the RabbitMQ connection. Only called from the worker thread.

        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            self.connection = self._connection_factory()
            self.channel = self.connection.channel()
        except Exception:
            self.connection = None
            self._next_connect_at = self._clock() + self.reconnect_interval_s
            log.warning(f"RabbitMQ nicht erreichbar. Nächster Verbindungsversuch in {self.reconnect_interval_s}s.")
            raise
        self._next_connect_at = None
        self._declared = set()
        log.info("Event Publisher mit RabbitMQ verbunden.")

    def publish(self, topic: str, event: OrderPlacedEvent) -> None:
        """
        Schedules an event for publishing on the queue named `topic`. Does not wait.

        Args:
            topic (str): Destination queue, e.g. 'notificationTopic'.
            event (OrderPlacedEvent): The event; its kind is sent as the message type.
        """
        with self._pending_lock:
            if self._pending >= self.max_pending:
                log.error(f"[Order: {event.orderNumber}] Event {event.kind.value} verworfen: "
                          f"{self._pending} Events warten bereits auf den Versand.")
                return
            self._pending += 1
        try:
            self._executor.submit(self._send, topic, event)
        except RuntimeError as e:
            # Executor bereits heruntergefahren
            self._done()
            log.error(f"[Order: {event.orderNumber}] Event {event.kind.value} verworfen: {e}")

    def _done(self):
        with self._pending_lock:
            self._pending -= 1

    def _send(self, topic: str, event: OrderPlacedEvent):
        try:
            if not self.connection or self.connection.is_closed:
                if self._next_connect_at is not None and self._clock() < self._next_connect_at:
                    log.error(f"[Order: {event.orderNumber}] Event {event.kind.value} verworfen: "
                              f"RabbitMQ nicht erreichbar.")
                    return
                self._connect()
            if topic not in self._declared:
                self.channel.queue_declare(queue=topic, durable=True)
                self._declared.add(topic)

            self.channel.basic_publish(
                exchange='',
                routing_key=topic,
                body=event.model_dump_json(),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Macht Nachricht persistent
                    content_type="application/json",
                    type=event.kind.value
                )
            )
            log.info(f"[Order: {event.orderNumber}] Event {event.kind.value} an '{topic}' gesendet.")
        except Exception as e:
            log.error(f"[Order: {event.orderNumber}] FEHLER beim Senden von {event.kind.value} an '{topic}': {e!r}")
        finally:
            self._done()

    def close(self):
        """Waits for queued events, then closes the connection."""
        self._executor.shutdown(wait=True)
        if self.connection and self.connection.is_open:
            self.connection.close()
