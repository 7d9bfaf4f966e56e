"""
workflow.py — Core Orchestration Logic for Order Placement

This module contains the order placement workflow. It coordinates the local
order aggregate, the remote inventory check and the order notifications.

Workflow Overview:
1. Validate the request and build the order aggregate
2. Publish a tentative ORDER_RECEIVED notification (fire-and-forget)
3. Check stock via the Inventory Service under the "inventory" resilience policy,
   inside the "CreateOrder" tracing span
4. All items available → publish ORDER_CONFIRMED and persist the order
   Otherwise → reject without persisting

Consistency:
    There is no transaction spanning the local store and the inventory service.
    The order is only persisted after a positive stock check. Published
    notifications are never retracted, neither when the order is rejected nor
    when persisting fails (at-least-once, best-effort notifications).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from . import config
from .clients import EventPublisher, InventoryClient
from .models import (
    InventoryCheckRequest,
    InventoryUnavailable,
    MalformedStockResponse,
    Order,
    OrderEventKind,
    OrderPlacedEvent,
    OrderRequest,
    StockCheckRejected,
    StockConfirmed,
)
from .resilience import CallNotPermittedError, FallbackError, ResiliencePolicyExecutor
from .store import OrderStore, OrderStoreError
from .tracing import Tracer

log = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Collaborators of the order workflow, passed in explicitly."""
    store: OrderStore
    inventory: InventoryClient
    publisher: EventPublisher
    resilience: ResiliencePolicyExecutor
    tracer: Tracer
    notification_topic: str = config.NOTIFICATION_TOPIC
    inventory_policy: str = config.INVENTORY_POLICY


class OrderPlacementOrchestrator:
    """
    Places orders. The caller only ever sees True (accepted and stored) or
    False (rejected for any reason); the reason is visible in logs and traces.
    """

    def __init__(self, context: ServiceContext):
        self.context = context

    async def create_order(self, request) -> bool:
        """
        Executes the placement workflow for a single order.

        Args:
            request (OrderRequest | dict | None): The order request. Mappings are validated
                into an OrderRequest.

        Returns:
            bool: True if every item was available and the order was persisted, False otherwise.
        """
        order_request = self._validated(request)
        if order_request is None:
            return False

        ctx = self.context
        order = Order.from_request(order_request)
        log_prefix = f"[Order: {order.orderNumber}]"
        log.info(f"{log_prefix} Starte Verarbeitung ({len(order.items)} Position(en)).")

        self._notify(order, OrderEventKind.ORDER_RECEIVED)

        batch = [InventoryCheckRequest(skuCode=i.skuCode, quantity=i.quantity) for i in order.items]

        try:
            with ctx.tracer.span("CreateOrder", orderNumber=order.orderNumber) as span:
                outcome = await ctx.resilience.run(
                    ctx.inventory_policy,
                    ctx.inventory.check_availability,
                    batch,
                    fallback=self._inventory_fallback
                )
                span.tag("inventory.outcome", type(outcome).__name__)
        except FallbackError as e:
            log.error(f"{log_prefix} Abgelehnt: {e}")
            return False

        if isinstance(outcome, StockCheckRejected):
            log.info(f"{log_prefix} Abgelehnt: Inventory Service meldet ERROR.")
            return False

        if isinstance(outcome, MalformedStockResponse):
            log.error(f"{log_prefix} Abgelehnt: Ungültige Antwort vom Inventory Service ({outcome.reason}). "
                      f"Antwort: {outcome.body!r}")
            return False

        if isinstance(outcome, InventoryUnavailable):
            log.warning(f"{log_prefix} Abgelehnt: Inventory Service nicht verfügbar.")
            return False

        if not isinstance(outcome, StockConfirmed):
            log.error(f"{log_prefix} Abgelehnt: Unerwartetes Ergebnis der Bestandsprüfung: {outcome!r}")
            return False

        if not outcome.all_available:
            log.warning(f"{log_prefix} Abgelehnt: Nicht auf Lager: {outcome.unavailable_skus}.")
            return False

        self._notify(order, OrderEventKind.ORDER_CONFIRMED)

        try:
            await asyncio.to_thread(ctx.store.save, order)
        except OrderStoreError as e:
            # Bereits gesendete Events werden nicht zurückgenommen
            log.critical(f"{log_prefix} Bestand bestätigt, aber Speichern fehlgeschlagen: {e}. "
                         f"ORDER_CONFIRMED wurde bereits gesendet!")
            return False
        except Exception as e:
            log.critical(f"{log_prefix} Unbekannter Fehler beim Speichern: {e!r}. "
                         f"ORDER_CONFIRMED wurde bereits gesendet!", exc_info=True)
            return False

        log.info(f"{log_prefix} Bestellung angenommen.")
        return True

    def _validated(self, request) -> Optional[OrderRequest]:
        if request is None:
            log.warning("Abgelehnt: Keine Bestellung übergeben.")
            return None
        try:
            order_request = OrderRequest.model_validate(request)
        except ValidationError as e:
            log.warning(f"Abgelehnt: Ungültige Bestellung ({e.error_count()} Fehler).")
            return None

        # Explicit check, models built with model_construct skip field validation
        if not order_request.orderedItems:
            log.warning("Abgelehnt: Bestellung ohne Positionen.")
            return None
        for item in order_request.orderedItems:
            if not item.skuCode or item.quantity <= 0 or item.unitPrice < 0:
                log.warning(f"Abgelehnt: Ungültige Position {item.skuCode!r} "
                            f"(Menge {item.quantity}, Preis {item.unitPrice}).")
                return None
        return order_request

    def _notify(self, order: Order, kind: OrderEventKind):
        event = OrderPlacedEvent(orderNumber=order.orderNumber, kind=kind)
        try:
            self.context.publisher.publish(self.context.notification_topic, event)
        except Exception as e:
            log.error(f"[Order: {order.orderNumber}] Event {kind.value} konnte nicht übergeben werden: {e!r}")

    def _inventory_fallback(self, batch, exc) -> InventoryUnavailable:
        skus = [r.skuCode for r in batch]
        if isinstance(exc, CallNotPermittedError):
            log.error(f"Fallback: Circuit '{exc.name}' ist {exc.state.value}, Bestandsprüfung für {skus} "
                      f"nicht versucht.")
        else:
            log.error(f"Fallback: Bestandsprüfung für {skus} fehlgeschlagen: {exc!r}", exc_info=exc)
        return InventoryUnavailable(cause=exc)
