"""
models.py — Data Models for Order Placement

This module defines the data structures used for order creation, the inventory
stock check and order notifications. Wire-facing models use Pydantic so that
incoming data is validated and serialized with the field names the other
services expect (camelCase).

Models:
    - OrderedItem / OrderRequest: Order payload received from the caller.
    - Item / Order: The order aggregate, immutable once built.
    - InventoryCheckRequest / InventoryCheckResult: Inventory service payloads.
    - OrderPlacedEvent: Notification message published to the broker.

Inventory outcomes:
    The inventory check resolves to exactly one of the tagged outcomes below,
    so callers branch on the type instead of comparing response strings.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class OrderedItem(BaseModel):
    """
    Represents a single product item requested by the caller.

    Attributes:
        skuCode (str): The product identifier (Stock Keeping Unit). Must not be empty.
        quantity (int): The quantity to order. Must be greater than zero.
        unitPrice (Decimal): Price per unit. Must not be negative.
    """
    skuCode: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)  # gt=0 bedeutet "greater than 0"
    unitPrice: Decimal = Field(..., ge=0)


class OrderRequest(BaseModel):
    """
    Represents an order request. Not persisted directly.

    Attributes:
        orderedItems (List[OrderedItem]): Requested items, in order. At least one.
    """
    orderedItems: List[OrderedItem] = Field(..., min_length=1)


class Item(BaseModel):
    """A line of a placed order, derived 1:1 from an OrderedItem."""
    model_config = ConfigDict(frozen=True)

    skuCode: str
    quantity: int
    unitPrice: Decimal

    @classmethod
    def from_ordered_item(cls, ordered_item: OrderedItem) -> "Item":
        return cls(
            skuCode=ordered_item.skuCode,
            quantity=ordered_item.quantity,
            unitPrice=ordered_item.unitPrice
        )


class Order(BaseModel):
    """
    The order aggregate.

    The order number is assigned when the aggregate is built, independent of
    whether the order is ever persisted.

    Attributes:
        orderNumber (str): Globally unique identifier (UUID4).
        items (Tuple[Item, ...]): Order lines in request order.
    """
    model_config = ConfigDict(frozen=True)

    orderNumber: str
    items: Tuple[Item, ...]

    @classmethod
    def from_request(cls, request: OrderRequest) -> "Order":
        return cls(
            orderNumber=str(uuid.uuid4()),
            items=tuple(Item.from_ordered_item(i) for i in request.orderedItems)
        )


class InventoryCheckRequest(BaseModel):
    skuCode: str
    quantity: int


class InventoryCheckResult(BaseModel):
    skuCode: str
    available: bool


class OrderEventKind(str, Enum):
    """
    The two notification points of the order lifecycle.

    ORDER_RECEIVED is published before the inventory check, ORDER_CONFIRMED
    after a positive check. Both share the same message body.
    """
    ORDER_RECEIVED = "ORDER_RECEIVED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"


class OrderPlacedEvent(BaseModel):
    """
    Notification message for the order lifecycle.

    Only `orderNumber` is part of the message body; `kind` travels as message
    metadata.
    """
    orderNumber: str
    kind: OrderEventKind = Field(default=OrderEventKind.ORDER_RECEIVED, exclude=True)


# --- Inventory check outcomes ---

@dataclass(frozen=True)
class StockConfirmed:
    """The inventory service answered with one result per requested sku."""
    results: Tuple[InventoryCheckResult, ...]

    @property
    def all_available(self) -> bool:
        return all(result.available for result in self.results)

    @property
    def unavailable_skus(self) -> List[str]:
        return [result.skuCode for result in self.results if not result.available]


@dataclass(frozen=True)
class StockCheckRejected:
    """The inventory service answered with the "ERROR" sentinel."""


@dataclass(frozen=True)
class MalformedStockResponse:
    """The response could not be parsed or did not cover every requested sku."""
    reason: str
    body: str = ""


@dataclass(frozen=True)
class InventoryUnavailable:
    """The inventory call failed at the policy level (retries, timeout or open circuit)."""
    cause: BaseException


InventoryCheckOutcome = Union[StockConfirmed, StockCheckRejected, MalformedStockResponse, InventoryUnavailable]
