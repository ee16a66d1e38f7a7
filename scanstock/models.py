"""Data models for the scan service.

This module defines the SQLModel tables backing the three store namespaces
(``items``, ``transactions`` and ``scannerMode``), the request bodies accepted
by the HTTP API and the helpers that turn rows into the camelCase JSON the
dashboard and the scanner firmware consume.

Copyright (c) Bryn Gwalad 2025
"""

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Field, SQLModel

# The stock threshold below is read at import time.
load_dotenv()

# Percentage of the original stock at or above which an item counts as
# healthy. Anything below it (but above zero) is low.
LOW_STOCK_THRESHOLD_PERCENT = float(os.getenv("STOCK_LOW_THRESHOLD_PERCENT", "31"))


class ScannerModeName(str, Enum):
    INCREMENT = "INCREMENT"
    DECREMENT = "DECREMENT"
    DETAILS = "DETAILS"


class TransactionAction(str, Enum):
    ADD = "ADD"
    DEDUCT = "DEDUCT"
    VIEW = "VIEW"


class StockHealth(str, Enum):
    HEALTHY = "healthy"
    LOW = "low"
    OUT_OF_STOCK = "out_of_stock"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Item(SQLModel, table=True):
    """An inventory item keyed by its barcode.

    Attributes:
        barcode: primary key, also exposed to clients as ``id``
        name: display name
        category: free-form category label
        quantity: current stock, never negative
        original_stock: baseline for the stock health percentage
        created_at: creation time, never changed afterwards
    """

    __tablename__ = "items"

    barcode: str = Field(primary_key=True)
    name: str
    category: str
    quantity: int = 0
    original_stock: int = 0
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Transaction(SQLModel, table=True):
    """Append-only audit entry written for every processed scan.

    ``id`` is assigned by the store and only ever grows, ``timestamp`` is the
    server clock in epoch milliseconds at write time.
    """

    __tablename__ = "transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    barcode: str = Field(index=True)
    action: str
    quantity: int = 0
    timestamp: int = Field(index=True)


class ScannerModeRecord(SQLModel, table=True):
    """Singleton row holding the current scanner mode."""

    __tablename__ = "scannermode"

    id: int = Field(default=1, primary_key=True)
    mode: str = ScannerModeName.DECREMENT.value
    quantity: int = 1


class ScannerMode(BaseModel):
    """Validated scanner mode value, also the body of ``PUT /scanner-mode``."""

    mode: ScannerModeName
    quantity: int = PydanticField(default=1, ge=1)


class ItemCreate(BaseModel):
    barcode: str = PydanticField(min_length=1)
    name: str = PydanticField(min_length=1)
    category: str = PydanticField(min_length=1)
    quantity: int = PydanticField(ge=0)


class ItemStockUpdate(BaseModel):
    quantity: int = PydanticField(ge=0)
    originalStock: Optional[int] = PydanticField(default=None, ge=0)


class ScanRequest(BaseModel):
    barcode: str = PydanticField(min_length=1)


def compute_stock_health(quantity: int, original_stock: int) -> StockHealth:
    """Classify an item's stock relative to its original stock.

    Zero stock is always out of stock. When the baseline is missing the
    current quantity stands in for it, which reads as fully stocked.
    """
    if quantity <= 0:
        return StockHealth.OUT_OF_STOCK
    baseline = original_stock if original_stock > 0 else quantity
    percentage = quantity / baseline * 100
    if percentage >= LOW_STOCK_THRESHOLD_PERCENT:
        return StockHealth.HEALTHY
    return StockHealth.LOW


def _isoformat(value: datetime) -> str:
    # SQLite hands datetimes back without tzinfo; they were written as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def item_to_dict(item: Item, with_status: bool = False) -> dict:
    data = {
        "id": item.barcode,
        "barcode": item.barcode,
        "name": item.name,
        "category": item.category,
        "quantity": item.quantity,
        "originalStock": item.original_stock,
        "createdAt": _isoformat(item.created_at),
    }
    if with_status:
        data["status"] = compute_stock_health(item.quantity, item.original_stock).value
    return data


def transaction_to_dict(entry: Transaction, item: Optional[Item] = None) -> dict:
    """Serialize a transaction joined with the item as it is *now*.

    ``itemName`` and ``category`` come from the current item record, so they
    are ``None`` once the item has been deleted.
    """
    return {
        "id": str(entry.id),
        "barcode": entry.barcode,
        "action": entry.action,
        "quantity": entry.quantity,
        "timestamp": entry.timestamp,
        "itemName": item.name if item is not None else None,
        "category": item.category if item is not None else None,
    }
