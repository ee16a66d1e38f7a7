"""Scan processing.

A scan looks up the item, reads the scanner mode once, and hands both to
:func:`plan_scan`, a pure function deciding what the scan does. The resulting
plan is then written to the store: stock change and transaction together for
INCREMENT/DECREMENT, a bare VIEW transaction for DETAILS, nothing at all for
a scan of an out-of-stock item.

All mutations of one barcode are serialized through a :class:`KeyedLock`, so
two scans racing on the same item cannot both deduct from the same count.

Copyright (c) Bryn Gwalad 2025
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from . import database
from .errors import ConfigurationError, ValidationError
from .locks import KeyedLock
from .models import (
    Item,
    ScannerMode,
    ScannerModeName,
    StockHealth,
    Transaction,
    TransactionAction,
    compute_stock_health,
    item_to_dict,
)

logger = logging.getLogger("scanstock.scanner")


@dataclass
class ScanPlan:
    """What a scan should do, decided from a quantity and a mode snapshot."""

    success: bool
    action: TransactionAction
    new_quantity: int
    quantity_changed: int
    requested_quantity: int
    write_stock: bool
    append_transaction: bool
    message: str
    was_partial_deduction: bool = False


def plan_scan(quantity: int, mode: ScannerMode) -> ScanPlan:
    """Compute the effect of scanning an item holding ``quantity`` units."""
    if mode.mode == ScannerModeName.DETAILS:
        return ScanPlan(
            success=True,
            action=TransactionAction.VIEW,
            new_quantity=quantity,
            quantity_changed=0,
            requested_quantity=0,
            write_stock=False,
            append_transaction=True,
            message="Item details retrieved",
        )

    if mode.mode == ScannerModeName.DECREMENT:
        requested = mode.quantity
        if quantity <= 0:
            return ScanPlan(
                success=False,
                action=TransactionAction.DEDUCT,
                new_quantity=0,
                quantity_changed=0,
                requested_quantity=requested,
                write_stock=False,
                append_transaction=False,
                message="Item is out of stock",
            )
        deducted = min(requested, quantity)
        partial = deducted < requested
        if partial:
            message = (
                f"Only {deducted} of {requested} requested units were in stock; "
                f"deducted {deducted}"
            )
        else:
            message = f"Stock decreased by {deducted}"
        return ScanPlan(
            success=True,
            action=TransactionAction.DEDUCT,
            new_quantity=quantity - deducted,
            quantity_changed=deducted,
            requested_quantity=requested,
            write_stock=True,
            append_transaction=True,
            message=message,
            was_partial_deduction=partial,
        )

    if mode.mode == ScannerModeName.INCREMENT:
        return ScanPlan(
            success=True,
            action=TransactionAction.ADD,
            new_quantity=quantity + mode.quantity,
            quantity_changed=mode.quantity,
            requested_quantity=mode.quantity,
            write_stock=True,
            append_transaction=True,
            message=f"Stock increased by {mode.quantity}",
        )

    raise ConfigurationError(f"Unrecognized scanner mode: {mode.mode!r}")


@dataclass
class ScanResult:
    """Outcome of one scan, rendered as the ``POST /scan`` response body."""

    barcode: str
    found: bool
    success: bool
    message: str
    item: Optional[Item] = None
    action: Optional[TransactionAction] = None
    mode: Optional[ScannerMode] = None
    new_stock: int = 0
    quantity_changed: int = 0
    requested_quantity: int = 0
    was_partial_deduction: bool = False
    stock_health: Optional[StockHealth] = None
    transaction: Optional[Transaction] = field(default=None, repr=False)

    @classmethod
    def not_found(cls, barcode: str) -> "ScanResult":
        return cls(barcode=barcode, found=False, success=False, message="Item not found")

    @property
    def status_code(self) -> int:
        return 200 if self.found else 404

    def to_dict(self) -> dict:
        if not self.found:
            return {
                "success": False,
                "barcode": self.barcode,
                "error": self.message,
                "message": self.message,
            }
        item = item_to_dict(self.item, with_status=True)
        return {
            "success": self.success,
            "action": self.action.value,
            "message": self.message,
            "item": item,
            "name": item["name"],
            "category": item["category"],
            "newStock": self.new_stock,
            "quantityChanged": self.quantity_changed,
            "requestedQuantity": self.requested_quantity,
            "wasPartialDeduction": self.was_partial_deduction,
            "stockHealth": self.stock_health.value,
            "scannerMode": self.mode.model_dump(mode="json"),
            "transactionId": str(self.transaction.id) if self.transaction is not None else None,
        }


class ScanProcessor:
    """Applies scans to the store under a per-barcode lock."""

    def __init__(self, locks: Optional[KeyedLock] = None):
        self.locks = locks if locks is not None else KeyedLock()

    async def process(self, barcode: str) -> ScanResult:
        if not barcode or not barcode.strip():
            raise ValidationError("Barcode is required")

        async with self.locks.hold(barcode):
            item = await asyncio.to_thread(database.find_item, barcode)
            if item is None:
                logger.info("Scan barcode=%s outcome=not_found", barcode)
                return ScanResult.not_found(barcode)

            mode = await asyncio.to_thread(database.get_scanner_mode)
            plan = plan_scan(item.quantity, mode)

            transaction = None
            if plan.write_stock:
                item, transaction = await asyncio.to_thread(
                    database.apply_stock_change,
                    barcode,
                    plan.new_quantity,
                    plan.action,
                    plan.quantity_changed,
                )
            elif plan.append_transaction:
                transaction = await asyncio.to_thread(
                    database.append_transaction, barcode, plan.action, 0
                )

        logger.info(
            "Scan barcode=%s mode=%s outcome=%s changed=%s new_stock=%s",
            barcode,
            mode.mode.value,
            "ok" if plan.success else "rejected",
            plan.quantity_changed,
            plan.new_quantity,
        )
        return ScanResult(
            barcode=barcode,
            found=True,
            success=plan.success,
            message=plan.message,
            item=item,
            action=plan.action,
            mode=mode,
            new_stock=plan.new_quantity,
            quantity_changed=plan.quantity_changed,
            requested_quantity=plan.requested_quantity,
            was_partial_deduction=plan.was_partial_deduction,
            stock_health=compute_stock_health(plan.new_quantity, item.original_stock),
            transaction=transaction,
        )
