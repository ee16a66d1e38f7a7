"""Store access for the scan service.

Utilities provided:
- initialize the SQLite engine and seed the scanner mode row
- create sessions that turn SQLAlchemy failures into ``StoreUnavailableError``
- read and write item records keyed by barcode
- append to and read from the transaction log
- read and replace the scanner mode
- an in-process change feed fired after every committed write

The default local SQLite file is ``database/database.db`` (configurable via
the ``SQLITE_FILE`` environment variable, or replaced entirely by
``DATABASE_URL``). All functions here are blocking; async callers run them
with ``asyncio.to_thread``.

Copyright (c) Bryn Gwalad 2025
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import pydantic
from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, col, create_engine, select

# Load environment variables from .env if present
load_dotenv()

from .errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from .models import (
    Item,
    ScannerMode,
    ScannerModeName,
    ScannerModeRecord,
    Transaction,
    TransactionAction,
    transaction_to_dict,
    utcnow,
)

logger = logging.getLogger("scanstock.database")

# Change feed namespaces, named after the store layout the dashboard expects.
ITEMS = "items"
TRANSACTIONS = "transactions"
SCANNER_MODE = "scannerMode"

TRANSACTION_HISTORY_LIMIT = int(os.getenv("TRANSACTION_HISTORY_LIMIT", "100"))
DEFAULT_SCANNER_MODE = ScannerMode(mode=ScannerModeName.DECREMENT, quantity=1)

sqlite_file_name = os.getenv("SQLITE_FILE", "database/database.db")
database_url = os.getenv("DATABASE_URL") or f"sqlite:///{sqlite_file_name}"

# Ensure parent directory exists before creating the engine
if database_url == f"sqlite:///{sqlite_file_name}":
    Path(sqlite_file_name).parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(database_url, echo=False)

ChangeListener = Callable[[str, object], None]

_listeners: List[ChangeListener] = []
_listeners_lock = threading.Lock()


def init_db() -> None:
    """Create tables and seed the scanner mode row if it is missing."""
    SQLModel.metadata.create_all(engine)
    with get_session() as session:
        if session.get(ScannerModeRecord, 1) is None:
            session.add(
                ScannerModeRecord(
                    id=1,
                    mode=DEFAULT_SCANNER_MODE.mode.value,
                    quantity=DEFAULT_SCANNER_MODE.quantity,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # another process seeded it first
                session.rollback()


@contextmanager
def get_session() -> Iterator[Session]:
    """Yield a session whose objects stay readable after it closes."""
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreUnavailableError("Data store operation failed") from exc
    finally:
        session.close()


def subscribe(listener: ChangeListener) -> Callable[[], None]:
    """Register ``listener(namespace, payload)`` for committed writes.

    Listeners run on whichever thread performed the write. Returns a callable
    that removes the listener again.
    """
    with _listeners_lock:
        _listeners.append(listener)

    def unsubscribe() -> None:
        with _listeners_lock:
            if listener in _listeners:
                _listeners.remove(listener)

    return unsubscribe


def _publish(namespace: str, payload: object) -> None:
    with _listeners_lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(namespace, payload)
        except Exception:
            logger.exception("Change listener failed for namespace=%s", namespace)


def _now_ms() -> int:
    return int(time.time() * 1000)


# -- items -----------------------------------------------------------------


def list_items() -> List[Item]:
    """Return every item, newest first."""
    with get_session() as session:
        query = select(Item).order_by(col(Item.created_at).desc(), col(Item.barcode))
        return list(session.exec(query).all())


def find_item(barcode: str) -> Optional[Item]:
    with get_session() as session:
        return session.get(Item, barcode)


def get_item(barcode: str) -> Item:
    item = find_item(barcode)
    if item is None:
        raise NotFoundError("Item not found")
    return item


def create_item(barcode: str, name: str, category: str, quantity: int) -> Item:
    """Insert a new item; its original stock is the initial quantity.

    The barcode is the primary key, so a duplicate insert is rejected by the
    store itself rather than by a separate existence check.
    """
    if not barcode or not name or not category:
        raise ValidationError("Missing required fields")
    quantity = int(quantity)
    if quantity < 0:
        raise ValidationError("Quantity must not be negative")

    item = Item(
        barcode=barcode,
        name=name,
        category=category,
        quantity=quantity,
        original_stock=quantity,
        created_at=utcnow(),
    )
    with get_session() as session:
        session.add(item)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("Item with this barcode already exists") from exc

    logger.info("Created item barcode=%s quantity=%s", barcode, quantity)
    _publish(ITEMS, barcode)
    return item


def update_item(barcode: str, quantity: int, original_stock: Optional[int] = None) -> Item:
    """Overwrite the stock count, and the baseline when one is given."""
    quantity = int(quantity)
    if quantity < 0:
        raise ValidationError("Quantity must not be negative")
    with get_session() as session:
        item = session.get(Item, barcode)
        if item is None:
            raise NotFoundError("Item not found")
        item.quantity = quantity
        if original_stock is not None:
            item.original_stock = int(original_stock)
        session.add(item)
        session.commit()

    logger.info("Updated item barcode=%s quantity=%s", barcode, quantity)
    _publish(ITEMS, barcode)
    return item


def delete_item(barcode: str) -> None:
    """Remove an item. Its transactions are kept."""
    with get_session() as session:
        item = session.get(Item, barcode)
        if item is None:
            raise NotFoundError("Item not found")
        session.delete(item)
        session.commit()

    logger.info("Deleted item barcode=%s", barcode)
    _publish(ITEMS, barcode)


# -- transaction log -------------------------------------------------------


def append_transaction(
    barcode: str,
    action: TransactionAction,
    quantity: int = 0,
    session: Optional[Session] = None,
) -> Transaction:
    """Append a transaction entry.

    If a Session is provided the entry joins that unit of work and the caller
    commits (and publishes); otherwise a short-lived session commits it here.
    """
    entry = Transaction(
        barcode=barcode,
        action=TransactionAction(action).value,
        quantity=int(quantity),
        timestamp=_now_ms(),
    )
    if session is not None:
        session.add(entry)
        session.flush()
        return entry

    with get_session() as own_session:
        # read the item in the same unit of work so publishing needs no
        # further store access once the entry is committed
        item = own_session.get(Item, barcode)
        own_session.add(entry)
        own_session.commit()
    _publish(TRANSACTIONS, transaction_to_dict(entry, item))
    return entry


def list_recent_transactions(limit: Optional[int] = None) -> List[dict]:
    """Return the most recent transactions, newest first, with current item data."""
    if limit is None:
        limit = TRANSACTION_HISTORY_LIMIT
    with get_session() as session:
        query = (
            select(Transaction)
            .order_by(col(Transaction.timestamp).desc(), col(Transaction.id).desc())
            .limit(limit)
        )
        entries = list(session.exec(query).all())
        barcodes = {entry.barcode for entry in entries}
        items: Dict[str, Item] = {}
        if barcodes:
            found = session.exec(select(Item).where(col(Item.barcode).in_(sorted(barcodes)))).all()
            items = {item.barcode: item for item in found}
    return [transaction_to_dict(entry, items.get(entry.barcode)) for entry in entries]


def apply_stock_change(
    barcode: str, new_quantity: int, action: TransactionAction, quantity: int
) -> Tuple[Item, Transaction]:
    """Write a new stock count and its transaction in one store transaction.

    The item row is selected ``FOR UPDATE`` where the backend supports it, so
    either both the stock write and the audit entry land or neither does.
    """
    if new_quantity < 0:
        raise ValidationError("Quantity must not be negative")
    with get_session() as session:
        item = session.exec(
            select(Item).where(Item.barcode == barcode).with_for_update()
        ).first()
        if item is None:
            raise NotFoundError("Item not found")
        item.quantity = new_quantity
        session.add(item)
        entry = append_transaction(barcode, action, quantity, session=session)
        session.commit()

    _publish(ITEMS, barcode)
    _publish(TRANSACTIONS, transaction_to_dict(entry, item))
    return item, entry


# -- scanner mode ----------------------------------------------------------


def get_scanner_mode() -> ScannerMode:
    """Return the current scanner mode, or the default when none is stored."""
    with get_session() as session:
        record = session.get(ScannerModeRecord, 1)
    if record is None:
        return DEFAULT_SCANNER_MODE
    try:
        return ScannerMode(mode=record.mode, quantity=record.quantity)
    except pydantic.ValidationError as exc:
        raise ConfigurationError(f"Unrecognized scanner mode: {record.mode!r}") from exc


def set_scanner_mode(mode: str, quantity: int = 1) -> ScannerMode:
    """Replace the scanner mode. DETAILS always stores a quantity of 1."""
    try:
        scanner_mode = ScannerMode(mode=mode, quantity=quantity)
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid scanner mode") from exc
    if scanner_mode.mode == ScannerModeName.DETAILS:
        scanner_mode = ScannerMode(mode=ScannerModeName.DETAILS, quantity=1)

    with get_session() as session:
        record = session.get(ScannerModeRecord, 1)
        if record is None:
            record = ScannerModeRecord(id=1)
        record.mode = scanner_mode.mode.value
        record.quantity = scanner_mode.quantity
        session.add(record)
        session.commit()

    logger.info("Scanner mode set to %s x%s", scanner_mode.mode.value, scanner_mode.quantity)
    _publish(SCANNER_MODE, scanner_mode.model_dump(mode="json"))
    return scanner_mode
