"""HTTP and WebSocket API for the scan service.

Provides endpoints for item CRUD, barcode scans, the transaction history and
the scanner mode, plus a ``/ws`` push channel mirroring store changes. The
HTTP routes are served at the root and again under ``/api``, the prefix the
dashboard and the scanner firmware call.

Copyright (c) Bryn Gwalad 2025
"""

import asyncio
import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Load environment variables from a .env file at project root if present.
load_dotenv()

from . import database
from .errors import InventoryError
from .locks import KeyedLock
from .models import ItemCreate, ItemStockUpdate, ScanRequest, ScannerMode, item_to_dict
from .realtime import Broadcaster
from .scanner import ScanProcessor

app = FastAPI(title="Scanstock Inventory API")

# Module logger
logger = logging.getLogger("scanstock.api")

router = APIRouter()

# Every mutation of one barcode (scan, manual edit, delete) holds its lock.
barcode_locks = KeyedLock()
scan_processor = ScanProcessor(barcode_locks)
broadcaster = Broadcaster()


@app.on_event("startup")
async def on_startup():
    """Initialize the store and start the realtime broadcaster."""
    if not logging.getLogger().handlers:
        logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    await asyncio.to_thread(database.init_db)
    broadcaster.start()
    logger.info("Scan service started; store=%s", database.engine.url.render_as_string(hide_password=True))


@app.on_event("shutdown")
async def on_shutdown():
    await broadcaster.stop()


@app.exception_handler(InventoryError)
async def handle_inventory_error(request, exc: InventoryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@router.get("/items")
def list_items():
    """Return all items, newest first."""
    return [item_to_dict(item) for item in database.list_items()]


@router.post("/items", status_code=201)
def create_item(payload: ItemCreate):
    """Create an item. Its original stock is the posted quantity."""
    item = database.create_item(payload.barcode, payload.name, payload.category, payload.quantity)
    return item_to_dict(item)


@router.delete("/items/{barcode}")
async def delete_item(barcode: str):
    async with barcode_locks.hold(barcode):
        await asyncio.to_thread(database.delete_item, barcode)
    return {"success": True}


@router.patch("/items/{barcode}")
async def update_item(barcode: str, payload: ItemStockUpdate):
    """Set the stock count by hand, optionally resetting the original stock."""
    async with barcode_locks.hold(barcode):
        item = await asyncio.to_thread(
            database.update_item, barcode, payload.quantity, payload.originalStock
        )
    return item_to_dict(item)


@router.get("/item/{barcode}")
def get_item(barcode: str):
    """Return one item with its stock health as ``status``."""
    return item_to_dict(database.get_item(barcode), with_status=True)


@router.post("/scan")
async def scan(payload: ScanRequest):
    """Apply a scan according to the current scanner mode.

    Business outcomes are reported in the body: a 404 with ``success: false``
    for an unknown barcode, a 200 with ``success: false`` when there is no
    stock left to deduct.
    """
    result = await scan_processor.process(payload.barcode)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.get("/transactions")
def list_transactions():
    """Return the most recent transactions, newest first."""
    return database.list_recent_transactions()


@router.get("/scanner-mode")
def get_scanner_mode():
    return database.get_scanner_mode().model_dump(mode="json")


@router.put("/scanner-mode")
def set_scanner_mode(payload: ScannerMode):
    mode = database.set_scanner_mode(payload.mode, payload.quantity)
    return mode.model_dump(mode="json")


app.include_router(router)
app.include_router(router, prefix="/api", include_in_schema=False)


@app.get("/health")
@app.get("/healthz")
def health_check():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.websocket("/ws")
async def push_channel(websocket: WebSocket):
    """Long-lived push connection.

    The server only pushes; a client may send a ``ping`` text frame and gets
    a ``pong`` back. Any other frame, binary ones included, is ignored.
    """
    await broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is not None and text.strip().lower() == "ping":
                await websocket.send_json({"type": "pong", "data": None})
    finally:
        broadcaster.disconnect(websocket)
