"""Error types raised by the scan service.

Each error carries the HTTP status it maps to at the request boundary so the
FastAPI exception handlers in :mod:`scanstock.main` stay a one-liner.

Copyright (c) Bryn Gwalad 2025
"""


class InventoryError(Exception):
    """Base class for every error the service reports to a caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(InventoryError):
    """Missing or malformed request fields."""

    status_code = 400


class NotFoundError(InventoryError):
    """Unknown barcode."""

    status_code = 404


class ConflictError(InventoryError):
    """An item with the same barcode already exists."""

    status_code = 400


class StoreUnavailableError(InventoryError):
    """The underlying data store failed."""

    status_code = 500


class ConfigurationError(InventoryError):
    """The stored scanner mode is not one the processor understands."""

    status_code = 400
