"""Barcode scan processing and realtime stock synchronization service."""

__version__ = "0.1.0"
