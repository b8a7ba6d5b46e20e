"""RFID Portal backend: reader session, ingestion pipeline and inventory matching."""

__version__ = "0.3.0"
