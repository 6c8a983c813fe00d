"""SQLAlchemy ORM models."""

from scantrack.models.base import Base
from scantrack.models.scan_record import TERMINAL_STATES, ScanMode, ScanRecord, ScanState
from scantrack.models.service import Service

__all__ = [
    "Base", "ScanMode", "ScanRecord", "ScanState", "Service", "TERMINAL_STATES",
]
