"""ScanRecord model — one attempted execution of a scan pipeline for a service."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scantrack.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ScanState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    FAILED_SECURITY = "FAILED_SECURITY"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ScanState.SUCCESS,
        ScanState.FAILED,
        ScanState.FAILED_SECURITY,
        ScanState.BLOCKED,
        ScanState.CANCELLED,
    }
)


class ScanMode(str, Enum):
    SCAN_ONLY = "SCAN_ONLY"
    SCAN_AND_BUILD = "SCAN_AND_BUILD"


class ScanRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Local mirror of a CI scan pipeline.

    Lifecycle columns are written only through ``scantrack.engine.lifecycle``.
    Every UPDATE is guarded by ``version_id`` so two writers racing on the same
    row cannot both win.
    """

    __tablename__ = "scan_records"

    # Assigned by the CI system on dispatch; immutable once set
    external_pipeline_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True, index=True
    )

    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scan_mode: Mapped[ScanMode] = mapped_column(
        SAEnum(ScanMode, native_enum=False, length=20),
        nullable=False,
        default=ScanMode.SCAN_ONLY,
    )
    image_tag: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Lifecycle
    state: Mapped[ScanState] = mapped_column(
        SAEnum(ScanState, native_enum=False, length=32),
        nullable=False,
        default=ScanState.QUEUED,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome: counts are denormalized from ``findings`` and recomputed on every write
    findings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    vuln_critical: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vuln_high: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vuln_medium: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vuln_low: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_pushed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pipeline_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Acknowledgement: set once, never cleared
    is_critical_acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_latest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    # Relationships
    service: Mapped["Service"] = relationship("Service", lazy="selectin")  # noqa: F821

    def __init__(self, **kwargs: Any) -> None:
        # Column defaults only apply at INSERT; the state machine reads these before that
        kwargs.setdefault("state", ScanState.QUEUED)
        kwargs.setdefault("scan_mode", ScanMode.SCAN_ONLY)
        for counter in ("vuln_critical", "vuln_high", "vuln_medium", "vuln_low"):
            kwargs.setdefault(counter, 0)
        kwargs.setdefault("image_pushed", False)
        kwargs.setdefault("is_critical_acknowledged", False)
        kwargs.setdefault("is_latest", True)
        super().__init__(**kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def __repr__(self) -> str:
        return f"<ScanRecord pipeline={self.external_pipeline_id!r} state={self.state.value!r}>"
