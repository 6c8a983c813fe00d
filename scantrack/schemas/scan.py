"""Schemas for ScanRecord resources."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from scantrack.models.scan_record import ScanMode, ScanState


class ScanCreate(BaseModel):
    service_id: uuid.UUID
    scan_mode: ScanMode = Field(default=ScanMode.SCAN_ONLY)
    image_tag: str | None = Field(
        default=None,
        max_length=128,
        description="Tag of the image built by SCAN_AND_BUILD pipelines",
    )


class ScanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    service_id: uuid.UUID
    external_pipeline_id: str | None
    scan_mode: ScanMode
    image_tag: str | None
    state: ScanState
    started_at: datetime | None
    completed_at: datetime | None
    vuln_critical: int
    vuln_high: int
    vuln_medium: int
    vuln_low: int
    image_pushed: bool
    pipeline_url: str | None
    error_message: str | None
    is_critical_acknowledged: bool
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    is_latest: bool
    created_at: datetime
    updated_at: datetime


class ScanDetailOut(ScanOut):
    findings: dict[str, Any] | None


class ScanList(BaseModel):
    total: int
    items: list[ScanOut]


class AcknowledgeRequest(BaseModel):
    user: str = Field(..., min_length=1, max_length=255)
    action: Literal["acknowledge", "archive"] = "acknowledge"


class SyncSummaryOut(BaseModel):
    checked: int
    changed: int
    errors: int
