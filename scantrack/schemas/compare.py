"""Schemas for scan comparison results."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

from scantrack.engine.normalizer import FindingCategory, Severity
from scantrack.models.scan_record import ScanState


class FindingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file: str
    line: int
    rule_id: str
    severity: Severity
    message: str
    category: FindingCategory


class ScanRefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    state: ScanState
    created_at: datetime
    completed_at: datetime | None
    vuln_critical: int
    vuln_high: int
    vuln_medium: int
    vuln_low: int


class SeverityDeltaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    critical: int
    high: int
    medium: int
    low: int
    total: int
    trend: Literal["improved", "degraded", "same"]


class ComparisonOut(BaseModel):
    baseline: ScanRefOut
    target: ScanRefOut
    new: list[FindingOut]
    resolved: list[FindingOut]
    persistent: list[FindingOut]
    new_count: int
    resolved_count: int
    persistent_count: int
    changes: SeverityDeltaOut


class ServiceComparisonOut(BaseModel):
    """Comparison of a service's two most recent finished scans."""

    service_id: uuid.UUID
    can_compare: bool
    reason: str | None = None
    comparison: ComparisonOut | None = None
