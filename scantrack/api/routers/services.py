"""Services API router — register services and compare their latest scans."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scantrack.api.dependencies import get_db
from scantrack.api.routers.scans import build_comparison
from scantrack.core.logging import get_logger
from scantrack.models.scan_record import ScanRecord, ScanState
from scantrack.models.service import Service
from scantrack.schemas.compare import ServiceComparisonOut
from scantrack.schemas.service import ServiceCreate, ServiceList, ServiceOut

router = APIRouter(prefix="/services", tags=["services"])
logger = get_logger(__name__)

DbDep = Annotated[AsyncSession, Depends(get_db)]

# States whose findings are complete enough to compare
COMPARABLE_STATES = (ScanState.SUCCESS, ScanState.FAILED_SECURITY, ScanState.BLOCKED)


@router.get("", response_model=ServiceList)
async def list_services(
    db: DbDep,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
) -> ServiceList:
    total = (await db.execute(select(func.count()).select_from(Service))).scalar_one()
    result = await db.execute(select(Service).order_by(Service.name).offset(skip).limit(limit))
    return ServiceList(total=total, items=list(result.scalars().all()))


@router.post("", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
async def create_service(payload: ServiceCreate, db: DbDep) -> Service:
    existing = await db.execute(select(Service).where(Service.name == payload.name))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Service {payload.name!r} already exists",
        )
    service = Service(**payload.model_dump())
    db.add(service)
    await db.flush()
    await db.refresh(service)
    logger.info("Service registered", service_id=str(service.id), name=service.name)
    return service


@router.get("/{service_id}", response_model=ServiceOut)
async def get_service(service_id: uuid.UUID, db: DbDep) -> Service:
    service = await db.get(Service, service_id)
    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return service


@router.get("/{service_id}/compare", response_model=ServiceComparisonOut)
async def compare_latest(service_id: uuid.UUID, db: DbDep) -> ServiceComparisonOut:
    """Compare the two most recent finished, non-archived scans of a service."""
    service = await db.get(Service, service_id)
    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")

    result = await db.execute(
        select(ScanRecord)
        .where(
            ScanRecord.service_id == service_id,
            ScanRecord.state.in_(COMPARABLE_STATES),
            ScanRecord.is_latest.is_(True),
        )
        .order_by(ScanRecord.created_at.desc())
        .limit(2)
    )
    recent = list(result.scalars().all())
    if len(recent) < 2:
        return ServiceComparisonOut(
            service_id=service_id,
            can_compare=False,
            reason=f"Insufficient history: {len(recent)} finished scan(s), at least 2 required",
        )

    target, baseline = recent
    return ServiceComparisonOut(
        service_id=service_id,
        can_compare=True,
        comparison=build_comparison(baseline, target),
    )
