"""CI webhook receiver — pipeline status and scanner reports pushed by the CI system."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scantrack.api.dependencies import get_cleaner, get_db, get_sessionmaker, verify_webhook_token
from scantrack.core.logging import get_logger
from scantrack.engine.cleanup import ImageCleaner
from scantrack.engine.reconciler import apply_notification
from scantrack.models.scan_record import ScanRecord
from scantrack.schemas.webhook import WebhookAck, WebhookPayload

router = APIRouter(tags=["webhook"], dependencies=[Depends(verify_webhook_token)])
logger = get_logger(__name__)


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    payload: WebhookPayload,
    db: Annotated[AsyncSession, Depends(get_db)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_sessionmaker)],
    cleaner: Annotated[ImageCleaner, Depends(get_cleaner)],
) -> WebhookAck:
    result = await db.execute(
        select(ScanRecord.id).where(ScanRecord.external_pipeline_id == payload.pipeline_id)
    )
    record_id = result.scalar_one_or_none()
    if record_id is None:
        logger.warning("Webhook for unknown pipeline", pipeline_id=payload.pipeline_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown pipeline")

    record, transition = await apply_notification(
        session_factory,
        record_id,
        payload.status,
        tool=payload.tool,
        report=payload.report,
        cleaner=cleaner,
    )
    logger.info(
        "Webhook applied",
        scan_id=str(record.id),
        pipeline_id=payload.pipeline_id,
        status=payload.status,
        tool=payload.tool,
        changed=transition.changed,
    )
    return WebhookAck(scan_id=str(record.id), state=record.state.value, changed=transition.changed)
