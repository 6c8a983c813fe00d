"""FastAPI dependency providers."""

from __future__ import annotations

import hmac
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scantrack.ci.base import PipelineExecutor
from scantrack.ci.gitlab import GitLabExecutor
from scantrack.core.config import Settings, get_settings
from scantrack.core.database import get_session_factory
from scantrack.engine.cleanup import ImageCleaner


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for the duration of a request."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Session factory for engine calls that manage their own versioned writes."""
    return get_session_factory()


def get_executor() -> PipelineExecutor:
    return GitLabExecutor.from_settings()


def get_cleaner(executor: PipelineExecutor = Depends(get_executor)) -> ImageCleaner:
    return ImageCleaner(executor)


def get_app_settings() -> Settings:
    return get_settings()


async def verify_webhook_token(
    settings: Annotated[Settings, Depends(get_app_settings)],
    x_gitlab_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject webhook deliveries whose X-Gitlab-Token does not match the configured secret."""
    if not settings.webhook_secret:
        return
    if x_gitlab_token is None or not hmac.compare_digest(
        x_gitlab_token.encode(), settings.webhook_secret.encode()
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")
