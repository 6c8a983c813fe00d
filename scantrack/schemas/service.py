"""Schemas for Service resources."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    repo_url: str = Field(..., min_length=1, max_length=500)
    ref: str = Field(default="main", min_length=1, max_length=255)
    image_name: str | None = Field(
        default=None,
        max_length=255,
        description="Repository name in the CI container registry (omit if no image is built)",
    )


class ServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    repo_url: str
    ref: str
    image_name: str | None
    created_at: datetime
    updated_at: datetime


class ServiceList(BaseModel):
    total: int
    items: list[ServiceOut]
