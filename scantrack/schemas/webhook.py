"""Schema for CI notifications delivered to the webhook."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WebhookPayload(BaseModel):
    """Pipeline notification.

    Accepts either the compact form sent by the scan pipeline's own jobs::

        {"pipelineId": 123, "status": "running", "tool": "gitleaks", "report": [...]}

    or a native GitLab pipeline event (``object_kind == "pipeline"``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pipeline_id: str = Field(..., alias="pipelineId", min_length=1)
    status: str = Field(..., min_length=1)
    tool: str | None = None
    report: Any = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_gitlab_event(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("object_kind") == "pipeline":
            attributes = data.get("object_attributes") or {}
            return {"pipelineId": attributes.get("id"), "status": attributes.get("status")}
        return data

    @field_validator("pipeline_id", mode="before")
    @classmethod
    def _coerce_pipeline_id(cls, v: Any) -> Any:
        # GitLab sends numeric ids
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class WebhookAck(BaseModel):
    scan_id: str
    state: str
    changed: bool
