"""
API response models for the membership site's operational endpoints.

The site itself answers with rendered pages, redirects and handler JSON
(see web/routes.py). These Pydantic v2 models cover only what api/main.py
returns directly: the health probe and the uniform error envelope.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health.

    status is "healthy" when every component reports "ok", else "degraded".
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class StopResponse(BaseModel):
    """Response for POST /stop-process."""

    model_config = ConfigDict(frozen=True)

    status: str = "stopping"
