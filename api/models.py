"""
API response models for terminalpub HTTP endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


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
    """Response for GET /api/v1/health.

    status is "degraded" when the cache is down (logins still work, every
    session read just goes to the database) and "unhealthy" when the durable
    store is down.
    """

    model_config = ConfigDict(frozen=True)

    status: Literal["healthy", "degraded", "unhealthy"] = "healthy"
    version: str
    components: dict[str, Literal["ok", "error"]] = {}
