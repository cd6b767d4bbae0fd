"""Shared Pydantic response models for the sync API.

All successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": ..., "message": ...}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    provider: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
