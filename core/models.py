from __future__ import annotations
"""
Pumpsheet — Pydantic Request Models
"""
from typing import Any

from pydantic import BaseModel, Field


class RecalculateRequest(BaseModel):
    record: dict[str, Any] = Field(default_factory=dict)
    changed_field: str | None = None
    density_correction: bool | None = None


class OpenSessionRequest(BaseModel):
    record: dict[str, Any] = Field(default_factory=dict)
    fetch_recommendations: bool = True


class FieldEditRequest(BaseModel):
    field: str = Field(..., min_length=1, max_length=100)
    value: Any = None


class AutoFillRequest(BaseModel):
    fields: list[str] | None = None


class SubmitRequest(BaseModel):
    draft: bool = False


class RecommendationRefreshRequest(BaseModel):
    project_no: str | None = Field(default=None, max_length=100)
    tag_prefix: str | None = Field(default=None, max_length=20)
    limit: int | None = Field(default=None, ge=1, le=100)
