"""Pydantic schemas for merchant batch ingestion results."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class SkippedTransaction(BaseModel):
    transaction_code: str
    reason: str = Field(..., description="duplicate | invalid")
    existing_id: Optional[str] = None


class IngestionResult(BaseModel):
    """Per-batch outcome: ids created and codes skipped with a reason."""

    created: list[str] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.skipped:
            return "success"
        return "partial" if self.created else "skipped"
