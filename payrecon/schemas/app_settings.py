"""Pydantic schema for the application settings document."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from payrecon.schemas.base import StoredModel


class AppSettings(StoredModel):
    """Company-wide display and locale settings kept in the store."""

    company_name: str = "PayReconcile Pro"
    company_address: Optional[str] = None
    logo_url: Optional[str] = None
    timezone: str = "Asia/Ho_Chi_Minh"
    currency: str = "VND"
    date_format: str = "DD/MM/YYYY"
    updated_at: Optional[datetime] = None
