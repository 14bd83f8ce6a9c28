"""FastAPI dependencies shared by the route modules."""

from datetime import date
from typing import Optional

from fastapi import Depends, Query, Request
from sqlalchemy.orm import Session

from payrecon.core.cache import TTLCache
from payrecon.core.database import get_db
from payrecon.core.errors import ValidationError
from payrecon.core.store import KeyedStore, SqlKeyedStore
from payrecon.schemas.debt import DateRange


def get_store(db: Session = Depends(get_db)) -> KeyedStore:
    """Keyed store bound to the request's database session."""
    return SqlKeyedStore(db)


def get_settings_cache(request: Request) -> TTLCache:
    """The app-scoped settings cache created at startup."""
    return request.app.state.settings_cache


def get_date_range(
    date_from: Optional[date] = Query(None, description="First day included (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, description="Last day included (YYYY-MM-DD)"),
) -> DateRange:
    """Inclusive calendar-day window from query parameters."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError(
            "date_from must not be after date_to",
            {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
        )
    return DateRange(date_from=date_from, date_to=date_to)
