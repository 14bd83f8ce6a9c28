"""Debt report endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from payrecon.api.deps import get_date_range, get_store
from payrecon.core.config import settings
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore
from payrecon.schemas.debt import AccountDebtRow, AgentDebtRow, DateRange
from payrecon.services.reporting.debt_aggregator import DebtAggregator

logger = get_logger(__name__)

router = APIRouter()


@router.get("/debt/agents", response_model=list[AgentDebtRow])
def debt_by_agent(
    date_range: DateRange = Depends(get_date_range),
    store: KeyedStore = Depends(get_store),
) -> list[AgentDebtRow]:
    """What each agent is owed for matched transactions in the window."""
    logger.info("Agent debt report requested: %s..%s", date_range.date_from, date_range.date_to)
    return DebtAggregator(store, settings).get_debt_by_agent(date_range)


@router.get("/debt/accounts", response_model=list[AccountDebtRow])
def debt_by_account(
    date_range: DateRange = Depends(get_date_range),
    store: KeyedStore = Depends(get_store),
) -> list[AccountDebtRow]:
    """Matched volume per settlement bank account, broken down by merchant."""
    logger.info("Account debt report requested: %s..%s", date_range.date_from, date_range.date_to)
    return DebtAggregator(store, settings).get_debt_by_admin_account(date_range)
