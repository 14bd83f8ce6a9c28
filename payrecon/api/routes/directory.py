"""Agent, merchant and application settings endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from payrecon.api.deps import get_settings_cache, get_store
from payrecon.core.cache import TTLCache
from payrecon.core.store import KeyedStore
from payrecon.schemas.agent import Agent, Merchant
from payrecon.schemas.app_settings import AppSettings
from payrecon.services.app_settings import SettingsService
from payrecon.services.directory import AgentDirectory, MerchantDirectory

router = APIRouter()


# ── Agents ───────────────────────────────────────────────────────────


@router.get("/agents", response_model=list[Agent])
def list_agents(store: KeyedStore = Depends(get_store)) -> list[Agent]:
    return AgentDirectory(store).list_all()


@router.post("/agents", response_model=Agent, status_code=201)
def create_agent(data: dict[str, Any] = Body(...), store: KeyedStore = Depends(get_store)) -> Agent:
    return AgentDirectory(store).create(data)


@router.get("/agents/{agent_id}", response_model=Agent)
def get_agent(agent_id: str, store: KeyedStore = Depends(get_store)) -> Agent:
    return AgentDirectory(store).get(agent_id)


@router.patch("/agents/{agent_id}", response_model=Agent)
def update_agent(
    agent_id: str,
    changes: dict[str, Any] = Body(...),
    store: KeyedStore = Depends(get_store),
) -> Agent:
    return AgentDirectory(store).update(agent_id, changes)


@router.put("/agents/{agent_id}/rates/{point_of_sale_name}", response_model=Agent)
def set_point_of_sale_rates(
    agent_id: str,
    point_of_sale_name: str,
    rates: Optional[dict[str, Any]] = Body(None),
    store: KeyedStore = Depends(get_store),
) -> Agent:
    """Replace the rate table of one point of sale (empty body removes it)."""
    return AgentDirectory(store).set_point_of_sale_rates(agent_id, point_of_sale_name, rates)


@router.delete("/agents/{agent_id}", status_code=204)
def delete_agent(agent_id: str, store: KeyedStore = Depends(get_store)) -> None:
    AgentDirectory(store).delete(agent_id)


# ── Merchants ────────────────────────────────────────────────────────


@router.get("/merchants", response_model=list[Merchant])
def list_merchants(store: KeyedStore = Depends(get_store)) -> list[Merchant]:
    return MerchantDirectory(store).list_all()


@router.post("/merchants", response_model=Merchant, status_code=201)
def create_merchant(data: dict[str, Any] = Body(...), store: KeyedStore = Depends(get_store)) -> Merchant:
    return MerchantDirectory(store).create(data)


@router.patch("/merchants/{merchant_id}", response_model=Merchant)
def update_merchant(
    merchant_id: str,
    changes: dict[str, Any] = Body(...),
    store: KeyedStore = Depends(get_store),
) -> Merchant:
    return MerchantDirectory(store).update(merchant_id, changes)


@router.delete("/merchants/{merchant_id}", status_code=204)
def delete_merchant(merchant_id: str, store: KeyedStore = Depends(get_store)) -> None:
    MerchantDirectory(store).delete(merchant_id)


# ── Settings ─────────────────────────────────────────────────────────


@router.get("/settings", response_model=AppSettings)
def get_settings(
    store: KeyedStore = Depends(get_store),
    cache: TTLCache = Depends(get_settings_cache),
) -> AppSettings:
    return SettingsService(store, cache).get_settings()


@router.patch("/settings", response_model=AppSettings)
def update_settings(
    changes: dict[str, Any] = Body(...),
    store: KeyedStore = Depends(get_store),
    cache: TTLCache = Depends(get_settings_cache),
) -> AppSettings:
    return SettingsService(store, cache).update_settings(changes)
