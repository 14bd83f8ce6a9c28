"""Agent and merchant registry backed by the keyed store."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from payrecon.core.errors import DuplicateError, NotFoundError, ValidationError
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore, join_path
from payrecon.schemas.agent import Agent, Merchant
from payrecon.schemas.settlement import PaymentStatus
from payrecon.services.reconciliation.engine import AGENTS_PATH, load_live_records
from payrecon.services.reporting.debt_aggregator import MERCHANTS_PATH
from payrecon.services.settlement.ledger import SettlementLedger

logger = get_logger(__name__)

T = TypeVar("T", Agent, Merchant)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Directory(Generic[T]):
    """CRUD over one collection of coded entities (code is unique)."""

    model: type
    path: str
    label: str

    def __init__(self, store: KeyedStore) -> None:
        self.store = store

    def list_all(self) -> list[T]:
        items = [self.model.from_document(item_id, doc) for item_id, doc in self.store.children(self.path).items()]
        return sorted(items, key=lambda item: (item.code, item.id))

    def get(self, item_id: str) -> T:
        doc = self.store.get(join_path(self.path, item_id))
        if not doc:
            raise NotFoundError(f"{self.label} {item_id} not found", {"id": item_id})
        return self.model.from_document(item_id, doc)

    def find_by_code(self, code: str) -> Optional[T]:
        for item in self.list_all():
            if item.code == code:
                return item
        return None

    def code_exists(self, code: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            doc.get("code") == code and item_id != exclude_id
            for item_id, doc in self.store.children(self.path).items()
        )

    def create(self, data: dict[str, Any]) -> T:
        item = self._validate(data)
        if self.code_exists(item.code):
            raise DuplicateError(f"{self.label} code {item.code} already exists", {"code": item.code})
        item_id = self.store.push_key(self.path)
        now = _utcnow()
        item = item.model_copy(update={"id": item_id, "created_at": now, "updated_at": now})
        self.store.set(join_path(self.path, item_id), item.to_document())
        logger.info("%s created: id=%s code=%s", self.label, item_id, item.code)
        return item

    def update(self, item_id: str, changes: dict[str, Any]) -> T:
        current = self.get(item_id)
        merged = {**current.model_dump(exclude={"id"}), **self.model.by_field_name(changes)}
        item = self._validate(merged)
        if self.code_exists(item.code, exclude_id=item_id):
            raise DuplicateError(f"{self.label} code {item.code} already exists", {"code": item.code})
        item = item.model_copy(update={"id": item_id, "created_at": current.created_at, "updated_at": _utcnow()})
        self.store.set(join_path(self.path, item_id), item.to_document())
        logger.info("%s updated: id=%s", self.label, item_id)
        return item

    def set_active(self, item_id: str, is_active: bool) -> T:
        return self.update(item_id, {"is_active": is_active})

    def delete(self, item_id: str) -> None:
        self.get(item_id)
        self.store.delete(join_path(self.path, item_id))
        logger.info("%s deleted: id=%s", self.label, item_id)

    def _validate(self, data: dict[str, Any]) -> T:
        try:
            return self.model.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {self.label.lower()} data",
                {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            ) from exc


class AgentDirectory(_Directory[Agent]):
    model = Agent
    path = AGENTS_PATH
    label = "Agent"

    def create(self, data: dict[str, Any]) -> Agent:
        data = dict(data)
        data.pop("discount_rates", None)
        data.pop("discountRates", None)
        return super().create(data)

    def update(self, item_id: str, changes: dict[str, Any]) -> Agent:
        if "discount_rates" in changes or "discountRates" in changes:
            raise ValidationError(
                "The flat discount table is read-only; use per point of sale rates",
                {"id": item_id},
            )
        return super().update(item_id, changes)

    def set_point_of_sale_rates(
        self,
        agent_id: str,
        point_of_sale_name: str,
        rates: Optional[dict[str, Any]],
    ) -> Agent:
        """Replace one point of sale's rate table; ``None`` or ``{}`` removes it.

        The point of sale is also added to the agent's assignments.
        """
        agent = self.get(agent_id)
        by_pos = {pos: dict(table) for pos, table in agent.discount_rates_by_point_of_sale.items()}
        assigned = list(agent.assigned_point_of_sales)
        if rates:
            by_pos[point_of_sale_name] = rates
            if point_of_sale_name not in assigned:
                assigned.append(point_of_sale_name)
        else:
            by_pos.pop(point_of_sale_name, None)
        return super().update(
            agent_id,
            {"discount_rates_by_point_of_sale": by_pos, "assigned_point_of_sales": assigned},
        )

    def get_unpaid_stats(self, agent_id: str, ledger: SettlementLedger) -> dict[str, Any]:
        """Number and net total of the agent's PENDING payments."""
        pending = [p for p in ledger.get_payments_by_agent(agent_id) if p.status == PaymentStatus.PENDING]
        return {
            "count": len(pending),
            "total_amount": sum((p.net_amount for p in pending), Decimal(0)),
        }


class MerchantDirectory(_Directory[Merchant]):
    model = Merchant
    path = MERCHANTS_PATH
    label = "Merchant"

    def get_transaction_stats(self, merchant_id: str) -> dict[str, int]:
        """Count and volume of live records attributed to this merchant."""
        merchant = self.get(merchant_id)
        records = [
            r
            for r in load_live_records(self.store)
            if r.merchant_data is not None and r.merchant_data.merchant_code == merchant.code
        ]
        return {
            "count": len(records),
            "total_amount": sum(r.merchant_data.amount for r in records),
        }
