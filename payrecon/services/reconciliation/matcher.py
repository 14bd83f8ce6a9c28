"""Three-way transaction matching between merchant and agent reports.

Every transaction code seen on either side yields exactly one record:

  - both sides, once each, equal amounts   -> MATCHED
  - both sides, once each, amounts differ  -> ERROR_AMOUNT
  - more than once on either side          -> ERROR_DUPLICATE
  - merchant side only                     -> MISSING_IN_AGENT
  - agent side only                        -> MISSING_IN_MERCHANT

A duplicated code is reported as ERROR_DUPLICATE even when the other side
has no row for it.  Amounts are compared exactly.

A code that would match but already has a MATCHED record from an earlier
run is also reported as ERROR_DUPLICATE, so one transaction is never owed
twice.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional

from payrecon.core.logging import get_logger
from payrecon.schemas.agent import Agent
from payrecon.schemas.reconciliation import (
    AgentSnapshot,
    MerchantSnapshot,
    ReconciliationRecord,
    TransactionStatus,
)
from payrecon.schemas.transaction import AgentTransaction, MerchantTransaction
from payrecon.services.ingestion.normalizer import point_of_sale_key

logger = get_logger(__name__)


@dataclass
class MatchResult:
    """Container for matching outcomes.

    Attributes:
        records: One unsaved record per distinct transaction code, in the
            order codes were first seen (merchant side first).
        by_status: Number of records per status value.
    """

    records: List[ReconciliationRecord] = field(default_factory=list)
    by_status: Counter = field(default_factory=Counter)

    def count(self, status: TransactionStatus) -> int:
        return self.by_status.get(status.value, 0)


class AgentResolver:
    """Maps an agent-side row to an agent id.

    An explicit ``agent_id`` may hold either the agent's id or its code.
    Without one, the agent whose assigned points of sale include the row's
    point of sale is used (compared ignoring case and whitespace).
    """

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._by_ref: dict[str, str] = {}
        self._by_pos: dict[str, str] = {}
        for agent in sorted(agents, key=lambda a: a.id or ""):
            if not agent.id:
                continue
            self._by_ref[agent.id] = agent.id
            self._by_ref.setdefault(agent.code, agent.id)
            for pos in agent.assigned_point_of_sales:
                self._by_pos.setdefault(point_of_sale_key(pos), agent.id)

    def resolve(self, agent_id: Optional[str], point_of_sale_name: Optional[str]) -> Optional[str]:
        if agent_id:
            return self._by_ref.get(agent_id, agent_id)
        if point_of_sale_name:
            return self._by_pos.get(point_of_sale_key(point_of_sale_name))
        return None


class TransactionMatcher:
    """Classifies merchant and agent transactions by transaction code."""

    def __init__(
        self,
        agents: Iterable[Agent] = (),
        default_payment_method: Optional[str] = None,
    ) -> None:
        self.resolver = AgentResolver(agents)
        self.default_payment_method = default_payment_method

    def match(
        self,
        merchant_transactions: Iterable[MerchantTransaction],
        agent_transactions: Iterable[AgentTransaction],
        already_matched: Optional[Mapping[str, str]] = None,
    ) -> MatchResult:
        """Match both sides by transaction code.

        Args:
            merchant_transactions: Rows from the payment channel.
            agent_transactions: Rows reported by agents.
            already_matched: Code -> id of a MATCHED record from an earlier
                run.

        Returns:
            A ``MatchResult``; records have no id or session yet.
        """
        result = MatchResult()
        already_matched = already_matched or {}

        # --- Step 1: group both sides by code ----------------------------
        merchant_map: dict[str, list[MerchantTransaction]] = {}
        for txn in merchant_transactions:
            merchant_map.setdefault(txn.transaction_code, []).append(txn)

        agent_map: dict[str, list[AgentTransaction]] = {}
        for txn in agent_transactions:
            agent_map.setdefault(txn.transaction_code, []).append(txn)

        codes = list(merchant_map)
        codes.extend(code for code in agent_map if code not in merchant_map)

        # --- Step 2: classify each code once -----------------------------
        for code in codes:
            record = self._classify(code, merchant_map.get(code, []), agent_map.get(code, []))
            if record.status == TransactionStatus.MATCHED and code in already_matched:
                record = record.model_copy(
                    update={
                        "status": TransactionStatus.ERROR_DUPLICATE,
                        "error_detail": f"Transaction code {code} already matched in record {already_matched[code]}",
                    }
                )
            result.records.append(record)
            result.by_status[record.status.value] += 1

        logger.info(
            "Matching complete: codes=%d matched=%d amount_errors=%d "
            "duplicates=%d missing_agent=%d missing_merchant=%d",
            len(result.records),
            result.count(TransactionStatus.MATCHED),
            result.count(TransactionStatus.ERROR_AMOUNT),
            result.count(TransactionStatus.ERROR_DUPLICATE),
            result.count(TransactionStatus.MISSING_IN_AGENT),
            result.count(TransactionStatus.MISSING_IN_MERCHANT),
        )
        return result

    # ── Private helpers ──────────────────────────────────────────────

    def _classify(
        self,
        code: str,
        merchants: list[MerchantTransaction],
        agents: list[AgentTransaction],
    ) -> ReconciliationRecord:
        merchant = merchants[0] if merchants else None
        agent = agents[0] if agents else None

        if len(merchants) > 1 or len(agents) > 1:
            sides = []
            if len(merchants) > 1:
                sides.append(f"{len(merchants)} times in merchant data")
            if len(agents) > 1:
                sides.append(f"{len(agents)} times in agent data")
            status = TransactionStatus.ERROR_DUPLICATE
            detail = f"Transaction code {code} appears " + " and ".join(sides)
        elif merchant is not None and agent is None:
            status = TransactionStatus.MISSING_IN_AGENT
            detail = f"Transaction code {code} not reported by any agent"
        elif merchant is None:
            status = TransactionStatus.MISSING_IN_MERCHANT
            detail = f"Transaction code {code} not found in merchant data"
        elif merchant.amount != agent.amount:
            status = TransactionStatus.ERROR_AMOUNT
            detail = f"Amount mismatch: merchant={merchant.amount} agent={agent.amount}"
        else:
            status = TransactionStatus.MATCHED
            detail = None

        return self._build_record(code, status, merchant, agent, detail)

    def _build_record(
        self,
        code: str,
        status: TransactionStatus,
        merchant: Optional[MerchantTransaction],
        agent: Optional[AgentTransaction],
        detail: Optional[str],
    ) -> ReconciliationRecord:
        merchant_data = None
        if merchant is not None:
            merchant_data = MerchantSnapshot(
                transaction_id=merchant.id,
                amount=merchant.amount,
                merchant_code=merchant.merchant_code,
                method=merchant.payment_method,
                point_of_sale_name=merchant.point_of_sale_name,
            )

        agent_data = None
        if agent is not None:
            pos_for_agent = agent.point_of_sale_name or (merchant.point_of_sale_name if merchant else None)
            agent_data = AgentSnapshot(
                agent_id=self.resolver.resolve(agent.agent_id, pos_for_agent),
                amount=agent.amount,
                point_of_sale_name=agent.point_of_sale_name,
            )

        primary = merchant if merchant is not None else agent
        method = (
            (merchant.payment_method if merchant else None)
            or (agent.payment_method if agent else None)
            or self.default_payment_method
        )
        merchant_amount = merchant.amount if merchant else 0
        agent_amount = agent.amount if agent else None
        difference = agent_amount - merchant_amount if merchant and agent else 0

        return ReconciliationRecord(
            transaction_code=code,
            status=status,
            merchant_data=merchant_data,
            agent_data=agent_data,
            point_of_sale_name=(
                (merchant.point_of_sale_name if merchant else None)
                or (agent.point_of_sale_name if agent else None)
            ),
            payment_method=method,
            merchant_amount=merchant_amount,
            agent_amount=agent_amount,
            difference=difference,
            transaction_date=primary.transaction_date or (agent.transaction_date if agent else None),
            error_detail=detail,
        )
