"""Debt reports over matched reconciliation records.

Both reports are pure reads: nothing in the store is modified.  Records
are visited in id order and every output list is sorted, so two runs over
unchanged data produce identical rows.

Records from FAILED sessions are ignored, and a transaction code matched
in more than one session is counted once.  A failed store read propagates
(``StoreError``) instead of yielding partial totals.  Callers can abort a
long scan with ``should_abort``; it is polled between records and raises
``AggregationCancelled``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from payrecon.core.config import Settings
from payrecon.core.errors import AggregationCancelled
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore, join_path
from payrecon.schemas.agent import Agent, Merchant
from payrecon.schemas.debt import AccountDebtRow, AgentDebtRow, DateRange, MerchantDebtLine
from payrecon.schemas.reconciliation import ReconciliationRecord, TransactionStatus
from payrecon.schemas.settlement import Payment, PaymentStatus
from payrecon.services.reconciliation.engine import load_agents, load_live_records, record_day
from payrecon.services.reconciliation.fee_resolver import fee_for_record
from payrecon.services.settlement.ledger import AGENT_PAYMENTS_INDEX, PAYMENTS_PATH

logger = get_logger(__name__)

MERCHANTS_PATH = "merchants"
UNKNOWN_AGENT = "unknown"

AbortCheck = Callable[[], bool]


@dataclass
class _AgentTotals:
    transactions: int = 0
    amount: Decimal = Decimal(0)
    fee: Decimal = Decimal(0)
    last_date: Optional[date] = None
    point_of_sales: set = field(default_factory=set)


class DebtAggregator:
    """Builds per-agent and per-settlement-account debt summaries."""

    def __init__(self, store: KeyedStore, config: Settings) -> None:
        self.store = store
        self.config = config

    # ── Public API ───────────────────────────────────────────────────

    def get_debt_by_agent(
        self,
        date_range: Optional[DateRange] = None,
        should_abort: Optional[AbortCheck] = None,
    ) -> list[AgentDebtRow]:
        """What each agent is owed for MATCHED records in ``date_range``.

        ``paid_amount`` sums the net of every PAID payment of the agent;
        ``unpaid_amount`` is ``net_amount - paid_amount``.

        Returns:
            Rows sorted by agent code.
        """
        agents = load_agents(self.store)
        by_ref: dict[str, Agent] = {}
        for agent in sorted(agents, key=lambda a: a.id or ""):
            by_ref[agent.id] = agent
            by_ref.setdefault(agent.code, agent)

        totals: dict[str, _AgentTotals] = {}
        for record in self._matched_in_range(date_range, should_abort):
            agent = by_ref.get(record.agent_id) if record.agent_id else None
            key = agent.id if agent else (record.agent_id or UNKNOWN_AGENT)
            breakdown = fee_for_record(agent, record, self.config.default_payment_method)

            group = totals.setdefault(key, _AgentTotals())
            group.transactions += 1
            group.amount += breakdown.amount
            group.fee += breakdown.fee
            if record.point_of_sale_name:
                group.point_of_sales.add(record.point_of_sale_name)
            day = record_day(record)
            if day is not None and (group.last_date is None or day > group.last_date):
                group.last_date = day

        rows = []
        for agent_id, group in totals.items():
            self._check_abort(should_abort)
            agent = by_ref.get(agent_id)
            net = group.amount - group.fee
            paid = self._paid_net(agent_id)
            rows.append(
                AgentDebtRow(
                    agent_id=agent_id,
                    agent_code=agent.code if agent else agent_id,
                    agent_name=(agent.name or agent.code) if agent else agent_id,
                    total_transactions=group.transactions,
                    total_amount=group.amount,
                    total_fee=group.fee,
                    net_amount=net,
                    paid_amount=paid,
                    unpaid_amount=net - paid,
                    last_transaction_date=group.last_date,
                    point_of_sales=sorted(group.point_of_sales),
                )
            )
        rows.sort(key=lambda r: (r.agent_code, r.agent_id))

        logger.info("Agent debt report built: agents=%d range=%s", len(rows), date_range)
        return rows

    def get_debt_by_admin_account(
        self,
        date_range: Optional[DateRange] = None,
        should_abort: Optional[AbortCheck] = None,
    ) -> list[AccountDebtRow]:
        """Matched volume per settlement account.

        A merchant routing to several accounts contributes its full volume
        to each of them.  Records are attributed by merchant code.
        """
        by_merchant_code: dict[str, list[ReconciliationRecord]] = {}
        for record in self._matched_in_range(date_range, should_abort):
            code = record.merchant_data.merchant_code if record.merchant_data else None
            if code:
                by_merchant_code.setdefault(code, []).append(record)

        merchants = sorted(
            (Merchant.from_document(mid, doc) for mid, doc in self.store.children(MERCHANTS_PATH).items()),
            key=lambda m: (m.code, m.id),
        )

        accounts: dict[str, AccountDebtRow] = {}
        for merchant in merchants:
            self._check_abort(should_abort)
            records = by_merchant_code.get(merchant.code, [])
            for account in merchant.admin_accounts:
                row = accounts.setdefault(account, AccountDebtRow(admin_account=account))
                if not records:
                    continue
                amount = sum(r.merchant_data.amount for r in records)
                row.merchants.append(
                    MerchantDebtLine(
                        merchant_id=merchant.id,
                        merchant_code=merchant.code,
                        merchant_name=merchant.name,
                        total_amount=amount,
                        transaction_count=len(records),
                        point_of_sale_name=merchant.point_of_sale_name,
                        point_of_sales=sorted({r.point_of_sale_name for r in records if r.point_of_sale_name}),
                    )
                )
                row.total_amount += amount
                row.total_transactions += len(records)

        rows = [accounts[key] for key in sorted(accounts)]
        logger.info("Account debt report built: accounts=%d range=%s", len(rows), date_range)
        return rows

    # ── Private helpers ──────────────────────────────────────────────

    def _matched_in_range(
        self,
        date_range: Optional[DateRange],
        should_abort: Optional[AbortCheck],
    ) -> list[ReconciliationRecord]:
        date_range = date_range or DateRange()
        by_code: dict[str, ReconciliationRecord] = {}
        for record in load_live_records(self.store):
            self._check_abort(should_abort)
            if record.status != TransactionStatus.MATCHED:
                continue
            # one transaction is owed once; a record linked to a payment wins
            current = by_code.get(record.transaction_code)
            if current is None or (not current.payment_id and record.payment_id):
                by_code[record.transaction_code] = record
        selected = [r for r in by_code.values() if date_range.contains(record_day(r))]
        return sorted(selected, key=lambda r: r.id or "")

    def _paid_net(self, agent_id: str) -> Decimal:
        paid = Decimal(0)
        for payment_id in sorted(self.store.children(join_path(AGENT_PAYMENTS_INDEX, agent_id))):
            doc = self.store.get(join_path(PAYMENTS_PATH, payment_id))
            if doc and doc.get("status") == PaymentStatus.PAID.value:
                paid += Payment.from_document(payment_id, doc).net_amount
        return paid

    @staticmethod
    def _check_abort(should_abort: Optional[AbortCheck]) -> None:
        if should_abort is not None and should_abort():
            logger.info("Debt aggregation cancelled by caller")
            raise AggregationCancelled("Debt aggregation was cancelled")
