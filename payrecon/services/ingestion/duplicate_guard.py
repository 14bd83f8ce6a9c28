"""Duplicate guard for merchant transaction ingestion.

A transaction code may be stored at most once, ever.  Before a batch is
written every code is checked against:

  1. the direct index ``indexes/merchant_code/{code}``, and
  2. a one-off linear scan of ``merchant_transactions`` when the index has
     no entry (rows written before the index existed).  A hit found by the
     scan repairs the index in the same write.

Duplicates are reported in the result's skip list; they never fail the
batch.  Malformed rows do: the whole batch is rejected before any write.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from payrecon.core.errors import ValidationError
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore, join_path
from payrecon.schemas.ingestion import IngestionResult, SkippedTransaction
from payrecon.schemas.transaction import MerchantTransaction
from payrecon.services.ingestion.normalizer import sanitize_transaction_code

logger = get_logger(__name__)

TRANSACTIONS_PATH = "merchant_transactions"
CODE_INDEX_PATH = "indexes/merchant_code"

REASON_DUPLICATE = "duplicate"


def parse_merchant_batch(
    rows: Iterable[Union[MerchantTransaction, dict[str, Any]]],
) -> list[MerchantTransaction]:
    """Validate every row up front; reject the whole batch on any bad row."""
    parsed: list[MerchantTransaction] = []
    errors: list[dict[str, Any]] = []
    for idx, row in enumerate(rows):
        if isinstance(row, MerchantTransaction):
            parsed.append(row)
            continue
        try:
            parsed.append(MerchantTransaction.model_validate(row))
        except PydanticValidationError as exc:
            code = row.get("transactionCode") or row.get("transaction_code") if isinstance(row, dict) else None
            errors.append(
                {
                    "index": idx,
                    "transaction_code": code,
                    "reason": "; ".join(
                        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
                    ),
                }
            )
    if errors:
        logger.warning("Rejected merchant batch: %d invalid rows", len(errors))
        raise ValidationError(
            f"{len(errors)} merchant rows are invalid; nothing was stored",
            {"errors": errors},
        )
    return parsed


class DuplicateGuard:
    """Inserts merchant transactions while enforcing a global unique code."""

    def __init__(self, store: KeyedStore) -> None:
        self.store = store
        self._scan_cache: Optional[dict[str, str]] = None

    # ── Public API ───────────────────────────────────────────────────

    def ingest_merchant_batch(
        self,
        rows: Iterable[Union[MerchantTransaction, dict[str, Any]]],
        upload_session_id: Optional[str] = None,
    ) -> IngestionResult:
        """Store every row whose transaction code has never been seen.

        Args:
            rows: Merchant transactions (schemas or raw dicts).
            upload_session_id: Groups this batch; generated when omitted.

        Returns:
            ``IngestionResult`` with created ids and skipped codes.

        Raises:
            ValidationError: If any row is malformed (nothing is written).
        """
        transactions = parse_merchant_batch(rows)
        upload_session_id = upload_session_id or self.store.push_key(TRANSACTIONS_PATH)
        self._scan_cache = None

        index: dict[str, Any] = self.store.children(CODE_INDEX_PATH)
        result = IngestionResult()
        updates: dict[str, Any] = {}
        seen_in_batch: dict[str, str] = {}
        now = datetime.now(timezone.utc)

        for txn in transactions:
            key = sanitize_transaction_code(txn.transaction_code)

            existing_id = seen_in_batch.get(key)
            if existing_id is None and index.get(key) is not None:
                existing_id = index[key]
                if self.store.get(join_path(TRANSACTIONS_PATH, existing_id)) is None:
                    logger.warning(
                        "Ignoring stale code index entry: code=%s id=%s",
                        txn.transaction_code,
                        existing_id,
                    )
                    existing_id = None
            if existing_id is None:
                existing_id = self._scan_for_code(txn.transaction_code)
                if existing_id is not None:
                    logger.info(
                        "Repairing stale code index: code=%s id=%s",
                        txn.transaction_code,
                        existing_id,
                    )
                    updates[join_path(CODE_INDEX_PATH, key)] = existing_id

            if existing_id is not None:
                result.skipped.append(
                    SkippedTransaction(
                        transaction_code=txn.transaction_code,
                        reason=REASON_DUPLICATE,
                        existing_id=existing_id,
                    )
                )
                logger.warning("Skipping duplicate transaction code %s", txn.transaction_code)
                continue

            txn_id = self.store.push_key(TRANSACTIONS_PATH)
            stored = txn.model_copy(
                update={
                    "upload_session_id": txn.upload_session_id or upload_session_id,
                    "created_at": txn.created_at or now,
                }
            )
            updates[join_path(TRANSACTIONS_PATH, txn_id)] = stored.to_document()
            updates[join_path(CODE_INDEX_PATH, key)] = txn_id
            seen_in_batch[key] = txn_id
            result.created.append(txn_id)

        if updates:
            self.store.update(updates)

        logger.info(
            "Merchant batch ingested: upload=%s created=%d skipped=%d",
            upload_session_id,
            len(result.created),
            len(result.skipped),
        )
        return result

    def find_by_code(self, transaction_code: str) -> Optional[MerchantTransaction]:
        """Look up a stored merchant transaction by its code."""
        key = sanitize_transaction_code(transaction_code)
        txn_id = self.store.get(join_path(CODE_INDEX_PATH, key))
        if txn_id is None:
            self._scan_cache = None
            txn_id = self._scan_for_code(transaction_code)
        if txn_id is None:
            return None
        doc = self.store.get(join_path(TRANSACTIONS_PATH, txn_id))
        return MerchantTransaction.from_document(txn_id, doc) if doc else None

    def list_by_upload(self, upload_session_id: str) -> list[MerchantTransaction]:
        """Return the stored rows of one upload, oldest first."""
        rows = [
            MerchantTransaction.from_document(txn_id, doc)
            for txn_id, doc in self.store.children(TRANSACTIONS_PATH).items()
            if doc.get("uploadSessionId") == upload_session_id
        ]
        return sorted(rows, key=lambda t: (t.created_at or datetime.min.replace(tzinfo=timezone.utc), t.id))

    def deduplicate_merchant_transactions(self) -> dict[str, int]:
        """Keep the oldest stored row per transaction code and drop the rest.

        Repairs rows written before the code index existed.  The index is
        rebuilt from the surviving rows in the same update, including
        removal of entries that point nowhere.

        Returns:
            ``{"removed": n, "kept": m}``
        """
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        by_code: dict[str, list[MerchantTransaction]] = {}
        for txn_id, doc in self.store.children(TRANSACTIONS_PATH).items():
            if not isinstance(doc, dict) or not doc.get("transactionCode"):
                continue
            txn = MerchantTransaction.from_document(txn_id, doc)
            by_code.setdefault(sanitize_transaction_code(txn.transaction_code), []).append(txn)

        updates: dict[str, Any] = {}
        removed = 0
        for key, rows in by_code.items():
            rows.sort(key=lambda t: (t.created_at or epoch, t.id))
            updates[join_path(CODE_INDEX_PATH, key)] = rows[0].id
            for duplicate in rows[1:]:
                updates[join_path(TRANSACTIONS_PATH, duplicate.id)] = None
                removed += 1
        for key in self.store.children(CODE_INDEX_PATH):
            if key not in by_code:
                updates[join_path(CODE_INDEX_PATH, key)] = None

        if updates:
            self.store.update(updates)
        self._scan_cache = None
        logger.info("Merchant transactions deduplicated: removed=%d kept=%d", removed, len(by_code))
        return {"removed": removed, "kept": len(by_code)}

    # ── Private helpers ──────────────────────────────────────────────

    def _scan_for_code(self, transaction_code: str) -> Optional[str]:
        """Fallback linear scan, built once per batch and reused."""
        if self._scan_cache is None:
            self._scan_cache = {}
            for txn_id, doc in self.store.children(TRANSACTIONS_PATH).items():
                code = doc.get("transactionCode") if isinstance(doc, dict) else None
                if code:
                    self._scan_cache.setdefault(sanitize_transaction_code(code), txn_id)
        return self._scan_cache.get(sanitize_transaction_code(transaction_code))
