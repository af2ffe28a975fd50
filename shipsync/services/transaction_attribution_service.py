"""
Transaction attribution

Persists billing transactions and resolves their tenant.

Write policy: client_id is only written when a strategy matched, and the
upsert merges it as COALESCE(incoming, existing), so re-running over an
attributed transaction can never clear it. Unattributed rows stay NULL and
are retried on every run.

After the primary pass two corrective sweeps run:
  (a) unattributed Shipment transactions joined directly to shipments
  (b) tracking_id backfilled on shipment transactions from the shipment row
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.models.billing import Transaction
from shipsync.models.fulfillment import Shipment
from shipsync.services.attribution_indexes import AttributionIndexBuilder, AttributionIndexes
from shipsync.services.attribution_strategies import TransactionAttributor
from shipsync.store import Store
from shipsync.utils.helpers import chunk_list, parse_datetime, to_float, to_int, to_str, utcnow
from shipsync.utils.logger import log


@dataclass
class TransactionSyncReport:
    success: bool = False
    fetched: int = 0
    upserted: int = 0
    attributed: int = 0
    unattributed: int = 0
    reattributed: int = 0
    swept_by_shipment: int = 0
    tracking_backfilled: int = 0
    rate_limited: bool = False
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "attributed": self.attributed,
            "unattributed": self.unattributed,
            "reattributed": self.reattributed,
            "swept_by_shipment": self.swept_by_shipment,
            "tracking_backfilled": self.tracking_backfilled,
            "rate_limited": self.rate_limited,
            "errors": self.errors,
            "duration": round(self.duration, 2),
        }


class TransactionAttributionService:
    """Persist + attribute + sweep."""

    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        attributor: Optional[TransactionAttributor] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.attributor = attributor or TransactionAttributor(settings=self.settings)

    def build_indexes(self) -> AttributionIndexes:
        return AttributionIndexBuilder(self.store).build()

    @staticmethod
    def map_transaction(
        tx: Dict[str, Any],
        client_id: Optional[int],
        merchant_id: Optional[str],
        now: datetime,
    ) -> Dict[str, Any]:
        details = tx.get("additional_details") if isinstance(tx.get("additional_details"), dict) else None
        return {
            "transaction_id": to_str(tx.get("transaction_id")),
            "client_id": client_id,
            "merchant_id": merchant_id,
            "reference_id": to_str(tx.get("reference_id")),
            "reference_type": tx.get("reference_type"),
            "transaction_type": tx.get("transaction_type"),
            "transaction_fee": tx.get("transaction_fee"),
            "cost": to_float(tx.get("amount")),
            "charge_date": parse_datetime(tx.get("charge_date")),
            "invoice_id": to_int(tx.get("invoice_id")),
            "invoice_date": parse_datetime(tx.get("invoice_date")),
            "invoiced_status": bool(tx.get("invoiced_status")),
            "fulfillment_center": tx.get("fulfillment_center"),
            "additional_details": details,
            "tracking_id": to_str(details.get("TrackingId")) if details else None,
            "updated_at": now,
        }

    # ─────────────────────────────────────────
    # Primary pass
    # ─────────────────────────────────────────

    def persist(
        self,
        transactions: Iterable[Dict[str, Any]],
        indexes: AttributionIndexes,
        report: Optional[TransactionSyncReport] = None,
        now: Optional[datetime] = None,
    ) -> TransactionSyncReport:
        """Attribute and upsert raw API transactions."""
        report = report or TransactionSyncReport()
        now = now or utcnow()

        by_id: Dict[str, Dict[str, Any]] = {}
        for tx in transactions:
            if isinstance(tx, dict) and tx.get("transaction_id") is not None:
                by_id[str(tx["transaction_id"])] = tx

        records = []
        for tx in by_id.values():
            client_id = self.attributor.attribute(tx, indexes)
            if client_id is None:
                report.unattributed += 1
            else:
                report.attributed += 1
            merchant_id = indexes.merchant_ids.get(client_id) if client_id is not None else None
            records.append(self.map_transaction(tx, client_id, merchant_id, now))

        written = self.store.batch_upsert(
            Transaction,
            records,
            ["transaction_id"],
            preserve_non_null=("client_id", "merchant_id", "tracking_id"),
        )
        report.upserted += written.success
        report.errors.extend(written.errors)
        log.info(
            f"[TransactionSync] {written.success}/{len(records)} upserted, "
            f"{report.attributed} attributed, {report.unattributed} unattributed"
        )
        return report

    def _assign(self, assignments: Dict[int, List[int]], indexes: Optional[AttributionIndexes] = None) -> int:
        """Write tenant -> [transaction row ids], guarded by client_id IS NULL."""
        changed = 0
        for client_id, row_ids in assignments.items():
            values = {"client_id": client_id}
            if indexes is not None and indexes.merchant_ids.get(client_id):
                values["merchant_id"] = indexes.merchant_ids[client_id]
            for batch in chunk_list(row_ids, self.store.batch_size):
                changed += self.store.update_where(
                    Transaction, values, Transaction.id.in_(batch), Transaction.client_id.is_(None)
                )
        return changed

    def reattribute_unattributed(self, indexes: AttributionIndexes) -> int:
        """Run the cascade again over stored transactions that still have no tenant."""
        columns = [
            Transaction.reference_id, Transaction.reference_type,
            Transaction.transaction_fee, Transaction.additional_details,
        ]
        assignments: Dict[int, List[int]] = defaultdict(list)
        for row in self.store.iter_rows(Transaction, Transaction.client_id.is_(None), columns=columns):
            client_id = self.attributor.attribute(row, indexes)
            if client_id is not None:
                assignments[client_id].append(row["id"])
        changed = self._assign(assignments, indexes)
        if changed:
            log.info(f"[TransactionSync] Re-attributed {changed} stored transactions")
        return changed

    # ─────────────────────────────────────────
    # Corrective sweeps
    # ─────────────────────────────────────────

    def sweep_shipment_join(self, indexes: Optional[AttributionIndexes] = None) -> int:
        """(a) Unattributed Shipment transactions resolved straight from the shipments table."""
        pending = list(self.store.iter_rows(
            Transaction,
            Transaction.client_id.is_(None),
            Transaction.reference_type == "Shipment",
            columns=[Transaction.reference_id],
        ))
        if not pending:
            return 0
        owners = {
            row["shipment_id"]: row["client_id"]
            for row in self.store.select_in(
                Shipment, Shipment.shipment_id, {r["reference_id"] for r in pending if r["reference_id"]},
                columns=[Shipment.shipment_id, Shipment.client_id],
            )
        }
        assignments: Dict[int, List[int]] = defaultdict(list)
        for row in pending:
            client_id = owners.get(row["reference_id"])
            if client_id is not None:
                assignments[client_id].append(row["id"])
        return self._assign(assignments, indexes)

    def sweep_tracking_ids(self) -> int:
        """(b) Copy tracking_id from the shipment onto shipment transactions missing it."""
        pending = {
            row["reference_id"]
            for row in self.store.iter_rows(
                Transaction,
                Transaction.tracking_id.is_(None),
                Transaction.reference_type == "Shipment",
                columns=[Transaction.reference_id],
            )
            if row["reference_id"]
        }
        if not pending:
            return 0
        changed = 0
        for row in self.store.select_in(
            Shipment, Shipment.shipment_id, pending, Shipment.tracking_id.isnot(None),
            columns=[Shipment.shipment_id, Shipment.tracking_id],
        ):
            changed += self.store.update_where(
                Transaction,
                {"tracking_id": row["tracking_id"]},
                Transaction.reference_id == row["shipment_id"],
                Transaction.reference_type == "Shipment",
                Transaction.tracking_id.is_(None),
            )
        return changed

    # ─────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────

    def run(
        self,
        transactions: Iterable[Dict[str, Any]],
        indexes: Optional[AttributionIndexes] = None,
        report: Optional[TransactionSyncReport] = None,
        now: Optional[datetime] = None,
    ) -> TransactionSyncReport:
        """Primary pass, re-attribution of stored rows, then the sweeps."""
        report = report or TransactionSyncReport()
        transactions = list(transactions)
        report.fetched = report.fetched or len(transactions)
        try:
            indexes = indexes or self.build_indexes()
            if transactions:
                self.persist(transactions, indexes, report, now=now)
            report.reattributed = self.reattribute_unattributed(indexes)
            report.swept_by_shipment = self.sweep_shipment_join(indexes)
            report.tracking_backfilled = self.sweep_tracking_ids()
        except Exception as e:
            report.errors.append(f"attribution: {type(e).__name__}: {e}")
            log.error(f"[TransactionSync] Attribution failed: {e}")

        report.success = not report.errors
        log.info(
            f"[TransactionSync] Sweeps: {report.reattributed} re-attributed, "
            f"{report.swept_by_shipment} via shipment join, {report.tracking_backfilled} tracking ids"
        )
        return report
