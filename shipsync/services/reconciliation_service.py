"""
Reconciliation / soft-delete detection

After a complete creation-window fetch, any active local order created in
that window that the listing did not return is a deletion candidate, as is
any active shipment whose order was synced (or that was created in the
window) but which the listing did not return.

A candidate is soft-deleted only after a point check answers 404. A 200,
any other status, or a network failure leaves the row alone; it will be
looked at again on the next full sync.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.models.fulfillment import Order, Shipment
from shipsync.services.tenant_service import TenantContext
from shipsync.store import Store
from shipsync.utils.helpers import utcnow
from shipsync.utils.logger import log


@dataclass
class ReconcileResult:
    orders_candidates: int = 0
    orders_deleted: int = 0
    shipments_candidates: int = 0
    shipments_deleted: int = 0
    shipments_cascaded: int = 0
    verified_present: int = 0
    unverified: int = 0  # Network errors / unexpected statuses
    deferred: int = 0  # Over the verification cap
    rate_limited: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "orders_candidates": self.orders_candidates,
            "orders_deleted": self.orders_deleted,
            "shipments_candidates": self.shipments_candidates,
            "shipments_deleted": self.shipments_deleted,
            "shipments_cascaded": self.shipments_cascaded,
            "verified_present": self.verified_present,
            "unverified": self.unverified,
            "deferred": self.deferred,
            "rate_limited": self.rate_limited,
        }


class ReconciliationService:
    """Detects and verifies deletions for one tenant."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def find_stale_orders(
        self,
        tenant_id: int,
        window_start: datetime,
        window_end: datetime,
        seen_order_ids: Iterable[str],
    ) -> List[Dict]:
        seen = set(seen_order_ids)
        rows = self.store.select(
            Order,
            Order.client_id == tenant_id,
            Order.deleted_at.is_(None),
            Order.order_import_date >= window_start,
            Order.order_import_date <= window_end,
            columns=[Order.id, Order.shipbob_order_id],
            order_by=[Order.id],
        )
        return [row for row in rows if row["shipbob_order_id"] not in seen]

    def find_stale_shipments(
        self,
        tenant_id: int,
        window_start: datetime,
        window_end: datetime,
        seen_shipment_ids: Iterable[str],
        synced_order_db_ids: Iterable[int],
    ) -> List[Dict]:
        seen = set(seen_shipment_ids)
        columns = [Shipment.id, Shipment.shipment_id, Shipment.order_id]
        base = [Shipment.client_id == tenant_id, Shipment.deleted_at.is_(None)]

        by_id: Dict[int, Dict] = {}
        for row in self.store.select_in(Shipment, Shipment.order_id, list(synced_order_db_ids), *base, columns=columns):
            by_id[row["id"]] = row
        for row in self.store.select(
            Shipment, *base,
            Shipment.created_date >= window_start,
            Shipment.created_date <= window_end,
            columns=columns,
        ):
            by_id[row["id"]] = row
        return [row for _, row in sorted(by_id.items()) if row["shipment_id"] not in seen]

    def _soft_delete_order(self, order_row: Dict, now: datetime, result: ReconcileResult):
        changed = self.store.update_where(
            Order, {"deleted_at": now}, Order.id == order_row["id"], Order.deleted_at.is_(None)
        )
        if changed:
            result.orders_deleted += 1
            result.shipments_cascaded += self.store.update_where(
                Shipment, {"deleted_at": now}, Shipment.order_id == order_row["id"], Shipment.deleted_at.is_(None)
            )

    def _soft_delete_shipment(self, shipment_row: Dict, now: datetime, result: ReconcileResult):
        result.shipments_deleted += self.store.update_where(
            Shipment, {"deleted_at": now}, Shipment.id == shipment_row["id"], Shipment.deleted_at.is_(None)
        )

    async def _verify_candidates(self, rows, check, id_key, label, soft_delete, tenant, now, result, budget) -> int:
        """Point-check candidates until the budget runs out or the API rate limits us."""
        for row in rows:
            if budget <= 0 or result.rate_limited:
                result.deferred += 1
                continue
            budget -= 1
            entity_id = row[id_key]
            try:
                response = await check(entity_id)
            except Exception as e:
                result.unverified += 1
                log.warning(f"[Reconcile] Could not verify {label} {entity_id}: {e}")
                continue

            if response.status == 404:
                try:
                    soft_delete(row, now, result)
                except Exception as e:
                    result.errors.append(f"soft-delete {label} {entity_id}: {e}")
                    log.error(f"[Reconcile] Failed to soft-delete {label} {entity_id}: {e}")
                    continue
                log.info(f"[Reconcile] {tenant.name}: soft-deleted {label} {entity_id} (not found upstream)")
            elif response.status == 429:
                result.rate_limited = True
                result.deferred += 1
            elif 200 <= response.status < 300:
                result.verified_present += 1
            else:
                result.unverified += 1
        return budget

    async def reconcile(
        self,
        tenant: TenantContext,
        connector,
        window_start: datetime,
        window_end: datetime,
        seen_order_ids: Iterable[str],
        seen_shipment_ids: Iterable[str],
        synced_order_db_ids: Iterable[int],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        now = now or utcnow()
        result = ReconcileResult()
        budget = self.settings.reconcile_max_verifications

        stale_orders = self.find_stale_orders(tenant.id, window_start, window_end, seen_order_ids)
        result.orders_candidates = len(stale_orders)

        budget = await self._verify_candidates(
            stale_orders, connector.get_order, "shipbob_order_id", "order",
            self._soft_delete_order, tenant, now, result, budget,
        )

        # Shipments cascaded from deleted orders are no longer active, so re-read after the order pass
        stale_shipments = self.find_stale_shipments(
            tenant.id, window_start, window_end, seen_shipment_ids, synced_order_db_ids
        )
        result.shipments_candidates = len(stale_shipments)

        await self._verify_candidates(
            stale_shipments, connector.get_shipment, "shipment_id", "shipment",
            self._soft_delete_shipment, tenant, now, result, budget,
        )

        if result.orders_candidates or result.shipments_candidates:
            log.info(
                f"[Reconcile] {tenant.name}: {result.orders_deleted}/{result.orders_candidates} orders and "
                f"{result.shipments_deleted}/{result.shipments_candidates} shipments soft-deleted, "
                f"{result.deferred} deferred"
            )
        return result
