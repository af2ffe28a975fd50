"""
Shipment timeline polling

Fills the event_* milestone columns from GET /shipment/{id}/timeline.

Selection is tiered by shipment age and gated by each shipment's
timeline_checked_at watermark:
  - fresh  (created <= 3 days ago): re-checked every 15 minutes
  - older  (3-14 days):             re-checked every 2 hours
Capacity per tenant per pass is split 70/30 between the tiers; capacity the
fresh tier does not use goes to the older tier.

Only undelivered shipments are polled, plus shipments whose timeline is
partial (labeled but no created event), which are backfilled even after
delivery.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_

from shipsync.config import Settings, get_settings
from shipsync.connectors.base_connector import RateLimitedError
from shipsync.models.fulfillment import Shipment
from shipsync.models.tenant import SyncCheckpoint
from shipsync.services.tenant_service import TenantContext
from shipsync.store import Store
from shipsync.utils.helpers import chunk_list, parse_datetime, round_half_up, utcnow
from shipsync.utils.logger import log


class Milestone(Enum):
    """Shipment milestones, in lifecycle order, keyed by the column they fill."""
    CREATED = "event_created"
    PICKED = "event_picked"
    PACKED = "event_packed"
    LABELED = "event_labeled"
    LABEL_VALIDATED = "event_labelvalidated"
    IN_TRANSIT = "event_intransit"
    OUT_FOR_DELIVERY = "event_outfordelivery"
    DELIVERED = "event_delivered"
    DELIVERY_ATTEMPT_FAILED = "event_deliveryattemptfailed"

    @property
    def column(self) -> str:
        return self.value


# Provider log_type_id -> milestone
TIMELINE_EVENT_MAP: Dict[int, Milestone] = {
    601: Milestone.CREATED,
    602: Milestone.PICKED,
    603: Milestone.PACKED,
    604: Milestone.LABELED,
    605: Milestone.LABEL_VALIDATED,
    607: Milestone.IN_TRANSIT,
    608: Milestone.OUT_FOR_DELIVERY,
    609: Milestone.DELIVERED,
    611: Milestone.DELIVERY_ATTEMPT_FAILED,
}

MILESTONE_COLUMNS = [m.column for m in Milestone]


def transit_days(in_transit: Optional[datetime], delivered: Optional[datetime]) -> Optional[float]:
    """Days from in-transit to delivered, one decimal. None when either is missing or negative."""
    if in_transit is None or delivered is None:
        return None
    seconds = (delivered - in_transit).total_seconds()
    if seconds < 0:
        return None
    return round_half_up(seconds / 86400, 1)


class ShipmentTimeline:
    """Milestone state for one shipment: stored columns merged with fetched events."""

    def __init__(self, existing: Optional[Dict[str, Any]] = None):
        existing = existing or {}
        self.events: Dict[Milestone, datetime] = {}
        for milestone in Milestone:
            value = existing.get(milestone.column)
            if value is not None:
                self.events[milestone] = value
        self.changed: set = set()

    def apply(self, raw_events: Iterable[Dict[str, Any]]) -> "ShipmentTimeline":
        """
        Merge provider events. Unknown log types and events without a
        timestamp are ignored; a repeated milestone keeps its earliest time.
        """
        for event in raw_events:
            if not isinstance(event, dict):
                continue
            try:
                milestone = TIMELINE_EVENT_MAP.get(int(event.get("log_type_id")))
            except (TypeError, ValueError):
                continue
            timestamp = parse_datetime(event.get("timestamp"))
            if milestone is None or timestamp is None:
                continue
            current = self.events.get(milestone)
            if current is None or timestamp < current:
                self.events[milestone] = timestamp
                self.changed.add(milestone)
        return self

    def get(self, milestone: Milestone) -> Optional[datetime]:
        return self.events.get(milestone)

    @property
    def transit_time_days(self) -> Optional[float]:
        return transit_days(self.get(Milestone.IN_TRANSIT), self.get(Milestone.DELIVERED))

    def column_updates(self) -> Dict[str, Any]:
        """Changed milestone columns, plus transit time when it can be derived."""
        updates: Dict[str, Any] = {m.column: self.events[m] for m in self.changed}
        transit = self.transit_time_days
        if transit is not None:
            updates["transit_time_days"] = transit
        return updates


@dataclass
class TimelineResult:
    tenant_id: Optional[int] = None
    selected: int = 0
    fresh_selected: int = 0
    older_selected: int = 0
    updated: int = 0
    empty: int = 0
    rate_limited: int = 0
    errors: int = 0
    corrected: int = 0
    error_messages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": self.selected,
            "fresh": self.fresh_selected,
            "older": self.older_selected,
            "updated": self.updated,
            "empty": self.empty,
            "rate_limited": self.rate_limited,
            "errors": self.errors,
            "corrected": self.corrected,
        }


class TimelineService:
    """Tiered timeline poller."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    # ─────────────────────────────────────────
    # Selection
    # ─────────────────────────────────────────

    def _needs_timeline(self):
        return or_(
            Shipment.event_delivered.is_(None),
            and_(Shipment.event_labeled.isnot(None), Shipment.event_created.is_(None)),
        )

    def _select_tier(
        self,
        tenant_id: int,
        age_criteria: List,
        checked_before: datetime,
        limit: int,
        priority_ids: Optional[List[str]],
    ) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        criteria = [
            Shipment.client_id == tenant_id,
            Shipment.deleted_at.is_(None),
            self._needs_timeline(),
            or_(Shipment.timeline_checked_at.is_(None), Shipment.timeline_checked_at < checked_before),
            *age_criteria,
        ]
        columns = [
            Shipment.id, Shipment.shipment_id, Shipment.status, Shipment.created_date,
            Shipment.timeline_checked_at, *[getattr(Shipment, c) for c in MILESTONE_COLUMNS],
        ]
        order_by = [Shipment.timeline_checked_at.is_(None).desc(), Shipment.timeline_checked_at.asc(), Shipment.id]

        # Shipments this run just upserted go first, the tier's backlog fills the rest
        rows: List[Dict[str, Any]] = []
        for batch in chunk_list(list(priority_ids or []), self.store.batch_size):
            rows.extend(self.store.select(
                Shipment, Shipment.shipment_id.in_(batch), *criteria, columns=columns, order_by=order_by
            ))
        rows.sort(key=lambda r: (r["timeline_checked_at"] is not None, r["timeline_checked_at"] or datetime.min, r["id"]))
        rows = rows[:limit]
        if len(rows) >= limit:
            return rows

        taken = {r["id"] for r in rows}
        backlog = self.store.select(Shipment, *criteria, columns=columns, order_by=order_by, limit=limit + len(taken))
        for row in backlog:
            if len(rows) >= limit:
                break
            if row["id"] not in taken:
                rows.append(row)
        return rows

    def select_due(
        self,
        tenant_id: int,
        now: datetime,
        priority_ids: Optional[List[str]] = None,
        capacity: Optional[int] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Shipments due for a timeline check, split into fresh and older tiers."""
        s = self.settings
        capacity = s.timeline_capacity if capacity is None else capacity
        fresh_capacity = int(capacity * s.timeline_fresh_share)

        fresh_cutoff = now - timedelta(days=s.timeline_fresh_days)
        older_cutoff = now - timedelta(days=s.timeline_older_days)

        fresh = self._select_tier(
            tenant_id,
            [or_(Shipment.created_date >= fresh_cutoff, Shipment.created_date.is_(None))],
            now - timedelta(minutes=s.timeline_fresh_interval_minutes),
            fresh_capacity,
            priority_ids,
        )
        # Unused fresh capacity moves to the older tier
        older_capacity = capacity - len(fresh)
        older = self._select_tier(
            tenant_id,
            [Shipment.created_date < fresh_cutoff, Shipment.created_date >= older_cutoff],
            now - timedelta(minutes=s.timeline_older_interval_minutes),
            older_capacity,
            priority_ids,
        )
        return {"fresh": fresh, "older": older}

    # ─────────────────────────────────────────
    # Polling
    # ─────────────────────────────────────────

    async def _correct_status(self, connector, row: Dict[str, Any], result: TimelineResult):
        """Labeled event seen while the cached status is pre-label: refresh status and tracking."""
        try:
            response = await connector.get_shipment(row["shipment_id"])
        except Exception as e:
            log.debug(f"[Timeline] Corrective fetch failed for {row['shipment_id']}: {e}")
            return
        if not response.ok or not isinstance(response.data, dict):
            return
        data = response.data
        tracking = data.get("tracking") or {}
        values = {"status": data.get("status") or row.get("status")}
        if tracking.get("tracking_number"):
            values["tracking_id"] = tracking.get("tracking_number")
        if tracking.get("tracking_url"):
            values["tracking_url"] = tracking.get("tracking_url")
        if tracking.get("carrier"):
            values["carrier"] = tracking.get("carrier")
        try:
            self.store.update_where(Shipment, values, Shipment.id == row["id"])
        except Exception as e:
            result.errors += 1
            result.error_messages.append(f"corrective write {row['shipment_id']}: {e}")
            log.error(f"[Timeline] Failed to store corrected status for {row['shipment_id']}: {e}")
            return
        result.corrected += 1

    async def poll_tenant(
        self,
        tenant: TenantContext,
        connector,
        priority_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
        sync_mode: Optional[str] = None,
    ) -> TimelineResult:
        """
        One polling pass for a tenant. Requests are sequential through the
        connector's pacer. Never raises: a failure ends the pass and is
        recorded on the result.
        """
        now = now or utcnow()
        result = TimelineResult(tenant_id=tenant.id)
        try:
            await self._poll_tenant(tenant, connector, priority_ids, now, sync_mode, result)
        except Exception as e:
            result.errors += 1
            result.error_messages.append(f"timeline pass: {type(e).__name__}: {e}")
            log.error(f"[Timeline] {tenant.name}: polling aborted: {e}")
        return result

    async def _poll_tenant(self, tenant, connector, priority_ids, now: datetime, sync_mode, result: TimelineResult):
        tiers = self.select_due(tenant.id, now, priority_ids=priority_ids)
        result.fresh_selected = len(tiers["fresh"])
        result.older_selected = len(tiers["older"])
        due = tiers["fresh"] + tiers["older"]
        result.selected = len(due)
        if not due:
            return

        log.info(
            f"[Timeline] {tenant.name}: checking {result.selected} shipments "
            f"({result.fresh_selected} fresh, {result.older_selected} older)"
        )
        pre_label = set(self.settings.pre_label_statuses)

        for row in due:
            shipment_id = row["shipment_id"]
            try:
                events = await connector.get_shipment_timeline(shipment_id)
            except RateLimitedError:
                result.rate_limited += 1
                continue
            except Exception as e:
                result.errors += 1
                result.error_messages.append(f"timeline {shipment_id}: {type(e).__name__}: {e}")
                log.debug(f"[Timeline] Error fetching {shipment_id}: {e}")
                continue

            timeline = ShipmentTimeline(row).apply(events)
            values = timeline.column_updates()
            if events:
                values["event_logs"] = events
                result.updated += 1
            else:
                result.empty += 1
            values["timeline_checked_at"] = now

            try:
                self.store.update_where(Shipment, values, Shipment.id == row["id"])
            except Exception as e:
                result.errors += 1
                result.error_messages.append(f"timeline write {shipment_id}: {e}")
                log.error(f"[Timeline] Failed to store timeline for {shipment_id}: {e}")
                continue

            if Milestone.LABELED in timeline.changed and (row.get("status") or "None") in pre_label:
                await self._correct_status(connector, row, result)

        if sync_mode:
            self._touch_checkpoint(tenant.id, sync_mode, now)

        log.info(
            f"[Timeline] {tenant.name}: {result.updated} updated, {result.empty} empty, "
            f"{result.rate_limited} rate limited, {result.errors} errors, {result.corrected} corrected"
        )

    def _touch_checkpoint(self, tenant_id: int, sync_mode: str, now: datetime):
        written = self.store.batch_upsert(
            SyncCheckpoint,
            [{"client_id": tenant_id, "sync_mode": sync_mode, "last_timeline_checked_at": now}],
            ["client_id", "sync_mode"],
        )
        for error in written.errors:
            log.warning(f"[Timeline] Checkpoint update failed: {error}")

    async def poll_all(self, tenants: List[TenantContext], connectors: Dict[int, Any], now: Optional[datetime] = None) -> List[TimelineResult]:
        """One pass per tenant, tenants concurrently."""
        now = now or utcnow()
        return list(await asyncio.gather(*(
            self.poll_tenant(tenant, connectors[tenant.id], now=now)
            for tenant in tenants if tenant.id in connectors
        )))
