"""
Data Synchronization Service
Orchestrates one sync invocation across tenants and persists to the store

Per tenant, in order:
  1. channel / fulfillment-center lookups
  2. order listing for the window -> entity upsert
  3. timeline polling (this run's shipments first)
  4. full windows only: returns / receiving / product catalog, then
     reconciliation when the order listing completed
  5. transactions for the tenant's shipments (parent token)

Tenants run concurrently; a tenant's failure is recorded in its report and
never reaches the others. Attribution runs once, after every tenant.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.connectors.pagination import FetchResult, SyncWindow
from shipsync.connectors.shipbob_connector import ShipBobConnector
from shipsync.models.tenant import SyncCheckpoint
from shipsync.services.catalog_service import CatalogResult, CatalogSyncService
from shipsync.services.entity_upserter import EntityUpserter, MappingLookups, UpsertResult
from shipsync.services.reconciliation_service import ReconcileResult, ReconciliationService
from shipsync.services.tenant_service import TenantContext, TenantDirectory
from shipsync.services.timeline_service import TimelineResult, TimelineService
from shipsync.services.transaction_attribution_service import (
    TransactionAttributionService,
    TransactionSyncReport,
)
from shipsync.store import Store
from shipsync.utils.helpers import chunk_list, isoformat_z, utcnow
from shipsync.utils.logger import log
from shipsync.utils.rate_limit import RequestPacer

ConnectorFactory = Callable[[str, RequestPacer, str], Any]


@dataclass
class TenantSyncReport:
    """Tracks one tenant's run for logging and the run report"""
    tenant_id: int
    tenant_name: str
    sync_mode: str
    window: str
    success: bool = False
    orders_fetched: int = 0
    pages: int = 0
    fetch_complete: bool = False
    rate_limited: bool = False
    upsert: Optional[UpsertResult] = None
    timeline: Optional[TimelineResult] = None
    reconcile: Optional[ReconcileResult] = None
    reconcile_skipped: Optional[str] = None
    catalog: Dict[str, CatalogResult] = field(default_factory=dict)
    transactions_fetched: int = 0
    connector_status: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    # Raw transactions handed to the attribution pass; not part of the report
    fetched_transactions: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        if self.upsert is not None and self.upsert.orders.upserted:
            return "partial"
        return "failed"

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "tenant": self.tenant_name,
            "sync_mode": self.sync_mode,
            "window": self.window,
            "success": self.success,
            "status": self.status,
            "orders_fetched": self.orders_fetched,
            "pages": self.pages,
            "fetch_complete": self.fetch_complete,
            "rate_limited": self.rate_limited,
            "upsert": self.upsert.to_dict() if self.upsert else None,
            "timeline": self.timeline.to_dict() if self.timeline else None,
            "reconcile": self.reconcile.to_dict() if self.reconcile else None,
            "reconcile_skipped": self.reconcile_skipped,
            "catalog": {name: result.to_dict() for name, result in self.catalog.items()},
            "transactions_fetched": self.transactions_fetched,
            "connector": self.connector_status,
            "errors": self.errors,
            "duration": round(self.duration, 2),
        }


@dataclass
class RunReport:
    """Aggregate of one invocation"""
    sync_mode: str
    window: str
    success: bool = False
    tenants: List[TenantSyncReport] = field(default_factory=list)
    not_due: List[str] = field(default_factory=list)
    transactions: Optional[TransactionSyncReport] = None
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "sync_mode": self.sync_mode,
            "window": self.window,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "tenants_synced": len(self.tenants),
            "tenants_failed": sum(1 for t in self.tenants if not t.success),
            "not_due": self.not_due,
            "tenants": [t.to_dict() for t in self.tenants],
            "transactions": self.transactions.to_dict() if self.transactions else None,
            "errors": self.errors,
            "duration": round(self.duration, 2),
        }


def _shipment_ids_in(api_orders: Iterable[Dict]) -> List[str]:
    """Every shipment id the listing returned, written or not."""
    ids = []
    for order in api_orders:
        if not isinstance(order, dict):
            continue
        for shipment in order.get("shipments") or []:
            if isinstance(shipment, dict) and shipment.get("id") is not None:
                ids.append(str(shipment["id"]))
    return ids


class DataSyncService:
    """Service for orchestrating tenant syncs"""

    def __init__(
        self,
        store: Optional[Store] = None,
        settings: Optional[Settings] = None,
        connector_factory: Optional[ConnectorFactory] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or Store()
        self.connector_factory = connector_factory or self._default_connector
        self._pacers: Dict[str, RequestPacer] = {}

        self.tenants = TenantDirectory(self.store, self.settings)
        self.upserter = EntityUpserter(self.store, self.settings)
        self.timeline = TimelineService(self.store, self.settings)
        self.reconciliation = ReconciliationService(self.store, self.settings)
        self.catalog = CatalogSyncService(self.store, self.settings)
        self.attribution = TransactionAttributionService(self.store, self.settings)

    def _default_connector(self, token: str, pacer: RequestPacer, name: str) -> ShipBobConnector:
        return ShipBobConnector(token, pacer=pacer, settings=self.settings, name=name)

    def _connector(self, token: str, name: str):
        # One pacer per token so concurrent users of a token share its budget
        pacer = self._pacers.get(token)
        if pacer is None:
            pacer = RequestPacer(self.settings.request_delay_seconds)
            self._pacers[token] = pacer
        return self.connector_factory(token, pacer, name)

    # ─────────────────────────────────────────
    # Per-tenant sync
    # ─────────────────────────────────────────

    async def sync_tenant(
        self,
        tenant: TenantContext,
        window: SyncWindow,
        now: Optional[datetime] = None,
        include_transactions: bool = True,
    ) -> TenantSyncReport:
        """Run one tenant end to end. Never raises."""
        start_time = time.time()
        now = now or utcnow()
        report = TenantSyncReport(
            tenant_id=tenant.id, tenant_name=tenant.name, sync_mode=window.mode, window=window.describe()
        )

        if not tenant.api_token:
            report.errors.append("missing API token")
            log.error(f"[Sync] {tenant.name}: no API token configured, skipping")
        else:
            connector = self._connector(tenant.api_token, f"ShipBob {tenant.name}")
            try:
                await self._sync_tenant(tenant, connector, window, now, report)
                if include_transactions:
                    await self._fetch_tenant_transactions(tenant, report)
            except Exception as e:
                report.errors.append(f"{type(e).__name__}: {e}")
                log.error(f"[Sync] {tenant.name}: sync aborted: {e}")
            finally:
                report.connector_status = connector.get_status()
                await connector.close()

        report.duration = time.time() - start_time
        self._write_checkpoint(tenant, report, now)
        report.success = not report.errors

        log.info(
            f"[Sync] {tenant.name} ({report.sync_mode} {report.window}): {report.status} in "
            f"{report.duration:.1f}s, {report.orders_fetched} orders fetched, {len(report.errors)} errors"
        )
        return report

    async def _sync_tenant(self, tenant, connector, window: SyncWindow, now: datetime, report: TenantSyncReport):
        start, end = window.resolve(now)

        lookups = MappingLookups(
            channels=await self.catalog.load_channel_lookup(tenant, connector),
            fulfillment_centers=self.catalog.load_fc_lookup(),
        )

        fetch = await connector.orders_paginator(window.filter_params(start, end)).collect()
        report.orders_fetched = len(fetch.records)
        report.pages = fetch.pages
        report.fetch_complete = fetch.complete
        report.rate_limited = fetch.rate_limited
        if fetch.error:
            report.errors.append(fetch.error)

        upsert = self.upserter.upsert_orders(tenant, fetch.records, lookups, now)
        report.upsert = upsert
        report.errors.extend(upsert.errors)

        report.timeline = await self.timeline.poll_tenant(
            tenant, connector, priority_ids=upsert.shipment_ids, now=now, sync_mode=window.mode
        )

        if not window.is_full:
            report.reconcile_skipped = "incremental window"
            return

        for name, sync in (
            ("returns", self.catalog.sync_returns),
            ("receiving_orders", self.catalog.sync_receiving_orders),
            ("products", self.catalog.sync_products),
        ):
            result = await sync(tenant, connector, now)
            report.catalog[name] = result
            report.errors.extend(result.errors)

        if not fetch.complete:
            reason = "rate limited" if fetch.rate_limited else "page cap" if fetch.capped else "fetch error"
            report.reconcile_skipped = f"order listing incomplete ({reason})"
            log.warning(f"[Sync] {tenant.name}: skipping reconciliation, {report.reconcile_skipped}")
            return

        reconcile = await self.reconciliation.reconcile(
            tenant,
            connector,
            start,
            end,
            seen_order_ids=upsert.order_ids,
            seen_shipment_ids=_shipment_ids_in(fetch.records),
            synced_order_db_ids=list(upsert.order_id_map.values()),
            now=now,
        )
        report.reconcile = reconcile
        report.errors.extend(reconcile.errors)

    def _write_checkpoint(self, tenant: TenantContext, report: TenantSyncReport, now: datetime):
        record = {
            "client_id": tenant.id,
            "sync_mode": report.sync_mode,
            "last_run_at": now,
            "last_status": report.status,
            "last_error": "; ".join(report.errors)[:2000] if report.errors else None,
            "last_verified_at": now if report.success else None,
        }
        written = self.store.batch_upsert(
            SyncCheckpoint, [record], ["client_id", "sync_mode"], preserve_non_null=("last_verified_at",)
        )
        for error in written.errors:
            report.errors.append(f"checkpoint: {error}")
            log.error(f"[Sync] {tenant.name}: checkpoint write failed: {error}")

    # ─────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────

    async def fetch_transactions(self, body_batches: List[Dict[str, Any]], label: str) -> FetchResult:
        """Query transactions:query with the parent token, one paginated walk per body."""
        token = self.settings.shipbob_parent_api_token
        combined = FetchResult()
        if not token:
            combined.error = "no parent API token configured"
            return combined

        async with self._connector(token, "ShipBob parent") as connector:
            for body in body_batches:
                fetch = await connector.transactions_paginator(body, label=label).collect()
                combined.records.extend(fetch.records)
                combined.pages += fetch.pages
                combined.capped = combined.capped or fetch.capped
                if fetch.rate_limited:
                    combined.rate_limited = True
                    log.warning(f"[TransactionSync] {label}: still rate limited after retry, stopping")
                    break
                if fetch.error:
                    combined.error = fetch.error
                    break
        return combined

    async def _fetch_tenant_transactions(self, tenant: TenantContext, report: TenantSyncReport):
        shipment_ids = report.upsert.shipment_ids if report.upsert else []
        if not shipment_ids:
            return
        if not self.settings.shipbob_parent_api_token:
            log.debug(f"[TransactionSync] {tenant.name}: no parent token, skipping transaction fetch")
            return

        bodies = [
            {"reference_ids": batch, "page_size": self.settings.transaction_page_size}
            for batch in chunk_list(shipment_ids, self.settings.transaction_reference_batch)
        ]
        fetch = await self.fetch_transactions(bodies, label=f"{tenant.name} transactions")
        report.fetched_transactions = fetch.records
        report.transactions_fetched = len(fetch.records)
        if fetch.error:
            report.errors.append(fetch.error)
        if fetch.rate_limited:
            report.errors.append("transactions: rate limited")

    async def sync_transactions(
        self,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None,
    ) -> TransactionSyncReport:
        """Date-range transaction sync across all tenants, then attribution."""
        start_time = time.time()
        body = {
            "from_date": isoformat_z(start),
            "to_date": isoformat_z(end),
            "page_size": self.settings.transaction_page_size,
        }
        log.info(f"[TransactionSync] Fetching transactions {body['from_date']} -> {body['to_date']}")
        report = TransactionSyncReport()
        try:
            fetch = await self.fetch_transactions([body], label="transactions")
        except Exception as e:
            report.errors.append(f"fetch: {type(e).__name__}: {e}")
            log.error(f"[TransactionSync] Fetch failed: {e}")
            fetch = FetchResult()

        report.fetched = len(fetch.records)
        report.rate_limited = fetch.rate_limited
        if fetch.error:
            report.errors.append(fetch.error)
        if fetch.rate_limited:
            report.errors.append("transactions: rate limited")

        report = self.attribution.run(fetch.records, report=report, now=now)
        report.duration = time.time() - start_time
        return report

    # ─────────────────────────────────────────
    # Run
    # ─────────────────────────────────────────

    async def run(
        self,
        window: SyncWindow,
        force: bool = False,
        tenant_ids: Optional[List[int]] = None,
        include_transactions: bool = True,
        now: Optional[datetime] = None,
    ) -> RunReport:
        """
        One invocation: tenants concurrently, then transaction attribution.

        Incremental windows are gated by each tenant's cadence unless `force`;
        full windows always run.
        """
        start_time = time.time()
        now = now or utcnow()
        report = RunReport(sync_mode=window.mode, window=window.describe(), started_at=now)

        try:
            tenants = self.tenants.load_active(tenant_ids)
            due = tenants
            if not window.is_full and not force:
                due = self.tenants.due_tenants(tenants, window.mode, now)
        except Exception as e:
            report.errors.append(f"tenants: {type(e).__name__}: {e}")
            log.error(f"[Sync] Could not load tenants: {e}")
            tenants, due = [], []

        due_ids = {t.id for t in due}
        report.not_due = [t.name for t in tenants if t.id not in due_ids]
        log.info(
            f"[Sync] Starting {window.mode} sync ({window.describe()}) for {len(due)} tenants"
            f"{f', {len(report.not_due)} not due' if report.not_due else ''}"
        )

        results = await asyncio.gather(
            *(self.sync_tenant(tenant, window, now, include_transactions) for tenant in due),
            return_exceptions=True,
        )
        collected: List[Dict[str, Any]] = []
        for tenant, result in zip(due, results):
            if isinstance(result, BaseException):
                report.errors.append(f"{tenant.name}: {type(result).__name__}: {result}")
                log.error(f"[Sync] {tenant.name}: unexpected failure: {result}")
                continue
            report.tenants.append(result)
            report.errors.extend(f"{tenant.name}: {error}" for error in result.errors)
            collected.extend(result.fetched_transactions)

        if include_transactions and due:
            transactions = TransactionSyncReport(fetched=len(collected))
            report.transactions = self.attribution.run(collected, report=transactions, now=now)
            report.errors.extend(f"transactions: {error}" for error in report.transactions.errors)

        report.success = not report.errors
        report.duration = time.time() - start_time
        log.info(
            f"[Sync] {window.mode} sync finished in {report.duration:.1f}s: "
            f"{sum(1 for t in report.tenants if t.success)}/{len(report.tenants)} tenants succeeded, "
            f"{len(report.errors)} errors"
        )
        return report

    def get_sync_status(self) -> List[Dict[str, Any]]:
        """Checkpoint rows, one per tenant and mode"""
        rows = self.store.select(
            SyncCheckpoint, order_by=[SyncCheckpoint.client_id, SyncCheckpoint.sync_mode]
        )
        return [
            {
                "client_id": row["client_id"],
                "sync_mode": row["sync_mode"],
                "last_run_at": row["last_run_at"].isoformat() if row.get("last_run_at") else None,
                "last_verified_at": row["last_verified_at"].isoformat() if row.get("last_verified_at") else None,
                "last_timeline_checked_at": (
                    row["last_timeline_checked_at"].isoformat() if row.get("last_timeline_checked_at") else None
                ),
                "last_status": row.get("last_status"),
                "last_error": row.get("last_error"),
            }
            for row in rows
        ]
