"""
Tenant directory

Reads tenants, their provider tokens and sync cadence once per run, and
decides which tenants are due for an incremental sync.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.models.tenant import SyncCheckpoint, Tenant
from shipsync.store import Store
from shipsync.utils.logger import log


@dataclass(frozen=True)
class TenantContext:
    """Snapshot of one tenant for the duration of a run."""
    id: int
    name: str
    merchant_id: Optional[str] = None
    api_token: Optional[str] = None
    sync_interval_minutes: Optional[int] = None
    is_system: bool = False


class TenantDirectory:
    """Tenant credentials and cadence provider."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def load_active(self, tenant_ids: Optional[List[int]] = None) -> List[TenantContext]:
        """Active, non-system tenants (optionally restricted to `tenant_ids`)."""
        criteria = [Tenant.is_active.is_(True), Tenant.is_system.is_(False)]
        if tenant_ids:
            criteria.append(Tenant.id.in_(tenant_ids))
        rows = self.store.select(Tenant, *criteria, order_by=[Tenant.id])
        tenants = [
            TenantContext(
                id=row["id"],
                name=row["name"],
                merchant_id=row.get("merchant_id"),
                api_token=row.get("api_token"),
                sync_interval_minutes=row.get("sync_interval_minutes"),
                is_system=bool(row.get("is_system")),
            )
            for row in rows
        ]
        log.info(f"[Tenants] Loaded {len(tenants)} active tenants")
        return tenants

    def last_runs(self, sync_mode: str) -> Dict[int, Optional[datetime]]:
        rows = self.store.select(
            SyncCheckpoint,
            SyncCheckpoint.sync_mode == sync_mode,
            columns=[SyncCheckpoint.client_id, SyncCheckpoint.last_run_at],
        )
        return {row["client_id"]: row["last_run_at"] for row in rows}

    def due_tenants(
        self,
        tenants: List[TenantContext],
        sync_mode: str,
        now: datetime,
    ) -> List[TenantContext]:
        """Tenants whose last run in `sync_mode` is older than their cadence."""
        last_runs = self.last_runs(sync_mode)
        due = []
        for tenant in tenants:
            last_run = last_runs.get(tenant.id)
            interval = tenant.sync_interval_minutes or self.settings.default_sync_interval_minutes
            if last_run is None or now - last_run >= timedelta(minutes=interval):
                due.append(tenant)
            else:
                log.debug(f"[Tenants] {tenant.name} not due (last {sync_mode} run {last_run})")
        return due
