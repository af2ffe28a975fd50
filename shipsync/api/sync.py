"""
Data synchronization endpoints

Every trigger runs as a background task; progress is read back from
GET /sync/progress (this process) or GET /sync/checkpoints (store).
"""
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

from shipsync.connectors.pagination import CreationWindow, ModificationWindow
from shipsync.utils.helpers import utcnow
from shipsync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# In-memory sync status for background tasks
_sync_status = {}


def _update_sync_status(job: str, status: str, result=None, error=None):
    _sync_status[job] = {
        "status": status,
        "started_at": _sync_status.get(job, {}).get("started_at", utcnow().isoformat()),
        "updated_at": utcnow().isoformat(),
        "result": result,
        "error": error,
    }


# Lazy-init so importing the router doesn't build the store and services
_data_sync = None


def _get_data_sync():
    global _data_sync
    if _data_sync is None:
        from shipsync.services.data_sync_service import DataSyncService
        _data_sync = DataSyncService()
    return _data_sync


async def _run_sync(job: str, window, force: bool, tenant_ids: Optional[List[int]], include_transactions: bool):
    """Background task: one sync invocation."""
    _update_sync_status(job, "running")
    try:
        report = await _get_data_sync().run(
            window, force=force, tenant_ids=tenant_ids, include_transactions=include_transactions
        )
        _update_sync_status(job, "completed" if report.success else "completed_with_errors", result=report.to_dict())
        log.info(f"Background {job} sync completed: {len(report.tenants)} tenants, {len(report.errors)} errors")
    except Exception as e:
        log.error(f"Background {job} sync error: {str(e)}")
        _update_sync_status(job, "failed", error=str(e))


@router.post("/incremental")
async def sync_incremental(
    background_tasks: BackgroundTasks,
    minutes: int = Query(15, description="Modification window in minutes", ge=1, le=1440),
    force: bool = Query(False, description="Ignore per-tenant cadence"),
    tenant_id: Optional[List[int]] = Query(None, description="Restrict to these tenant ids"),
    transactions: bool = Query(True, description="Fetch and attribute transactions for synced shipments"),
):
    """
    Incremental sync over orders modified in the last N minutes (runs in background).
    Tenants whose cadence has not elapsed are skipped unless force=true.
    """
    _update_sync_status("incremental", "started")
    background_tasks.add_task(
        _run_sync, "incremental", ModificationWindow(minutes=minutes), force, tenant_id, transactions
    )
    return {"message": "Incremental sync started in background", "minutes": minutes, "check_progress": "/sync/progress"}


@router.post("/full")
async def sync_full(
    background_tasks: BackgroundTasks,
    days: int = Query(7, description="Creation window in days", ge=1, le=365),
    tenant_id: Optional[List[int]] = Query(None, description="Restrict to these tenant ids"),
    transactions: bool = Query(True, description="Fetch and attribute transactions for synced shipments"),
):
    """
    Full sync over orders created in the last N days (runs in background).
    Includes returns, receiving orders, products and deletion reconciliation.
    """
    _update_sync_status("full", "started")
    background_tasks.add_task(_run_sync, "full", CreationWindow(days=days), True, tenant_id, transactions)
    return {"message": "Full sync started in background", "days": days, "check_progress": "/sync/progress"}


async def _run_sync_transactions(days: int):
    """Background task: global transaction sync."""
    _update_sync_status("transactions", "running")
    try:
        end = utcnow()
        report = await _get_data_sync().sync_transactions(end - timedelta(days=days), end)
        _update_sync_status(
            "transactions", "completed" if report.success else "completed_with_errors", result=report.to_dict()
        )
        log.info(f"Background transaction sync completed: {report.fetched} fetched, {report.attributed} attributed")
    except Exception as e:
        log.error(f"Background transaction sync error: {str(e)}")
        _update_sync_status("transactions", "failed", error=str(e))


@router.post("/transactions")
async def sync_transactions(
    background_tasks: BackgroundTasks,
    days: int = Query(3, description="Charge-date window in days", ge=1, le=90),
):
    """Fetch all tenants' transactions for the last N days and attribute them (background)."""
    _update_sync_status("transactions", "started")
    background_tasks.add_task(_run_sync_transactions, days)
    return {"message": "Transaction sync started in background", "days": days, "check_progress": "/sync/progress"}


@router.get("/progress")
async def get_sync_progress(job: Optional[str] = Query(None, description="incremental, full or transactions")):
    """Status of background sync jobs started by this process."""
    if job:
        if job not in _sync_status:
            raise HTTPException(status_code=404, detail=f"No sync job '{job}' has run")
        return _sync_status[job]
    return _sync_status


@router.get("/checkpoints")
async def get_checkpoints():
    """Per-tenant sync checkpoints from the store."""
    try:
        return {"checkpoints": _get_data_sync().get_sync_status()}
    except Exception as e:
        log.error(f"Checkpoint read error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
