"""
Timeline polling tests.

Covers milestone mapping, transit time, tier selection and watermarks,
and the 404 / 429 / error handling of a polling pass.
"""
import asyncio
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from shipsync.models.fulfillment import Shipment
from shipsync.models.tenant import SyncCheckpoint
from shipsync.services.timeline_service import (
    Milestone,
    ShipmentTimeline,
    TimelineService,
    transit_days,
)

from conftest import NOW, ok, status


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _shipments(store, tenant, specs):
    """specs: (shipment_id, age_hours, extra columns)"""
    rows = []
    for shipment_id, age_hours, extra in specs:
        row = {
            "client_id": tenant.id,
            "shipment_id": shipment_id,
            "status": "Processing",
            "created_date": NOW - timedelta(hours=age_hours),
        }
        row.update(extra)
        rows.append(row)
    store.batch_insert(Shipment, rows)


def _row(store, shipment_id):
    return store.select(Shipment, Shipment.shipment_id == shipment_id)[0]


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

def test_transit_time_36_hours_is_one_and_a_half_days():
    t0 = datetime(2026, 3, 1, 8, 0, 0)
    assert transit_days(t0, t0 + timedelta(hours=36)) == 1.5


def test_transit_time_needs_both_ends_and_non_negative():
    t0 = datetime(2026, 3, 1, 8, 0, 0)
    assert transit_days(None, t0) is None
    assert transit_days(t0, None) is None
    assert transit_days(t0, t0 - timedelta(hours=1)) is None


def test_events_map_to_milestone_columns():
    timeline = ShipmentTimeline().apply([
        {"log_type_id": 601, "timestamp": "2026-03-01T08:00:00Z"},
        {"log_type_id": 604, "timestamp": "2026-03-01T09:00:00Z"},
        {"log_type_id": 607, "timestamp": "2026-03-01T12:00:00Z"},
        {"log_type_id": 609, "timestamp": "2026-03-03T00:00:00Z"},
        {"log_type_id": 999, "timestamp": "2026-03-03T00:00:00Z"},  # unknown
        {"log_type_id": 602},  # no timestamp
    ])
    updates = timeline.column_updates()
    assert updates["event_created"] == datetime(2026, 3, 1, 8, 0, 0)
    assert updates["event_labeled"] == datetime(2026, 3, 1, 9, 0, 0)
    assert updates["event_delivered"] == datetime(2026, 3, 3, 0, 0, 0)
    assert "event_picked" not in updates
    assert updates["transit_time_days"] == 1.5


def test_repeated_milestone_keeps_earliest():
    timeline = ShipmentTimeline().apply([
        {"log_type_id": 608, "timestamp": "2026-03-02T10:00:00Z"},
        {"log_type_id": 608, "timestamp": "2026-03-02T07:00:00Z"},
    ])
    assert timeline.get(Milestone.OUT_FOR_DELIVERY) == datetime(2026, 3, 2, 7, 0, 0)


def test_stored_milestones_are_not_rewritten_by_later_events():
    existing = {"event_created": datetime(2026, 3, 1, 8, 0, 0)}
    timeline = ShipmentTimeline(existing).apply([{"log_type_id": 601, "timestamp": "2026-03-01T09:00:00Z"}])
    assert timeline.changed == set()
    assert timeline.column_updates() == {}


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def test_capacity_split_between_tiers(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [(f"F{i}", 10, {}) for i in range(10)] + [(f"O{i}", 24 * 5, {}) for i in range(5)])

    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW, capacity=10)
    assert len(tiers["fresh"]) == 7
    assert len(tiers["older"]) == 3
    assert all(r["shipment_id"].startswith("F") for r in tiers["fresh"])
    assert all(r["shipment_id"].startswith("O") for r in tiers["older"])


def test_unused_fresh_capacity_goes_to_older(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("F1", 5, {}), ("F2", 5, {})] + [(f"O{i}", 24 * 6, {}) for i in range(12)])

    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW, capacity=10)
    assert len(tiers["fresh"]) == 2
    assert len(tiers["older"]) == 8


def test_watermarks_gate_each_tier(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [
        ("fresh-recent", 5, {"timeline_checked_at": NOW - timedelta(minutes=5)}),
        ("fresh-stale", 5, {"timeline_checked_at": NOW - timedelta(minutes=20)}),
        ("older-recent", 24 * 5, {"timeline_checked_at": NOW - timedelta(minutes=60)}),
        ("older-stale", 24 * 5, {"timeline_checked_at": NOW - timedelta(hours=3)}),
        ("too-old", 24 * 20, {}),
    ])
    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW)
    assert [r["shipment_id"] for r in tiers["fresh"]] == ["fresh-stale"]
    assert [r["shipment_id"] for r in tiers["older"]] == ["older-stale"]


def test_never_checked_shipments_go_first(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [
        ("checked", 5, {"timeline_checked_at": NOW - timedelta(hours=1)}),
        ("never", 5, {}),
    ])
    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW, capacity=2)
    assert [r["shipment_id"] for r in tiers["fresh"]] == ["never"]  # int(2 * 0.7) == 1


def test_delivered_skipped_unless_timeline_is_partial(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [
        ("delivered", 5, {"event_delivered": NOW, "event_created": NOW, "event_labeled": NOW}),
        ("partial", 5, {"event_delivered": NOW, "event_labeled": NOW}),
        ("deleted", 5, {"deleted_at": NOW}),
    ])
    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW)
    assert [r["shipment_id"] for r in tiers["fresh"]] == ["partial"]


def test_priority_ids_are_selected_before_backlog(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [(f"B{i}", 5, {}) for i in range(5)] + [("NEW", 5, {"timeline_checked_at": NOW - timedelta(minutes=30)})])

    tiers = TimelineService(store, test_settings).select_due(tenant.id, NOW, priority_ids=["NEW"], capacity=2)
    fresh = [r["shipment_id"] for r in tiers["fresh"]]
    assert fresh[0] == "NEW"
    assert len(fresh) == 1  # int(2 * 0.7) == 1
    assert len(tiers["older"]) == 0


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

def test_poll_writes_milestones_and_watermark(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {"status": "Completed"})])
    connector = fake_shipbob({"GET shipment/S1/timeline": ok([
        {"log_type_id": 601, "timestamp": "2026-03-09T08:00:00Z"},
        {"log_type_id": 607, "timestamp": "2026-03-09T10:00:00Z"},
        {"log_type_id": 609, "timestamp": "2026-03-10T22:00:00Z"},
    ])})

    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW, sync_mode="full"))
    assert result.updated == 1 and result.errors == 0

    row = _row(store, "S1")
    assert row["event_intransit"] == datetime(2026, 3, 9, 10, 0, 0)
    assert row["transit_time_days"] == 1.5
    assert row["timeline_checked_at"] == NOW
    assert len(row["event_logs"]) == 3

    checkpoint = store.select(SyncCheckpoint)[0]
    assert checkpoint["last_timeline_checked_at"] == NOW


def test_404_timeline_is_empty_not_error(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {})])
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, fake_shipbob({}), now=NOW))

    assert result.empty == 1
    assert result.errors == 0
    assert _row(store, "S1")["timeline_checked_at"] == NOW


def test_429_skips_without_advancing_watermark(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {}), ("S2", 5, {})])
    connector = fake_shipbob({
        "GET shipment/S1/timeline": status(429),
        "GET shipment/S2/timeline": ok([{"log_type_id": 601, "timestamp": "2026-03-10T08:00:00Z"}]),
    })
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW))

    assert result.rate_limited == 1
    assert result.updated == 1
    assert _row(store, "S1")["timeline_checked_at"] is None
    assert _row(store, "S2")["timeline_checked_at"] == NOW


def test_failures_are_counted_and_the_pass_continues(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {}), ("S2", 5, {}), ("S3", 5, {})])
    connector = fake_shipbob({
        "GET shipment/S1/timeline": status(500),
        "GET shipment/S2/timeline": ConnectionResetError("reset"),
        "GET shipment/S3/timeline": ok([]),
    })
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW))

    assert result.errors == 2
    assert result.empty == 1
    assert len(result.error_messages) == 2


def test_labeled_event_on_pre_label_status_triggers_corrective_fetch(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {"status": "Processing"})])
    connector = fake_shipbob({
        "GET shipment/S1/timeline": ok([{"log_type_id": 604, "timestamp": "2026-03-10T09:00:00Z"}]),
        "GET shipment/S1": ok({"status": "LabeledCreated", "tracking": {"tracking_number": "1Z999", "carrier": "UPS"}}),
    })
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW))

    assert result.corrected == 1
    row = _row(store, "S1")
    assert row["status"] == "LabeledCreated"
    assert row["tracking_id"] == "1Z999"
    assert row["carrier"] == "UPS"


def test_no_corrective_fetch_when_status_already_post_label(store, test_settings, make_tenant, fake_shipbob):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {"status": "Completed"})])
    connector = fake_shipbob({
        "GET shipment/S1/timeline": ok([{"log_type_id": 604, "timestamp": "2026-03-10T09:00:00Z"}]),
    })
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW))
    assert result.corrected == 0
    assert "shipment/S1" not in connector.paths()


def test_poll_all_runs_tenants_independently(store, test_settings, make_tenant, fake_shipbob):
    a, b = make_tenant("Acme"), make_tenant("Bolt")
    _shipments(store, a, [("A1", 5, {})])
    _shipments(store, b, [("B1", 5, {})])
    connectors = {
        a.id: fake_shipbob({"GET shipment/A1/timeline": ConnectionResetError("down")}),
        b.id: fake_shipbob({"GET shipment/B1/timeline": ok([{"log_type_id": 601, "timestamp": "2026-03-10T08:00:00Z"}])}),
    }
    results = _run(TimelineService(store, test_settings).poll_all([a, b], connectors, now=NOW))
    by_tenant = {r.tenant_id: r for r in results}
    assert by_tenant[a.id].errors == 1
    assert by_tenant[b.id].updated == 1


def test_store_failure_for_one_tenant_does_not_abort_the_others(store, test_settings, make_tenant, fake_shipbob, monkeypatch):
    a, b = make_tenant("Acme"), make_tenant("Bolt")
    _shipments(store, a, [("A1", 5, {})])
    _shipments(store, b, [("B1", 5, {})])
    service = TimelineService(store, test_settings)
    select_due = service.select_due

    def failing_for_acme(tenant_id, now, **kwargs):
        if tenant_id == a.id:
            raise OperationalError("SELECT shipments", {}, Exception("db gone"))
        return select_due(tenant_id, now, **kwargs)

    monkeypatch.setattr(service, "select_due", failing_for_acme)
    connectors = {
        a.id: fake_shipbob({}),
        b.id: fake_shipbob({"GET shipment/B1/timeline": ok([{"log_type_id": 601, "timestamp": "2026-03-10T08:00:00Z"}])}),
    }
    results = _run(service.poll_all([a, b], connectors, now=NOW))

    assert len(results) == 2
    by_tenant = {r.tenant_id: r for r in results}
    assert by_tenant[a.id].errors == 1
    assert "timeline pass" in by_tenant[a.id].error_messages[0]
    assert by_tenant[b.id].errors == 0
    assert by_tenant[b.id].updated == 1


def test_failed_corrective_write_is_recorded(store, test_settings, make_tenant, fake_shipbob, monkeypatch):
    tenant = make_tenant("Acme")
    _shipments(store, tenant, [("S1", 5, {"status": "Processing"})])
    connector = fake_shipbob({
        "GET shipment/S1/timeline": ok([{"log_type_id": 604, "timestamp": "2026-03-10T09:00:00Z"}]),
        "GET shipment/S1": ok({"status": "LabeledCreated"}),
    })
    update_where = store.update_where

    def fail_status_writes(model, values, *criteria):
        if "status" in values:
            raise OperationalError("UPDATE shipments", {}, Exception("locked"))
        return update_where(model, values, *criteria)

    monkeypatch.setattr(store, "update_where", fail_status_writes)
    result = _run(TimelineService(store, test_settings).poll_tenant(tenant, connector, now=NOW))

    assert result.corrected == 0
    assert result.errors == 1
    assert result.error_messages[0].startswith("corrective write S1")
    assert _row(store, "S1")["event_labeled"] == datetime(2026, 3, 10, 9, 0, 0)
