"""Tests for the audit log, alerts and failure escalation."""

import sqlite3

import pytest

from agent_desk.audit.sink import AuditSink, FailureTracker


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_tracker_signals_every_third_failure():
    tracker = FailureTracker(threshold=3, window_seconds=60, clock=Clock())
    hits = [tracker.hit(("t", "whatsapp")) for _ in range(7)]
    assert hits == [False, False, True, False, False, True, False]


def test_tracker_forgets_old_failures():
    clock = Clock()
    tracker = FailureTracker(threshold=3, window_seconds=60, clock=clock)
    tracker.hit(("k",))
    tracker.hit(("k",))
    clock.now = 120
    assert not tracker.hit(("k",))
    assert tracker.count(("k",)) == 1


def test_tracker_keys_are_independent():
    tracker = FailureTracker(threshold=2, clock=Clock())
    assert not tracker.hit((1, "email"))
    assert not tracker.hit((2, "email"))
    assert tracker.hit((1, "email"))


async def test_audit_rows_are_append_only(desk):
    entry_id = await desk.audit.record("tenant.created", resource_type="tenant", resource_id=1,
                                       new_values={"name": "Acme"},
                                       context={"ip_address": "10.0.0.1", "source": "cli"})
    [entry] = await desk.audit.list_audit()
    assert entry.id == entry_id
    assert entry.new_values == {"name": "Acme"}
    assert entry.metadata == {"source": "cli"}

    with pytest.raises(sqlite3.IntegrityError):
        await desk.main_db.execute("UPDATE audit_logs SET action = 'x' WHERE id = ?", (entry_id,))


async def test_alerts_only_change_resolved_flag(desk):
    alert_id = await desk.audit.raise_alert("test", "warning", "Something", tenant_id=None)
    with pytest.raises(sqlite3.IntegrityError):
        await desk.main_db.execute("UPDATE alerts SET title = 'x' WHERE id = ?", (alert_id,))

    assert await desk.audit.resolve_alert(alert_id)
    assert not await desk.audit.resolve_alert(alert_id)
    assert await desk.audit.list_alerts() == []
    [alert] = await desk.audit.list_alerts(unresolved_only=False)
    assert alert.is_resolved


async def test_record_never_raises(desk):
    """Audit failures are logged and swallowed."""
    await desk.main_db.close()
    assert await desk.audit.record("anything") is None
    assert await desk.audit.raise_alert("t", "info", "x") is None


async def test_delivery_failures_escalate_once_per_window(desk):
    sink = AuditSink(desk.main_db, failure_threshold=3, clock=Clock())
    results = [await sink.delivery_failed(1, "whatsapp", "500") for _ in range(3)]
    assert results[:2] == [None, None]
    assert results[2] is not None
    [alert] = await sink.list_alerts()
    assert alert.type == "delivery_failure"
    assert alert.metadata["channel"] == "whatsapp"


async def test_repeated_generation_failures_are_errors(desk):
    """Only the first failure inside the window is a warning."""
    clock = Clock()
    sink = AuditSink(desk.main_db, clock=clock)
    for _ in range(4):
        await sink.generation_failed(1, 5, "timeout")
    alerts = await sink.list_alerts()
    assert [a.severity for a in reversed(alerts)] == ["warning", "error", "error", "error"]
    assert alerts[0].metadata["failures"] == 4

    clock.now = 2 * 24 * 3600
    await sink.generation_failed(1, 5, "timeout")
    await sink.generation_failed(1, 6, "timeout")
    assert [a.severity for a in (await sink.list_alerts())[:2]] == ["warning", "warning"]


def test_add_keeps_counting_past_threshold():
    tracker = FailureTracker(threshold=2, window_seconds=60, clock=Clock())
    assert [tracker.add(("k",)) for _ in range(3)] == [1, 2, 3]
    assert tracker.count(("k",)) == 3
