"""Tests for session management and the periodic jobs that drive it."""

import pytest

from agent_desk.config import RealtimeConfig
from agent_desk.services.scheduler import METRICS_JOB_ID, SWEEP_JOB_ID, SchedulerService

from conftest import inbound


@pytest.fixture
async def session(desk, tenant):
    desk.config.routing.default_tenant_id = tenant.id
    resolution = await desk.resolver.resolve(inbound())
    return resolution.session


async def test_assign_and_transfer_are_audited(desk, tenant, agent, session):
    other = await desk.agents.create(tenant.id, "Sales", model="m")

    assigned = await desk.sessions.assign_agent(tenant.id, session.id, agent.id, actor_id=tenant.id)
    assert assigned.agent_id == agent.id
    await desk.sessions.assign_agent(tenant.id, session.id, other.id)

    actions = [e.action for e in await desk.audit.list_audit()]
    assert actions[:2] == ["session.agent_transferred", "session.agent_assigned"]


async def test_assign_unknown_agent_rejected(desk, tenant, session):
    with pytest.raises(ValueError):
        await desk.sessions.assign_agent(tenant.id, session.id, 999)


async def test_close_releases_contact(desk, tenant, session):
    """After closing, the next message from the contact opens a new session."""
    closed = await desk.sessions.close_session(tenant.id, session.id)
    assert closed.status == "closed"
    assert closed.metadata["close_reason"] == "closed"
    assert await desk.index.lookup(session.external_id, "whatsapp") is None

    again = await desk.resolver.resolve(inbound(native_id="later"))
    assert again.new_session and again.new_conversation


async def test_reopen_refused_while_another_session_is_active(desk, tenant, session):
    await desk.sessions.close_session(tenant.id, session.id)
    await desk.resolver.resolve(inbound(native_id="later"))

    with pytest.raises(ValueError):
        await desk.sessions.update_status(tenant.id, session.id, "active")


async def test_reopen_closed_session(desk, tenant, session):
    await desk.sessions.close_session(tenant.id, session.id)
    reopened = await desk.sessions.update_status(tenant.id, session.id, "active")

    assert reopened.status == "active"
    assert (await desk.index.lookup(session.external_id, "whatsapp")).session_id == session.id


async def test_sweep_closes_idle_sessions(desk, tenant, session):
    await desk.router.execute(
        tenant.id,
        "UPDATE channel_sessions SET last_activity = '2000-01-01T00:00:00.000' WHERE id = ?",
        (session.id,),
    )
    assert await desk.sessions.sweep_stale(idle_minutes=30) == 1
    assert (await desk.conversations.get_session(tenant.id, session.id)).status == "closed"
    assert await desk.sessions.sweep_stale(idle_minutes=30) == 0


async def test_scheduler_registers_jobs(desk):
    scheduler = SchedulerService(RealtimeConfig(metrics_interval_seconds=5, stale_session_minutes=20))
    scheduler.set_app_context(hub=desk.hub, sessions=desk.sessions)
    await scheduler.start()
    try:
        assert await scheduler.health_check()
        assert {job["id"] for job in scheduler.list_jobs()} == {METRICS_JOB_ID, SWEEP_JOB_ID}
        assert await scheduler.push_metrics() == 0
        assert scheduler.remove_job(SWEEP_JOB_ID)
        assert not scheduler.remove_job(SWEEP_JOB_ID)
    finally:
        await scheduler.stop()
    assert not await scheduler.health_check()


async def test_scheduler_jobs_without_context_do_nothing():
    scheduler = SchedulerService(RealtimeConfig())
    assert await scheduler.push_metrics() == 0
    assert await scheduler.sweep_stale_sessions() == 0
