"""Append-only audit log and alert records in the shared database.

Writes here never fail the operation that triggered them: errors are logged
and swallowed, and the caller gets ``None`` instead of a row id.
"""

from __future__ import annotations

import json
import time
from collections import deque
from typing import Any, Callable, Optional

from agent_desk.core.types import Severity
from agent_desk.log import get_logger
from agent_desk.storage.database import Database
from agent_desk.storage.models import Alert, AuditEntry

logger = get_logger(__name__)


class FailureTracker:
    """Counts failures per key inside a sliding time window.

    :meth:`hit` returns True on every ``threshold``-th failure inside the
    window; the count then restarts, so three failures produce one signal.
    :meth:`add` records a failure without ever restarting the count.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_seconds: float = 24 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._threshold = max(1, threshold)
        self._window = window_seconds
        self._clock = clock
        self._events: dict[tuple, deque[float]] = {}

    def add(self, key: tuple) -> int:
        """Record a failure and return how many fall inside the window."""
        now = self._clock()
        events = self._events.setdefault(key, deque())
        while events and now - events[0] > self._window:
            events.popleft()
        events.append(now)
        return len(events)

    def hit(self, key: tuple) -> bool:
        if self.add(key) >= self._threshold:
            self._events[key].clear()
            return True
        return False

    def count(self, key: tuple) -> int:
        events = self._events.get(key)
        if not events:
            return 0
        now = self._clock()
        return sum(1 for t in events if now - t <= self._window)


class AuditSink:
    def __init__(
        self,
        db: Database,
        failure_threshold: int = 3,
        window_hours: float = 24,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._db = db
        self._delivery_failures = FailureTracker(failure_threshold, window_hours * 3600, clock)
        self._generation_failures = FailureTracker(failure_threshold, window_hours * 3600, clock)

    async def record(
        self,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Any = None,
        actor_id: Optional[int] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        context = dict(context or {})
        try:
            cursor = await self._db.execute(
                """INSERT INTO audit_logs
                   (actor_id, action, resource_type, resource_id, old_values, new_values,
                    ip_address, user_agent, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    actor_id,
                    action,
                    resource_type,
                    str(resource_id) if resource_id is not None else None,
                    json.dumps(old_values, default=str) if old_values is not None else None,
                    json.dumps(new_values, default=str) if new_values is not None else None,
                    context.pop("ip_address", None),
                    context.pop("user_agent", None),
                    json.dumps(context, default=str),
                ),
            )
            return cursor.lastrowid
        except Exception as e:
            logger.error("audit_write_failed", action=action, error=str(e))
            return None

    async def raise_alert(
        self,
        type: str,
        severity: str,
        title: str,
        message: str = "",
        metadata: Optional[dict[str, Any]] = None,
        tenant_id: Optional[int] = None,
    ) -> Optional[int]:
        try:
            cursor = await self._db.execute(
                """INSERT INTO alerts (tenant_id, type, severity, title, message, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (tenant_id, type, str(severity), title, message,
                 json.dumps(metadata or {}, default=str)),
            )
            logger.warning("alert_raised", type=type, severity=str(severity), tenant_id=tenant_id)
            return cursor.lastrowid
        except Exception as e:
            logger.error("alert_write_failed", type=type, error=str(e))
            return None

    async def resolve_alert(self, alert_id: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE alerts SET is_resolved = 1, resolved_at = strftime('%Y-%m-%dT%H:%M:%f','now') "
            "WHERE id = ? AND is_resolved = 0",
            (alert_id,),
        )
        return cursor.rowcount == 1

    async def list_alerts(
        self, tenant_id: Optional[int] = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[Alert]:
        clauses, params = [], []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if unresolved_only:
            clauses.append("is_resolved = 0")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch_all(
            f"SELECT * FROM alerts{where} ORDER BY id DESC LIMIT ?", (*params, limit)
        )
        return [Alert.from_row(r) for r in rows]

    async def list_audit(
        self, actor_id: Optional[int] = None, action: Optional[str] = None, limit: int = 100
    ) -> list[AuditEntry]:
        clauses, params = [], []
        if actor_id is not None:
            clauses.append("actor_id = ?")
            params.append(actor_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch_all(
            f"SELECT * FROM audit_logs{where} ORDER BY id DESC LIMIT ?", (*params, limit)
        )
        return [AuditEntry.from_row(r) for r in rows]

    # -- failure escalation ---------------------------------------------------------

    async def delivery_failed(
        self, tenant_id: Optional[int], channel: str, detail: Any = None
    ) -> Optional[int]:
        """Count a delivery failure; raise one alert on every Nth inside the window."""
        if not self._delivery_failures.hit((tenant_id, channel)):
            return None
        return await self.raise_alert(
            type="delivery_failure",
            severity=Severity.ERROR,
            title=f"Repeated {channel} delivery failures",
            message=f"Outbound delivery via {channel} keeps failing",
            metadata={"channel": channel, "detail": detail},
            tenant_id=tenant_id,
        )

    async def generation_failed(
        self, tenant_id: Optional[int], agent_id: Optional[int], detail: Any = None
    ) -> Optional[int]:
        """Every generation failure is an alert.

        The first failure inside the window is a warning; any further failure
        for the same agent while earlier ones are still in the window is an error.
        """
        key = (tenant_id, agent_id)
        repeated = self._generation_failures.count(key) >= 1
        failures = self._generation_failures.add(key)
        return await self.raise_alert(
            type="generation_failure",
            severity=Severity.ERROR if repeated else Severity.WARNING,
            title="AI reply generation failed",
            message=str(detail or ""),
            metadata={"agent_id": agent_id, "repeated": repeated, "failures": failures},
            tenant_id=tenant_id,
        )
