"""Tenant database router: one isolated SQLite database per tenant.

The shared database owns tenant records and the tenant -> database mapping.
Every read or write of tenant-owned data goes through :meth:`TenantDatabaseRouter.route`,
which is the single place where a tenant id becomes a database handle.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Sequence

from agent_desk.core.types import TenantRole
from agent_desk.errors import ProvisioningError, TenantNotFound
from agent_desk.log import get_logger
from agent_desk.storage.database import TENANT_SCHEMA_SQL, Database
from agent_desk.storage.models import Tenant

logger = get_logger(__name__)

_TENANT_SELECT = """
    SELECT t.*, d.database_name, d.status AS database_status
    FROM tenants t
    LEFT JOIN tenant_databases d ON d.tenant_id = t.id
"""


def database_name_for(tenant_id: int) -> str:
    return f"tenant_{int(tenant_id)}.db"


class TenantDatabaseRouter:
    """Resolves tenant ids to their isolated database handles."""

    def __init__(
        self,
        main_db: Database,
        tenant_db_dir: str | Path,
        tenant_schema: str = TENANT_SCHEMA_SQL,
    ):
        self._main = main_db
        self._dir = Path(tenant_db_dir)
        self._schema = tenant_schema
        self._handles: dict[int, Database] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    @property
    def main(self) -> Database:
        return self._main

    def _path(self, tenant_id: int) -> Path:
        return self._dir / database_name_for(tenant_id)

    def _lock_for(self, tenant_id: int) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    # -- tenant records ----------------------------------------------------

    async def get_tenant(self, tenant_id: int) -> Tenant:
        row = await self._main.fetch_one(f"{_TENANT_SELECT} WHERE t.id = ?", (int(tenant_id),))
        if row is None:
            raise TenantNotFound(f"tenant {tenant_id} does not exist", tenant_id=tenant_id)
        return Tenant.from_row(row)

    async def list_tenants(
        self, active_only: bool = False, include_admins: bool = False
    ) -> list[Tenant]:
        """List tenants in ascending id order."""
        clauses: list[str] = []
        if active_only:
            clauses.append("t.is_active = 1")
        if not include_admins:
            clauses.append("t.role = 'user'")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._main.fetch_all(f"{_TENANT_SELECT}{where} ORDER BY t.id ASC")
        return [Tenant.from_row(r) for r in rows]

    async def is_admin(self, tenant_id: int) -> bool:
        return (await self.get_tenant(tenant_id)).is_admin

    async def create_tenant(
        self,
        name: str,
        email: str,
        plan: str = "free",
        role: str = TenantRole.USER,
    ) -> Tenant:
        """Insert a tenant and synchronously provision its database.

        If provisioning fails the tenant row is deleted again and
        :class:`ProvisioningError` is raised.
        """
        cursor = await self._main.execute(
            "INSERT INTO tenants (name, email, role, plan) VALUES (?, ?, ?, ?)",
            (name, email, str(role), plan),
        )
        tenant_id = cursor.lastrowid
        if role != TenantRole.ADMIN:
            try:
                await self._provision(tenant_id)
            except ProvisioningError:
                await self._main.execute("DELETE FROM tenants WHERE id = ?", (tenant_id,))
                logger.error("tenant_rolled_back", tenant_id=tenant_id)
                raise
        logger.info("tenant_created", tenant_id=tenant_id, role=str(role), plan=plan)
        return await self.get_tenant(tenant_id)

    async def deactivate_tenant(self, tenant_id: int) -> None:
        """Soft-suspend a tenant. Its data stays in place."""
        await self.get_tenant(tenant_id)
        await self._main.execute_many([
            (
                "UPDATE tenants SET is_active = 0, updated_at = strftime('%Y-%m-%dT%H:%M:%f','now') "
                "WHERE id = ?",
                (tenant_id,),
            ),
            (
                "UPDATE tenant_databases SET status = 'suspended', "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%f','now') WHERE tenant_id = ?",
                (tenant_id,),
            ),
        ])
        logger.info("tenant_deactivated", tenant_id=tenant_id)

    async def delete_tenant(self, tenant_id: int) -> None:
        """Hard-delete a tenant and drop its database file."""
        tenant_id = int(tenant_id)
        await self.get_tenant(tenant_id)
        async with self._lock_for(tenant_id):
            handle = self._handles.pop(tenant_id, None)
            if handle is not None:
                await handle.close()
            await self._main.execute("DELETE FROM tenants WHERE id = ?", (tenant_id,))
            self._remove_files(tenant_id)
        self._locks.pop(tenant_id, None)
        logger.info("tenant_deleted", tenant_id=tenant_id)

    # -- routing -------------------------------------------------------------

    async def route(self, tenant_id: int) -> Database:
        """Return the tenant's database handle, provisioning it if absent."""
        tenant_id = int(tenant_id)
        handle = self._handles.get(tenant_id)
        if handle is not None:
            return handle

        async with self._lock_for(tenant_id):
            handle = self._handles.get(tenant_id)
            if handle is not None:
                return handle
            tenant = await self.get_tenant(tenant_id)
            if tenant.is_admin:
                raise TenantNotFound(
                    f"tenant {tenant_id} is an admin account without a tenant database",
                    tenant_id=tenant_id,
                )
            handle = await self._provision(tenant_id)
            return handle

    async def query(
        self, tenant_id: int, statement: str, params: Sequence[Any] = ()
    ) -> list[dict[str, Any]]:
        """Run a parameterized read against the tenant's database."""
        _check_params(params)
        db = await self.route(tenant_id)
        return await db.fetch_all(statement, params)

    async def execute(
        self, tenant_id: int, statement: str, params: Sequence[Any] = ()
    ) -> tuple[int | None, int]:
        """Run a parameterized write. Returns ``(lastrowid, rowcount)``."""
        _check_params(params)
        db = await self.route(tenant_id)
        cursor = await db.execute(statement, params)
        return cursor.lastrowid, cursor.rowcount

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await handle.close()
        self._handles.clear()

    # -- internals -------------------------------------------------------------

    async def _provision(self, tenant_id: int) -> Database:
        """Create (idempotently) the tenant's schema and register the mapping."""
        path = self._path(tenant_id)
        existed = path.exists()
        handle = Database(path, schema=self._schema)
        try:
            await handle.initialize()
            await self._main.execute(
                "INSERT OR IGNORE INTO tenant_databases (tenant_id, database_name) VALUES (?, ?)",
                (tenant_id, database_name_for(tenant_id)),
            )
        except Exception as e:
            await handle.close()
            if not existed:
                self._remove_files(tenant_id)
            logger.error("tenant_provisioning_failed", tenant_id=tenant_id, error=str(e))
            raise ProvisioningError(
                f"could not provision database for tenant {tenant_id}: {e}",
                tenant_id=tenant_id,
            ) from e
        self._handles[tenant_id] = handle
        return handle

    def _remove_files(self, tenant_id: int) -> None:
        path = self._path(tenant_id)
        for suffix in ("", "-wal", "-shm"):
            candidate = path.with_name(path.name + suffix)
            candidate.unlink(missing_ok=True)


def _check_params(params: Sequence[Any]) -> None:
    if isinstance(params, (str, bytes)):
        raise TypeError("params must be a sequence of bound values, not a string")
