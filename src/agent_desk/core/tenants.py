"""Audited tenant lifecycle operations."""

from __future__ import annotations

from typing import Optional

from agent_desk.audit.sink import AuditSink
from agent_desk.core.types import TenantRole
from agent_desk.storage.models import Tenant
from agent_desk.storage.router import TenantDatabaseRouter


class TenantService:
    def __init__(self, router: TenantDatabaseRouter, audit: AuditSink):
        self._router = router
        self._audit = audit

    async def create(
        self,
        name: str,
        email: str,
        plan: str = "free",
        role: str = TenantRole.USER,
        actor_id: Optional[int] = None,
    ) -> Tenant:
        tenant = await self._router.create_tenant(name, email, plan=plan, role=role)
        await self._audit.record(
            "tenant.created",
            resource_type="tenant",
            resource_id=tenant.id,
            actor_id=actor_id,
            new_values={"name": name, "email": email, "plan": plan, "role": str(role)},
        )
        return tenant

    async def deactivate(self, tenant_id: int, actor_id: Optional[int] = None) -> None:
        await self._router.deactivate_tenant(tenant_id)
        await self._audit.record(
            "tenant.deactivated",
            resource_type="tenant",
            resource_id=tenant_id,
            actor_id=actor_id,
            old_values={"is_active": True},
            new_values={"is_active": False},
        )

    async def delete(self, tenant_id: int, actor_id: Optional[int] = None) -> None:
        tenant = await self._router.get_tenant(tenant_id)
        await self._router.delete_tenant(tenant_id)
        await self._audit.record(
            "tenant.deleted",
            resource_type="tenant",
            resource_id=tenant_id,
            actor_id=actor_id,
            old_values={"name": tenant.name, "email": tenant.email},
        )
