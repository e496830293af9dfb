"""Per-tenant agent (AI persona) repository."""

from __future__ import annotations

from typing import Optional

from agent_desk.storage.models import Agent
from agent_desk.storage.router import TenantDatabaseRouter


class AgentRepository:
    def __init__(self, router: TenantDatabaseRouter):
        self._router = router

    async def create(
        self,
        tenant_id: int,
        name: str,
        model: str,
        provider: str = "anthropic",
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        description: str = "",
    ) -> Agent:
        agent_id, _ = await self._router.execute(
            tenant_id,
            """INSERT INTO agents
               (name, description, provider, model, system_prompt, temperature, max_tokens)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (name, description, provider, model, system_prompt, temperature, max_tokens),
        )
        return await self.get(tenant_id, agent_id)

    async def get(self, tenant_id: int, agent_id: int) -> Optional[Agent]:
        rows = await self._router.query(
            tenant_id, "SELECT * FROM agents WHERE id = ?", (agent_id,)
        )
        return Agent.from_row(rows[0]) if rows else None

    async def list_agents(self, tenant_id: int, active_only: bool = False) -> list[Agent]:
        sql = "SELECT * FROM agents"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._router.query(tenant_id, sql + " ORDER BY name", ())
        return [Agent.from_row(r) for r in rows]

    async def set_active(self, tenant_id: int, agent_id: int, is_active: bool) -> bool:
        """Returns False when the agent does not exist."""
        _, changed = await self._router.execute(
            tenant_id,
            "UPDATE agents SET is_active = ?, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%f','now') WHERE id = ?",
            (1 if is_active else 0, agent_id),
        )
        return changed == 1
