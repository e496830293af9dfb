"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Optional

from agent_desk.ai.client import AIClient, AnthropicClient
from agent_desk.ai.generator import ReplyGenerator
from agent_desk.audit.sink import AuditSink
from agent_desk.channels.base import ChannelAdapter
from agent_desk.channels.registry import ChannelRegistry
from agent_desk.config import AppConfig
from agent_desk.core.auth import TokenService
from agent_desk.core.tenants import TenantService
from agent_desk.log import get_logger
from agent_desk.realtime.hub import BroadcastHub
from agent_desk.routing.pipeline import InboundPipeline
from agent_desk.routing.resolver import ConversationResolver
from agent_desk.routing.sessions import SessionService
from agent_desk.services.base import Service
from agent_desk.services.scheduler import SchedulerService
from agent_desk.storage.agent_repo import AgentRepository
from agent_desk.storage.channel_index import ChannelIndex
from agent_desk.storage.conversation_repo import ConversationRepository
from agent_desk.storage.database import Database
from agent_desk.storage.router import TenantDatabaseRouter

logger = get_logger(__name__)


class AgentDeskApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        ai_client: Optional[AIClient] = None,
        adapters: Optional[list[ChannelAdapter]] = None,
    ):
        self.config = config
        self.main_db = Database(config.storage.main_db_path)
        self.router = TenantDatabaseRouter(self.main_db, config.storage.tenant_db_dir)
        self.index = ChannelIndex(self.main_db)
        self.conversations = ConversationRepository(self.router)
        self.agents = AgentRepository(self.router)
        self.audit = AuditSink(
            self.main_db,
            failure_threshold=config.alerts.failure_threshold,
            window_hours=config.alerts.failure_window_hours,
        )
        self.tokens = TokenService(config.auth)
        self.tenants = TenantService(self.router, self.audit)

        self.channels = ChannelRegistry()
        for adapter in adapters if adapters is not None else self._create_adapters():
            self.channels.register(adapter)

        self.ai_client = ai_client or self._create_ai_client()
        self.generator = ReplyGenerator(self.ai_client, timeout=config.ai.generation_timeout)
        self.sessions = SessionService(
            self.router, self.conversations, self.agents, self.index, self.audit
        )
        self.resolver = ConversationResolver(
            self.router,
            self.index,
            self.conversations,
            routing=config.routing,
            channel_owners={
                str(a.channel_type): a.tenant_id
                for a in self.channels.all()
                if a.tenant_id is not None
            },
        )
        self.hub = BroadcastHub(
            self.router,
            self.conversations,
            self.agents,
            self.sessions,
            self.generator,
            self.tokens,
            self.audit,
            ai_config=config.ai,
        )
        self.pipeline = InboundPipeline(
            self.resolver,
            self.conversations,
            self.agents,
            self.generator,
            self.channels,
            self.audit,
            hub=self.hub,
            ai_config=config.ai,
        )
        self.hub.attach_pipeline(self.pipeline)
        self.scheduler = SchedulerService(config.realtime)

    async def initialize_storage(self) -> None:
        """Open the shared database. Enough for CLI commands that only touch tenants."""
        await self.main_db.initialize()

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Database
        await self.initialize_storage()

        # 2. Periodic jobs and channel adapters
        self.scheduler.set_app_context(hub=self.hub, sessions=self.sessions)
        for service in self.services():
            try:
                await service.start()
                logger.info("service_started", service=service.service_name)
            except Exception as e:
                logger.error("service_start_failed", service=service.service_name, error=str(e))

        logger.info("agent_desk_started", channels=self.channels.types())

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        for service in reversed(self.services()):
            try:
                await service.stop()
            except Exception as e:
                logger.error("service_stop_error", service=service.service_name, error=str(e))

        await self.ai_client.close()
        await self.router.close()
        await self.main_db.close()
        logger.info("agent_desk_stopped")

    def services(self) -> list[Service]:
        return [self.scheduler, *self.channels.all()]

    async def health(self) -> dict[str, bool]:
        status = {"database": self.main_db.is_open}
        for service in self.services():
            status[service.service_name] = await service.health_check()
        return status

    def _create_ai_client(self) -> AIClient:
        """Create an AI client based on the configured provider."""
        match self.config.ai.provider:
            case "anthropic":
                return AnthropicClient(self.config.ai)
            case _:
                raise ValueError(f"Unknown AI provider: {self.config.ai.provider}")

    def _create_adapters(self) -> list[ChannelAdapter]:
        channels = self.config.channels
        delivery = self.config.delivery
        adapters: list[ChannelAdapter] = []
        if channels.whatsapp and channels.whatsapp.enabled:
            from agent_desk.channels.whatsapp import WhatsAppAdapter

            adapters.append(WhatsAppAdapter(channels.whatsapp, delivery))
        if channels.telegram and channels.telegram.enabled:
            from agent_desk.channels.telegram import TelegramAdapter

            adapters.append(TelegramAdapter(channels.telegram, delivery))
        if channels.messenger and channels.messenger.enabled:
            from agent_desk.channels.messenger import MessengerAdapter

            adapters.append(MessengerAdapter(channels.messenger, delivery))
        if channels.email and channels.email.enabled:
            from agent_desk.channels.mail import EmailAdapter

            adapters.append(EmailAdapter(channels.email, delivery))
        return adapters
