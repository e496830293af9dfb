"""FastAPI application: channel webhooks, dashboard socket and a small operator API."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agent_desk.app import AgentDeskApp
from agent_desk.channels.base import ChannelAdapter
from agent_desk.core.auth import TokenClaims
from agent_desk.errors import AgentDeskError, AuthenticationError, VerificationFailed
from agent_desk.log import get_logger, redact
from agent_desk.realtime.connection import WebSocketConnection

logger = get_logger(__name__)


class ReplyRequest(BaseModel):
    message: str


def create_app(desk: AgentDeskApp, manage_lifecycle: bool = True) -> FastAPI:
    """Build the HTTP/WebSocket surface around an :class:`AgentDeskApp`.

    With ``manage_lifecycle`` the app's start/stop run in the FastAPI lifespan.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await desk.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await desk.stop()

    app = FastAPI(title="agent-desk", lifespan=lifespan)
    app.state.desk = desk
    app.add_middleware(
        CORSMiddleware,
        allow_origins=desk.config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AgentDeskError)
    async def _domain_error(request: Request, exc: AgentDeskError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": str(exc), "type": type(exc).__name__},
        )

    def _adapter(channel: str) -> ChannelAdapter:
        return desk.channels.require(channel)

    async def current_claims(authorization: Optional[str] = Header(default=None)) -> TokenClaims:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthenticationError("missing bearer token")
        claims = desk.tokens.verify(authorization.split(" ", 1)[1].strip())
        tenant = await desk.router.get_tenant(claims.tenant_id)
        if not tenant.is_active:
            raise AuthenticationError("account is suspended")
        return claims

    async def admin_claims(claims: TokenClaims = Depends(current_claims)) -> TokenClaims:
        if not await desk.router.is_admin(claims.tenant_id):
            raise AuthenticationError("admin access required")
        return claims

    # --- Health check ---
    @app.get("/health", include_in_schema=False)
    @app.head("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        services = await desk.health()
        return {
            "ok": all(services.values()),
            "services": services,
            "channels": desk.channels.types(),
            "connections": desk.hub.connection_count,
        }

    # --- Webhook verification (Meta-family channels) ---
    @app.get("/webhooks/{channel}", include_in_schema=False)
    async def verify_webhook(
        channel: str,
        hub_mode: str = Query("", alias="hub.mode"),
        hub_token: str = Query("", alias="hub.verify_token"),
        hub_challenge: str = Query("", alias="hub.challenge"),
    ) -> Response:
        adapter = _adapter(channel)
        try:
            challenge = adapter.verify_challenge(hub_mode, hub_token, hub_challenge)
        except VerificationFailed:
            logger.warning("webhook_verification_failed", channel=channel, mode=hub_mode)
            raise
        logger.info("webhook_verified", channel=channel)
        return Response(content=challenge, media_type="text/plain")

    # --- Inbound messages ---
    @app.post("/webhooks/{channel}", include_in_schema=False)
    async def receive_webhook(
        channel: str, request: Request, background: BackgroundTasks
    ) -> dict[str, Any]:
        adapter = _adapter(channel)
        body = await request.body()
        if not adapter.verify_inbound_request(request.headers, body):
            logger.warning("webhook_signature_rejected", channel=channel)
            raise VerificationFailed(f"{channel} request failed verification")

        try:
            payload = json.loads(body or b"{}")
        except ValueError as e:
            logger.warning("webhook_payload_invalid", channel=channel, error=str(e))
            return {"status": "received", "count": 0}

        try:
            messages = adapter.normalize_inbound(payload)
        except Exception as e:
            logger.error(
                "webhook_normalize_failed",
                channel=channel,
                error=str(e),
                payload=redact(payload),
            )
            messages = []

        logger.info("webhook_received", channel=channel, count=len(messages))
        if messages:
            # Processing runs after the acknowledgement is sent.
            background.add_task(desk.pipeline.process_batch, messages)
        return {"status": "received", "count": len(messages)}

    # --- Dashboard socket ---
    @app.websocket("/ws")
    async def dashboard_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        conn = WebSocketConnection(websocket)
        desk.hub.connect(conn)
        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except ValueError:
                    await conn.send("error", {"error": "frames must be JSON objects"})
                    continue
                if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                    await conn.send("error", {"error": "frames need an 'event' field"})
                    continue
                # Events of one connection are handled strictly one after another.
                await desk.hub.handle(conn, frame["event"], frame.get("data") or {})
        except WebSocketDisconnect:
            pass
        finally:
            desk.hub.disconnect(conn)

    # --- Operator API ---
    @app.post("/api/conversations/{conversation_id}/reply")
    async def reply(
        conversation_id: int,
        body: ReplyRequest,
        claims: TokenClaims = Depends(current_claims),
    ) -> dict[str, Any]:
        message = await desk.pipeline.send_operator_reply(
            claims.tenant_id, conversation_id, body.message, actor_id=claims.tenant_id
        )
        return {"message": message.to_event(), "status": message.status}

    @app.get("/api/admin/alerts")
    async def list_alerts(
        tenant_id: Optional[int] = None,
        unresolved_only: bool = True,
        limit: int = Query(100, ge=1, le=500),
        _: TokenClaims = Depends(admin_claims),
    ) -> dict[str, Any]:
        alerts = await desk.audit.list_alerts(tenant_id, unresolved_only, limit)
        return {"alerts": [asdict(a) for a in alerts]}

    @app.post("/api/admin/alerts/{alert_id}/resolve")
    async def resolve_alert(
        alert_id: int, claims: TokenClaims = Depends(admin_claims)
    ) -> dict[str, Any]:
        resolved = await desk.audit.resolve_alert(alert_id)
        if resolved:
            await desk.audit.record(
                "alert.resolved",
                resource_type="alert",
                resource_id=alert_id,
                actor_id=claims.tenant_id,
            )
        return {"resolved": resolved}

    return app
