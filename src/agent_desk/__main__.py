"""CLI entry point for agent-desk."""

from __future__ import annotations

import argparse
import asyncio
import sys

from agent_desk.app import AgentDeskApp
from agent_desk.config import AppConfig, load_config
from agent_desk.core.types import TenantRole
from agent_desk.errors import AgentDeskError
from agent_desk.log import setup_logging


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="agent-desk",
        description="Multi-tenant message routing for AI agents across messaging channels",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the webhook and dashboard server")
    _add_config_args(serve_parser)

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    tenant_parser = subparsers.add_parser("create-tenant", help="Create a tenant and its database")
    _add_config_args(tenant_parser)
    tenant_parser.add_argument("name")
    tenant_parser.add_argument("email")
    tenant_parser.add_argument("--plan", default="free")
    tenant_parser.add_argument("--admin", action="store_true", help="Create an admin account")

    token_parser = subparsers.add_parser("issue-token", help="Print a dashboard access token")
    _add_config_args(token_parser)
    token_parser.add_argument("tenant_id", type=int)

    args = parser.parse_args(argv)

    if args.command is None:
        # Default to serve
        args.command = "serve"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "create-tenant":
        config = _load_or_exit(args.config, args.env)
        asyncio.run(_create_tenant(config, args.name, args.email, args.plan, args.admin))
    elif args.command == "issue-token":
        config = _load_or_exit(args.config, args.env)
        asyncio.run(_issue_token(config, args.tenant_id))
    elif args.command == "serve":
        _serve(args.config, args.env)


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        config = load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml first")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level)
    return config


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
        print(f"Configuration valid: {config_path}")
        print(f"  Data directory: {config.data_dir}")
        print(f"  Main database: {config.storage.main_db_path}")
        print(f"  Tenant databases: {config.storage.tenant_db_dir}")
        print(f"  Default tenant: {config.routing.default_tenant_id or '(none)'}")
        channels = config.channels
        for name in ("whatsapp", "telegram", "messenger", "email"):
            section = getattr(channels, name)
            if section is None:
                continue
            state = "enabled" if section.enabled else "disabled"
            owner = section.tenant_id if section.tenant_id is not None else "default"
            print(f"    - {name} [{state}, tenant: {owner}]")
        print(f"  AI provider: {config.ai.provider} (timeout {config.ai.generation_timeout}s)")
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


async def _create_tenant(config: AppConfig, name: str, email: str, plan: str, admin: bool) -> None:
    desk = AgentDeskApp(config, adapters=[])
    await desk.initialize_storage()
    try:
        role = TenantRole.ADMIN if admin else TenantRole.USER
        tenant = await desk.tenants.create(name, email, plan=plan, role=role)
        print(f"Created tenant {tenant.id} ({tenant.email}, role={tenant.role})")
        if tenant.database_name:
            print(f"  Database: {tenant.database_name}")
    except AgentDeskError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await desk.stop()


async def _issue_token(config: AppConfig, tenant_id: int) -> None:
    desk = AgentDeskApp(config, adapters=[])
    await desk.initialize_storage()
    try:
        tenant = await desk.router.get_tenant(tenant_id)
        print(desk.tokens.issue(tenant.id, role=tenant.role))
    except AgentDeskError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await desk.stop()


def _serve(config_path: str, env_path: str) -> None:
    """Load config and run the server under uvicorn."""
    import uvicorn

    from agent_desk.web.server import create_app

    config = _load_or_exit(config_path, env_path)
    app = create_app(AgentDeskApp(config))
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
