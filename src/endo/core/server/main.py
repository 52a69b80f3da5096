"""Endo server entry point — ``python -m endo.core.server.main``."""

from __future__ import annotations

import asyncio
import logging
from ipaddress import ip_address

from endo.core.config.settings import get_settings
from endo.core.server.app import build_persistence_service, create_app
from endo.core.storage.engine import EngineUnavailable
from endo.core.storage.models import MigrationOutcome
from endo.core.storage.persistence import PersistenceService


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


async def _prepare_storage(service: PersistenceService) -> MigrationOutcome:
    await service.engine.open()
    return await service.migrate_from_legacy_storage()


def run() -> None:
    """Start the Endo diary MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.endo_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.endo_allow_insecure_bind and not _is_loopback_host(settings.endo_host):
        raise RuntimeError(
            "Refusing to bind Endo server to a non-loopback host without an auth layer. "
            "Set ENDO_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )

    service = build_persistence_service(settings)
    try:
        outcome = asyncio.run(_prepare_storage(service))
    except EngineUnavailable as exc:
        raise RuntimeError(f"Diary storage is unavailable: {exc}") from exc
    if outcome is MigrationOutcome.FAILED:
        logger.warning("Legacy diary data was not imported; it will be retried on next start")

    logger.info(
        "Starting Endo diary server on %s:%d",
        settings.endo_host,
        settings.endo_port,
    )

    mcp = create_app(persistence_override=service)
    try:
        mcp.run(
            transport="streamable-http",
            host=settings.endo_host,
            port=settings.endo_port,
        )
    finally:
        service.engine.close()


if __name__ == "__main__":
    run()
