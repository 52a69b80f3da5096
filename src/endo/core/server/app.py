"""Endo diary MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery (fastmcp.json points here)
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from endo.core.config.settings import Settings, get_settings
from endo.core.storage.encryption import CryptoCodec
from endo.core.storage.engine import KeyValueEngine
from endo.core.storage.legacy import JsonFileLegacyStore
from endo.core.storage.persistence import PersistenceService
from endo.domains.bleeding.tools.diary_tools import register_diary_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "Endo Diary"
SERVER_VERSION = "0.1.0"


def build_persistence_service(settings: Settings) -> PersistenceService:
    """Wire the engine, codec and legacy store from settings. Nothing is opened yet."""
    engine = KeyValueEngine(settings.db_path)
    legacy = JsonFileLegacyStore(settings.legacy_store_path) if settings.legacy_store_path else None
    return PersistenceService(engine, CryptoCodec(), legacy)


def create_app(
    *,
    persistence_override: PersistenceService | None = None,
    passphrase_override: str | None = None,
) -> FastMCP:
    """Create and configure the Endo diary MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Builds the persistence service (diary data bank)
    3. Registers the health check and the diary tools
    """
    settings = get_settings()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Local-first menstrual bleeding diary. Records daily PBAC "
            "(Pictorial Blood Assessment Chart) inputs, stores them on this "
            "machine, optionally encrypted, and reconstructs bleeding cycles."
        ),
    )

    # --- Persistence (diary data bank) ---
    if persistence_override is not None:
        service = persistence_override
    else:
        service = build_persistence_service(settings)
        logger.info("Diary data bank configured: %s", settings.db_path)

    passphrase = settings.diary_passphrase if passphrase_override is None else passphrase_override
    if not passphrase:
        logger.info("No DIARY_PASSPHRASE configured; encrypted diaries will stay locked")

    # --- Register tools ---
    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        settings_now = await service.load_settings()
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "db_path": service.engine.db_path,
            "schema_version": service.engine.version,
            "encryption": settings_now.encryption,
            "encrypted_bundle_stored": await service.has_bundle(),
        }

    register_diary_tools(server, service, passphrase=passphrase)
    logger.info("Diary tools registered")

    return server


# Module-level instance for FastMCP discovery (fastmcp.json: "server": "...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
