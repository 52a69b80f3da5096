"""MCP tools for the bleeding diary.

These tools record a day's bleeding inputs, read the diary back, and
report reconstructed cycles. Every write persists the whole entry
collection through the persistence service, encrypted when the diary
settings ask for it.
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from endo.core.storage.persistence import PersistenceService

from endo.core.storage.models import SaveOutcome
from endo.domains.bleeding.domain_logic.cycles import CycleReconstructor
from endo.domains.bleeding.domain_logic.pbac import normalize_entry

logger = logging.getLogger(__name__)

_LOCKED = {
    "status": "locked",
    "message": "The diary is encrypted and the configured passphrase does not open it.",
}


def _save_status(outcome: SaveOutcome) -> str:
    return "skipped" if outcome is SaveOutcome.SKIP else "saved"


def register_diary_tools(
    mcp: FastMCP,
    service: PersistenceService,
    *,
    passphrase: str = "",
    reconstructor: CycleReconstructor | None = None,
) -> None:
    """Register diary entry and cycle tools on the MCP server."""
    reconstructor = reconstructor or CycleReconstructor()

    @mcp.tool
    async def record_bleeding_day(
        ctx: Context,
        date: str,
        products: list[dict[str, str]] | None = None,
        clots: str = "none",
        flooding_episodes: int = 0,
        cup_ml: int = 0,
        period_start: bool = False,
        absent_reason: str = "",
    ) -> str:
        """Record the bleeding inputs for one diary day and return its PBAC score.

        Args:
            date: Day of the entry (ISO 8601, e.g., '2026-10-04').
            products: Products used, e.g. [{"kind": "pad", "fill": "heavy"}].
                Kinds: pad, tampon. Fill: light, medium, heavy.
            clots: Largest clots seen: none, small (~1 cm) or large (2-3 cm).
            flooding_episodes: Number of flooding episodes (max 6 counted).
            cup_ml: Menstrual cup volume in ml (recorded, not scored).
            period_start: Whether the period started on this day.
            absent_reason: Leave empty to score the day. Otherwise
                'not-applicable' (no bleeding), 'asked-declined' or 'not-asked'.
        """
        try:
            datetime.date.fromisoformat(date)
        except ValueError:
            return json.dumps({"status": "error", "message": f"Invalid date: {date!r}"})

        settings = await service.load_settings()
        loaded = await service.load_entries(passphrase, settings)
        if loaded.locked:
            return json.dumps(_LOCKED)

        existing = next((e for e in loaded.entries if e["date"] == date), {})
        updated = normalize_entry({**existing, "date": date, "pbac": {
            "products": products or [],
            "clots": clots,
            "floodingEpisodes": flooding_episodes,
            "cupMl": cup_ml,
            "periodStart": period_start,
            "absent_reason": absent_reason or None,
        }})
        day_score = updated["pbac"]["dayScore"]
        entries = [e for e in loaded.entries if e["date"] != date] + [updated]
        entries.sort(key=lambda e: e["date"])

        outcome = await service.save_entries(entries, passphrase, settings)
        logger.info("Diary day %s recorded (score=%s, outcome=%s)", date, day_score, outcome.value)
        return json.dumps({
            "status": _save_status(outcome),
            "save_outcome": outcome.value,
            "date": date,
            "day_score": day_score,
        })

    @mcp.tool
    async def list_entries(ctx: Context, since: str = "", until: str = "") -> str:
        """List diary entries, optionally limited to a date range.

        Args:
            since: Earliest date to include (ISO 8601). Empty for no limit.
            until: Latest date to include (ISO 8601). Empty for no limit.
        """
        loaded = await service.load_entries(passphrase, await service.load_settings())
        if loaded.locked:
            return json.dumps(_LOCKED)
        entries = [
            e for e in loaded.entries
            if (not since or e["date"] >= since) and (not until or e["date"] <= until)
        ]
        entries.sort(key=lambda e: e["date"])
        return json.dumps({"status": "ok", "count": len(entries), "entries": entries})

    @mcp.tool
    async def cycle_overview(ctx: Context) -> str:
        """Reconstruct bleeding cycles and the period, start and spotting days."""
        loaded = await service.load_entries(passphrase, await service.load_settings())
        if loaded.locked:
            return json.dumps(_LOCKED)
        flags = reconstructor.period_flags(loaded.entries)
        return json.dumps({
            "status": "ok",
            "cycle_count": len(flags.cycles),
            "cycles": [c.to_dict() for c in flags.cycles],
            "period_days": sorted(flags.period_set),
            "start_days": sorted(flags.start_set),
            "spotting_days": sorted(flags.spotting_set),
        })

    @mcp.tool
    async def get_diary_settings(ctx: Context) -> str:
        """Return the current diary settings."""
        settings = await service.load_settings()
        return json.dumps({"status": "ok", "settings": settings.to_dict()})

    @mcp.tool
    async def update_diary_settings(
        ctx: Context,
        quick_mode: bool | None = None,
        encryption: bool | None = None,
        kdf_strong: bool | None = None,
        compact_pdf: bool | None = None,
    ) -> str:
        """Change diary settings. Turning encryption on or off re-saves the diary.

        Args:
            quick_mode: Use the short daily check-in.
            encryption: Encrypt the diary with the configured passphrase.
            kdf_strong: Use the slower, stronger key derivation.
            compact_pdf: Produce compact PDF reports.
        """
        partial: dict[str, Any] = {
            key: value
            for key, value in (
                ("quickMode", quick_mode),
                ("encryption", encryption),
                ("kdfStrong", kdf_strong),
                ("compactPdf", compact_pdf),
            )
            if value is not None
        }
        current = await service.load_settings()
        loaded = await service.load_entries(passphrase, current)
        if loaded.locked:
            return json.dumps(_LOCKED)

        updated = await service.save_settings(partial)
        outcome = await service.save_entries(loaded.entries, passphrase, updated)
        return json.dumps({
            "status": _save_status(outcome),
            "save_outcome": outcome.value,
            "settings": updated.to_dict(),
        })
