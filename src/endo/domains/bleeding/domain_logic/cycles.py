"""Bleeding cycle reconstruction from stored PBAC day scores.

Walks the diary in date order and segments the scores into bleeding
cycles. Short zero-score blips inside one bleeding episode do not split
it. The result also carries the day sets the calendar views mark: period
days, cycle starts, and spotting days.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from endo.domains.bleeding.domain_logic.pbac import DEFAULT_RULES, PbacRules

logger = logging.getLogger(__name__)


@dataclass
class CycleDay:
    date: str
    pbac: float
    spotting: bool = False


@dataclass
class Cycle:
    """One reconstructed bleeding cycle. Derived, never persisted."""

    start: str
    end: str
    days: list[CycleDay] = field(default_factory=list)
    pbac_sum: float = 0  # bleeding days only

    @property
    def first_bleeding_day(self) -> str | None:
        return next((d.date for d in self.days if not d.spotting), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "days": [{"date": d.date, "pbac": d.pbac, "spotting": d.spotting} for d in self.days],
            "pbacSum": self.pbac_sum,
        }


@dataclass
class PeriodFlags:
    cycles: list[Cycle] = field(default_factory=list)
    period_set: set[str] = field(default_factory=set)
    start_set: set[str] = field(default_factory=set)
    spotting_set: set[str] = field(default_factory=set)


def entry_day_score(entry: Mapping[str, Any]) -> float | None:
    """Return the entry's stored day score clamped at 0, or None if missing."""
    pbac = entry.get("pbac")
    if not isinstance(pbac, Mapping):
        return None
    raw = pbac.get("dayScore")
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        try:
            raw = float(raw)
        except ValueError:
            return None
    if not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return None
    return max(0, raw)


class _CycleBuilder:
    """State machine behind CycleReconstructor.

    At most one cycle is open at a time, tracked by ``open_index`` into
    ``cycles``. Closing forgets the index. Reopening points it back at the
    last closed cycle.
    """

    def __init__(self, rules: PbacRules) -> None:
        self.rules = rules
        self.cycles: list[Cycle] = []
        self.open_index: int | None = None
        self.zero_streak = rules.min_zeros_before_new_bleed
        self.positive_run = False
        self.run_zeros_before = self.zero_streak
        # Spotting seen in the current positive run before any cycle opened
        self.leading_spotting: list[CycleDay] = []

    def close(self) -> None:
        self.open_index = None

    def zero_days(self, count: int) -> None:
        self.zero_streak += count
        self.positive_run = False
        self.run_zeros_before = self.zero_streak
        self.leading_spotting.clear()
        self.close()

    def positive_day(self, iso: str, score: float) -> None:
        if not self.positive_run:
            self.positive_run = True
            self.run_zeros_before = self.zero_streak
        self.zero_streak = 0

        if score >= self.rules.bleeding_min:
            cycle = self._cycle_for_bleeding(iso)
            cycle.days.append(CycleDay(date=iso, pbac=score))
            cycle.pbac_sum += score
            cycle.end = iso
        elif score <= self.rules.spotting_max:
            day = CycleDay(date=iso, pbac=score, spotting=True)
            if self.open_index is None:
                self.leading_spotting.append(day)
            else:
                cycle = self.cycles[self.open_index]
                cycle.days.append(day)
                cycle.end = iso

    def _cycle_for_bleeding(self, iso: str) -> Cycle:
        if self.open_index is not None:
            return self.cycles[self.open_index]

        gap_long_enough = self.run_zeros_before >= self.rules.min_zeros_before_new_bleed
        if gap_long_enough or not self.cycles:
            start = self.leading_spotting[0].date if self.leading_spotting else iso
            self.cycles.append(Cycle(start=start, end=iso))
        self.open_index = len(self.cycles) - 1

        cycle = self.cycles[self.open_index]
        cycle.days.extend(self.leading_spotting)
        self.leading_spotting.clear()
        return cycle


class CycleReconstructor:
    """Segments PBAC day scores into bleeding cycles.

    Usage::

        reconstructor = CycleReconstructor()
        flags = reconstructor.period_flags(entries)
        flags.cycles[0].start, flags.start_set, flags.spotting_set
    """

    def __init__(self, rules: PbacRules = DEFAULT_RULES) -> None:
        self._rules = rules

    def reconstruct(self, entries: Iterable[Mapping[str, Any]]) -> list[Cycle]:
        """Rebuild every cycle from the full entry collection.

        Entries are sorted by date first. A gap of more than one day
        between consecutive entries counts as that many zero days minus
        one. Days without a score are skipped.
        """
        dated: list[tuple[date, str, float | None]] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            iso = entry.get("date")
            if not isinstance(iso, str):
                continue
            try:
                day = date.fromisoformat(iso)
            except ValueError:
                logger.debug("Skipping entry with unparseable date %r", iso)
                continue
            dated.append((day, iso, entry_day_score(entry)))
        dated.sort(key=lambda item: item[0])

        builder = _CycleBuilder(self._rules)
        previous: date | None = None
        for day, iso, score in dated:
            if previous is not None:
                gap = (day - previous).days
                if gap > 1:
                    builder.zero_days(gap - 1)
            previous = day

            if score is None:
                continue
            if score == 0:
                builder.zero_days(1)
            else:
                builder.positive_day(iso, score)

        return builder.cycles

    def period_flags(self, entries: Iterable[Mapping[str, Any]]) -> PeriodFlags:
        """Reconstruct cycles and derive the period/start/spotting day sets.

        Spotting days come straight from the raw scores, so spotting
        outside any cycle is still flagged.
        """
        entries = [e for e in entries if isinstance(e, Mapping)]
        flags = PeriodFlags(cycles=self.reconstruct(entries))

        for entry in entries:
            score = entry_day_score(entry)
            iso = entry.get("date")
            if score is not None and isinstance(iso, str) and 0 < score <= self._rules.spotting_max:
                flags.spotting_set.add(iso)

        for cycle in flags.cycles:
            first = cycle.first_bleeding_day
            if first is not None:
                flags.start_set.add(first)
            for day in cycle.days:
                if day.spotting:
                    flags.spotting_set.add(day.date)
                else:
                    flags.period_set.add(day.date)
        return flags
