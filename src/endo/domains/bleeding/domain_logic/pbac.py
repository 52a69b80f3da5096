"""PBAC day scoring (Pictorial Blood Assessment Chart, Higham scale).

A day's raw bleeding inputs (products and how full they were, clots,
flooding episodes) are turned into one severity score. Cup volume is
recorded in ml but never scored.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AbsentReason(str, Enum):
    """Why a day has no PBAC score."""

    UNKNOWN = "unknown"
    NOT_ASKED = "not-asked"
    ASKED_DECLINED = "asked-declined"
    NOT_APPLICABLE = "not-applicable"   # explicitly no bleeding, scores 0
    ERROR = "error"


PRODUCT_KINDS = ("pad", "tampon")
FILL_LEVELS = ("light", "medium", "heavy")
CLOT_SIZES = ("none", "small", "large")

FILL_ALIASES = {
    "none": "none",
    "low": "light",
    "mid": "medium",
    "high": "heavy",
    "light": "light",
    "medium": "medium",
    "heavy": "heavy",
}

CUP_ML_MAX = 120


@dataclass(frozen=True)
class PbacRules:
    """Scoring weights and the score thresholds used for cycle detection."""

    # Indexed light/medium/heavy
    pad_weights: tuple[int, int, int] = (1, 5, 20)
    tampon_weights: tuple[int, int, int] = (1, 5, 10)
    clot_points: tuple[tuple[str, int], ...] = (("none", 0), ("small", 1), ("large", 5))
    flooding_points_per_episode: int = 5
    max_flooding_episodes_per_day: int = 6

    spotting_max: float = 4
    bleeding_min: float = 5
    min_zeros_before_new_bleed: int = 2

    def weights_for(self, kind: str) -> tuple[int, int, int] | None:
        if kind == "pad":
            return self.pad_weights
        if kind == "tampon":
            return self.tampon_weights
        return None

    def clot_score(self, clots: str) -> int:
        return dict(self.clot_points).get(clots, 0)


DEFAULT_RULES = PbacRules()


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _as_int(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, str) and raw.strip():
        try:
            raw = float(raw)
        except ValueError:
            return None
    if isinstance(raw, int) or (isinstance(raw, float) and math.isfinite(raw)):
        return int(raw)
    return None


@dataclass(frozen=True)
class PbacProduct:
    kind: str   # 'pad' | 'tampon'
    fill: str   # 'light' | 'medium' | 'heavy'

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "fill": self.fill}


@dataclass
class PbacRecord:
    """Normalised bleeding inputs for one day.

    ``day_score`` is derived from the other fields on every access and
    cannot be set directly.
    """

    products: list[PbacProduct] = field(default_factory=list)
    clots: str = "none"
    flooding_episodes: int = 0
    cup_ml: int = 0
    period_start: bool = False
    absent_reason: AbsentReason | None = None
    rules: PbacRules = field(default=DEFAULT_RULES, repr=False, compare=False)

    @property
    def day_score(self) -> int | None:
        if self.absent_reason is AbsentReason.NOT_APPLICABLE:
            return 0
        return compute_day_score(self, self.rules)

    @classmethod
    def from_dict(
        cls, raw: Mapping[str, Any] | None, rules: PbacRules = DEFAULT_RULES
    ) -> PbacRecord:
        """Normalise a stored or user-supplied ``pbac`` object.

        ``None`` gives the blank record of a day that was not asked about.
        Unknown product kinds and ``none`` fills are dropped, unknown fills
        count as light, and only the first product of each kind is kept.
        """
        if raw is None:
            return cls(absent_reason=AbsentReason.NOT_ASKED, rules=rules)

        products: list[PbacProduct] = []
        seen_kinds: set[str] = set()
        raw_products = raw.get("products")
        for item in raw_products if isinstance(raw_products, list) else []:
            if not isinstance(item, Mapping):
                continue
            kind = item.get("kind")
            if kind not in PRODUCT_KINDS or kind in seen_kinds:
                continue
            raw_fill = item.get("fill")
            fill = FILL_ALIASES.get(raw_fill, "light") if isinstance(raw_fill, str) else "light"
            if fill == "none":
                continue
            seen_kinds.add(kind)
            products.append(PbacProduct(kind=kind, fill=fill))

        episodes = _as_int(raw.get("floodingEpisodes"))
        if episodes is None:
            episodes = 1 if raw.get("flooding") else 0
        episodes = _clamp(episodes, 0, rules.max_flooding_episodes_per_day)

        cup_ml = _clamp(_as_int(raw.get("cupMl")) or 0, 0, CUP_ML_MAX)
        clots = raw.get("clots") if raw.get("clots") in CLOT_SIZES else "none"

        absent_raw = raw.get("absent_reason")
        if absent_raw is None:
            absent_reason = None
        else:
            try:
                absent_reason = AbsentReason(absent_raw)
            except ValueError:
                absent_reason = AbsentReason.UNKNOWN

        return cls(
            products=products,
            clots=clots,
            flooding_episodes=episodes,
            cup_ml=cup_ml,
            period_start=bool(raw.get("periodStart")),
            absent_reason=absent_reason,
            rules=rules,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "products": [p.to_dict() for p in self.products],
            "clots": self.clots,
            "floodingEpisodes": self.flooding_episodes,
            "cupMl": self.cup_ml,
            "periodStart": self.period_start,
            "dayScore": self.day_score,
            "absent_reason": self.absent_reason.value if self.absent_reason else None,
        }


def compute_day_score(record: PbacRecord, rules: PbacRules = DEFAULT_RULES) -> int | None:
    """Sum product, flooding and clot points for one day.

    Returns ``None`` when the record carries any ``absent_reason``. Cup
    volume never contributes. Pure: equal inputs give equal scores.
    """
    if record.absent_reason is not None:
        return None

    levels = {level: idx for idx, level in enumerate(FILL_LEVELS)}
    total = 0
    for product in record.products:
        weights = rules.weights_for(product.kind)
        if weights is None or product.fill not in levels:
            continue
        total += weights[levels[product.fill]]

    episodes = _clamp(int(record.flooding_episodes), 0, rules.max_flooding_episodes_per_day)
    total += episodes * rules.flooding_points_per_episode
    total += rules.clot_score(record.clots)
    return total


def normalize_entry(entry: Mapping[str, Any], rules: PbacRules = DEFAULT_RULES) -> dict[str, Any]:
    """Return a copy of a diary entry with its ``pbac`` block normalised."""
    out = dict(entry)
    raw = entry.get("pbac")
    out["pbac"] = PbacRecord.from_dict(raw if isinstance(raw, Mapping) else None, rules).to_dict()
    return out
