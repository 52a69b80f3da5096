"""Tests for PBAC day scoring and record normalisation."""

from __future__ import annotations

import pytest

from endo.domains.bleeding.domain_logic.pbac import (
    AbsentReason,
    PbacProduct,
    PbacRecord,
    PbacRules,
    compute_day_score,
    normalize_entry,
)


def _record(**raw) -> PbacRecord:
    return PbacRecord.from_dict(raw)


class TestDayScore:
    def test_mixed_products_clots_and_flooding(self):
        record = _record(
            products=[{"kind": "pad", "fill": "heavy"}, {"kind": "tampon", "fill": "medium"}],
            clots="small",
            floodingEpisodes=2,
        )
        assert record.day_score == 36

    def test_cup_volume_never_scores(self):
        record = _record(products=[{"kind": "pad", "fill": "light"}], cupMl=80)
        assert record.cup_ml == 80
        assert record.day_score == 1

    @pytest.mark.parametrize(
        "kind, fill, expected",
        [
            ("pad", "light", 1),
            ("pad", "medium", 5),
            ("pad", "heavy", 20),
            ("tampon", "light", 1),
            ("tampon", "medium", 5),
            ("tampon", "heavy", 10),
        ],
    )
    def test_product_weights(self, kind, fill, expected):
        assert _record(products=[{"kind": kind, "fill": fill}]).day_score == expected

    def test_large_clots(self):
        assert _record(clots="large").day_score == 5

    def test_flooding_is_clamped(self):
        record = _record(floodingEpisodes=40)
        assert record.flooding_episodes == 6
        assert record.day_score == 30

    def test_negative_flooding_is_zero(self):
        assert _record(floodingEpisodes=-3).day_score == 0

    def test_compute_clamps_unnormalised_record(self):
        record = PbacRecord(flooding_episodes=99)
        assert compute_day_score(record) == 30

    def test_empty_day_scores_zero(self):
        assert _record().day_score == 0

    def test_pure(self):
        raw = {"products": [{"kind": "pad", "fill": "medium"}], "clots": "small"}
        assert PbacRecord.from_dict(raw).day_score == PbacRecord.from_dict(dict(raw)).day_score == 6

    def test_custom_rules(self):
        rules = PbacRules(pad_weights=(2, 4, 8), flooding_points_per_episode=1)
        record = PbacRecord.from_dict(
            {"products": [{"kind": "pad", "fill": "heavy"}], "floodingEpisodes": 3}, rules
        )
        assert record.day_score == 11


class TestAbsentReason:
    def test_not_applicable_scores_zero(self):
        record = _record(absent_reason="not-applicable", products=[{"kind": "pad", "fill": "heavy"}])
        assert record.day_score == 0
        assert compute_day_score(record) is None

    @pytest.mark.parametrize("reason", ["not-asked", "asked-declined", "unknown", "error"])
    def test_other_reasons_have_no_score(self, reason):
        assert _record(absent_reason=reason).day_score is None

    def test_unrecognised_reason_becomes_unknown(self):
        assert _record(absent_reason="shrug").absent_reason is AbsentReason.UNKNOWN

    def test_missing_record_is_not_asked(self):
        record = PbacRecord.from_dict(None)
        assert record.absent_reason is AbsentReason.NOT_ASKED
        assert record.day_score is None


class TestNormalisation:
    def test_fill_aliases(self):
        record = _record(products=[{"kind": "pad", "fill": "high"}, {"kind": "tampon", "fill": "mid"}])
        assert record.products == [PbacProduct("pad", "heavy"), PbacProduct("tampon", "medium")]

    def test_none_fill_is_dropped(self):
        assert _record(products=[{"kind": "pad", "fill": "none"}]).products == []

    def test_unknown_fill_counts_as_light(self):
        assert _record(products=[{"kind": "tampon", "fill": "soaked"}]).products == [
            PbacProduct("tampon", "light")
        ]

    def test_unknown_kind_and_duplicates_dropped(self):
        record = _record(products=[
            {"kind": "cup", "fill": "heavy"},
            {"kind": "pad", "fill": "low"},
            {"kind": "pad", "fill": "heavy"},
            "junk",
        ])
        assert record.products == [PbacProduct("pad", "light")]

    def test_legacy_flooding_flag(self):
        assert _record(flooding=True).flooding_episodes == 1
        assert _record(flooding=True, floodingEpisodes=3).flooding_episodes == 3

    def test_numeric_strings_accepted(self):
        record = _record(floodingEpisodes="2", cupMl="45")
        assert (record.flooding_episodes, record.cup_ml) == (2, 45)

    @pytest.mark.parametrize(
        "raw, expected",
        [("inf", 0), ("-inf", 0), ("1e400", 0), ("nan", 0), (float("inf"), 0), (10**400, 6)],
    )
    def test_non_finite_flooding_counts_as_zero(self, raw, expected):
        assert _record(floodingEpisodes=raw).flooding_episodes == expected

    @pytest.mark.parametrize(
        "cup, expected",
        [(500, 120), (-5, 0), ("lots", 0), (None, 0), ("inf", 0), ("1e400", 0), ("nan", 0)],
    )
    def test_cup_clamp(self, cup, expected):
        assert _record(cupMl=cup).cup_ml == expected

    def test_invalid_clots(self):
        assert _record(clots="huge").clots == "none"

    def test_to_dict_shape(self):
        record = _record(products=[{"kind": "pad", "fill": "medium"}], periodStart=1)
        assert record.to_dict() == {
            "products": [{"kind": "pad", "fill": "medium"}],
            "clots": "none",
            "floodingEpisodes": 0,
            "cupMl": 0,
            "periodStart": True,
            "dayScore": 5,
            "absent_reason": None,
        }

    def test_normalize_entry_keeps_other_fields(self):
        entry = {"date": "2026-03-01", "notes": "x", "pbac": {"clots": "large", "dayScore": 999}}
        out = normalize_entry(entry)
        assert out["notes"] == "x"
        assert out["pbac"]["dayScore"] == 5
        assert entry["pbac"]["dayScore"] == 999

    def test_normalize_entry_without_pbac(self):
        out = normalize_entry({"date": "2026-03-01", "pbac": "garbage"})
        assert out["pbac"]["absent_reason"] == "not-asked"
        assert out["pbac"]["dayScore"] is None
