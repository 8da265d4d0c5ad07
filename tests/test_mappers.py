"""Tests for unified <-> native mapping."""

from datetime import date
from decimal import Decimal

import pytest

from adsync.platforms.base import (
    AdStatus,
    BudgetPeriod,
    BudgetSpec,
    CreativeSpec,
    Platform,
    ScheduleSpec,
    TargetingSpec,
)
from adsync.platforms.dry_run import DryRunMapper
from adsync.platforms.exceptions import MappingValidationError
from adsync.platforms.google_ads import GoogleAdsMapper
from adsync.platforms.mapping import (
    CENTS_PER_UNIT,
    MICROS_PER_UNIT,
    from_minor_units,
    to_minor_units,
)
from adsync.platforms.meta_ads import MetaAdsMapper
from tests.conftest import make_ad


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "amount,units,expected",
    [
        (Decimal("50.00"), MICROS_PER_UNIT, 50_000_000),
        (Decimal("0.0000005"), MICROS_PER_UNIT, 0),
        (Decimal("0.0000015"), MICROS_PER_UNIT, 2),
        (Decimal("10.005"), CENTS_PER_UNIT, 1000),
        (Decimal("10.015"), CENTS_PER_UNIT, 1002),
        (Decimal("19.99"), CENTS_PER_UNIT, 1999),
    ],
)
def test_minor_units_round_half_even(amount, units, expected):
    assert to_minor_units(amount, units) == expected


def test_minor_units_back_to_decimal_is_exact():
    assert from_minor_units("1234567", MICROS_PER_UNIT) == Decimal("1.234567")
    assert from_minor_units(1999, CENTS_PER_UNIT) == Decimal("19.99")


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


def test_google_payload_shape():
    mapping = GoogleAdsMapper().to_native(make_ad())
    payload = mapping.payload

    assert mapping.platform == Platform.GOOGLE
    assert payload["campaign"]["status"] == "ENABLED"
    assert payload["campaign"]["biddingStrategyType"] == "MAXIMIZE_CLICKS"
    assert payload["campaignBudget"]["amountMicros"] == "50000000"
    assert [h["text"] for h in payload["ad"]["responsiveSearchAd"]["headlines"]] == [
        "Fresh Coffee Daily",
        "Roasted This Week",
        "Order In Minutes",
    ]
    assert payload["criteria"]["keywords"] == ["coffee"]


def test_google_reports_dropped_fields():
    ad = make_ad(targeting=TargetingSpec(countries=["US"], genders=["female"], age_min=25))
    mapping = GoogleAdsMapper().to_native(ad)

    assert set(mapping.dropped_fields) == {
        "objective",
        "creative.call_to_action",
        "creative.asset_refs",
        "targeting.age_range",
        "targeting.genders",
    }


@pytest.mark.parametrize("status", [AdStatus.DRAFT, AdStatus.ARCHIVED])
def test_google_reports_status_it_cannot_hold(status):
    mapper = GoogleAdsMapper()
    mapping = mapper.to_native(make_ad(status=status))

    assert mapping.payload["campaign"]["status"] == "PAUSED"
    assert "status" in mapping.dropped_fields
    assert mapper.from_native(mapping.payload)["status"] == AdStatus.PAUSED


def test_google_round_trip_preserves_supported_fields():
    ad = make_ad(
        status=AdStatus.PAUSED,
        budget=BudgetSpec(amount=Decimal("12.345678")),
        schedule=ScheduleSpec(start_date=date(2026, 4, 1), end_date=date(2026, 4, 30)),
    )
    mapper = GoogleAdsMapper()

    back = mapper.from_native(mapper.to_native(ad).payload)

    assert back["name"] == ad.name
    assert back["status"] == AdStatus.PAUSED
    assert back["creative"]["headlines"] == ad.creative.headlines
    assert back["creative"]["descriptions"] == ad.creative.descriptions
    assert back["creative"]["landing_url"] == ad.creative.landing_url
    assert back["targeting"]["countries"] == ["US"]
    assert back["budget"]["amount"] == Decimal("12.345678")
    assert back["schedule"] == {"start_date": date(2026, 4, 1), "end_date": date(2026, 4, 30)}


def test_google_lists_every_problem():
    ad = make_ad(
        objective="mystery",
        creative=CreativeSpec(
            headlines=["Only one"],
            descriptions=["x" * 91, "fine"],
            landing_url="ftp://example.com",
        ),
        budget=BudgetSpec(amount=Decimal("100"), period=BudgetPeriod.LIFETIME),
    )

    with pytest.raises(MappingValidationError) as exc_info:
        GoogleAdsMapper().to_native(ad)

    problems = exc_info.value.problems
    assert len(problems) == 5
    assert "unknown objective 'mystery'" in problems
    assert any("landing_url" in p for p in problems)
    assert any("headlines" in p for p in problems)
    assert any("descriptions[0]" in p for p in problems)
    assert any("budget.period" in p for p in problems)


def test_google_overrides_merge_last():
    ad = make_ad(
        platform_overrides={Platform.GOOGLE: {"campaign": {"biddingStrategyType": "MANUAL_CPC"}}}
    )
    payload = GoogleAdsMapper().to_native(ad).payload

    assert payload["campaign"]["biddingStrategyType"] == "MANUAL_CPC"
    assert payload["campaign"]["name"] == ad.name


def test_google_metrics_from_native():
    rows = [
        {
            "segments": {"date": "2026-03-01"},
            "metrics": {
                "impressions": "1200",
                "clicks": "40",
                "costMicros": "18500000",
                "conversions": 3.0,
                "conversionsValue": 89.5,
            },
        }
    ]

    [row] = GoogleAdsMapper().metrics_from_native("42", rows)

    assert row.day == date(2026, 3, 1)
    assert row.impressions == 1200
    assert row.clicks == 40
    assert row.spend == Decimal("18.5")
    assert row.conversions == Decimal("3.0")
    assert row.conversion_value == Decimal("89.5")


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------


def test_meta_payload_shape():
    mapping = MetaAdsMapper().to_native(make_ad())
    payload = mapping.payload

    assert payload["campaign"]["objective"] == "OUTCOME_TRAFFIC"
    assert payload["campaign"]["status"] == "ACTIVE"
    assert payload["adset"]["daily_budget"] == 5000
    assert payload["adset"]["optimization_goal"] == "LINK_CLICKS"
    assert payload["creative"]["object_story_spec"] == {"page_id": "page-1"}
    assert payload["creative"]["asset_feed_spec"]["call_to_action_types"] == ["SHOP_NOW"]
    assert "page_id" not in payload
    assert set(mapping.dropped_fields) == {"targeting.keywords", "targeting.languages"}


def test_meta_round_trip_preserves_supported_fields():
    ad = make_ad(
        targeting=TargetingSpec(
            countries=["US", "CA"],
            age_min=21,
            age_max=45,
            genders=["female"],
            interests=["6003107902433"],
        ),
        budget=BudgetSpec(amount=Decimal("300.00"), period=BudgetPeriod.LIFETIME),
        schedule=ScheduleSpec(start_date=date(2026, 5, 1), end_date=date(2026, 5, 31)),
    )
    mapper = MetaAdsMapper()

    back = mapper.from_native(mapper.to_native(ad).payload)

    assert back["status"] == AdStatus.ACTIVE
    assert back["creative"]["asset_refs"] == ["img-hash-1"]
    assert back["creative"]["call_to_action"] == "shop_now"
    assert back["targeting"] == {
        "countries": ["US", "CA"],
        "age_min": 21,
        "age_max": 45,
        "genders": ["female"],
        "interests": ["6003107902433"],
    }
    assert back["budget"]["amount"] == Decimal("300")
    assert back["budget"]["period"] == BudgetPeriod.LIFETIME
    assert back["schedule"]["end_date"] == date(2026, 5, 31)


def test_meta_unset_call_to_action_round_trips():
    ad = make_ad(
        creative=CreativeSpec(
            headlines=["Fresh Coffee Daily"],
            asset_refs=["img-hash-1"],
            landing_url="https://example.com/coffee",
        )
    )
    mapper = MetaAdsMapper()
    mapping = mapper.to_native(ad)

    assert "call_to_action_types" not in mapping.payload["creative"]["asset_feed_spec"]
    assert mapper.from_native(mapping.payload)["creative"]["call_to_action"] is None


def test_meta_call_to_action_case_is_canonical():
    ad = make_ad(
        creative=CreativeSpec(
            headlines=["Fresh Coffee Daily"],
            call_to_action="SHOP_NOW",
            asset_refs=["img-hash-1"],
            landing_url="https://example.com/coffee",
        )
    )
    mapper = MetaAdsMapper()
    mapping = mapper.to_native(ad)

    assert ad.creative.call_to_action == "shop_now"
    assert mapping.payload["creative"]["asset_feed_spec"]["call_to_action_types"] == ["SHOP_NOW"]
    assert mapper.from_native(mapping.payload)["creative"]["call_to_action"] == (
        ad.creative.call_to_action
    )


def test_meta_draft_status_is_reported():
    mapper = MetaAdsMapper()
    mapping = mapper.to_native(make_ad(status=AdStatus.DRAFT))

    assert mapping.payload["campaign"]["status"] == "PAUSED"
    assert "status" in mapping.dropped_fields
    assert mapper.from_native(mapping.payload)["status"] == AdStatus.PAUSED


def test_meta_objective_alias_is_reported_and_family_returned():
    mapper = MetaAdsMapper()

    same = mapper.to_native(make_ad(objective="traffic"))
    assert "objective" not in same.dropped_fields
    assert mapper.from_native(same.payload)["objective"] == "traffic"

    alias = mapper.to_native(make_ad(objective="conversions"))
    assert alias.payload["campaign"]["objective"] == "OUTCOME_SALES"
    assert "objective" in alias.dropped_fields
    assert mapper.from_native(alias.payload)["objective"] == "sales"


def test_meta_page_id_falls_back_to_account_config():
    ad = make_ad(platform_overrides={})

    with pytest.raises(MappingValidationError) as exc_info:
        MetaAdsMapper().to_native(ad)
    assert any("page_id" in p for p in exc_info.value.problems)

    payload = MetaAdsMapper(page_id="page-9").to_native(ad).payload
    assert payload["creative"]["object_story_spec"]["page_id"] == "page-9"


def test_meta_lists_every_problem():
    ad = make_ad(
        creative=CreativeSpec(headlines=[], landing_url="https://x.test", call_to_action="bogus"),
        targeting=TargetingSpec(age_min=13, genders=["other"]),
        budget=BudgetSpec(amount=Decimal("10"), period=BudgetPeriod.LIFETIME),
    )

    with pytest.raises(MappingValidationError) as exc_info:
        MetaAdsMapper().to_native(ad)

    problems = exc_info.value.problems
    assert len(problems) == 7
    assert exc_info.value.details["platform"] == "meta"


def test_meta_metrics_sum_conversion_actions():
    rows = [
        {
            "date_start": "2026-03-02",
            "impressions": "900",
            "clicks": "30",
            "spend": "12.34",
            "actions": [
                {"action_type": "purchase", "value": "2"},
                {"action_type": "lead", "value": "1"},
                {"action_type": "link_click", "value": "30"},
            ],
            "action_values": [{"action_type": "purchase", "value": "59.90"}],
        }
    ]

    [row] = MetaAdsMapper().metrics_from_native("c-1", rows)

    assert row.platform == Platform.META
    assert row.spend == Decimal("12.34")
    assert row.conversions == Decimal("3")
    assert row.conversion_value == Decimal("59.90")


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


def test_dry_run_mapper_is_lossless():
    ad = make_ad()
    mapping = DryRunMapper(Platform.META).to_native(ad)

    assert mapping.platform == Platform.META
    assert mapping.dropped_fields == []
    assert mapping.payload["name"] == ad.name
    assert mapping.payload["status"] == "active"
    assert mapping.payload["page_id"] == "page-1"
