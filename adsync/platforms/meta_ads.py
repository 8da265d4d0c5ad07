"""Meta Ads (Facebook/Instagram) platform connector.

Uses the official facebook-business Python SDK for the Marketing API object
hierarchy: Campaign -> AdSet -> AdCreative -> Ad.  Creatives use
``asset_feed_spec`` so every headline, description and image of the unified
ad is carried over.

Budgets travel as cents; insights report spend in account currency units.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Callable

import requests
from facebook_business.adobjects.ad import Ad
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adset import AdSet
from facebook_business.adobjects.campaign import Campaign
from facebook_business.api import FacebookAdsApi
from facebook_business.exceptions import FacebookRequestError
from facebook_business.session import FacebookSession

from adsync.platforms.base import (
    AdStatus,
    BudgetPeriod,
    DateRange,
    MetricsRow,
    NativeCampaignRef,
    NativeStatus,
    Platform,
    PlatformBinding,
    PlatformConnector,
    UnifiedAd,
)
from adsync.platforms.exceptions import (
    AuthenticationError,
    CallTimeoutError,
    NativeObjectMissingError,
    NetworkError,
    PlatformError,
    PlatformServerError,
    RateLimitedError,
    UnknownPlatformError,
    ValidationError,
)
from adsync.platforms.mapping import (
    CENTS_PER_UNIT,
    NativeMapping,
    PlatformMapper,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Objective mapping: objective family -> Meta Marketing API objective
# Uses the v21.0+ OUTCOME_* objectives
# ---------------------------------------------------------------------------

OBJECTIVE_MAP: dict[str, str] = {
    "sales": "OUTCOME_SALES",
    "traffic": "OUTCOME_TRAFFIC",
    "leads": "OUTCOME_LEADS",
    "awareness": "OUTCOME_AWARENESS",
    "engagement": "OUTCOME_ENGAGEMENT",
    "app_promotion": "OUTCOME_APP_PROMOTION",
}
OBJECTIVE_FAMILIES = {v: k for k, v in OBJECTIVE_MAP.items()}

CALL_TO_ACTIONS = frozenset(
    {
        "LEARN_MORE",
        "SHOP_NOW",
        "SIGN_UP",
        "SUBSCRIBE",
        "CONTACT_US",
        "DOWNLOAD",
        "GET_OFFER",
        "BOOK_TRAVEL",
        "APPLY_NOW",
        "INSTALL_APP",
    }
)

GENDER_CODES = {"male": 1, "female": 2}
GENDER_NAMES = {v: k for k, v in GENDER_CODES.items()}

META_MIN_AGE = 18
META_MAX_AGE = 65

CONVERSION_ACTION_TYPES = frozenset(
    {"purchase", "offsite_conversion.fb_pixel_purchase", "lead", "complete_registration"}
)

# Error codes documented for the Marketing API
AUTH_ERROR_CODES = frozenset({102, 190, 463, 467})
RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 32, 613, *range(80000, 80015)})
TRANSIENT_ERROR_CODES = frozenset({1, 2})
OBJECT_MISSING_SUBCODE = 33


def _map_optimization_goal(objective: str) -> str:
    """Map Meta objective to a default optimization goal for ad sets."""
    mapping = {
        "OUTCOME_SALES": "OFFSITE_CONVERSIONS",
        "OUTCOME_TRAFFIC": "LINK_CLICKS",
        "OUTCOME_LEADS": "LEAD_GENERATION",
        "OUTCOME_AWARENESS": "REACH",
        "OUTCOME_ENGAGEMENT": "POST_ENGAGEMENT",
        "OUTCOME_APP_PROMOTION": "APP_INSTALLS",
    }
    return mapping.get(objective, "LINK_CLICKS")


def _meta_time(value: date) -> str:
    return f"{value.isoformat()}T00:00:00+0000"


def _parse_meta_date(value: str | None) -> date | None:
    return date.fromisoformat(value[:10]) if value else None


def _regain_access_seconds(headers: dict[str, Any]) -> float | None:
    """Read ``estimated_time_to_regain_access`` (minutes) from usage headers."""
    raw = None
    for key, value in (headers or {}).items():
        if key.lower() == "x-business-use-case-usage":
            raw = value
            break
    if not raw:
        return None
    try:
        usage = json.loads(raw)
    except (TypeError, ValueError):
        return None
    minutes = [
        entry.get("estimated_time_to_regain_access", 0)
        for entries in usage.values()
        for entry in entries
    ]
    longest = max(minutes, default=0)
    return float(longest * 60) if longest else None


def classify_facebook_error(exc: FacebookRequestError) -> PlatformError:
    """Map a Marketing API error onto the error taxonomy."""
    code = exc.api_error_code()
    subcode = exc.api_error_subcode()
    http_status = exc.http_status() or 0
    message = exc.api_error_message() or str(exc)
    details = {"error_code": code, "error_subcode": subcode, "http_status": http_status}

    if code in AUTH_ERROR_CODES or http_status == 401:
        return AuthenticationError(message, details)
    if code in RATE_LIMIT_ERROR_CODES or http_status == 429:
        return RateLimitedError(
            message, details, retry_after=_regain_access_seconds(exc.http_headers())
        )
    if code == 100 and subcode == OBJECT_MISSING_SUBCODE:
        return NativeObjectMissingError(message, details)
    if code in TRANSIENT_ERROR_CODES or exc.api_transient_error() or http_status >= 500:
        return PlatformServerError(message, details)
    if code == 100 or code == 10 or 200 <= (code or 0) < 300 or http_status == 400:
        return ValidationError(message, details)
    return UnknownPlatformError(message, details)


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class MetaAdsMapper(PlatformMapper):
    """Unified ad <-> Meta campaign / ad set / dynamic creative."""

    platform = Platform.META

    def __init__(self, page_id: str = "") -> None:
        self.page_id = page_id

    def to_native(self, ad: UnifiedAd) -> NativeMapping:
        creative = ad.creative
        targeting = ad.targeting
        overrides = ad.overrides_for(Platform.META)
        page_id = overrides.pop("page_id", None) or self.page_id
        problems: list[str] = []
        dropped: list[str] = []

        if not ad.name.strip():
            problems.append("name is required")
        family = self._objective_family(ad.objective)
        if family is None or family not in OBJECTIVE_MAP:
            problems.append(f"unknown objective '{ad.objective}'")
        if not page_id:
            problems.append("page_id is required (platform override or META_PAGE_ID)")

        url = creative.landing_url or ""
        if not url.startswith(("http://", "https://")):
            problems.append("creative.landing_url must be an http(s) URL")
        if not creative.headlines:
            problems.append("creative.headlines needs at least one entry")
        if not creative.asset_refs:
            problems.append("creative.asset_refs needs at least one image")

        # Unset leaves the choice to Meta.
        cta = creative.call_to_action.upper() if creative.call_to_action else None
        if cta is not None and cta not in CALL_TO_ACTIONS:
            problems.append(f"creative.call_to_action '{creative.call_to_action}' is not supported")

        if not targeting.countries:
            problems.append("targeting.countries needs at least one country")
        for field, age in (("age_min", targeting.age_min), ("age_max", targeting.age_max)):
            if age is not None and not META_MIN_AGE <= age <= META_MAX_AGE:
                problems.append(f"targeting.{field} must be between {META_MIN_AGE} and {META_MAX_AGE}")
        for gender in targeting.genders:
            if gender.lower() not in GENDER_CODES:
                problems.append(f"targeting.genders has unknown value '{gender}'")

        if ad.budget.period == BudgetPeriod.LIFETIME and ad.schedule.end_date is None:
            problems.append("schedule.end_date is required for a lifetime budget")

        self._fail_if(problems)

        dropped.extend(self._lossy_fields(ad, family))
        if targeting.keywords:
            dropped.append("targeting.keywords")
        if targeting.languages:
            dropped.append("targeting.languages")

        meta_objective = OBJECTIVE_MAP[family]
        status = "ACTIVE" if ad.status == AdStatus.ACTIVE else "PAUSED"

        meta_targeting: dict[str, Any] = {"geo_locations": {"countries": list(targeting.countries)}}
        if targeting.age_min is not None:
            meta_targeting["age_min"] = targeting.age_min
        if targeting.age_max is not None:
            meta_targeting["age_max"] = targeting.age_max
        if targeting.genders:
            meta_targeting["genders"] = [GENDER_CODES[g.lower()] for g in targeting.genders]
        if targeting.interests:
            meta_targeting["flexible_spec"] = [
                {"interests": [{"id": i} for i in targeting.interests]}
            ]

        budget_key = "daily_budget" if ad.budget.period == BudgetPeriod.DAILY else "lifetime_budget"
        adset: dict[str, Any] = {
            "name": f"{ad.name} - Ad Set",
            budget_key: to_minor_units(ad.budget.amount, CENTS_PER_UNIT),
            "billing_event": "IMPRESSIONS",
            "optimization_goal": _map_optimization_goal(meta_objective),
            "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
            "targeting": meta_targeting,
            "status": status,
        }
        if ad.schedule.start_date:
            adset["start_time"] = _meta_time(ad.schedule.start_date)
        if ad.schedule.end_date:
            adset["end_time"] = _meta_time(ad.schedule.end_date)

        payload: dict[str, Any] = {
            "campaign": {
                "name": ad.name,
                "objective": meta_objective,
                "status": status,
                "special_ad_categories": [],
            },
            "adset": adset,
            "creative": {
                "name": f"{ad.name} - Creative",
                "object_story_spec": {"page_id": page_id},
                "asset_feed_spec": {
                    "titles": [{"text": h} for h in creative.headlines],
                    "bodies": [{"text": d} for d in creative.descriptions],
                    "images": [{"hash": ref} for ref in creative.asset_refs],
                    "link_urls": [{"website_url": url}],
                    "ad_formats": ["SINGLE_IMAGE"],
                },
            },
            "ad": {"name": f"{ad.name} - Ad", "status": status},
            "currency": ad.budget.currency,
        }
        if cta is not None:
            payload["creative"]["asset_feed_spec"]["call_to_action_types"] = [cta]
        payload = self._apply_overrides(payload, overrides)
        return NativeMapping(platform=Platform.META, payload=payload, dropped_fields=dropped)

    def from_native(self, payload: dict[str, Any]) -> dict[str, Any]:
        campaign = payload.get("campaign", {})
        adset = payload.get("adset", {})
        targeting = adset.get("targeting", {})
        feed = payload.get("creative", {}).get("asset_feed_spec", {})

        if "lifetime_budget" in adset:
            amount, period = adset["lifetime_budget"], BudgetPeriod.LIFETIME
        else:
            amount, period = adset.get("daily_budget", 0), BudgetPeriod.DAILY

        interests = [
            interest["id"]
            for spec in targeting.get("flexible_spec", [])
            for interest in spec.get("interests", [])
        ]
        link_urls = feed.get("link_urls") or [{}]
        ctas = feed.get("call_to_action_types") or [None]

        return {
            "name": campaign.get("name"),
            "objective": OBJECTIVE_FAMILIES.get(campaign.get("objective")),
            "status": AdStatus.ACTIVE if campaign.get("status") == "ACTIVE" else AdStatus.PAUSED,
            "creative": {
                "headlines": [t["text"] for t in feed.get("titles", [])],
                "descriptions": [b["text"] for b in feed.get("bodies", [])],
                "asset_refs": [i["hash"] for i in feed.get("images", [])],
                "landing_url": link_urls[0].get("website_url"),
                "call_to_action": ctas[0].lower() if ctas[0] else None,
            },
            "targeting": {
                "countries": list(targeting.get("geo_locations", {}).get("countries", [])),
                "age_min": targeting.get("age_min"),
                "age_max": targeting.get("age_max"),
                "genders": [GENDER_NAMES[g] for g in targeting.get("genders", [])],
                "interests": interests,
            },
            "budget": {
                "amount": from_minor_units(amount, CENTS_PER_UNIT),
                "currency": payload.get("currency", "USD"),
                "period": period,
            },
            "schedule": {
                "start_date": _parse_meta_date(adset.get("start_time")),
                "end_date": _parse_meta_date(adset.get("end_time")),
            },
        }

    def metrics_from_native(
        self, native_campaign_id: str, rows: list[dict[str, Any]]
    ) -> list[MetricsRow]:
        out: list[MetricsRow] = []
        for row in rows:
            conversions = sum(
                (
                    Decimal(str(a.get("value", 0)))
                    for a in row.get("actions", [])
                    if a.get("action_type") in CONVERSION_ACTION_TYPES
                ),
                Decimal("0"),
            )
            value = sum(
                (
                    Decimal(str(a.get("value", 0)))
                    for a in row.get("action_values", [])
                    if a.get("action_type") in CONVERSION_ACTION_TYPES
                ),
                Decimal("0"),
            )
            out.append(
                MetricsRow(
                    platform=Platform.META,
                    native_campaign_id=native_campaign_id,
                    day=date.fromisoformat(row["date_start"]),
                    impressions=int(row.get("impressions", 0)),
                    clicks=int(row.get("clicks", 0)),
                    spend=Decimal(str(row.get("spend", "0"))),
                    conversions=conversions,
                    conversion_value=value,
                )
            )
        return out


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------


class MetaAdsConnector(PlatformConnector):
    """Meta Marketing API connector using the facebook-business SDK.

    All SDK calls are synchronous, so they are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  A dedicated
    ``FacebookAdsApi`` instance is built per call from the caller's access
    token instead of the SDK's process-wide default.
    """

    platform = Platform.META

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        ad_account_id: str,
        page_id: str = "",
        api_version: str | None = None,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._ad_account_id = ad_account_id
        self._api_version = api_version
        self.mapper = MetaAdsMapper(page_id=page_id)

    def _api(self, access_token: str) -> FacebookAdsApi:
        session = FacebookSession(self._app_id, self._app_secret, access_token)
        return FacebookAdsApi(session, api_version=self._api_version)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except FacebookRequestError as exc:
            error = classify_facebook_error(exc)
            logger.warning(
                "Meta API error",
                extra={
                    "error_code": exc.api_error_code(),
                    "kind": error.kind.value,
                },
            )
            raise error from exc
        except requests.exceptions.Timeout as exc:
            raise CallTimeoutError(f"Request timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"Connection error: {exc}") from exc

    # ------------------------------------------------------------------
    # create_campaign (sync helpers run via asyncio.to_thread)
    # ------------------------------------------------------------------

    def _sync_create_campaign(self, payload: dict[str, Any], access_token: str) -> NativeCampaignRef:
        api = self._api(access_token)
        account = AdAccount(self._ad_account_id, api=api)

        campaign = account.create_campaign(params=payload["campaign"])
        campaign_id = campaign["id"]
        external_ids: dict[str, str] = {"campaign": campaign_id}
        try:
            adset = account.create_ad_set(
                params={**payload["adset"], AdSet.Field.campaign_id: campaign_id}
            )
            external_ids["adset"] = adset["id"]

            creative = account.create_ad_creative(params=payload["creative"])
            external_ids["creative"] = creative["id"]

            ad = account.create_ad(
                params={
                    **payload["ad"],
                    Ad.Field.adset_id: adset["id"],
                    Ad.Field.creative: {"creative_id": creative["id"]},
                }
            )
            external_ids["ad"] = ad["id"]
        except Exception:
            # Remove the half-built campaign so a retry starts clean.
            try:
                Campaign(campaign_id, api=api).api_delete()
            except Exception:
                logger.exception(
                    "Failed to clean up partial Meta campaign %s", campaign_id
                )
            raise

        return NativeCampaignRef(
            native_id=campaign_id,
            native_status=payload["campaign"]["status"],
            external_ids=external_ids,
            raw_response={"campaign_id": campaign_id, "objective": payload["campaign"]["objective"]},
        )

    async def create_campaign(
        self, mapping: NativeMapping, *, access_token: str, idempotency_key: str
    ) -> NativeCampaignRef:
        logger.info(
            "Creating Meta campaign",
            extra={"ad_account_id": self._ad_account_id, "idempotency_key": idempotency_key},
        )
        return await self._call(self._sync_create_campaign, mapping.payload, access_token)

    def _sync_find_campaign(self, name: str, access_token: str) -> NativeCampaignRef | None:
        account = AdAccount(self._ad_account_id, api=self._api(access_token))
        cursor = account.get_campaigns(
            fields=[Campaign.Field.id, Campaign.Field.name, Campaign.Field.status],
            params={"filtering": [{"field": "name", "operator": "EQUAL", "value": name}]},
        )
        for campaign in cursor:
            return NativeCampaignRef(
                native_id=campaign["id"],
                native_status=campaign.get("status"),
                external_ids={"campaign": campaign["id"]},
                raw_response={"recovered": True},
            )
        return None

    async def find_campaign(
        self, mapping: NativeMapping, *, access_token: str
    ) -> NativeCampaignRef | None:
        return await self._call(
            self._sync_find_campaign, mapping.payload["campaign"]["name"], access_token
        )

    # ------------------------------------------------------------------
    # update_campaign
    # ------------------------------------------------------------------

    def _sync_update_campaign(
        self, binding: PlatformBinding, payload: dict[str, Any], access_token: str
    ) -> NativeCampaignRef:
        api = self._api(access_token)
        campaign_params = {
            Campaign.Field.name: payload["campaign"]["name"],
            Campaign.Field.status: payload["campaign"]["status"],
        }
        Campaign(binding.native_campaign_id, api=api).api_update(params=campaign_params)

        external_ids = dict(binding.external_ids)
        adset_id = external_ids.get("adset")
        if adset_id:
            adset_params = {
                k: v for k, v in payload["adset"].items() if k not in ("billing_event", "name")
            }
            AdSet(adset_id, api=api).api_update(params=adset_params)

        ad_id = external_ids.get("ad")
        if ad_id:
            # Creatives are immutable on Meta; attach a fresh one to the ad.
            account = AdAccount(self._ad_account_id, api=api)
            creative = account.create_ad_creative(params=payload["creative"])
            Ad(ad_id, api=api).api_update(
                params={
                    Ad.Field.creative: {"creative_id": creative["id"]},
                    Ad.Field.status: payload["ad"]["status"],
                }
            )
            external_ids["creative"] = creative["id"]

        return NativeCampaignRef(
            native_id=binding.native_campaign_id,
            native_status=payload["campaign"]["status"],
            external_ids=external_ids,
            raw_response={"status": "updated"},
        )

    async def update_campaign(
        self, binding: PlatformBinding, mapping: NativeMapping, *, access_token: str
    ) -> NativeCampaignRef:
        logger.info(
            "Updating Meta campaign", extra={"campaign_id": binding.native_campaign_id}
        )
        return await self._call(
            self._sync_update_campaign, binding, mapping.payload, access_token
        )

    # ------------------------------------------------------------------
    # set_status
    # ------------------------------------------------------------------

    def _sync_set_status(
        self, binding: PlatformBinding, meta_status: str, access_token: str
    ) -> NativeCampaignRef:
        campaign = Campaign(binding.native_campaign_id, api=self._api(access_token))
        campaign.api_update(params={Campaign.Field.status: meta_status})
        return NativeCampaignRef(
            native_id=binding.native_campaign_id,
            native_status=meta_status,
            external_ids=dict(binding.external_ids),
            raw_response={"status": meta_status.lower()},
        )

    async def set_status(
        self, binding: PlatformBinding, status: NativeStatus, *, access_token: str
    ) -> NativeCampaignRef:
        meta_status = "ACTIVE" if status == NativeStatus.ACTIVE else "PAUSED"
        return await self._call(self._sync_set_status, binding, meta_status, access_token)

    # ------------------------------------------------------------------
    # fetch_metrics
    # ------------------------------------------------------------------

    def _sync_fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, access_token: str
    ) -> list[dict[str, Any]]:
        campaign = Campaign(binding.native_campaign_id, api=self._api(access_token))
        cursor = campaign.get_insights(
            fields=["date_start", "impressions", "clicks", "spend", "actions", "action_values"],
            params={
                "time_range": {
                    "since": date_range.start.isoformat(),
                    "until": date_range.end.isoformat(),
                },
                "time_increment": 1,
            },
        )
        return [dict(row) for row in cursor]

    async def fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, *, access_token: str
    ) -> list[dict[str, Any]]:
        return await self._call(self._sync_fetch_metrics, binding, date_range, access_token)
