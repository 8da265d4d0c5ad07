"""Google Ads platform connector.

Talks to the Google Ads REST interface with httpx.  Campaign creation goes
through a single atomic ``googleAds:mutate`` call using temporary resource
names, so a failed create never leaves a half-built campaign behind.

Budgets travel as micros (1/1,000,000 of the account currency).
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

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
    NativeObjectMissingError,
    PlatformError,
    ValidationError,
    classify_exception,
    classify_http_response,
)
from adsync.platforms.mapping import (
    MICROS_PER_UNIT,
    NativeMapping,
    PlatformMapper,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_VERSION = "v17"
GOOGLE_ADS_API_BASE = "https://googleads.googleapis.com"

MIN_HEADLINES = 3
MAX_HEADLINES = 15
MAX_HEADLINE_CHARS = 30
MIN_DESCRIPTIONS = 2
MAX_DESCRIPTIONS = 4
MAX_DESCRIPTION_CHARS = 90


class GoogleCampaignStatus:
    ENABLED = "ENABLED"
    PAUSED = "PAUSED"
    REMOVED = "REMOVED"


BIDDING_BY_OBJECTIVE: dict[str, str] = {
    "sales": "MAXIMIZE_CONVERSION_VALUE",
    "leads": "MAXIMIZE_CONVERSIONS",
    "traffic": "MAXIMIZE_CLICKS",
    "awareness": "TARGET_IMPRESSION_SHARE",
    "engagement": "MAXIMIZE_CLICKS",
    "app_promotion": "MAXIMIZE_CONVERSIONS",
}

_STATUS_TO_GOOGLE = {
    AdStatus.ACTIVE: GoogleCampaignStatus.ENABLED,
    AdStatus.PAUSED: GoogleCampaignStatus.PAUSED,
    AdStatus.DRAFT: GoogleCampaignStatus.PAUSED,
    AdStatus.ARCHIVED: GoogleCampaignStatus.PAUSED,
}
_STATUS_FROM_GOOGLE = {
    GoogleCampaignStatus.ENABLED: AdStatus.ACTIVE,
    GoogleCampaignStatus.PAUSED: AdStatus.PAUSED,
    GoogleCampaignStatus.REMOVED: AdStatus.ARCHIVED,
}


def _id_from_resource_name(resource_name: str) -> str:
    """``customers/1/campaigns/42`` -> ``42``; ``.../adGroupAds/7~9`` -> ``9``."""
    tail = resource_name.rsplit("/", 1)[-1]
    return tail.split("~")[-1]


def _quote_gaql(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class GoogleAdsMapper(PlatformMapper):
    """Unified ad <-> Google Ads search campaign (responsive search ad)."""

    platform = Platform.GOOGLE

    def to_native(self, ad: UnifiedAd) -> NativeMapping:
        creative = ad.creative
        problems: list[str] = []
        dropped: list[str] = []

        if not ad.name.strip():
            problems.append("name is required")
        family = self._objective_family(ad.objective)
        if family is None:
            problems.append(f"unknown objective '{ad.objective}'")

        url = creative.landing_url or ""
        if not url.startswith(("http://", "https://")):
            problems.append("creative.landing_url must be an http(s) URL")

        if not MIN_HEADLINES <= len(creative.headlines) <= MAX_HEADLINES:
            problems.append(
                f"creative.headlines needs {MIN_HEADLINES}-{MAX_HEADLINES} entries, "
                f"got {len(creative.headlines)}"
            )
        for i, headline in enumerate(creative.headlines):
            if len(headline) > MAX_HEADLINE_CHARS:
                problems.append(f"creative.headlines[{i}] exceeds {MAX_HEADLINE_CHARS} characters")

        if not MIN_DESCRIPTIONS <= len(creative.descriptions) <= MAX_DESCRIPTIONS:
            problems.append(
                f"creative.descriptions needs {MIN_DESCRIPTIONS}-{MAX_DESCRIPTIONS} entries, "
                f"got {len(creative.descriptions)}"
            )
        for i, description in enumerate(creative.descriptions):
            if len(description) > MAX_DESCRIPTION_CHARS:
                problems.append(
                    f"creative.descriptions[{i}] exceeds {MAX_DESCRIPTION_CHARS} characters"
                )

        if ad.budget.period != BudgetPeriod.DAILY:
            problems.append("budget.period must be daily for Google Ads")

        self._fail_if(problems)

        # Search campaigns keep only the bidding strategy derived from the objective.
        dropped.extend(self._lossy_fields(ad, None))
        if creative.call_to_action:
            dropped.append("creative.call_to_action")
        if creative.asset_refs:
            dropped.append("creative.asset_refs")
        targeting = ad.targeting
        if targeting.age_min is not None or targeting.age_max is not None:
            dropped.append("targeting.age_range")
        if targeting.genders:
            dropped.append("targeting.genders")
        if targeting.interests:
            dropped.append("targeting.interests")

        campaign: dict[str, Any] = {
            "name": ad.name,
            "status": _STATUS_TO_GOOGLE[ad.status],
            "advertisingChannelType": "SEARCH",
            "biddingStrategyType": BIDDING_BY_OBJECTIVE[family],
        }
        if ad.schedule.start_date:
            campaign["startDate"] = ad.schedule.start_date.isoformat()
        if ad.schedule.end_date:
            campaign["endDate"] = ad.schedule.end_date.isoformat()

        payload: dict[str, Any] = {
            "campaign": campaign,
            "campaignBudget": {
                "name": f"{ad.name} Budget",
                "amountMicros": str(to_minor_units(ad.budget.amount, MICROS_PER_UNIT)),
                "deliveryMethod": "STANDARD",
                "period": "DAILY",
                "currencyCode": ad.budget.currency,
            },
            "adGroup": {"name": f"{ad.name} - Ad Group", "status": GoogleCampaignStatus.ENABLED},
            "ad": {
                "finalUrls": [url],
                "responsiveSearchAd": {
                    "headlines": [{"text": h} for h in creative.headlines],
                    "descriptions": [{"text": d} for d in creative.descriptions],
                },
            },
            "criteria": {
                "locations": list(targeting.countries),
                "languages": list(targeting.languages),
                "keywords": list(targeting.keywords),
            },
        }
        payload = self._apply_overrides(payload, ad.overrides_for(Platform.GOOGLE))
        return NativeMapping(platform=Platform.GOOGLE, payload=payload, dropped_fields=dropped)

    def from_native(self, payload: dict[str, Any]) -> dict[str, Any]:
        campaign = payload.get("campaign", {})
        budget = payload.get("campaignBudget", {})
        ad = payload.get("ad", {})
        rsa = ad.get("responsiveSearchAd", {})
        criteria = payload.get("criteria", {})
        final_urls = ad.get("finalUrls") or [None]

        start = campaign.get("startDate")
        end = campaign.get("endDate")
        return {
            "name": campaign.get("name"),
            "status": _STATUS_FROM_GOOGLE.get(campaign.get("status"), AdStatus.PAUSED),
            "creative": {
                "headlines": [h["text"] for h in rsa.get("headlines", [])],
                "descriptions": [d["text"] for d in rsa.get("descriptions", [])],
                "landing_url": final_urls[0],
            },
            "targeting": {
                "countries": list(criteria.get("locations", [])),
                "languages": list(criteria.get("languages", [])),
                "keywords": list(criteria.get("keywords", [])),
            },
            "budget": {
                "amount": from_minor_units(budget.get("amountMicros", 0), MICROS_PER_UNIT),
                "currency": budget.get("currencyCode", "USD"),
                "period": BudgetPeriod.DAILY,
            },
            "schedule": {
                "start_date": date.fromisoformat(start) if start else None,
                "end_date": date.fromisoformat(end) if end else None,
            },
        }

    def metrics_from_native(
        self, native_campaign_id: str, rows: list[dict[str, Any]]
    ) -> list[MetricsRow]:
        out: list[MetricsRow] = []
        for row in rows:
            metrics = row.get("metrics", {})
            out.append(
                MetricsRow(
                    platform=Platform.GOOGLE,
                    native_campaign_id=native_campaign_id,
                    day=date.fromisoformat(row["segments"]["date"]),
                    impressions=int(metrics.get("impressions", 0)),
                    clicks=int(metrics.get("clicks", 0)),
                    spend=from_minor_units(metrics.get("costMicros", 0), MICROS_PER_UNIT),
                    conversions=Decimal(str(metrics.get("conversions", 0))),
                    conversion_value=Decimal(str(metrics.get("conversionsValue", 0))),
                )
            )
        return out


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------


class GoogleAdsConnector(PlatformConnector):
    """Google Ads REST connector.

    The access token is supplied per call by the orchestrator's token cache;
    the developer token and customer ids are account configuration.
    """

    platform = Platform.GOOGLE

    def __init__(
        self,
        developer_token: str,
        customer_id: str,
        login_customer_id: str | None = None,
        api_version: str = GOOGLE_ADS_API_VERSION,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.developer_token = developer_token
        self.customer_id = customer_id.replace("-", "")
        self.login_customer_id = (login_customer_id or "").replace("-", "") or None
        self.base_url = f"{GOOGLE_ADS_API_BASE}/{api_version}"
        self.mapper = GoogleAdsMapper()
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(timeout_seconds)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, access_token: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": self.developer_token,
            "Content-Type": "application/json",
        }
        if self.login_customer_id:
            headers["login-customer-id"] = self.login_customer_id
        return headers

    def _resource(self, kind: str, ident: str | int) -> str:
        return f"customers/{self.customer_id}/{kind}/{ident}"

    def _classify(self, response: httpx.Response) -> PlatformError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error", {}) if isinstance(body, dict) else {}
        status = error.get("status", "") if isinstance(error, dict) else ""
        text = str(body)
        if status == "NOT_FOUND" or "RESOURCE_NOT_FOUND" in text:
            return NativeObjectMissingError(
                error.get("message", "Resource not found"), {"status_code": response.status_code}
            )
        if status == "UNAUTHENTICATED":
            return AuthenticationError(
                error.get("message", "Unauthenticated"), {"status_code": response.status_code}
            )
        return classify_http_response(response)

    async def _post(self, path: str, payload: dict[str, Any], access_token: str) -> Any:
        url = f"{self.base_url}/customers/{self.customer_id}/{path}"
        try:
            response = await self._get_client().post(
                url, json=payload, headers=self._headers(access_token)
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Google Ads transport error", extra={"path": path, "error": str(exc)}
            )
            raise classify_exception(exc) from exc

        if response.status_code >= 400:
            error = self._classify(response)
            logger.warning(
                "Google Ads API error",
                extra={
                    "path": path,
                    "status_code": response.status_code,
                    "kind": error.kind.value,
                },
            )
            raise error
        return response.json()

    # ------------------------------------------------------------------
    # create_campaign
    # ------------------------------------------------------------------

    def _create_operations(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        budget_rn = self._resource("campaignBudgets", -1)
        campaign_rn = self._resource("campaigns", -2)
        ad_group_rn = self._resource("adGroups", -3)

        operations: list[dict[str, Any]] = [
            {
                "campaignBudgetOperation": {
                    "create": {**payload["campaignBudget"], "resourceName": budget_rn}
                }
            },
            {
                "campaignOperation": {
                    "create": {
                        **payload["campaign"],
                        "resourceName": campaign_rn,
                        "campaignBudget": budget_rn,
                    }
                }
            },
            {
                "adGroupOperation": {
                    "create": {
                        **payload["adGroup"],
                        "resourceName": ad_group_rn,
                        "campaign": campaign_rn,
                    }
                }
            },
            {
                "adGroupAdOperation": {
                    "create": {
                        "adGroup": ad_group_rn,
                        "status": GoogleCampaignStatus.ENABLED,
                        "ad": payload["ad"],
                    }
                }
            },
        ]
        criteria = payload.get("criteria", {})
        for country in criteria.get("locations", []):
            operations.append(
                {
                    "campaignCriterionOperation": {
                        "create": {"campaign": campaign_rn, "location": {"countryCode": country}}
                    }
                }
            )
        for language in criteria.get("languages", []):
            operations.append(
                {
                    "campaignCriterionOperation": {
                        "create": {"campaign": campaign_rn, "language": {"code": language}}
                    }
                }
            )
        for keyword in criteria.get("keywords", []):
            operations.append(
                {
                    "adGroupCriterionOperation": {
                        "create": {
                            "adGroup": ad_group_rn,
                            "keyword": {"text": keyword, "matchType": "BROAD"},
                        }
                    }
                }
            )
        return operations

    async def create_campaign(
        self, mapping: NativeMapping, *, access_token: str, idempotency_key: str
    ) -> NativeCampaignRef:
        payload = mapping.payload
        logger.info(
            "Creating Google Ads campaign",
            extra={"customer_id": self.customer_id, "idempotency_key": idempotency_key},
        )
        data = await self._post(
            "googleAds:mutate",
            {"mutateOperations": self._create_operations(payload), "partialFailure": False},
            access_token,
        )

        external_ids: dict[str, str] = {}
        for response in data.get("mutateOperationResponses", []):
            if "campaignBudgetResult" in response:
                external_ids["budget"] = response["campaignBudgetResult"]["resourceName"]
            elif "campaignResult" in response:
                external_ids["campaign"] = response["campaignResult"]["resourceName"]
            elif "adGroupResult" in response:
                external_ids["ad_group"] = response["adGroupResult"]["resourceName"]
            elif "adGroupAdResult" in response:
                ad_id = _id_from_resource_name(response["adGroupAdResult"]["resourceName"])
                external_ids["ad"] = self._resource("ads", ad_id)

        if "campaign" not in external_ids:
            raise ValidationError(
                "Google Ads mutate response did not include a campaign", {"response": data}
            )

        return NativeCampaignRef(
            native_id=_id_from_resource_name(external_ids["campaign"]),
            native_status=payload["campaign"]["status"],
            external_ids=external_ids,
            raw_response=data,
        )

    async def find_campaign(
        self, mapping: NativeMapping, *, access_token: str
    ) -> NativeCampaignRef | None:
        """Look up a campaign created by an earlier attempt.

        Campaign names are unique per Google Ads account, so an exact name
        match identifies the campaign.
        """
        name = mapping.payload["campaign"]["name"]
        query = (
            "SELECT campaign.resource_name, campaign.status, campaign.campaign_budget "
            f"FROM campaign WHERE campaign.name = {_quote_gaql(name)} "
            f"AND campaign.status != '{GoogleCampaignStatus.REMOVED}' LIMIT 1"
        )
        data = await self._post("googleAds:search", {"query": query}, access_token)
        results = data.get("results", [])
        if not results:
            return None
        campaign = results[0]["campaign"]
        external_ids = {"campaign": campaign["resourceName"]}
        if campaign.get("campaignBudget"):
            external_ids["budget"] = campaign["campaignBudget"]
        return NativeCampaignRef(
            native_id=_id_from_resource_name(campaign["resourceName"]),
            native_status=campaign.get("status"),
            external_ids=external_ids,
            raw_response={"recovered": True},
        )

    # ------------------------------------------------------------------
    # update_campaign / set_status
    # ------------------------------------------------------------------

    async def update_campaign(
        self, binding: PlatformBinding, mapping: NativeMapping, *, access_token: str
    ) -> NativeCampaignRef:
        payload = mapping.payload
        campaign_rn = binding.external_ids.get(
            "campaign", self._resource("campaigns", binding.native_campaign_id)
        )
        campaign_fields = {
            k: v for k, v in payload["campaign"].items() if k != "advertisingChannelType"
        }
        operations: list[dict[str, Any]] = [
            {
                "campaignOperation": {
                    "update": {**campaign_fields, "resourceName": campaign_rn},
                    "updateMask": ",".join(sorted(_camel_to_snake(k) for k in campaign_fields)),
                }
            }
        ]
        budget_rn = binding.external_ids.get("budget")
        if budget_rn:
            operations.append(
                {
                    "campaignBudgetOperation": {
                        "update": {
                            "resourceName": budget_rn,
                            "amountMicros": payload["campaignBudget"]["amountMicros"],
                        },
                        "updateMask": "amount_micros",
                    }
                }
            )
        ad_rn = binding.external_ids.get("ad")
        if ad_rn:
            operations.append(
                {
                    "adOperation": {
                        "update": {**payload["ad"], "resourceName": ad_rn},
                        "updateMask": "final_urls,responsive_search_ad.headlines,"
                        "responsive_search_ad.descriptions",
                    }
                }
            )

        logger.info(
            "Updating Google Ads campaign",
            extra={"customer_id": self.customer_id, "campaign_id": binding.native_campaign_id},
        )
        data = await self._post(
            "googleAds:mutate",
            {"mutateOperations": operations, "partialFailure": False},
            access_token,
        )
        return NativeCampaignRef(
            native_id=binding.native_campaign_id or _id_from_resource_name(campaign_rn),
            native_status=payload["campaign"]["status"],
            external_ids=dict(binding.external_ids),
            raw_response=data,
        )

    async def set_status(
        self, binding: PlatformBinding, status: NativeStatus, *, access_token: str
    ) -> NativeCampaignRef:
        google_status = (
            GoogleCampaignStatus.ENABLED
            if status == NativeStatus.ACTIVE
            else GoogleCampaignStatus.PAUSED
        )
        campaign_rn = binding.external_ids.get(
            "campaign", self._resource("campaigns", binding.native_campaign_id)
        )
        logger.info(
            "Executing Google Ads status change",
            extra={"campaign_id": binding.native_campaign_id, "status": google_status},
        )
        data = await self._post(
            "campaigns:mutate",
            {
                "operations": [
                    {
                        "updateMask": "status",
                        "update": {"resourceName": campaign_rn, "status": google_status},
                    }
                ],
                "partialFailure": False,
                "validateOnly": False,
            },
            access_token,
        )
        return NativeCampaignRef(
            native_id=binding.native_campaign_id or _id_from_resource_name(campaign_rn),
            native_status=google_status,
            external_ids=dict(binding.external_ids),
            raw_response=data,
        )

    # ------------------------------------------------------------------
    # fetch_metrics
    # ------------------------------------------------------------------

    async def fetch_metrics(
        self, binding: PlatformBinding, date_range: DateRange, *, access_token: str
    ) -> list[dict[str, Any]]:
        query = (
            "SELECT segments.date, metrics.impressions, metrics.clicks, "
            "metrics.cost_micros, metrics.conversions, metrics.conversions_value "
            f"FROM campaign WHERE campaign.id = {int(binding.native_campaign_id or 0)} "
            f"AND segments.date BETWEEN '{date_range.start.isoformat()}' "
            f"AND '{date_range.end.isoformat()}'"
        )
        data = await self._post("googleAds:searchStream", {"query": query}, access_token)
        rows: list[dict[str, Any]] = []
        for batch in data or []:
            rows.extend(batch.get("results", []))
        return rows


def _camel_to_snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name).lstrip("_")
