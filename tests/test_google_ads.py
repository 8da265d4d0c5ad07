"""Tests for the Google Ads connector against a mocked REST transport."""

import json
from datetime import date

import httpx
import pytest

from adsync.platforms.base import DateRange, NativeStatus, Platform, PlatformBinding
from adsync.platforms.exceptions import (
    AuthenticationError,
    NativeObjectMissingError,
    NetworkError,
    PlatformServerError,
    RateLimitedError,
)
from adsync.platforms.google_ads import GoogleAdsConnector
from tests.conftest import make_ad

CUSTOMER = "1234567890"


def _connector(handler) -> tuple[GoogleAdsConnector, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    connector = GoogleAdsConnector(
        developer_token="dev-token",
        customer_id="123-456-7890",
        login_customer_id="999-000-1111",
        client=client,
    )
    return connector, seen


def _binding(**kwargs) -> PlatformBinding:
    defaults = {
        "ad_id": make_ad().id,
        "platform": Platform.GOOGLE,
        "native_campaign_id": "42",
        "external_ids": {
            "campaign": f"customers/{CUSTOMER}/campaigns/42",
            "budget": f"customers/{CUSTOMER}/campaignBudgets/7",
            "ad": f"customers/{CUSTOMER}/ads/9",
        },
    }
    defaults.update(kwargs)
    return PlatformBinding(**defaults)


# ---------------------------------------------------------------------------
# create / find
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_campaign_single_atomic_mutate():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "mutateOperationResponses": [
                    {"campaignBudgetResult": {"resourceName": f"customers/{CUSTOMER}/campaignBudgets/7"}},
                    {"campaignResult": {"resourceName": f"customers/{CUSTOMER}/campaigns/42"}},
                    {"adGroupResult": {"resourceName": f"customers/{CUSTOMER}/adGroups/5"}},
                    {"adGroupAdResult": {"resourceName": f"customers/{CUSTOMER}/adGroupAds/5~9"}},
                ]
            },
        )

    connector, seen = _connector(handler)
    mapping = connector.mapper.to_native(make_ad())

    ref = await connector.create_campaign(mapping, access_token="tok", idempotency_key="k1")

    assert ref.native_id == "42"
    assert ref.native_status == "ENABLED"
    assert ref.external_ids["ad"] == f"customers/{CUSTOMER}/ads/9"
    assert ref.external_ids["ad_group"] == f"customers/{CUSTOMER}/adGroups/5"

    [request] = seen
    assert request.url.path == f"/v17/customers/{CUSTOMER}/googleAds:mutate"
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["developer-token"] == "dev-token"
    assert request.headers["login-customer-id"] == "9990001111"
    body = json.loads(request.content)
    assert body["partialFailure"] is False
    kinds = [next(iter(op)) for op in body["mutateOperations"]]
    assert kinds[:4] == [
        "campaignBudgetOperation",
        "campaignOperation",
        "adGroupOperation",
        "adGroupAdOperation",
    ]
    assert kinds.count("adGroupCriterionOperation") == 1


@pytest.mark.asyncio
async def test_find_campaign_by_name():
    def handler(request):
        query = json.loads(request.content)["query"]
        assert "campaign.name = 'Spring Coffee Sale'" in query
        return httpx.Response(
            200,
            json={
                "results": [
                    {
                        "campaign": {
                            "resourceName": f"customers/{CUSTOMER}/campaigns/77",
                            "status": "ENABLED",
                            "campaignBudget": f"customers/{CUSTOMER}/campaignBudgets/8",
                        }
                    }
                ]
            },
        )

    connector, _ = _connector(handler)
    mapping = connector.mapper.to_native(make_ad())

    ref = await connector.find_campaign(mapping, access_token="tok")

    assert ref.native_id == "77"
    assert ref.external_ids["budget"] == f"customers/{CUSTOMER}/campaignBudgets/8"


@pytest.mark.asyncio
async def test_find_campaign_returns_none_when_absent():
    connector, _ = _connector(lambda request: httpx.Response(200, json={}))
    mapping = connector.mapper.to_native(make_ad())

    assert await connector.find_campaign(mapping, access_token="tok") is None


# ---------------------------------------------------------------------------
# update / status / metrics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_campaign_touches_campaign_budget_and_ad():
    connector, seen = _connector(lambda request: httpx.Response(200, json={}))
    mapping = connector.mapper.to_native(make_ad())

    ref = await connector.update_campaign(_binding(), mapping, access_token="tok")

    assert ref.native_id == "42"
    operations = json.loads(seen[0].content)["mutateOperations"]
    campaign_op = operations[0]["campaignOperation"]
    assert campaign_op["update"]["resourceName"] == f"customers/{CUSTOMER}/campaigns/42"
    assert "advertisingChannelType" not in campaign_op["update"]
    assert "bidding_strategy_type" in campaign_op["updateMask"]
    assert operations[1]["campaignBudgetOperation"]["update"]["amountMicros"] == "50000000"
    assert "adOperation" in operations[2]


@pytest.mark.asyncio
async def test_set_status_pauses_campaign():
    connector, seen = _connector(lambda request: httpx.Response(200, json={"results": []}))

    ref = await connector.set_status(_binding(), NativeStatus.PAUSED, access_token="tok")

    assert ref.native_status == "PAUSED"
    assert seen[0].url.path.endswith("/campaigns:mutate")
    operation = json.loads(seen[0].content)["operations"][0]
    assert operation == {
        "updateMask": "status",
        "update": {"resourceName": f"customers/{CUSTOMER}/campaigns/42", "status": "PAUSED"},
    }


@pytest.mark.asyncio
async def test_fetch_metrics_flattens_stream_batches():
    def handler(request):
        return httpx.Response(
            200,
            json=[
                {"results": [{"segments": {"date": "2026-03-01"}, "metrics": {"clicks": "3"}}]},
                {"results": [{"segments": {"date": "2026-03-02"}, "metrics": {"clicks": "4"}}]},
            ],
        )

    connector, seen = _connector(handler)
    date_range = DateRange(start=date(2026, 3, 1), end=date(2026, 3, 2))

    rows = await connector.fetch_metrics(_binding(), date_range, access_token="tok")

    assert [r["segments"]["date"] for r in rows] == ["2026-03-01", "2026-03-02"]
    assert "campaign.id = 42" in json.loads(seen[0].content)["query"]


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,expected",
    [
        (
            httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED", "message": "bad"}}),
            AuthenticationError,
        ),
        (
            httpx.Response(404, json={"error": {"status": "NOT_FOUND", "message": "gone"}}),
            NativeObjectMissingError,
        ),
        (
            httpx.Response(
                400,
                json={"error": {"status": "INVALID_ARGUMENT", "details": "RESOURCE_NOT_FOUND"}},
            ),
            NativeObjectMissingError,
        ),
        (httpx.Response(503, json={"error": {"message": "unavailable"}}), PlatformServerError),
    ],
)
async def test_http_errors_are_classified(response, expected):
    connector, _ = _connector(lambda request: response)

    with pytest.raises(expected):
        await connector.set_status(_binding(), NativeStatus.ACTIVE, access_token="tok")


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    response = httpx.Response(
        429,
        headers={"Retry-After": "12"},
        json={"error": {"status": "RESOURCE_EXHAUSTED", "message": "quota"}},
    )
    connector, _ = _connector(lambda request: response)

    with pytest.raises(RateLimitedError) as exc_info:
        await connector.set_status(_binding(), NativeStatus.ACTIVE, access_token="tok")

    assert exc_info.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_transport_errors_become_network_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    connector, _ = _connector(handler)

    with pytest.raises(NetworkError):
        await connector.set_status(_binding(), NativeStatus.ACTIVE, access_token="tok")
