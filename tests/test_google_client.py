"""
Client Google : pagination séquentielle, retry 429 / 5xx, tout-ou-rien
"""
import asyncio

import httpx
import pytest

from conftest import FakeSleep, google_location, make_google_client
from gmb_sync.errors import AuthExpired, RateLimited, SyncCancelled, UpstreamError
from gmb_sync.services.google_client import (
    _retry_after_ms,
    build_location_resource,
    ensure_account_resource,
)

LOCATIONS_URL = "https://mybusinessbusinessinformation.googleapis.com/v1/accounts/42/locations"


def paged_handler(page_sizes, calls):
    """Une page par appel, nextPageToken tant qu'il reste des pages"""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        index = len(calls) - 1
        start = sum(page_sizes[:index])
        body = {"locations": [google_location(start + i) for i in range(page_sizes[index])]}
        if index < len(page_sizes) - 1:
            body["nextPageToken"] = f"page-{index + 1}"
        return httpx.Response(200, json=body)

    return handler


@pytest.mark.asyncio
async def test_fetches_all_pages_in_order():
    calls = []
    client = make_google_client(paged_handler([100, 100, 37], calls))

    items = await client.list_locations("token", "accounts/42")

    assert len(items) == 237
    assert len(calls) == 3
    assert items[0]["name"] == "locations/1000"
    assert items[-1]["name"] == "locations/1236"

    # Page N+1 demandée avec le curseur de la page N
    assert "pageToken" not in calls[0].url.params
    assert calls[1].url.params["pageToken"] == "page-1"
    assert calls[2].url.params["pageToken"] == "page-2"
    assert calls[0].url.params["pageSize"] == "100"
    assert calls[0].headers["authorization"] == "Bearer token"


@pytest.mark.asyncio
async def test_empty_collection_is_not_an_error():
    client = make_google_client(lambda request: httpx.Response(200, json={}))

    items = await client.list_locations("token", "42")

    assert items == []


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured():
    responses = [
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(200, json={"locations": [google_location(0)]}),
    ]
    sleep = FakeSleep()
    client = make_google_client(lambda request: responses.pop(0), sleep=sleep)

    items = await client.list_locations("token", "42")

    assert len(items) == 1
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_retry_after_has_one_second_floor():
    responses = [
        httpx.Response(429, headers={"Retry-After": "0"}),
        httpx.Response(200, json={"locations": []}),
    ]
    sleep = FakeSleep()
    client = make_google_client(lambda request: responses.pop(0), sleep=sleep)

    await client.list_locations("token", "42")

    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_429_without_header_uses_exponential_backoff():
    responses = [
        httpx.Response(429),
        httpx.Response(429),
        httpx.Response(200, json={"locations": []}),
    ]
    sleep = FakeSleep()
    client = make_google_client(lambda request: responses.pop(0), sleep=sleep)

    await client.list_locations("token", "42")

    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_429_exhausted_raises_rate_limited():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "5"})

    client = make_google_client(handler)

    with pytest.raises(RateLimited) as exc_info:
        await client.list_locations("token", "42")

    assert len(calls) == 3
    assert exc_info.value.retry_after_seconds == 5


@pytest.mark.asyncio
async def test_server_error_exhausted_raises_upstream_error_with_status():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="backend unavailable")

    sleep = FakeSleep()
    client = make_google_client(handler, sleep=sleep)

    with pytest.raises(UpstreamError) as exc_info:
        await client.list_locations("token", "42")

    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert exc_info.value.status == 503
    assert "backend unavailable" in exc_info.value.body


@pytest.mark.asyncio
async def test_failed_later_page_discards_earlier_pages():
    calls = []

    def handler(request):
        calls.append(request)
        if "pageToken" not in request.url.params:
            return httpx.Response(200, json={"locations": [google_location(0)], "nextPageToken": "p2"})
        return httpx.Response(500, text="boom")

    client = make_google_client(handler)

    with pytest.raises(UpstreamError):
        await client.list_locations("token", "42")

    # 1 page OK + 3 tentatives sur la page 2
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_malformed_json_is_upstream_error():
    client = make_google_client(lambda request: httpx.Response(200, content=b"<html>not json</html>"))

    with pytest.raises(UpstreamError):
        await client.list_locations("token", "42")


@pytest.mark.asyncio
async def test_transport_error_is_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"locations": [google_location(0)]})

    client = make_google_client(handler)

    items = await client.list_locations("token", "42")

    assert len(items) == 1
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_cancel_event_stops_before_next_page():
    cancel_event = asyncio.Event()
    calls = []

    def handler(request):
        calls.append(request)
        cancel_event.set()
        return httpx.Response(200, json={"locations": [google_location(0)], "nextPageToken": "p2"})

    client = make_google_client(handler)

    with pytest.raises(SyncCancelled):
        await client.list_locations("token", "42", cancel_event=cancel_event)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_refresh_rejected_grant_is_auth_expired():
    client = make_google_client(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(AuthExpired):
        await client.refresh_access_token("revoked")


@pytest.mark.asyncio
async def test_refresh_server_error_is_upstream_error():
    client = make_google_client(lambda request: httpx.Response(500, text="oops"))

    with pytest.raises(UpstreamError):
        await client.refresh_access_token("refresh")


@pytest.mark.asyncio
async def test_refresh_posts_refresh_grant():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"access_token": "new", "expires_in": 3599})

    client = make_google_client(handler)

    tokens = await client.refresh_access_token("my-refresh")

    assert tokens["access_token"] == "new"
    body = seen[0].content.decode()
    assert "grant_type=refresh_token" in body
    assert "refresh_token=my-refresh" in body


def test_resource_helpers():
    assert ensure_account_resource("42") == "accounts/42"
    assert ensure_account_resource("accounts/42") == "accounts/42"
    assert build_location_resource("accounts/42", "locations/7") == "accounts/42/locations/7"
    assert build_location_resource("42", "7") == "accounts/42/locations/7"


def test_retry_after_parsing():
    assert _retry_after_ms(httpx.Response(429, headers={"Retry-After": "3"})) == 3000
    assert _retry_after_ms(httpx.Response(429, headers={"Retry-After": "0.2"})) == 1000
    assert _retry_after_ms(httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})) is None
    assert _retry_after_ms(httpx.Response(429)) is None
