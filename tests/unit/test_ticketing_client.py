import json

import httpx
import pytest

from incident_sync.core import ConfigurationException
from incident_sync.infrastructure.ticketing import ServiceNowClient, build_updated_since_query

from tests.conftest import make_record, utc


def make_client(handler, delays=None, max_retries=3):
    async def record_sleep(seconds):
        if delays is not None:
            delays.append(seconds)

    return ServiceNowClient(
        "https://dev1.service-now.com/",
        "sync",
        "secret",
        max_retries=max_retries,
        retry_delay_seconds=1.0,
        transport=httpx.MockTransport(handler),
        sleep=record_sleep,
    )


def test_missing_credentials_are_a_configuration_error():
    with pytest.raises(ConfigurationException):
        ServiceNowClient("https://dev1.service-now.com", None, None)


def test_updated_since_query_covers_created_and_updated():
    query = build_updated_since_query(utc(2024, 5, 1, 9, 59, 0))

    assert query == (
        "sys_created_on>=2024-05-01 09:59:00"
        "^ORsys_updated_on>=2024-05-01 09:59:00"
        "^ORDERBYsys_updated_on"
    )


async def test_fetch_page_sends_table_api_parameters():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"result": [make_record("INC0001")]})

    client = make_client(handler)
    result = await client.fetch_page("active=true", limit=50, offset=100)
    await client.close()

    assert result.success
    assert len(result.records) == 1
    assert seen["path"] == "/api/now/table/incident"
    assert seen["params"]["sysparm_limit"] == "50"
    assert seen["params"]["sysparm_offset"] == "100"
    assert seen["params"]["sysparm_query"] == "active=true"
    assert seen["params"]["sysparm_display_value"] == "all"
    assert seen["auth"].startswith("Basic ")


async def test_fetch_page_retries_transient_errors_with_backoff():
    responses = [httpx.Response(503, text="busy"), httpx.Response(429, text="slow down"),
                 httpx.Response(200, json={"result": []})]
    delays = []

    client = make_client(lambda request: responses.pop(0), delays=delays)
    result = await client.fetch_page("", limit=10, offset=0)

    assert result.success
    assert result.attempts == 3
    assert delays == [1.0, 2.0]


async def test_fetch_page_does_not_retry_client_errors():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403, text="forbidden")

    client = make_client(handler)
    result = await client.fetch_page("", limit=10, offset=0)

    assert not result.success
    assert result.status_code == 403
    assert len(calls) == 1


async def test_fetch_page_gives_up_after_max_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="boom")

    client = make_client(handler, max_retries=2)
    result = await client.fetch_page("", limit=10, offset=0)

    assert not result.success
    assert len(calls) == 3
    assert result.error.startswith("HTTP 500")


async def test_update_incident_patches_once():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"result": {"sys_id": "abc", "state": "6"}})

    client = make_client(handler)
    result = await client.update_incident("abc", {"state": "6", "close_code": "Solution provided"})

    assert result.success
    assert result.data == {"sys_id": "abc", "state": "6"}
    assert seen["method"] == "PATCH"
    assert seen["path"] == "/api/now/table/incident/abc"
    assert seen["body"]["close_code"] == "Solution provided"


async def test_update_incident_reports_transient_failures():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)
    timeout = await client.update_incident("abc", {"state": "6"})

    rejected_client = make_client(lambda request: httpx.Response(404, text="no such record"))
    rejected = await rejected_client.update_incident("abc", {"state": "6"})

    assert not timeout.success and timeout.transient
    assert not rejected.success and not rejected.transient
    assert rejected.status_code == 404


async def test_health_check_reports_auth_failures():
    client = make_client(lambda request: httpx.Response(401, text="unauthorized"))

    health = await client.check_health()

    assert health == {"healthy": False, "status_code": 401, "latency_ms": health["latency_ms"], "error": "HTTP 401"}
