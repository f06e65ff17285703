"""
HubSpot CRM Client Tests
Runs HubSpotCRM against httpx.MockTransport to check URLs, auth headers and
how error responses become HubSpotAPIError.
"""

import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hubspot_crm import HubSpotAPIError, HubSpotCRM
from rate_limit import is_rate_limit_error


def _crm(handler, requests=None):
    def record(request):
        if requests is not None:
            requests.append(request)
        return handler(request)

    return HubSpotCRM(
        access_token="pat-test-token",
        base_url="https://api.hubapi.com/",
        transport=httpx.MockTransport(record),
    )


class TestRequests:

    @pytest.mark.asyncio
    async def test_pipelines_url_and_auth_header(self):
        requests = []
        crm = _crm(lambda request: httpx.Response(200, json={"results": []}), requests)

        assert await crm.get_pipelines("deals") == {"results": []}

        request = requests[0]
        assert request.method == "GET"
        assert str(request.url) == "https://api.hubapi.com/crm/v3/pipelines/deals"
        assert request.headers["Authorization"] == "Bearer pat-test-token"

    @pytest.mark.asyncio
    async def test_search_posts_body_without_nulls(self):
        requests = []
        crm = _crm(lambda request: httpx.Response(200, json={"results": []}), requests)

        await crm.search("deals", {"filterGroups": [], "limit": 100, "after": None})

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/crm/v3/objects/deals/search"
        assert json.loads(request.content) == {"filterGroups": [], "limit": 100}

    @pytest.mark.asyncio
    async def test_get_object_requests_properties(self):
        requests = []
        crm = _crm(lambda request: httpx.Response(200, json={"id": "7"}), requests)

        await crm.get_object("deals", "7", ["dealname", "amount"])

        assert requests[0].url.path == "/crm/v3/objects/deals/7"
        assert requests[0].url.params["properties"] == "dealname,amount"

    @pytest.mark.asyncio
    async def test_association_put_sends_association_types(self):
        requests = []
        crm = _crm(lambda request: httpx.Response(200, json={}), requests)
        specs = [{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": 214}]

        await crm.create_association("notes", "n1", "deals", "d1", specs)

        request = requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/crm/v4/objects/notes/n1/associations/deals/d1"
        assert json.loads(request.content) == specs

    @pytest.mark.asyncio
    async def test_no_content_returns_empty_dict(self):
        crm = _crm(lambda request: httpx.Response(204))
        assert await crm.update_object("tickets", "1", {"hs_pipeline_stage": "2"}) == {}

    @pytest.mark.asyncio
    async def test_owners_page_cursor(self):
        requests = []
        crm = _crm(lambda request: httpx.Response(200, json={"results": []}), requests)

        await crm.get_owners_page(after="abc")

        assert requests[0].url.params["limit"] == "100"
        assert requests[0].url.params["after"] == "abc"


class TestErrors:

    @pytest.mark.asyncio
    async def test_429_is_rate_limit_error(self):
        crm = _crm(lambda request: httpx.Response(
            429, json={"status": "error", "message": "You have reached your secondly limit.",
                       "errorType": "RATE_LIMIT"},
        ))

        with pytest.raises(HubSpotAPIError) as exc_info:
            await crm.search("deals", {})

        assert exc_info.value.code == 429
        assert exc_info.value.error_type == "RATE_LIMIT"
        assert is_rate_limit_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_404_uses_body_message(self):
        crm = _crm(lambda request: httpx.Response(404, json={"message": "Object not found"}))

        with pytest.raises(HubSpotAPIError) as exc_info:
            await crm.get_object("deals", "missing", ["dealname"])

        assert exc_info.value.code == 404
        assert exc_info.value.message == "Object not found"
        assert not is_rate_limit_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_error_uses_reason_phrase(self):
        crm = _crm(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))

        with pytest.raises(HubSpotAPIError) as exc_info:
            await crm.get_pipelines("deals")

        assert exc_info.value.code == 502
        assert exc_info.value.message == "Bad Gateway"
        assert exc_info.value.body == {}

    @pytest.mark.asyncio
    async def test_timeout_becomes_api_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(HubSpotAPIError) as exc_info:
            await _crm(handler).get_pipelines("deals")

        assert "timeout" in exc_info.value.message.lower()
        assert exc_info.value.code is None

    @pytest.mark.asyncio
    async def test_connection_error_becomes_api_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(HubSpotAPIError) as exc_info:
            await _crm(handler).get_pipelines("deals")

        assert exc_info.value.message.startswith("Connection error")
