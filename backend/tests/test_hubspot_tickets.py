"""
HubSpot Tickets Tests
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hubspot_crm import HubSpotAPIError
from hubspot_tickets import TICKET_PROPERTIES, HubSpotTickets
from rate_limit import RequestCoordinator


async def _no_sleep(seconds):
    return None


def _tickets(**methods):
    client = MagicMock()
    for name, mock in methods.items():
        setattr(client, name, mock)
    return HubSpotTickets(client, coordinator=RequestCoordinator(sleep=_no_sleep)), client


class TestTicketStages:

    @pytest.mark.asyncio
    async def test_first_pipeline_stages(self):
        service, client = _tickets(get_pipelines=AsyncMock(return_value={"results": [
            {"id": "0", "label": "Support", "stages": [
                {"id": "1", "label": "New", "displayOrder": 0, "metadata": {"ticketState": "OPEN"}},
                {"id": "4", "label": "Closed", "displayOrder": 3},
            ]},
        ]}))

        stages = await service.get_ticket_stages()

        client.get_pipelines.assert_awaited_once_with("ticket")
        assert [(s.id, s.label, s.display_order) for s in stages] == [("1", "New", 0), ("4", "Closed", 3)]

    @pytest.mark.asyncio
    async def test_empty_when_no_pipelines(self):
        service, _ = _tickets(get_pipelines=AsyncMock(return_value={"results": []}))
        assert await service.get_ticket_stages() == []

    @pytest.mark.asyncio
    async def test_empty_on_failure(self):
        service, _ = _tickets(get_pipelines=AsyncMock(side_effect=HubSpotAPIError("boom", code=500)))
        assert await service.get_ticket_stages() == []


class TestSearchTickets:

    @pytest.mark.asyncio
    async def test_owner_filter_and_single_page(self):
        service, client = _tickets(search=AsyncMock(return_value={
            "results": [{"id": "9", "properties": {"subject": "Printer", "content": None}}],
            "paging": {"next": {"after": "next-page"}},
        }))

        tickets = await service.search_tickets(owner_id="55")

        client.search.assert_awaited_once()
        object_type, request = client.search.await_args.args
        assert object_type == "tickets"
        assert request["filterGroups"] == [
            {"filters": [{"propertyName": "hubspot_owner_id", "operator": "EQ", "value": "55"}]}
        ]
        assert request["properties"] == TICKET_PROPERTIES
        assert request["sorts"] == ["-createdate"]
        assert tickets[0].id == "9"
        assert tickets[0].properties == {"subject": "Printer", "content": ""}

    @pytest.mark.asyncio
    async def test_without_owner_has_no_filters(self):
        service, client = _tickets(search=AsyncMock(return_value={"results": []}))

        assert await service.search_tickets() == []
        assert client.search.await_args.args[1]["filterGroups"] == []

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        service, client = _tickets(search=AsyncMock(side_effect=[
            HubSpotAPIError("Too many", code=429),
            {"results": []},
        ]))

        assert await service.search_tickets() == []
        assert client.search.await_count == 2


class TestSingleTicket:

    @pytest.mark.asyncio
    async def test_update_stage(self):
        service, client = _tickets(update_object=AsyncMock(return_value={"id": "9"}))

        await service.update_ticket_stage("9", "4")

        client.update_object.assert_awaited_once_with("tickets", "9", {"hs_pipeline_stage": "4"})

    @pytest.mark.asyncio
    async def test_get_ticket_propagates_not_found(self):
        service, _ = _tickets(get_object=AsyncMock(side_effect=HubSpotAPIError("missing", code=404)))

        with pytest.raises(HubSpotAPIError):
            await service.get_ticket("404")


class TestSearchTicketsRequestKeys:

    @pytest.mark.asyncio
    async def test_concurrent_searches_with_different_sorts_stay_separate(self):
        release = asyncio.Event()

        async def search(object_type, request):
            await release.wait()
            ids = ["1", "2"] if request["sorts"] == ["createdate"] else ["2", "1"]
            return {"results": [{"id": i, "properties": {}} for i in ids]}

        service, client = _tickets(search=AsyncMock(side_effect=search))

        newest_first = asyncio.ensure_future(service.search_tickets(owner_id="55"))
        oldest_first = asyncio.ensure_future(service.search_tickets(owner_id="55", sorts=["createdate"]))
        for _ in range(5):
            await asyncio.sleep(0)
        release.set()

        assert [t.id for t in await newest_first] == ["2", "1"]
        assert [t.id for t in await oldest_first] == ["1", "2"]
        assert client.search.await_count == 2
