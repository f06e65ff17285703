"""
HubSpot ticket access for the support board.
Ticket search returns a single page; it does not follow paging cursors.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hubspot_crm import HubSpotCRM
from hubspot_deals import SearchPage, SearchRecord, to_search_record
from rate_limit import RequestCoordinator, get_default_coordinator

logger = logging.getLogger(__name__)

TICKET_PROPERTIES = [
    "subject",
    "content",
    "hs_pipeline_stage",
    "hs_ticket_priority",
    "createdate",
    "hubspot_owner_id",
]


class TicketStage(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    label: str
    display_order: Optional[int] = Field(default=None, alias="displayOrder")


class HubSpotTickets:
    def __init__(self, client: HubSpotCRM, coordinator: Optional[RequestCoordinator] = None):
        self.client = client
        self._coordinator = coordinator or get_default_coordinator()
        self._get_ticket_pipelines = self._coordinator.with_retry(
            self._list_pipelines, "get-ticket-pipelines"
        )

    async def _list_pipelines(self) -> dict:
        return await self.client.get_pipelines("ticket")

    async def _search_page(self, request: Dict[str, Any]) -> dict:
        return await self.client.search("tickets", request)

    async def get_ticket_stages(self) -> List[TicketStage]:
        """Stages of the first ticket pipeline, or [] when unavailable."""
        try:
            response = await self._get_ticket_pipelines()
            results = response.get("results") or []
            pipeline = results[0] if results else None

            if not pipeline or not pipeline.get("stages"):
                return []

            return [TicketStage.model_validate(stage) for stage in pipeline["stages"]]
        except Exception as e:
            logger.error(f"Error fetching ticket stages from HubSpot: {e}")
            return []

    async def search_tickets(self, owner_id: Optional[str] = None, limit: int = 100,
                             sorts: Optional[List[str]] = None) -> List[SearchRecord]:
        filter_groups = []
        if owner_id:
            filter_groups.append({
                "filters": [{"propertyName": "hubspot_owner_id", "operator": "EQ", "value": owner_id}]
            })

        sorts = list(sorts) if sorts is not None else ["-createdate"]
        request = {
            "filterGroups": filter_groups,
            "properties": list(TICKET_PROPERTIES),
            "limit": limit,
            "sorts": sorts,
        }
        search = self._coordinator.with_retry(
            self._search_page, f"search-tickets:{owner_id or '*'}:{','.join(sorts)}:{limit}"
        )
        page = SearchPage.model_validate(await search(request))
        return [to_search_record(result) for result in page.results]

    async def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        return await self.client.get_object("tickets", ticket_id, TICKET_PROPERTIES)

    async def update_ticket_stage(self, ticket_id: str, stage_id: str) -> Dict[str, Any]:
        return await self.client.update_object("tickets", ticket_id, {"hs_pipeline_stage": stage_id})
