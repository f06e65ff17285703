"""
HubSpot deal access: pipeline stages, paginated deal search, deal detail/update.

Failure postures differ on purpose:
- get_deal_stages() never raises; it degrades to FALLBACK_DEAL_STAGES
- get_target_pipelines() never raises; it degrades to []
- search_deals() propagates every error
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cache import TTLCache, get_default_cache
from config import DEALS_CACHE_TTL, PIPELINES_CACHE_TTL, STAGES_CACHE_TTL, get_target_pipeline_ids
from hubspot_crm import HubSpotAPIError, HubSpotCRM
from rate_limit import RequestCoordinator, get_default_coordinator

logger = logging.getLogger(__name__)

# Default HubSpot deal properties only; custom portal properties are not assumed
DEAL_PROPERTIES = [
    "dealname",
    "amount",
    "closedate",
    "dealstage",
    "hubspot_owner_id",
    "createdate",
    "notes",
]

COMPANY_PROPERTIES = ["name", "createdate", "hs_object_id"]

EPOCH_ZERO = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============ Models ============

class DealStage(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    label: str
    display_order: int = Field(alias="displayOrder", ge=0)
    probability: float = Field(ge=0, le=1)


class Pipeline(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    label: str
    stages: List[DealStage]


class SearchRecord(BaseModel):
    """A deal or ticket as returned to callers: null properties become ""."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    properties: Dict[str, str]
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class RawSearchResult(BaseModel):
    id: str
    properties: Dict[str, Optional[str]] = Field(default_factory=dict)
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_validator("createdAt", "updatedAt", mode="before")
    @classmethod
    def _blank_as_missing(cls, value):
        return value or None


class PagingCursor(BaseModel):
    after: Optional[str] = None


class Paging(BaseModel):
    next: Optional[PagingCursor] = None


class SearchPage(BaseModel):
    results: List[RawSearchResult]
    paging: Optional[Paging] = None

    @property
    def next_after(self) -> Optional[str]:
        if self.paging and self.paging.next:
            return self.paging.next.after
        return None


FALLBACK_DEAL_STAGES = [
    DealStage(id="appointmentscheduled", label="Appointment Scheduled", display_order=0, probability=0.2),
    DealStage(id="qualifiedtobuy", label="Qualified To Buy", display_order=1, probability=0.4),
    DealStage(id="presentationscheduled", label="Presentation Scheduled", display_order=2, probability=0.6),
    DealStage(id="decisionmakerboughtin", label="Decision Maker Bought-In", display_order=3, probability=0.8),
    DealStage(id="contractsent", label="Contract Sent", display_order=4, probability=0.9),
    DealStage(id="closedwon", label="Closed Won", display_order=5, probability=1.0),
    DealStage(id="closedlost", label="Closed Lost", display_order=6, probability=0.0),
]


class InvalidDealStageError(ValueError):
    pass


# ============ Normalization ============

def normalize_stages(raw_stages: List[Dict[str, Any]]) -> List[DealStage]:
    """Turn raw pipeline stages into DealStage objects sorted by display order.

    HubSpot reports probability as a 0-100 string in metadata; a missing
    displayOrder falls back to the stage's position in the list.
    """
    stages = []
    for index, raw in enumerate(raw_stages):
        probability = (raw.get("metadata") or {}).get("probability")
        display_order = raw.get("displayOrder")
        stages.append(DealStage(
            id=raw["id"],
            label=raw["label"],
            display_order=display_order if display_order is not None else index,
            probability=float(probability) / 100 if probability else 0.0,
        ))
    return sorted(stages, key=lambda s: s.display_order)


def to_search_record(raw: RawSearchResult) -> SearchRecord:
    properties = {
        ("createdAt" if key == "createdate" else key): (value if value is not None else "")
        for key, value in raw.properties.items()
    }
    return SearchRecord(
        id=raw.id,
        properties=properties,
        created_at=raw.createdAt or EPOCH_ZERO,
        updated_at=raw.updatedAt or EPOCH_ZERO,
    )


def pipeline_filter_group(pipeline_id: str) -> Dict[str, Any]:
    return {"filters": [{"propertyName": "pipeline", "operator": "EQ", "value": pipeline_id}]}


# ============ Service ============

class HubSpotDeals:
    """Deal-side HubSpot operations used by the deal board and table."""

    def __init__(
        self,
        client: HubSpotCRM,
        coordinator: Optional[RequestCoordinator] = None,
        cache: Optional[TTLCache] = None,
        target_pipeline_ids: Optional[List[str]] = None,
        stages_ttl: int = STAGES_CACHE_TTL,
        pipelines_ttl: int = PIPELINES_CACHE_TTL,
        deals_ttl: int = DEALS_CACHE_TTL,
    ):
        self.client = client
        self._coordinator = coordinator or get_default_coordinator()
        self._cache = cache or get_default_cache()
        self.target_pipeline_ids = list(
            target_pipeline_ids if target_pipeline_ids is not None else get_target_pipeline_ids()
        )
        self.stages_ttl = stages_ttl
        self.pipelines_ttl = pipelines_ttl
        self.deals_ttl = deals_ttl

        self._get_all_pipelines = self._coordinator.with_retry(self._list_pipelines, "get-all-pipelines")

    async def _list_pipelines(self) -> dict:
        return await self.client.get_pipelines("deals")

    async def _search_page(self, request: Dict[str, Any]) -> dict:
        return await self.client.search("deals", request)

    # ==================== Stages / Pipelines ====================

    async def get_deal_stages(self) -> List[DealStage]:
        return await self._cache.get_or_set(
            "deal-stages", None, self._load_deal_stages,
            ttl=self.stages_ttl, tags=["hubspot-stages"],
        )

    async def _load_deal_stages(self) -> List[DealStage]:
        try:
            response = await self._get_all_pipelines()
            results = response.get("results") or []
            pipeline = results[0] if results else None

            if not pipeline or not pipeline.get("stages"):
                return list(FALLBACK_DEAL_STAGES)

            return normalize_stages(pipeline["stages"])
        except Exception as e:
            logger.error(f"Error fetching deal stages from HubSpot: {e}")
            return list(FALLBACK_DEAL_STAGES)

    async def get_target_pipelines(self) -> List[Pipeline]:
        return await self._cache.get_or_set(
            "target-pipelines", {"ids": self.target_pipeline_ids}, self._load_target_pipelines,
            ttl=self.pipelines_ttl, tags=["hubspot-pipelines"],
        )

    async def _load_target_pipelines(self) -> List[Pipeline]:
        allowed = set(self.target_pipeline_ids)
        try:
            response = await self._get_all_pipelines()
            return [
                Pipeline(id=raw["id"], label=raw["label"], stages=normalize_stages(raw.get("stages") or []))
                for raw in response.get("results") or []
                if raw.get("id") in allowed
            ]
        except Exception as e:
            logger.error(f"Error fetching target pipelines from HubSpot: {e}")
            return []

    # ==================== Search ====================

    def build_filter_groups(self, pipeline_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """One group for an explicit pipeline, else one OR-ed group per allowed pipeline."""
        if pipeline_id:
            return [pipeline_filter_group(pipeline_id)]
        return [pipeline_filter_group(pid) for pid in self.target_pipeline_ids]

    @staticmethod
    def _search_key(pipeline_id: Optional[str], sorts: List[str], limit: int, after: Optional[str]) -> str:
        """Request key covering every argument that shapes the search request."""
        return f"search-deals:{pipeline_id or '*'}:{','.join(sorts)}:{limit}:{after or ''}"

    async def search_deals(self, limit: int = 100, sorts: Optional[List[str]] = None,
                           pipeline_id: Optional[str] = None) -> List[SearchRecord]:
        """Fetch every deal matching the pipeline filter, following paging cursors."""
        sorts = list(sorts) if sorts is not None else ["-closedate"]
        filter_groups = self.build_filter_groups(pipeline_id)

        all_results: List[RawSearchResult] = []
        after: Optional[str] = None

        while True:
            request = {
                "filterGroups": filter_groups,
                "properties": list(DEAL_PROPERTIES),
                "limit": limit,
                "sorts": sorts,
            }
            if after:
                request["after"] = after

            search = self._coordinator.with_retry(
                self._search_page, self._search_key(pipeline_id, sorts, limit, after)
            )
            response = await search(request)
            page = SearchPage.model_validate(response)

            all_results.extend(page.results)
            after = page.next_after
            if not after:
                break

        return [to_search_record(result) for result in all_results]

    async def get_cached_deals(self, limit: int = 100, sorts: Optional[List[str]] = None,
                               pipeline_id: Optional[str] = None) -> List[SearchRecord]:
        sorts = list(sorts) if sorts is not None else ["-closedate"]
        return await self._cache.get_or_set(
            "deals-search",
            {"limit": limit, "sorts": sorts, "pipeline_id": pipeline_id},
            lambda: self.search_deals(limit=limit, sorts=sorts, pipeline_id=pipeline_id),
            ttl=self.deals_ttl,
            tags=["hubspot-deals"],
        )

    # ==================== Single deal ====================

    async def get_deal_details(self, deal_id: str) -> Dict[str, Any]:
        """Deal with its owner and associated companies.

        Owner and company lookups are best effort; their failures are logged
        and the deal is still returned.
        """
        deal = await self.client.get_object("deals", deal_id, DEAL_PROPERTIES)

        owner_info = None
        owner_id = (deal.get("properties") or {}).get("hubspot_owner_id")
        if owner_id:
            try:
                owner = await self.client.get_owner(int(owner_id))
                owner_info = {
                    "id": owner.get("id"),
                    "firstName": owner.get("firstName"),
                    "lastName": owner.get("lastName"),
                    "email": owner.get("email"),
                }
            except (HubSpotAPIError, ValueError) as e:
                logger.warning(f"Failed to fetch owner {owner_id}: {e}")

        companies = []
        try:
            associations = await self.client.get_associations("deals", deal_id, "companies")
            for association in associations.get("results") or []:
                company_id = str(association.get("toObjectId"))
                try:
                    companies.append(await self.client.get_object("companies", company_id, COMPANY_PROPERTIES))
                except HubSpotAPIError as e:
                    logger.warning(f"Failed to fetch company {company_id}: {e}")
        except HubSpotAPIError as e:
            logger.warning(f"Failed to fetch company associations for deal {deal_id}: {e}")

        return {**deal, "associatedCompanies": companies, "ownerInfo": owner_info}

    async def update_deal(self, deal_id: str, properties: Dict[str, str]) -> Dict[str, Any]:
        """Patch deal properties. A dealstage must be a known stage id; an empty one is left untouched."""
        properties = dict(properties)

        if "dealstage" in properties:
            stage = properties["dealstage"]
            if stage:
                valid_ids = {s.id for s in await self.get_deal_stages()}
                if stage not in valid_ids:
                    raise InvalidDealStageError(f"Invalid dealstage: {stage} is not a valid stage ID")
            else:
                del properties["dealstage"]

        updated = await self.client.update_object("deals", deal_id, properties)
        self._cache.revalidate_tag("hubspot-deals")
        return updated
