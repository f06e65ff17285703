"""
HubSpot owners (users that deals and tickets can be assigned to).
"""

import logging
import re
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from cache import TTLCache, get_default_cache
from config import OWNERS_CACHE_TTL
from hubspot_crm import HubSpotCRM
from rate_limit import RequestCoordinator, get_default_coordinator

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class RawOwner(BaseModel):
    id: Union[str, int]
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    archived: Optional[bool] = None


class OwnersPage(BaseModel):
    results: List[RawOwner] = Field(default_factory=list)


class OwnerSummary(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    archived: Optional[bool] = None


def is_valid_email(email: Optional[str]) -> bool:
    # Email is optional
    if not email:
        return True
    return bool(EMAIL_PATTERN.fullmatch(email))


class HubSpotOwners:
    def __init__(self, client: HubSpotCRM, coordinator: Optional[RequestCoordinator] = None,
                 cache: Optional[TTLCache] = None, ttl: int = OWNERS_CACHE_TTL):
        self.client = client
        self._coordinator = coordinator or get_default_coordinator()
        self._cache = cache or get_default_cache()
        self.ttl = ttl
        self._get_owners_page = self._coordinator.with_retry(self._fetch_page, "get-owners-page")

    async def _fetch_page(self) -> dict:
        return await self.client.get_owners_page()

    async def get_owners(self) -> List[OwnerSummary]:
        return await self._cache.get_or_set(
            "hubspot-owners", None, self._load_owners,
            ttl=self.ttl, tags=["hubspot-owners"],
        )

    async def _load_owners(self) -> List[OwnerSummary]:
        try:
            page = OwnersPage.model_validate(await self._get_owners_page())
        except Exception as e:
            logger.error(f"Error fetching HubSpot owners: {e}", exc_info=True)
            return []

        owners = []
        for owner in page.results:
            owner_id = str(owner.id).strip()
            if not owner_id:
                logger.warning(f"Skipping owner with empty ID: {owner}")
                continue
            if owner.email and not is_valid_email(owner.email):
                logger.warning(f"Skipping owner {owner_id} with invalid email: {owner.email}")
                continue
            owners.append(OwnerSummary(
                id=owner_id,
                email=owner.email,
                first_name=owner.firstName,
                last_name=owner.lastName,
                archived=owner.archived,
            ))
        return owners

    async def find_owner_id_by_email(self, email: str) -> Optional[str]:
        wanted = email.lower()
        for owner in await self.get_owners():
            if owner.email and owner.email.lower() == wanted:
                return owner.id
        return None
