"""
HubSpot CRM REST client.
Thin httpx wrapper over the CRM v3/v4 endpoints used by the deal and ticket views.
Every non-2xx answer surfaces as HubSpotAPIError carrying the HTTP status.
"""

import httpx
import logging
from typing import Optional, Dict, Any, List

from config import HUBSPOT_API_BASE, HUBSPOT_TIMEOUT

logger = logging.getLogger(__name__)


class HubSpotAPIError(Exception):
    """Error returned by (or while talking to) the HubSpot API."""

    def __init__(self, message: str, code: Optional[int] = None, body: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.body = body or {}

    @property
    def error_type(self) -> Optional[str]:
        return self.body.get("errorType")


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class HubSpotCRM:
    """Client for the HubSpot CRM API authenticated with a private-app token."""

    def __init__(self, access_token: str, base_url: str = HUBSPOT_API_BASE,
                 timeout: float = HUBSPOT_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def request(self, method: str, path: str, json: Any = None, params: dict = None) -> httpx.Response:
        """Send an authenticated request and return the raw response, whatever its status."""
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(method.upper(), url, headers=headers, json=json, params=params)
        except httpx.TimeoutException:
            raise HubSpotAPIError("Connection timeout. Please check your HubSpot connection")
        except httpx.RequestError as e:
            raise HubSpotAPIError(f"Connection error: {str(e)}")

    async def _call(self, method: str, path: str, data: Any = None, params: dict = None) -> dict:
        """Make an API call and return the decoded JSON body."""
        response = await self.request(method, path, json=data, params=params)

        if response.status_code >= 400:
            body = _error_body(response)
            message = body.get("message") or response.reason_phrase or f"API error: {response.status_code}"
            if response.status_code == 429:
                logger.warning(f"HubSpot rate limit hit on {method.upper()} {path}")
            else:
                logger.error(f"HubSpot API error {response.status_code}: {response.text[:500]}")
            raise HubSpotAPIError(message, code=response.status_code, body=body)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # ==================== Pipelines ====================

    async def get_pipelines(self, object_type: str) -> dict:
        """List pipelines (with stages) for an object type such as 'deals' or 'ticket'."""
        return await self._call("GET", f"/crm/v3/pipelines/{object_type}")

    # ==================== Objects ====================

    async def search(self, object_type: str, request: Dict[str, Any]) -> dict:
        """Run one page of a CRM search. Returns {"results": [...], "paging": {...}}."""
        body = {k: v for k, v in request.items() if v is not None}
        return await self._call("POST", f"/crm/v3/objects/{object_type}/search", data=body)

    async def get_object(self, object_type: str, object_id: str, properties: List[str]) -> dict:
        return await self._call(
            "GET", f"/crm/v3/objects/{object_type}/{object_id}",
            params={"properties": ",".join(properties)},
        )

    async def update_object(self, object_type: str, object_id: str, properties: Dict[str, str]) -> dict:
        return await self._call(
            "PATCH", f"/crm/v3/objects/{object_type}/{object_id}",
            data={"properties": properties},
        )

    async def create_object(self, object_type: str, properties: Dict[str, str],
                            associations: Optional[List[dict]] = None) -> dict:
        return await self._call("POST", f"/crm/v3/objects/{object_type}", data={
            "properties": properties,
            "associations": associations or [],
        })

    # ==================== Owners ====================

    async def get_owners_page(self, limit: int = 100, after: Optional[str] = None) -> dict:
        params = {"limit": limit}
        if after:
            params["after"] = after
        return await self._call("GET", "/crm/v3/owners", params=params)

    async def get_owner(self, owner_id: int) -> dict:
        return await self._call("GET", f"/crm/v3/owners/{owner_id}")

    # ==================== Associations (v4) ====================

    async def get_associations(self, from_type: str, object_id: str, to_type: str) -> dict:
        return await self._call("GET", f"/crm/v4/objects/{from_type}/{object_id}/associations/{to_type}")

    async def create_association(self, from_type: str, from_id: str, to_type: str, to_id: str,
                                 specs: List[Dict[str, Any]]) -> dict:
        return await self._call(
            "PUT", f"/crm/v4/objects/{from_type}/{from_id}/associations/{to_type}/{to_id}",
            data=specs,
        )
