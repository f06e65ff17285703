"""
Deal export via HubSpot's asynchronous export jobs.

Job lifecycle:
    start → IN_PROGRESS → COMPLETE (result = download URL)
                        → FAILED

The poller gives up after EXPORT_TIMEOUT_SECONDS; the remote job is not
cancelled and may still finish on HubSpot's side. These calls go straight
to HubSpot, without the rate-limit coordinator.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import EXPORT_INITIAL_DELAY, EXPORT_POLL_INTERVAL, EXPORT_TIMEOUT_SECONDS
from hubspot_crm import HubSpotAPIError, HubSpotCRM
from hubspot_deals import DEAL_PROPERTIES

logger = logging.getLogger(__name__)

EXPORT_PATH = "/crm/v3/exports/export/async"


class ExportStatus:
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ExportJob(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    status_url: str = Field(alias="statusUrl")


class ExportStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    result: Optional[str] = None
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")


class HubSpotExportError(HubSpotAPIError):
    pass


def _detail(response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("message"):
        return body["message"]
    return response.reason_phrase


class HubSpotExports:
    def __init__(
        self,
        client: HubSpotCRM,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = EXPORT_TIMEOUT_SECONDS,
        initial_delay: float = EXPORT_INITIAL_DELAY,
        poll_interval: float = EXPORT_POLL_INTERVAL,
    ):
        self.client = client
        self._sleep = sleep
        self._clock = clock
        self.timeout = timeout
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval

    async def start_deal_export(self) -> ExportJob:
        request_body = {
            "exportType": "VIEW",
            "format": "XLS",
            "exportName": f"deals-export-{int(time.time() * 1000)}",
            "objectProperties": list(DEAL_PROPERTIES),
            "objectType": "DEAL",
            "language": "EN",
            "exportInternalValuesOptions": ["NAMES"],
        }

        response = await self.client.request("POST", EXPORT_PATH, json=request_body)
        if not response.is_success:
            raise HubSpotExportError(
                f"Failed to start export: {_detail(response)}", code=response.status_code
            )

        data: Dict[str, Any] = response.json()
        if not isinstance(data, dict) or not data.get("id"):
            raise HubSpotExportError("Failed to start export: missing export id", code=response.status_code)
        export_id = str(data["id"])
        status_url = (data.get("links") or {}).get("status") or (
            f"{self.client.base_url}{EXPORT_PATH}/tasks/{export_id}/status"
        )
        logger.info(f"Started HubSpot deal export {export_id}")
        return ExportJob(id=export_id, status_url=status_url)

    async def check_export_status(self, export_id: str) -> ExportStatusResponse:
        response = await self.client.request("GET", f"{EXPORT_PATH}/tasks/{export_id}/status")
        if not response.is_success:
            raise HubSpotExportError(
                f"Failed to check export status: {_detail(response)}", code=response.status_code
            )
        return ExportStatusResponse.model_validate(response.json())

    @staticmethod
    def _settle(status: ExportStatusResponse) -> Optional[str]:
        """Download URL for a finished job, None while it is still running."""
        if status.status == ExportStatus.COMPLETE:
            if not status.result:
                raise HubSpotExportError("Export completed but no download URL provided")
            return status.result
        if status.status == ExportStatus.FAILED:
            raise HubSpotExportError("Export failed")
        return None

    async def poll_export_until_complete(self, export_id: str) -> str:
        started = self._clock()

        download_url = self._settle(await self.check_export_status(export_id))
        if download_url:
            return download_url

        await self._sleep(self.initial_delay)

        while True:
            if self._clock() - started > self.timeout:
                raise HubSpotExportError(f"Export timed out after {self.timeout / 60:g} minutes")

            status = await self.check_export_status(export_id)
            download_url = self._settle(status)
            if download_url:
                logger.info(f"HubSpot export {export_id} complete")
                return download_url

            logger.debug(f"HubSpot export {export_id} still {status.status}")
            await self._sleep(self.poll_interval)

    async def export_deals(self) -> str:
        """Start a deal export and wait for its download URL."""
        job = await self.start_deal_export()
        return await self.poll_export_until_complete(job.id)
