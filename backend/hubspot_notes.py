"""
Notes attached to deals and tickets.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from hubspot_crm import HubSpotAPIError, HubSpotCRM
from hubspot_deals import EPOCH_ZERO

logger = logging.getLogger(__name__)

NOTE_PROPERTIES = ["hs_note_body", "hs_timestamp", "hubspot_owner_id"]

# HubSpot-defined association types
NOTE_TO_DEAL_ASSOCIATION_TYPE_ID = 214
TICKET_TO_NOTE_ASSOCIATION_TYPE_ID = 227


def _note_time(note: Dict[str, Any]) -> datetime:
    raw = (note.get("properties") or {}).get("hs_timestamp")
    if raw:
        if raw.isdigit():
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable note timestamp: {raw}")
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return EPOCH_ZERO


class HubSpotNotes:
    def __init__(self, client: HubSpotCRM):
        self.client = client

    async def list_deal_notes(self, deal_id: str) -> List[Dict[str, Any]]:
        """Notes associated with a deal, newest first. Notes that fail to load are skipped."""
        associations = await self.client.get_associations("deals", deal_id, "notes")
        results = associations.get("results") or []

        notes = []
        for association in results:
            note_id = str(association.get("toObjectId"))
            try:
                notes.append(await self.client.get_object("notes", note_id, NOTE_PROPERTIES))
            except HubSpotAPIError as e:
                logger.warning(f"Failed to fetch note {note_id}: {e}")

        notes.sort(key=_note_time, reverse=True)
        return notes

    async def _create_note(self, body: str) -> str:
        note = await self.client.create_object("notes", {
            "hs_timestamp": datetime.now(timezone.utc).isoformat(),
            "hs_note_body": body,
        })
        if not note.get("id"):
            raise HubSpotAPIError("HubSpot did not return an id for the created note")
        return str(note["id"])

    async def add_deal_note(self, deal_id: str, body: str) -> str:
        """Create a note and associate it with the deal. Returns the new note id."""
        note_id = await self._create_note(body)

        await self.client.create_association("notes", note_id, "deals", deal_id, [{
            "associationCategory": "HUBSPOT_DEFINED",
            "associationTypeId": NOTE_TO_DEAL_ASSOCIATION_TYPE_ID,
        }])
        logger.info(f"Added note {note_id} to deal {deal_id}")
        return note_id

    async def add_ticket_note(self, ticket_id: str, body: str) -> str:
        """Create a note and associate the ticket with it. Returns the new note id."""
        note_id = await self._create_note(body)

        await self.client.create_association("tickets", ticket_id, "notes", note_id, [{
            "associationCategory": "HUBSPOT_DEFINED",
            "associationTypeId": TICKET_TO_NOTE_ASSOCIATION_TYPE_ID,
        }])
        logger.info(f"Added note {note_id} to ticket {ticket_id}")
        return note_id
