"""HubSpot deal & ticket workspace - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from typing import List, Optional
from datetime import datetime, timezone

from pydantic import ValidationError

from auth_service import E2E_TEST_USER_ID, SessionUser, verify_token
from config import CORS_ORIGINS, get_hubspot_access_token, is_e2e_test_mode
from hubspot_crm import HubSpotAPIError, HubSpotCRM
from hubspot_deals import DealStage, HubSpotDeals, InvalidDealStageError, Pipeline
from hubspot_export import HubSpotExports
from hubspot_notes import HubSpotNotes
from hubspot_owners import HubSpotOwners, OwnerSummary
from hubspot_tickets import HubSpotTickets, TicketStage
from validators import DealUpdate, NoteCreate, TicketStageUpdate, first_error_message

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="HubSpot Deal & Ticket Workspace")
api_router = APIRouter(prefix="/api")

AUTH_ERROR_MESSAGE = "HubSpot authentication error. Check API key."


# ============ Services ============

_client: Optional[HubSpotCRM] = None


def get_hubspot_client() -> HubSpotCRM:
    global _client
    if _client is None:
        _client = HubSpotCRM(access_token=get_hubspot_access_token())
    return _client


def get_deals_service(client: HubSpotCRM = Depends(get_hubspot_client)) -> HubSpotDeals:
    return HubSpotDeals(client)


def get_tickets_service(client: HubSpotCRM = Depends(get_hubspot_client)) -> HubSpotTickets:
    return HubSpotTickets(client)


def get_owners_service(client: HubSpotCRM = Depends(get_hubspot_client)) -> HubSpotOwners:
    return HubSpotOwners(client)


def get_notes_service(client: HubSpotCRM = Depends(get_hubspot_client)) -> HubSpotNotes:
    return HubSpotNotes(client)


def get_exports_service(client: HubSpotCRM = Depends(get_hubspot_client)) -> HubSpotExports:
    return HubSpotExports(client)


# ============ Auth Middleware ============

async def get_current_user(authorization: Optional[str] = Header(None)) -> SessionUser:
    """Verify the session bearer token and return the signed-in user"""
    if is_e2e_test_mode():
        return SessionUser(user_id=E2E_TEST_USER_ID)

    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    user = verify_token(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


# ============ Helpers ============

def _hubspot_error_response(error: Exception, default_message: str, not_found_message: str,
                            prefix: str = "") -> JSONResponse:
    """Map a HubSpot failure onto the HTTP status the UI expects."""
    message = default_message
    status_code = 500

    if isinstance(error, HubSpotAPIError):
        body_message = error.body.get("message")
        if error.code == 404:
            message = body_message or not_found_message
            status_code = 404
        elif error.code == 401:
            message = body_message or AUTH_ERROR_MESSAGE
            status_code = 401
        elif error.message:
            message = f"{prefix}{error.message}"
    elif str(error):
        message = f"{prefix}{error}"

    return JSONResponse({"message": message}, status_code=status_code)


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


# ============ Deal Endpoints ============

@api_router.get("/deals")
async def list_deals(
    pipelineId: Optional[str] = None,
    user: SessionUser = Depends(get_current_user),
    deals: HubSpotDeals = Depends(get_deals_service),
):
    try:
        return await deals.get_cached_deals(limit=100, pipeline_id=pipelineId or None)
    except Exception as e:
        logger.error(f"Error fetching deals: {e}")
        return JSONResponse({"error": str(e) or "Failed to fetch deals"}, status_code=500)


@api_router.get("/deals/stages", response_model=List[DealStage])
async def deal_stages(deals: HubSpotDeals = Depends(get_deals_service)):
    return await deals.get_deal_stages()


@api_router.get("/deals/pipelines", response_model=List[Pipeline])
async def target_pipelines(
    user: SessionUser = Depends(get_current_user),
    deals: HubSpotDeals = Depends(get_deals_service),
):
    return await deals.get_target_pipelines()


@api_router.post("/deals/export")
async def export_deals(
    user: SessionUser = Depends(get_current_user),
    exports: HubSpotExports = Depends(get_exports_service),
):
    try:
        download_url = await exports.export_deals()
        return {"downloadUrl": download_url}
    except Exception as e:
        logger.error(f"Error exporting deals: {e}")
        return JSONResponse({"error": str(e) or "Failed to export deals"}, status_code=500)


@api_router.get("/deals/{deal_id}")
async def get_deal(
    deal_id: str,
    user: SessionUser = Depends(get_current_user),
    deals: HubSpotDeals = Depends(get_deals_service),
):
    try:
        return await deals.get_deal_details(deal_id)
    except Exception as e:
        logger.error(f"Error fetching deal {deal_id}: {e}")
        return _hubspot_error_response(e, "Failed to fetch deal details.", "Deal not found.")


@api_router.patch("/deals/{deal_id}")
async def update_deal(
    deal_id: str,
    request: Request,
    user: SessionUser = Depends(get_current_user),
    deals: HubSpotDeals = Depends(get_deals_service),
):
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"message": "Invalid request body"}, status_code=400)

    try:
        payload = DealUpdate.model_validate(body)
    except ValidationError as e:
        return JSONResponse({"message": first_error_message(e, "Invalid request body")}, status_code=400)

    try:
        return await deals.update_deal(deal_id, payload.to_properties())
    except InvalidDealStageError as e:
        return JSONResponse({"message": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"Error updating deal {deal_id}: {e}")
        return _hubspot_error_response(e, "Failed to update deal.", "Deal not found.")


@api_router.get("/deals/{deal_id}/notes")
async def list_deal_notes(
    deal_id: str,
    user: SessionUser = Depends(get_current_user),
    notes: HubSpotNotes = Depends(get_notes_service),
):
    try:
        return await notes.list_deal_notes(deal_id)
    except Exception as e:
        logger.error(f"Error fetching notes for deal {deal_id}: {e}")
        return _hubspot_error_response(
            e, "Failed to fetch notes.", "Deal not found or no associated notes.",
            prefix="Failed to fetch notes: ",
        )


@api_router.post("/deals/{deal_id}/notes", status_code=201)
async def add_deal_note(
    deal_id: str,
    request: Request,
    user: SessionUser = Depends(get_current_user),
    notes: HubSpotNotes = Depends(get_notes_service),
):
    body = await _json_body(request)
    try:
        payload = NoteCreate.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as e:
        return JSONResponse({"message": first_error_message(e, "Note body is required")}, status_code=400)

    try:
        note_id = await notes.add_deal_note(deal_id, payload.note_body)
        return {"message": "Note added successfully", "noteId": note_id}
    except Exception as e:
        logger.error(f"Error adding note to deal {deal_id}: {e}")
        return _hubspot_error_response(
            e, "Failed to add note.", "Could not create/associate note (Deal or Note not found?).",
            prefix="Failed to add note: ",
        )


# ============ Ticket Endpoints ============

@api_router.get("/tickets")
async def list_tickets(
    ownerId: Optional[str] = None,
    user: SessionUser = Depends(get_current_user),
    tickets: HubSpotTickets = Depends(get_tickets_service),
):
    try:
        return await tickets.search_tickets(owner_id=ownerId or None)
    except Exception as e:
        logger.error(f"Error fetching tickets: {e}")
        return _hubspot_error_response(e, "Failed to fetch tickets.", "Tickets not found.")


@api_router.get("/tickets/stages", response_model=List[TicketStage])
async def ticket_stages(tickets: HubSpotTickets = Depends(get_tickets_service)):
    stages = await tickets.get_ticket_stages()
    if not stages:
        return JSONResponse({"message": "No ticket pipelines found."}, status_code=404)
    return stages


@api_router.get("/tickets/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    user: SessionUser = Depends(get_current_user),
    tickets: HubSpotTickets = Depends(get_tickets_service),
):
    try:
        return await tickets.get_ticket(ticket_id)
    except Exception as e:
        logger.error(f"Error fetching ticket {ticket_id}: {e}")
        return _hubspot_error_response(e, "Failed to fetch ticket details.", "Ticket not found.")


@api_router.patch("/tickets/{ticket_id}")
async def update_ticket(
    ticket_id: str,
    request: Request,
    user: SessionUser = Depends(get_current_user),
    tickets: HubSpotTickets = Depends(get_tickets_service),
):
    body = await _json_body(request)
    try:
        payload = TicketStageUpdate.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as e:
        return JSONResponse({"message": first_error_message(e, "hs_pipeline_stage is required")}, status_code=400)

    try:
        return await tickets.update_ticket_stage(ticket_id, payload.hs_pipeline_stage)
    except Exception as e:
        logger.error(f"Error updating ticket {ticket_id}: {e}")
        return _hubspot_error_response(e, "Failed to update ticket.", "Ticket not found.")


@api_router.post("/tickets/{ticket_id}/notes", status_code=201)
async def add_ticket_note(
    ticket_id: str,
    request: Request,
    user: SessionUser = Depends(get_current_user),
    notes: HubSpotNotes = Depends(get_notes_service),
):
    body = await _json_body(request)
    try:
        payload = NoteCreate.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as e:
        return JSONResponse({"message": first_error_message(e, "Note body is required")}, status_code=400)

    try:
        note_id = await notes.add_ticket_note(ticket_id, payload.note_body)
        return {"message": "Note added successfully", "noteId": note_id}
    except Exception as e:
        logger.error(f"Error adding note to ticket {ticket_id}: {e}")
        return _hubspot_error_response(
            e, "Failed to add note.", "Could not create/associate note (Ticket or Note not found?).",
            prefix="Failed to add note: ",
        )


# ============ Owner Endpoints ============

@api_router.get("/owners", response_model=List[OwnerSummary])
async def list_owners(
    user: SessionUser = Depends(get_current_user),
    owners: HubSpotOwners = Depends(get_owners_service),
):
    return await owners.get_owners()


# ============ Health Check ============

@api_router.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
