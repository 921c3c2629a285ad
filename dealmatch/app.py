from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable, Generator

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealmatch import services
from dealmatch.config import Settings, get_settings
from dealmatch.db import get_session, init_db, session_generator
from dealmatch.email_client import EmailClient
from dealmatch.errors import OutreachError
from dealmatch.schemas import (
    CandidatesOut,
    ClaimContextOut,
    EmailPreviewOut,
    ExpireOut,
    OutreachCreate,
    OutreachPreviewRequest,
    OutreachRequestsOut,
    OutreachResponse,
)
from dealmatch.services import CallerIdentity

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="DealMatch",
    version="0.1.0",
    description=(
        "Match scoring and outreach for tax-credit deals. "
        "Ranks CDEs and investors against a deal and sends quota-limited, "
        "claim-code tracked invitations. Caller identity comes from the "
        "X-User-Id, X-Organization-Id and X-Organization-Type headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Outreach", "description": "Rank candidates and send outreach for a deal."},
        {"name": "Claim", "description": "Resolve claim codes from outreach emails."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


@app.exception_handler(OutreachError)
async def outreach_error_handler(request: Request, exc: OutreachError):
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [str(err.get("msg", "")) for err in exc.errors()]
    return JSONResponse({"detail": "; ".join(m for m in messages if m) or "Invalid request"}, status_code=400)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def session_factory() -> Callable[[], Session]:
    """Sessions for work that outlives the request (background tasks)."""
    return get_session


def app_settings() -> Settings:
    return get_settings()


def email_client(settings: Settings = Depends(app_settings)) -> EmailClient:
    return EmailClient(settings)


def current_user(
    x_user_id: str | None = Header(None),
    x_organization_id: str | None = Header(None),
    x_organization_type: str | None = Header(None),
) -> CallerIdentity:
    if not x_user_id:
        raise HTTPException(401, "Authentication required")
    return CallerIdentity(
        user_id=x_user_id, organization_id=x_organization_id,
        organization_type=(x_organization_type or "").lower() or None,
    )


# ---------------------------------------------------------------------------
# Routes: Outreach
# ---------------------------------------------------------------------------


@app.post("/api/deals/{deal_id}/outreach", response_model=OutreachResponse,
          tags=["Outreach"], summary="Send outreach to CDEs or investors for a deal")
async def create_outreach(
    deal_id: str,
    body: OutreachCreate,
    background: BackgroundTasks,
    caller: CallerIdentity = Depends(current_user),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
    email: EmailClient = Depends(email_client),
    factory: Callable[[], Session] = Depends(session_factory),
):
    result = await services.create_outreach(
        session, settings, email, caller, deal_id,
        recipient_ids=body.recipientIds, recipient_type=body.recipientType,
        message=body.message, sender_name=body.senderName, sender_org=body.senderOrg,
        defer=background.add_task, session_factory=factory,
    )
    if not result["success"]:
        return JSONResponse(result, status_code=502, background=background)
    return result


@app.get("/api/deals/{deal_id}/outreach", response_model=CandidatesOut, response_model_exclude_unset=True,
         tags=["Outreach"], summary="Ranked CDEs and investors available for outreach")
async def list_candidates(
    deal_id: str,
    type: str | None = Query(None, description="cde, investor or both"),
    caller: CallerIdentity = Depends(current_user),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    return services.list_candidates(session, settings, deal_id, type, caller=caller)


@app.get("/api/deals/{deal_id}/outreach/requests", response_model=OutreachRequestsOut,
         tags=["Outreach"], summary="Outreach requests for a deal with slot usage")
async def list_outreach_requests(
    deal_id: str,
    caller: CallerIdentity = Depends(current_user),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    return services.list_outreach_requests(session, settings, deal_id, caller=caller)


@app.post("/api/deals/{deal_id}/outreach/preview", response_model=EmailPreviewOut,
          tags=["Outreach"], summary="Render an outreach email without sending it")
async def preview_outreach(
    deal_id: str,
    body: OutreachPreviewRequest,
    caller: CallerIdentity = Depends(current_user),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    return services.preview_outreach_email(
        session, settings, caller, deal_id,
        recipient_id=body.recipientId, recipient_type=body.recipientType,
        sender_name=body.senderName, sender_org=body.senderOrg,
    )


# ---------------------------------------------------------------------------
# Routes: Claim
# ---------------------------------------------------------------------------


@app.get("/api/claim/{code}", response_model=ClaimContextOut,
         tags=["Claim"], summary="Look up the outreach behind a claim code")
async def get_claim(
    code: str,
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    return services.get_claim_context(session, code, settings.request_expiry_days)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/outreach/expire", response_model=ExpireOut,
          tags=["Admin"], summary="Mark pending requests past their TTL as expired")
async def expire_outreach(
    caller: CallerIdentity = Depends(current_user),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    if caller.organization_type != "admin":
        raise HTTPException(403, "Admin access required")
    return {"expired": services.expire_stale_requests(session, settings)}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("dealmatch.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
