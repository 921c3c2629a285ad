"""Shared business logic for the DealMatch API and MCP server.

``create_outreach`` runs one invite call through its stages in order:
authorize, dedup, quota, write, dispatch, audit. Everything before dispatch
is sequential and raises ``OutreachError`` subclasses; dispatch never raises.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from dealmatch import audit, ledger, repository, templates
from dealmatch.config import Settings
from dealmatch.dispatcher import DispatchContext, claim_url, contact_for, dispatch
from dealmatch.email_client import EmailClient
from dealmatch.errors import AuthorizationError, ClaimExpiredError, InvalidRequestError, NotFoundError
from dealmatch.models import CDE, Deal, Investor, MatchRequest, TARGET_TYPES
from dealmatch.scorer import score_candidate
from dealmatch.templates import DealSummary

log = logging.getLogger(__name__)

# Schedules a callable to run after the response (e.g. BackgroundTasks.add_task)
Defer = Callable[..., Any]


@dataclass
class CallerIdentity:
    user_id: str
    organization_id: str | None = None
    organization_type: str | None = None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def build_deal_summary(deal: Deal) -> DealSummary:
    return DealSummary(
        city=deal.city or "", state=deal.state or "", address=deal.address or "",
        census_tract=deal.census_tract or "", program_type=deal.primary_program,
        allocation=deal.requested_amount or deal.total_project_cost or 0,
        project_cost=deal.total_project_cost or 0, financing_gap=deal.financing_gap or 0,
        community_impact=deal.community_impact or "", programs=deal.programs,
    )


def deal_detail(deal: Deal) -> dict:
    return {
        "id": deal.id, "projectName": deal.project_name, "state": deal.state,
        "city": deal.city, "censusTract": deal.census_tract, "programs": deal.programs,
        "requestedAmount": deal.requested_amount, "totalProjectCost": deal.total_project_cost,
        "financingGap": deal.financing_gap, "status": deal.status,
    }


def outreach_request_summary(record: MatchRequest, expiry_days: int = 7, now: datetime | None = None) -> dict:
    return {
        "id": record.id, "targetType": record.target_type, "targetId": record.target_id,
        "targetOrgId": record.target_org_id,
        "status": ledger.effective_status(record, now, expiry_days),
        "claimCode": record.claim_code, "message": record.message,
        "requestedAt": record.requested_at.isoformat() if record.requested_at else None,
    }


def outreach_message(sent: int, failed: int, skipped: int) -> str:
    if sent > 0:
        if failed > 0:
            return f"Sent {sent} outreach email(s), {failed} failed"
        if skipped > 0:
            return f"Sent {sent} outreach email(s) ({skipped} already contacted)"
        return f"Sent {sent} outreach email(s)"
    if skipped > 0 and failed == 0:
        return f"All {skipped} recipient(s) were already contacted for this deal"
    return "No outreach emails were delivered"


def _is_blacklisted(name: str, blacklist: list[str]) -> bool:
    lowered = (name or "").lower()
    return any(bl.lower() in lowered for bl in blacklist if bl)


def _cde_summary(cde: CDE, onboarded: bool, contacted: bool, deal: Deal) -> dict:
    scored = score_candidate(deal, "cde", cde)
    return {
        "id": cde.id, "organizationId": cde.canonical_org_id, "name": cde.name or "Unknown CDE",
        "missionStatement": cde.innovative_activities or cde.predominant_market or "",
        "geographicFocus": cde.primary_states, "sectorFocus": cde.target_sectors,
        "allocationAvailable": cde.allocation_available,
        "isSystemUser": onboarded, "isContacted": contacted,
        "matchScore": scored.score, "matchReasons": scored.reasons,
    }


def _investor_summary(inv: Investor, onboarded: bool, contacted: bool, deal: Deal) -> dict:
    scored = score_candidate(deal, "investor", inv)
    return {
        "id": inv.id, "organizationId": inv.canonical_org_id,
        "name": inv.organization_name or "Unknown Investor", "investorType": inv.investor_type or "",
        "programs": inv.target_credit_types, "geographicFocus": inv.target_states,
        "sectors": inv.target_sectors,
        "minInvestment": inv.min_investment, "maxInvestment": inv.max_investment,
        "isSystemUser": onboarded, "isContacted": contacted,
        "matchScore": scored.score, "matchReasons": scored.reasons,
    }


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def require_sponsor(caller: CallerIdentity, action: str = "send outreach") -> None:
    if caller.organization_type != "sponsor":
        raise AuthorizationError(f"Only sponsors can {action}")


def get_owned_deal(session: Session, caller: CallerIdentity | None, deal_id: str) -> Deal:
    """Load *deal_id*, requiring the caller's organization to own it when a caller is given."""
    deal = repository.get_deal(session, deal_id)
    if deal is None:
        raise NotFoundError("Deal not found")
    if caller is not None and repository.deal_owner_org_id(session, deal) != caller.organization_id:
        raise AuthorizationError("Only the deal owner can send outreach")
    return deal


def _sponsor_id_for_requests(session: Session, deal: Deal, caller: CallerIdentity) -> str:
    if deal.sponsor_id:
        return deal.sponsor_id
    sponsor = repository.get_sponsor_for_organization(session, caller.organization_id or "")
    if sponsor is None:
        raise InvalidRequestError("Unable to resolve sponsor record for outreach")
    return sponsor.id


def _sponsor_names(
    session: Session, deal: Deal, caller: CallerIdentity, sender_name: str | None, sender_org: str | None,
) -> tuple[str, str]:
    """(organization name, contact name) the recipient sees as the sender."""
    sponsor = deal.sponsor or repository.get_sponsor_for_organization(session, caller.organization_id or "")
    org_name = sender_org or (sponsor.organization_name if sponsor else "") or "Sponsor"
    contact_name = sender_name
    if not contact_name:
        users = repository.organization_users(session, caller.organization_id)
        contact_name = (users[0].name if users else "") or sender_org or "Sponsor"
    return org_name, contact_name


# ---------------------------------------------------------------------------
# CreateOutreach
# ---------------------------------------------------------------------------


async def create_outreach(
    session: Session,
    settings: Settings,
    email: EmailClient,
    caller: CallerIdentity,
    deal_id: str,
    *,
    recipient_ids: list[str],
    recipient_type: str,
    message: str | None = None,
    sender_name: str | None = None,
    sender_org: str | None = None,
    attachment: bytes | None = None,
    defer: Defer | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> dict:
    """Invite *recipient_ids* to *deal_id* and deliver the outreach emails.

    Returns the response body. ``success`` is False exactly when nothing was
    sent and nobody was already invited; the HTTP layer reports that as 502.
    """
    require_sponsor(caller)
    if recipient_type not in TARGET_TYPES:
        raise InvalidRequestError('recipientType must be either "cde" or "investor"')
    if not recipient_ids:
        raise InvalidRequestError("Missing required fields")

    deal = get_owned_deal(session, caller, deal_id)
    sponsor_id = _sponsor_id_for_requests(session, deal, caller)

    part = ledger.partition_recipients(session, deal_id, recipient_type, recipient_ids)
    if part.already_invited_ids:
        log.info(
            "Skipping %d recipient(s) already contacted for deal %s",
            len(part.already_invited_ids), deal_id,
        )
    ledger.check_quota(
        session, sponsor_id, deal_id, recipient_type, len(part.new_ids),
        limit=settings.max_active_requests, expiry_days=settings.request_expiry_days,
    )
    records = ledger.write_outreach_records(
        session, sponsor_id=sponsor_id, deal_id=deal_id, target_type=recipient_type,
        new_ids=part.new_ids, org_ids=part.org_ids, message=message,
    )

    claim_codes = dict(part.existing_codes)
    claim_codes.update({r.target_id: r.claim_code for r in records})
    for alias, original in part.aliases.items():
        claim_codes[alias] = claim_codes.get(original, "")

    org_name, contact_name = _sponsor_names(session, deal, caller, sender_name, sender_org)
    ctx = DispatchContext(
        deal=deal, summary=build_deal_summary(deal), recipient_type=recipient_type,
        sender_id=caller.user_id, sponsor_org_id=caller.organization_id,
        sponsor_org_name=org_name, sponsor_contact_name=contact_name,
        base_url=settings.base_url, claim_codes=claim_codes, attachment=attachment,
    )
    outcome = await dispatch(
        session, email, ctx, recipient_ids,
        concurrency=settings.delivery_concurrency, timeout=settings.delivery_timeout_seconds,
    )

    if session_factory is not None:
        audit_args = dict(
            sender_id=caller.user_id, deal_id=deal_id, deal_name=deal.project_name,
            recipient_type=recipient_type, recipient_ids=list(recipient_ids),
        )
        if defer is not None:
            defer(audit.log_outreach, session_factory, **audit_args)
        else:
            audit.log_outreach(session_factory, **audit_args)

    sent, failed, skipped = outcome.sent, outcome.failed, len(part.already_invited_ids)
    log.info(
        "Outreach for deal %s: created=%d sent=%d failed=%d skipped=%d",
        deal_id, len(records), sent, failed, skipped,
    )
    return {
        "success": sent > 0 or skipped > 0,
        "partialSuccess": sent > 0 and failed > 0,
        "created": len(records),
        "skipped": skipped,
        "sent": sent,
        "failed": failed,
        "results": [r.to_dict() for r in outcome.results],
        "message": outreach_message(sent, failed, skipped),
    }


# ---------------------------------------------------------------------------
# ListCandidates
# ---------------------------------------------------------------------------


def list_candidates(
    session: Session,
    settings: Settings,
    deal_id: str,
    type_filter: str | None = None,
    caller: CallerIdentity | None = None,
) -> dict:
    """Rank active CDEs and/or investors for a deal, best match first."""
    if caller is not None:
        require_sponsor(caller, "view outreach options")
    if type_filter not in (None, "", "both", *TARGET_TYPES):
        raise InvalidRequestError('type must be one of "cde", "investor" or "both"')
    deal = get_owned_deal(session, caller, deal_id)

    records = ledger.requests_for_deal(session, deal_id)
    contacted = ledger.contacted_keys(records)
    active = ledger.active_counts_by_type(records, settings.request_expiry_days)
    limit = settings.max_active_requests
    result: dict[str, Any] = {"limits": {t: limit - active[t] for t in TARGET_TYPES}}

    wanted = TARGET_TYPES if type_filter in (None, "", "both") else (type_filter,)
    for target_type in wanted:
        onboarded = repository.onboarded_org_ids(session, target_type)
        seen: set[str] = set()
        items = []
        for cand in repository.list_active_candidates(session, target_type):
            org_id = cand.canonical_org_id
            if org_id in seen:
                continue
            seen.add(org_id)
            name = cand.name if isinstance(cand, CDE) else cand.organization_name
            if _is_blacklisted(name, settings.blacklisted_orgs):
                continue
            is_contacted = (target_type, cand.id) in contacted or (
                cand.organization_id is not None and (target_type, cand.organization_id) in contacted
            )
            if isinstance(cand, CDE):
                items.append(_cde_summary(cand, org_id in onboarded, is_contacted, deal))
            else:
                items.append(_investor_summary(cand, org_id in onboarded, is_contacted, deal))
        items.sort(key=lambda x: x["matchScore"], reverse=True)
        result["cdes" if target_type == "cde" else "investors"] = items
    return result


# ---------------------------------------------------------------------------
# Outreach records
# ---------------------------------------------------------------------------


def list_outreach_requests(
    session: Session, settings: Settings, deal_id: str, caller: CallerIdentity | None = None,
) -> dict:
    """A deal's outreach records with expiry-aware status and per-type slot usage."""
    get_owned_deal(session, caller, deal_id)
    records = ledger.requests_for_deal(session, deal_id)
    active = ledger.active_counts_by_type(records, settings.request_expiry_days)
    limit = settings.max_active_requests
    return {
        "requests": [outreach_request_summary(r, settings.request_expiry_days) for r in records],
        "slots": {
            t: {"used": active[t], "max": limit, "available": max(limit - active[t], 0)}
            for t in TARGET_TYPES
        },
    }


def expire_stale_requests(session: Session, settings: Settings, now: datetime | None = None) -> int:
    count = ledger.expire_stale_requests(session, now, settings.request_expiry_days)
    session.commit()
    if count:
        log.info("Expired %d stale outreach request(s)", count)
    return count


def get_claim_context(session: Session, code: str, expiry_days: int = 7) -> dict:
    """Resolve a claim code to its outreach context. Expired codes are refused."""
    record = ledger.find_by_claim_code(session, code)
    if record is None:
        raise NotFoundError("Claim code not found")
    status = ledger.effective_status(record, expiry_days=expiry_days)
    if status == "expired":
        raise ClaimExpiredError("This claim code has expired")
    deal = repository.get_deal(session, record.deal_id)
    return {
        "claimCode": record.claim_code, "dealId": record.deal_id,
        "projectName": deal.project_name if deal else "",
        "recipientType": record.target_type, "organizationId": record.target_org_id,
        "status": status,
    }


def preview_outreach_email(
    session: Session,
    settings: Settings,
    caller: CallerIdentity,
    deal_id: str,
    *,
    recipient_id: str,
    recipient_type: str,
    sender_name: str | None = None,
    sender_org: str | None = None,
) -> dict:
    """Render the email *recipient_id* would receive. Nothing is sent or written."""
    require_sponsor(caller)
    if recipient_type not in TARGET_TYPES:
        raise InvalidRequestError('recipientType must be either "cde" or "investor"')
    deal = get_owned_deal(session, caller, deal_id)
    candidate = repository.find_candidate(session, recipient_type, recipient_id)
    if candidate is None:
        raise NotFoundError("CDE not found" if recipient_type == "cde" else "Investor not found")

    org_name, contact_name = _sponsor_names(session, deal, caller, sender_name, sender_org)
    existing = ledger.partition_recipients(session, deal_id, recipient_type, [recipient_id])
    code = existing.existing_codes.get(recipient_id, "")
    contact = contact_for(candidate)
    common = dict(
        contact_name=contact.contact_name, sponsor_name=org_name, sponsor_contact_name=contact_name,
        project_name=deal.project_name, deal=build_deal_summary(deal),
        claim_url=claim_url(settings.base_url, code, recipient_type, contact.org_id, deal.id),
        claim_code=code,
    )
    if recipient_type == "investor":
        subject, html, text = templates.investment_request(investor_name=contact.org_name, **common)
    else:
        subject, html, text = templates.allocation_request(
            cde_name=contact.org_name, cde_allocation_amount=contact.allocation_amount,
            cde_allocation_year=contact.allocation_year, **common,
        )
    return {"to": contact.email or None, "subject": subject, "html": html, "text": text}
