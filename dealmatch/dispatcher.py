"""Per-recipient outreach delivery.

For each recipient: look up the candidate, provision in-app access when the
organization is onboarded, then send the type-specific email. Every
recipient ends with exactly one ``DeliveryResult``; nothing here raises past
``dispatch``.

Recipients run concurrently under a bounded semaphore. The database session
is shared, so every database step is synchronous and completes between
awaits.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealmatch import repository
from dealmatch.email_client import EmailClient, SendResult
from dealmatch.models import CDE, ChannelMember, Deal, DealChannel, Investor, Notification
from dealmatch.templates import DealSummary
from dealmatch.utils import format_currency, run_best_effort

log = logging.getLogger(__name__)

SENT = "sent"
PROVIDER_ERROR = "provider_error"
NO_CONTACT_EMAIL = "no_contact_email"
RECIPIENT_NOT_FOUND = "recipient_not_found"
PROCESSING_ERROR = "processing_error"


@dataclass
class DeliveryResult:
    recipient_id: str
    recipient_type: str
    status: str = PROCESSING_ERROR
    organization_id: str | None = None
    organization_name: str | None = None
    contact_email: str | None = None
    email_id: str | None = None
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.status == SENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipientId": self.recipient_id,
            "recipientType": self.recipient_type,
            "organizationId": self.organization_id,
            "organizationName": self.organization_name,
            "contactEmail": self.contact_email,
            "status": self.status,
            "emailId": self.email_id,
            "error": self.error,
        }


@dataclass
class DispatchContext:
    """Everything about the sending side that is shared by all recipients."""
    deal: Deal
    summary: DealSummary
    recipient_type: str
    sender_id: str
    sponsor_org_id: str | None
    sponsor_org_name: str
    sponsor_contact_name: str
    base_url: str
    # recipient id -> claim code
    claim_codes: dict[str, str] = field(default_factory=dict)
    attachment: bytes | None = None


@dataclass
class DispatchOutcome:
    results: list[DeliveryResult]

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.sent)

    @property
    def failed(self) -> int:
        return len(self.results) - self.sent


@dataclass
class Contact:
    org_id: str
    org_name: str
    contact_name: str
    email: str | None
    allocation_amount: str = "$0"
    allocation_year: int = 0


def contact_for(candidate: CDE | Investor) -> Contact:
    if isinstance(candidate, CDE):
        return Contact(
            org_id=candidate.canonical_org_id,
            org_name=candidate.name or "Unknown CDE",
            contact_name=candidate.contact_name or candidate.name or "Team",
            email=candidate.contact_email,
            allocation_amount=format_currency(candidate.allocation_available),
            allocation_year=candidate.year or datetime.now(UTC).year,
        )
    return Contact(
        org_id=candidate.canonical_org_id,
        org_name=candidate.organization_name or "Unknown Investor",
        contact_name=candidate.primary_contact_name or candidate.organization_name or "Team",
        email=candidate.primary_contact_email,
    )


def claim_url(base_url: str, claim_code: str, recipient_type: str, org_id: str, deal_id: str) -> str:
    base = base_url.rstrip("/")
    if claim_code:
        return f"{base}/claim?code={claim_code}"
    return f"{base}/signup?ref={recipient_type}&org={org_id}&deal={deal_id}"


# ---------------------------------------------------------------------------
# In-app provisioning for onboarded organizations
# ---------------------------------------------------------------------------


def _notify_users(session: Session, ctx: DispatchContext, user_ids: list[str]) -> None:
    wanted = "NMTC allocation" if ctx.recipient_type == "cde" else "investment"
    session.add_all([
        Notification(
            user_id=uid, deal_id=ctx.deal.id, type="match", event="match_request_received",
            title=f"Allocation request from {ctx.sponsor_org_name}",
            body=f'{ctx.sponsor_org_name} has requested {wanted} for "{ctx.deal.project_name}"',
            priority="high", read=False,
        )
        for uid in user_ids
    ])


def _ensure_deal_channel(session: Session, ctx: DispatchContext, guest_ids: list[str]) -> DealChannel:
    """Reuse the deal's channel or create it with the sponsor's users as admins, then add guests."""
    channel = session.execute(
        select(DealChannel).where(DealChannel.deal_id == ctx.deal.id, DealChannel.channel_type == "deal").limit(1)
    ).scalars().first()
    if channel is None:
        channel = DealChannel(
            deal_id=ctx.deal.id, name=ctx.deal.project_name, owner_id=ctx.sender_id,
            organization_id=ctx.sponsor_org_id, channel_type="deal",
            invite_code=secrets.token_hex(4),
        )
        session.add(channel)
        for user in repository.organization_users(session, ctx.sponsor_org_id):
            channel.members.append(ChannelMember(user_id=user.id, role="ADMIN"))
        log.info("Created deal channel for %s", ctx.deal.project_name)

    present = {m.user_id for m in channel.members}
    for uid in guest_ids:
        if uid not in present:
            channel.members.append(ChannelMember(user_id=uid, role="GUEST"))
            present.add(uid)
    return channel


def _provision(session: Session, ctx: DispatchContext, org_id: str) -> None:
    user_ids = [u.id for u in repository.organization_users(session, org_id)]
    try:
        with session.begin_nested():
            _notify_users(session, ctx, user_ids)
            _ensure_deal_channel(session, ctx, user_ids)
        session.commit()
    except Exception:
        session.rollback()
        raise


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def _send(email: EmailClient, ctx: DispatchContext, contact: Contact, url: str, code: str) -> SendResult:
    common = dict(
        contact_name=contact.contact_name, sponsor_name=ctx.sponsor_org_name,
        sponsor_contact_name=ctx.sponsor_contact_name, project_name=ctx.deal.project_name,
        deal=ctx.summary, claim_url=url, claim_code=code, attachment=ctx.attachment,
    )
    if ctx.recipient_type == "investor":
        return await email.send_investment_request(contact.email, investor_name=contact.org_name, **common)
    return await email.send_allocation_request(
        contact.email, cde_name=contact.org_name,
        cde_allocation_amount=contact.allocation_amount, cde_allocation_year=contact.allocation_year,
        **common,
    )


async def deliver_one(session: Session, email: EmailClient, ctx: DispatchContext, recipient_id: str) -> DeliveryResult:
    result = DeliveryResult(recipient_id=recipient_id, recipient_type=ctx.recipient_type)
    try:
        candidate = repository.find_candidate(session, ctx.recipient_type, recipient_id)
        if candidate is None:
            log.warning("Outreach recipient %s (%s) not found", recipient_id, ctx.recipient_type)
            result.status = RECIPIENT_NOT_FOUND
            result.error = "CDE not found" if ctx.recipient_type == "cde" else "Investor not found"
            return result

        contact = contact_for(candidate)
        result.organization_id = contact.org_id
        result.organization_name = contact.org_name
        result.contact_email = contact.email or None

        code = ctx.claim_codes.get(recipient_id, "")
        url = claim_url(ctx.base_url, code, ctx.recipient_type, contact.org_id, ctx.deal.id)

        if repository.is_onboarded(session, contact.org_id):
            log.info("%s is onboarded, provisioning notifications and deal channel", contact.org_name)
            run_best_effort("Outreach provisioning", _provision, session, ctx, contact.org_id)

        if not contact.email:
            log.warning("No contact email for %s, skipping email", contact.org_name)
            result.status = NO_CONTACT_EMAIL
            result.error = "No contact email on recipient profile"
            return result

        sent = await _send(email, ctx, contact, url, code)
        if sent.success:
            result.status = SENT
            result.email_id = sent.id
            log.info("Outreach email sent to %s for %s", contact.email, contact.org_name)
        else:
            result.status = PROVIDER_ERROR
            result.error = sent.error or "Email provider rejected request"
            log.error("Email provider error for %s: %s", contact.org_name, result.error)
    except Exception as exc:
        log.exception("Error processing outreach recipient %s", recipient_id)
        result.status = PROCESSING_ERROR
        result.error = str(exc) or "Unexpected processing error"
    return result


def _delivery_key(session: Session, recipient_type: str, recipient_id: str) -> str:
    try:
        return repository.resolve_organization(session, recipient_type, recipient_id) or recipient_id
    except Exception as exc:
        log.warning("Could not resolve organization for %s: %s", recipient_id, exc)
        return recipient_id


async def dispatch(
    session: Session,
    email: EmailClient,
    ctx: DispatchContext,
    recipient_ids: list[str],
    *,
    concurrency: int = 4,
    timeout: float | None = None,
) -> DispatchOutcome:
    """Deliver to every recipient; results keep the order of *recipient_ids*.

    Ids naming the same organization get one email. Each id still gets its
    own result, copied from the first id's delivery.
    """
    sem = asyncio.Semaphore(max(1, concurrency))
    results: list[DeliveryResult | None] = [None] * len(recipient_ids)

    primary: dict[str, int] = {}
    alias_of: dict[int, int] = {}
    for index, rid in enumerate(recipient_ids):
        key = _delivery_key(session, ctx.recipient_type, rid)
        if key in primary:
            alias_of[index] = primary[key]
        else:
            primary[key] = index

    async def _run(index: int, rid: str) -> None:
        async with sem:
            results[index] = await deliver_one(session, email, ctx, rid)

    try:
        await asyncio.wait_for(
            asyncio.gather(*(_run(i, recipient_ids[i]) for i in primary.values())),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        log.error("Outreach delivery for deal %s timed out after %ss", ctx.deal.id, timeout)

    for index, source in alias_of.items():
        if results[source] is not None:
            results[index] = replace(results[source], recipient_id=recipient_ids[index])

    final = [
        r if r is not None else DeliveryResult(
            recipient_id=rid, recipient_type=ctx.recipient_type,
            status=PROCESSING_ERROR, error="Delivery timed out",
        )
        for rid, r in zip(recipient_ids, results)
    ]
    return DispatchOutcome(results=final)
