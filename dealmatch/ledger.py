"""Outreach ledger: reading, gating, and writing MatchRequest records.

Everything here runs sequentially before delivery starts. The quota check
and the insert are not serialized against a concurrent identical request;
two racing calls for the same sponsor, deal, and type can transiently admit
more than the maximum number of active requests.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealmatch import repository
from dealmatch.claim_codes import issue_claim_code, is_valid_claim_code, normalize_claim_code
from dealmatch.errors import OutreachWriteError, QuotaExceededError
from dealmatch.models import ACTIVE_STATUSES, MatchRequest

log = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 3


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def effective_status(record: MatchRequest, now: datetime | None = None, expiry_days: int = 7) -> str:
    """Stored status, except a pending request past its TTL reads as expired."""
    if record.status != "pending" or record.requested_at is None:
        return record.status
    now = now or datetime.now(UTC)
    if as_utc(record.requested_at) + timedelta(days=expiry_days) < now:
        return "expired"
    return record.status


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


def requests_for_deal(session: Session, deal_id: str, target_type: str | None = None) -> list[MatchRequest]:
    query = select(MatchRequest).where(MatchRequest.deal_id == deal_id)
    if target_type:
        query = query.where(MatchRequest.target_type == target_type)
    return list(session.execute(query.order_by(MatchRequest.requested_at.desc())).scalars().all())


def active_request_count(
    session: Session,
    sponsor_id: str,
    deal_id: str,
    target_type: str,
    expiry_days: int = 7,
    now: datetime | None = None,
) -> int:
    """Accepted requests plus pending requests still inside their TTL."""
    cutoff = (now or datetime.now(UTC)) - timedelta(days=expiry_days)
    return session.execute(
        select(func.count(MatchRequest.id)).where(
            MatchRequest.sponsor_id == sponsor_id,
            MatchRequest.deal_id == deal_id,
            MatchRequest.target_type == target_type,
            or_(
                MatchRequest.status == "accepted",
                and_(MatchRequest.status == "pending", MatchRequest.requested_at >= cutoff),
            ),
        )
    ).scalar_one()


def active_counts_by_type(
    records: list[MatchRequest], expiry_days: int = 7, now: datetime | None = None,
) -> dict[str, int]:
    counts = {"cde": 0, "investor": 0}
    for r in records:
        if effective_status(r, now, expiry_days) in ACTIVE_STATUSES and r.target_type in counts:
            counts[r.target_type] += 1
    return counts


def contacted_keys(records: list[MatchRequest]) -> set[tuple[str, str]]:
    """(target_type, id) pairs already contacted, keyed by both row id and org id."""
    keys: set[tuple[str, str]] = set()
    for r in records:
        keys.add((r.target_type, r.target_id))
        if r.target_org_id:
            keys.add((r.target_type, r.target_org_id))
    return keys


def find_by_claim_code(session: Session, code: str) -> MatchRequest | None:
    code = normalize_claim_code(code)
    if not is_valid_claim_code(code):
        return None
    return session.execute(select(MatchRequest).where(MatchRequest.claim_code == code)).scalars().first()


# ---------------------------------------------------------------------------
# Quota guard
# ---------------------------------------------------------------------------


@dataclass
class QuotaDecision:
    active: int
    requested: int
    limit: int

    @property
    def remaining(self) -> int:
        return self.limit - self.active

    @property
    def allowed(self) -> bool:
        return self.active + self.requested <= self.limit


def check_quota(
    session: Session,
    sponsor_id: str,
    deal_id: str,
    target_type: str,
    new_count: int,
    limit: int = 3,
    expiry_days: int = 7,
    now: datetime | None = None,
) -> QuotaDecision:
    """Raise QuotaExceededError unless *new_count* more active requests fit."""
    decision = QuotaDecision(
        active=active_request_count(session, sponsor_id, deal_id, target_type, expiry_days, now),
        requested=new_count, limit=limit,
    )
    if not decision.allowed:
        raise QuotaExceededError(
            f"You can only have {limit} active {target_type} requests at a time. "
            f"You have {decision.remaining} slot(s) remaining.",
            remaining=decision.remaining,
        )
    return decision


# ---------------------------------------------------------------------------
# Dedup resolver
# ---------------------------------------------------------------------------


@dataclass
class RecipientPartition:
    new_ids: list[str] = field(default_factory=list)
    already_invited_ids: list[str] = field(default_factory=list)
    # recipient id -> claim code for already-invited recipients
    existing_codes: dict[str, str] = field(default_factory=dict)
    # recipient id -> canonical organization id (None when unresolved)
    org_ids: dict[str, str | None] = field(default_factory=dict)
    # later ids in the same request that alias an earlier new id
    aliases: dict[str, str] = field(default_factory=dict)


def partition_recipients(
    session: Session, deal_id: str, target_type: str, recipient_ids: list[str],
) -> RecipientPartition:
    """Split *recipient_ids* into ids needing a new record and ids already invited.

    A recipient is already invited when an existing record for the deal and
    type matches its raw id or its canonical organization. Within one request,
    a later id that resolves to the same organization as an earlier new id is
    treated as already invited and shares that id's claim code.
    """
    part = RecipientPartition()
    for rid in recipient_ids:
        part.org_ids[rid] = repository.resolve_organization(session, target_type, rid)

    lookup_ids = set(recipient_ids) | {o for o in part.org_ids.values() if o}
    existing = session.execute(
        select(MatchRequest).where(
            MatchRequest.deal_id == deal_id,
            MatchRequest.target_type == target_type,
            or_(MatchRequest.target_id.in_(lookup_ids), MatchRequest.target_org_id.in_(lookup_ids)),
        )
    ).scalars().all()
    by_target = {r.target_id: r for r in existing}
    by_org = {r.target_org_id: r for r in existing}

    claimed_orgs: dict[str, str] = {}
    for rid in recipient_ids:
        org_id = part.org_ids[rid]
        record = by_target.get(rid) or by_org.get(org_id or rid)
        if record is not None:
            part.already_invited_ids.append(rid)
            part.existing_codes[rid] = record.claim_code
            continue
        key = org_id or rid
        if key in claimed_orgs:
            part.already_invited_ids.append(rid)
            part.aliases[rid] = claimed_orgs[key]
            continue
        claimed_orgs[key] = rid
        part.new_ids.append(rid)
    return part


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def write_outreach_records(
    session: Session,
    *,
    sponsor_id: str,
    deal_id: str,
    target_type: str,
    new_ids: list[str],
    org_ids: dict[str, str | None],
    message: str | None,
) -> list[MatchRequest]:
    """Insert one pending record per new id, all or nothing.

    Unresolved recipients store their raw id as the organization id. A claim
    code collision retries the batch with fresh codes.
    """
    if not new_ids:
        return []
    for attempt in range(1, _WRITE_ATTEMPTS + 1):
        now = datetime.now(UTC)
        records = [
            MatchRequest(
                sponsor_id=sponsor_id, deal_id=deal_id, target_type=target_type,
                target_id=rid, target_org_id=org_ids.get(rid) or rid,
                message=message, status="pending",
                claim_code=issue_claim_code(), requested_at=now,
            )
            for rid in new_ids
        ]
        try:
            session.add_all(records)
            session.commit()
            return records
        except IntegrityError as exc:
            session.rollback()
            if "claim_code" in str(exc.orig) and attempt < _WRITE_ATTEMPTS:
                log.warning("Claim code collision writing outreach for deal %s, retrying", deal_id)
                continue
            log.error("Failed to create outreach requests for deal %s: %s", deal_id, exc)
            raise OutreachWriteError("Failed to create outreach requests") from exc
        except Exception as exc:
            session.rollback()
            log.error("Failed to create outreach requests for deal %s: %s", deal_id, exc)
            raise OutreachWriteError("Failed to create outreach requests") from exc
    raise OutreachWriteError("Failed to create outreach requests")


def expire_stale_requests(session: Session, now: datetime | None = None, expiry_days: int = 7) -> int:
    """Persist the expired status on pending requests past their TTL (caller must commit)."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=expiry_days)
    result = session.execute(
        update(MatchRequest)
        .where(MatchRequest.status == "pending", MatchRequest.requested_at < cutoff)
        .values(status="expired")
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0
