"""Read-only access to deals, sponsors, and candidate organizations.

Candidates can be addressed by row id or by organization id. CDEs have one
row per allocation year, so several row ids map to one organization.
Everything that compares candidate identifiers goes through
``resolve_organization`` instead of comparing raw ids.
"""
from __future__ import annotations

import logging
from typing import Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from dealmatch.models import CDE, Deal, Investor, Sponsor, User

log = logging.getLogger(__name__)

Candidate = Union[CDE, Investor]

_MODELS: dict[str, type[CDE] | type[Investor]] = {"cde": CDE, "investor": Investor}


def _model_for(target_type: str) -> type[CDE] | type[Investor]:
    try:
        return _MODELS[target_type]
    except KeyError:
        raise ValueError(f"Unknown candidate type: {target_type!r}") from None


def get_deal(session: Session, deal_id: str) -> Deal | None:
    return session.execute(select(Deal).where(Deal.id == deal_id)).scalars().first()


def get_sponsor(session: Session, sponsor_id: str | None) -> Sponsor | None:
    if not sponsor_id:
        return None
    return session.execute(select(Sponsor).where(Sponsor.id == sponsor_id)).scalars().first()


def get_sponsor_for_organization(session: Session, organization_id: str) -> Sponsor | None:
    return session.execute(
        select(Sponsor).where(Sponsor.organization_id == organization_id)
    ).scalars().first()


def deal_owner_org_id(session: Session, deal: Deal) -> str | None:
    """Organization that owns *deal*: the sponsor row's org, else the deal's own field."""
    sponsor = get_sponsor(session, deal.sponsor_id)
    if sponsor is not None and sponsor.organization_id:
        return sponsor.organization_id
    return deal.sponsor_organization_id


def find_candidate(session: Session, target_type: str, raw_id: str) -> Candidate | None:
    """Look a candidate up by organization id first, then by row id.

    For CDEs the organization lookup returns the most recent allocation year.
    """
    model = _model_for(target_type)
    query = select(model).where(model.organization_id == raw_id)
    if model is CDE:
        query = query.order_by(CDE.year.desc().nulls_last())
    candidate = session.execute(query.limit(1)).scalars().first()
    if candidate is None:
        candidate = session.execute(select(model).where(model.id == raw_id)).scalars().first()
    return candidate


def resolve_organization(session: Session, target_type: str, raw_id: str) -> str | None:
    """Canonical organization id for *raw_id*, or None when nothing matches."""
    candidate = find_candidate(session, target_type, raw_id)
    return candidate.canonical_org_id if candidate is not None else None


def list_active_candidates(session: Session, target_type: str) -> list[Candidate]:
    """All active candidates of one type. CDE rows come newest allocation year first."""
    if target_type == "cde":
        query = select(CDE).where(CDE.status == "active").order_by(CDE.year.desc().nulls_last(), CDE.id)
    else:
        query = select(Investor).where(
            or_(Investor.status.is_(None), Investor.status == "", Investor.status == "active")
        ).order_by(Investor.id)
    return list(session.execute(query).scalars().all())


def organization_users(session: Session, organization_id: str | None, *, active_only: bool = True) -> list[User]:
    if not organization_id:
        return []
    query = select(User).where(User.organization_id == organization_id)
    if active_only:
        query = query.where(User.is_active.is_(True))
    return list(session.execute(query).scalars().all())


def is_onboarded(session: Session, organization_id: str | None) -> bool:
    return bool(organization_id) and session.execute(
        select(User.id).where(User.organization_id == organization_id, User.is_active.is_(True)).limit(1)
    ).first() is not None


def onboarded_org_ids(session: Session, role_type: str) -> set[str]:
    rows = session.execute(
        select(User.organization_id).where(User.role_type == role_type, User.is_active.is_(True))
    ).scalars().all()
    return {org_id for org_id in rows if org_id}
