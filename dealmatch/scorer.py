"""Deterministic match scoring of candidate organizations against a deal.

Two variants share the geography rule:

- **CDE** (max 70): geographic fit (40, or 20 for a national focus) and
  deployable capital (30). Sector fit is reserved at weight 0 until deals
  carry sector data.
- **Investor** (max 100): program/credit-type overlap (50), geographic fit
  (30, or 15 for a national focus), and an active-status bonus (20; an unset
  status counts as active).

Scoring is total: malformed or missing fields count as "no match" and never
raise. Identical inputs always produce identical scores.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from dealmatch.models import CDE, Deal, Investor

log = logging.getLogger(__name__)

NATIONAL_SENTINELS = frozenset({"ALL", "National"})

CDE_GEO_FULL = 40
CDE_GEO_NATIONAL = 20
CDE_CAPITAL = 30
CDE_SECTOR = 0
CDE_MAX = CDE_GEO_FULL + CDE_CAPITAL + CDE_SECTOR

INVESTOR_PROGRAM = 50
INVESTOR_GEO_FULL = 30
INVESTOR_GEO_NATIONAL = 15
INVESTOR_ACTIVE = 20
INVESTOR_MAX = INVESTOR_PROGRAM + INVESTOR_GEO_FULL + INVESTOR_ACTIVE


@dataclass(frozen=True)
class MatchScore:
    score: int
    reasons: list[str] = field(default_factory=list)


def _strings(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    return [v for v in value if isinstance(v, str)]


def _geo_points(deal_state: Any, focus: Any, full: int, national: int) -> tuple[int, str | None]:
    states = _strings(focus)
    if NATIONAL_SENTINELS.intersection(states):
        return national, "National geographic focus"
    if isinstance(deal_state, str) and deal_state and deal_state in states:
        return full, f"Serves {deal_state}"
    return 0, None


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def score_cde(deal: Deal, cde: CDE) -> MatchScore:
    score = 0
    reasons: list[str] = []
    try:
        points, reason = _geo_points(getattr(deal, "state", None), cde.primary_states, CDE_GEO_FULL, CDE_GEO_NATIONAL)
        score += points
        if reason:
            reasons.append(reason)

        # remaining capital wins over the year's total whenever it is recorded, even at zero
        remaining = getattr(cde, "amount_remaining", None)
        if remaining is None:
            remaining = getattr(cde, "total_allocation", None)
        if _number(remaining) > 0:
            score += CDE_CAPITAL
            reasons.append("Allocation available")
    except Exception as exc:
        log.debug("CDE scoring degraded for %s: %s", getattr(cde, "id", "?"), exc)
    return MatchScore(score=score, reasons=reasons)


def score_investor(deal: Deal, investor: Investor) -> MatchScore:
    score = 0
    reasons: list[str] = []
    try:
        deal_programs = _strings(deal.programs)
        accepted = set(_strings(investor.target_credit_types))
        overlap = [p for p in deal_programs if p in accepted]
        if overlap:
            score += INVESTOR_PROGRAM
            reasons.append(f"Invests in {', '.join(overlap)}")

        points, reason = _geo_points(
            getattr(deal, "state", None), investor.target_states, INVESTOR_GEO_FULL, INVESTOR_GEO_NATIONAL,
        )
        score += points
        if reason:
            reasons.append(reason)

        status = getattr(investor, "status", None)
        if not status or status == "active":
            score += INVESTOR_ACTIVE
            reasons.append("Active investor")
    except Exception as exc:
        log.debug("Investor scoring degraded for %s: %s", getattr(investor, "id", "?"), exc)
    return MatchScore(score=score, reasons=reasons)


def score_candidate(deal: Deal, target_type: str, candidate: CDE | Investor) -> MatchScore:
    if target_type == "cde":
        return score_cde(deal, candidate)  # type: ignore[arg-type]
    return score_investor(deal, candidate)  # type: ignore[arg-type]
