from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from dealmatch import repository, services
from dealmatch.config import get_settings
from dealmatch.db import get_session, init_db
from dealmatch.errors import OutreachError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def dealmatch_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "DealMatch",
    instructions=(
        "DealMatch ranks CDEs and investors against tax-credit deals and tracks "
        "sponsor outreach. These tools are read-only. Start with get_deal(id), "
        "then list_candidates(deal_id) to see who fits, and "
        "list_outreach_requests(deal_id) to see who has already been contacted."
    ),
    lifespan=dealmatch_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("dealmatch://overview")
def dealmatch_overview() -> str:
    """Overview of DealMatch: data model, scoring, and outreach rules."""
    settings = get_settings()
    return json.dumps({
        "system": "DealMatch: match scoring and outreach for tax-credit deals",
        "data_model": {
            "deal": "A capital-seeking project owned by a sponsor organization.",
            "cde": "Community development entity. One row per allocation year; rows sharing an organization id are one organization.",
            "investor": "Tax-credit investor organization.",
            "match_request": "One outreach invitation from a sponsor to a CDE or investor for a deal, with a claim code.",
        },
        "scoring": {
            "cde": "Geography 40 (national focus 20) + allocation available 30. Max 70.",
            "investor": "Program match 50 + geography 30 (national focus 15) + active 20. Max 100.",
        },
        "outreach": {
            "max_active_requests_per_type": settings.max_active_requests,
            "request_expiry_days": settings.request_expiry_days,
            "statuses": ["pending", "accepted", "declined", "expired"],
        },
        "workflow": [
            "1. get_deal(id) - deal attributes used for scoring.",
            "2. list_candidates(deal_id, type) - ranked candidates with match reasons and remaining slots.",
            "3. list_outreach_requests(deal_id) - existing invitations and slot usage.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_deal(deal_id: str) -> dict:
    """Get a deal's scoring attributes: location, programs, and requested amounts."""
    with _session() as session:
        deal = repository.get_deal(session, deal_id)
        if deal is None:
            return {"error": f"Deal {deal_id} not found"}
        return services.deal_detail(deal)


@mcp.tool()
def list_candidates(deal_id: str, type: str = "both", limit: int = 50) -> dict:
    """Rank CDEs and/or investors for a deal, best match first.

    Args:
        deal_id: The deal to match against.
        type: cde, investor, or both.
        limit: Max candidates per type (default 50, max 500).
    """
    limit = max(1, min(limit, 500))
    with _session() as session:
        try:
            result = services.list_candidates(session, get_settings(), deal_id, type)
        except OutreachError as exc:
            return {"error": exc.message}
    for key in ("cdes", "investors"):
        if key in result:
            result[key] = result[key][:limit]
    return result


@mcp.tool()
def list_outreach_requests(deal_id: str) -> dict:
    """List outreach requests for a deal with their current status and per-type slot usage."""
    with _session() as session:
        try:
            return services.list_outreach_requests(session, get_settings(), deal_id)
        except OutreachError as exc:
            return {"error": exc.message}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the DealMatch MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
