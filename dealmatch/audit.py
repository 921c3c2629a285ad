"""Append-only audit trail for outreach activity.

The content hash is a tamper-evidence aid at the application layer (FNV-1a,
64-bit, over canonical JSON). It is not a security boundary.

Writes are best-effort: they use their own session, and failures are logged
and never reach the caller.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from dealmatch.models import LedgerEvent
from dealmatch.utils import run_best_effort

log = logging.getLogger(__name__)

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK = 0xFFFFFFFFFFFFFFFF


def content_hash(data: dict[str, Any]) -> str:
    """16-hex-digit FNV-1a hash of *data* serialized with sorted keys."""
    h = _FNV_OFFSET
    for byte in json.dumps(data, sort_keys=True, default=str).encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK
    return f"{h:016x}"


def append_event(
    session: Session,
    *,
    actor_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    payload: dict[str, Any],
    hash_input: dict[str, Any],
    actor_type: str = "human",
) -> LedgerEvent:
    event = LedgerEvent(
        actor_type=actor_type, actor_id=actor_id,
        entity_type=entity_type, entity_id=entity_id, action=action,
        payload_json=json.dumps(payload, default=str),
        hash=content_hash(hash_input),
    )
    session.add(event)
    session.commit()
    return event


def _write_outreach_event(
    session_factory: Callable[[], Session],
    sender_id: str,
    deal_id: str,
    deal_name: str,
    recipient_type: str,
    recipient_ids: list[str],
) -> None:
    session = session_factory()
    try:
        append_event(
            session, actor_id=sender_id, entity_type="outreach", entity_id=deal_id,
            action="outreach_sent",
            payload={
                "deal_name": deal_name, "recipient_type": recipient_type,
                "recipient_count": len(recipient_ids),
            },
            hash_input={"dealId": deal_id, "senderId": sender_id, "recipientIds": recipient_ids},
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def log_outreach(
    session_factory: Callable[[], Session],
    *,
    sender_id: str,
    deal_id: str,
    deal_name: str,
    recipient_type: str,
    recipient_ids: list[str],
) -> bool:
    """Record one ``outreach_sent`` event. Never raises."""
    return run_best_effort(
        "Audit ledger insert", _write_outreach_event,
        session_factory, sender_id, deal_id, deal_name, recipient_type, list(recipient_ids),
    )
