from __future__ import annotations

import json
from unittest.mock import MagicMock

from sqlalchemy import select

from dealmatch.audit import content_hash, log_outreach
from dealmatch.models import LedgerEvent


class TestContentHash:
    def test_known_value(self):
        # FNV-1a 64 of the empty JSON object "{}"
        h = 0xCBF29CE484222325
        for byte in b"{}":
            h = ((h ^ byte) * 0x100000001B3) & 0xFFFFFFFFFFFFFFFF
        assert content_hash({}) == f"{h:016x}"

    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_shape(self):
        h = content_hash({"dealId": "d", "senderId": "s", "recipientIds": ["x"]})
        assert len(h) == 16
        int(h, 16)
        assert h != content_hash({"dealId": "d", "senderId": "s", "recipientIds": ["y"]})


class TestLogOutreach:
    def test_writes_event(self, session_factory, session):
        ok = log_outreach(
            session_factory, sender_id="u-1", deal_id="deal-1", deal_name="Riverside Clinic",
            recipient_type="investor", recipient_ids=["inv-1", "inv-2", "inv-3"],
        )
        assert ok is True
        [event] = session.execute(select(LedgerEvent)).scalars().all()
        assert event.actor_type == "human"
        assert event.entity_type == "outreach"
        assert json.loads(event.payload_json)["recipient_count"] == 3
        assert event.hash == content_hash(
            {"dealId": "deal-1", "senderId": "u-1", "recipientIds": ["inv-1", "inv-2", "inv-3"]}
        )

    def test_failure_is_swallowed(self, caplog):
        broken = MagicMock()
        broken.return_value.commit.side_effect = RuntimeError("ledger_events does not exist")
        ok = log_outreach(
            broken, sender_id="u-1", deal_id="deal-1", deal_name="X",
            recipient_type="cde", recipient_ids=["c"],
        )
        assert ok is False
        broken.return_value.rollback.assert_called_once()
        broken.return_value.close.assert_called_once()
        assert "non-blocking" in caplog.text
