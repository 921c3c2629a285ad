from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select

from dealmatch import dispatcher
from dealmatch.dispatcher import DispatchContext, claim_url, dispatch
from dealmatch.models import ChannelMember, DealChannel, Notification, User
from dealmatch.repository import get_deal
from dealmatch.services import build_deal_summary


def _ctx(session, recipient_type="cde", claim_codes=None) -> DispatchContext:
    deal = get_deal(session, "deal-1")
    return DispatchContext(
        deal=deal, summary=build_deal_summary(deal), recipient_type=recipient_type,
        sender_id="u-sponsor", sponsor_org_id="org-sponsor",
        sponsor_org_name="Riverside Partners", sponsor_contact_name="Sam Sponsor",
        base_url="https://app.example.test/", claim_codes=claim_codes or {},
    )


class TestClaimUrl:
    def test_with_code(self):
        assert claim_url("https://x.test/", "ABCD2345", "cde", "org", "d") == "https://x.test/claim?code=ABCD2345"

    def test_signup_fallback(self):
        assert claim_url("https://x.test", "", "investor", "org-1", "deal-1") == (
            "https://x.test/signup?ref=investor&org=org-1&deal=deal-1"
        )


class TestDeliveryStatuses:
    @pytest.mark.asyncio
    async def test_each_status_in_request_order(self, seeded, settings, email_cls):
        email = email_cls(settings, fail_for={"dee@delta.test"})
        outcome = await dispatch(
            seeded, email, _ctx(seeded, claim_codes={"cde-b": "BETA2345"}),
            ["cde-d", "ghost", "cde-b", "cde-c"],
        )
        assert [r.recipient_id for r in outcome.results] == ["cde-d", "ghost", "cde-b", "cde-c"]
        assert [r.status for r in outcome.results] == [
            "provider_error", "recipient_not_found", "sent", "no_contact_email",
        ]
        d, ghost, b, c = outcome.results
        assert d.error == "Mailbox unavailable"
        assert ghost.error == "CDE not found"
        assert ghost.organization_id is None
        assert b.email_id and b.organization_id == "org-cde-b" and b.organization_name == "Beta Fund"
        assert c.error == "No contact email on recipient profile"
        assert outcome.sent == 1 and outcome.failed == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, seeded, settings, email_cls):
        email = email_cls(settings, raise_for={"dee@delta.test"})
        outcome = await dispatch(seeded, email, _ctx(seeded), ["cde-d", "cde-b"])
        assert outcome.results[0].status == "processing_error"
        assert "transport exploded" in outcome.results[0].error
        assert outcome.results[1].status == "sent"

    @pytest.mark.asyncio
    async def test_investor_not_found_message(self, seeded, settings, email_cls):
        outcome = await dispatch(seeded, email_cls(settings), _ctx(seeded, "investor"), ["nobody"])
        assert outcome.results[0].error == "Investor not found"


class TestEmailContent:
    @pytest.mark.asyncio
    async def test_cde_email_uses_latest_year_and_claim_link(self, seeded, settings, email_cls):
        email = email_cls(settings)
        await dispatch(seeded, email, _ctx(seeded, claim_codes={"org-cde-a": "ALPHA234"}), ["org-cde-a"])
        msg = email.outbox[0]
        assert msg["to"] == "ada@alpha.test"
        assert msg["subject"] == "Allocation Request: Riverside Clinic from Riverside Partners"
        assert "$1.5M" in msg["text"] and "(2024)" in msg["text"]
        assert "https://app.example.test/claim?code=ALPHA234" in msg["text"]

    @pytest.mark.asyncio
    async def test_investor_email_without_code_uses_signup_link(self, seeded, settings, email_cls):
        email = email_cls(settings)
        outcome = await dispatch(seeded, email, _ctx(seeded, "investor"), ["inv-1"])
        assert outcome.results[0].status == "sent"
        msg = email.outbox[0]
        assert msg["subject"] == "Investment Request: Riverside Clinic from Riverside Partners"
        assert "Hi Pat Prairie" in msg["text"]
        assert "signup?ref=investor&org=org-inv-1&deal=deal-1" in msg["text"]

    @pytest.mark.asyncio
    async def test_contact_name_falls_back_to_org_name(self, seeded, settings, email_cls):
        email = email_cls(settings)
        await dispatch(seeded, email, _ctx(seeded), ["cde-b"])
        assert "Hi Beta Fund" in email.outbox[0]["text"]


class TestSameOrganization:
    @pytest.mark.asyncio
    async def test_one_email_per_organization(self, seeded, settings, email_cls):
        email = email_cls(settings)
        outcome = await dispatch(
            seeded, email, _ctx(seeded, claim_codes={"cde-a-2023": "ALPHA234", "org-cde-a": "ALPHA234"}),
            ["cde-a-2023", "cde-d", "org-cde-a"],
        )
        assert sorted(m["to"] for m in email.outbox) == ["ada@alpha.test", "dee@delta.test"]
        assert [r.recipient_id for r in outcome.results] == ["cde-a-2023", "cde-d", "org-cde-a"]
        first, _, alias = outcome.results
        assert alias.status == "sent" and alias.email_id == first.email_id
        assert outcome.sent == 3


class TestOnboardedProvisioning:
    @pytest.mark.asyncio
    async def test_notifications_and_channel_for_onboarded_org(self, seeded, settings, email_cls):
        await dispatch(seeded, email_cls(settings), _ctx(seeded), ["cde-a-2023"])

        notes = seeded.execute(select(Notification)).scalars().all()
        assert [(n.user_id, n.priority, n.event) for n in notes] == [
            ("u-cde-a", "high", "match_request_received"),
        ]
        assert notes[0].title == "Allocation request from Riverside Partners"
        assert notes[0].body == 'Riverside Partners has requested NMTC allocation for "Riverside Clinic"'

        channel = seeded.execute(select(DealChannel)).scalars().one()
        assert channel.name == "Riverside Clinic" and channel.owner_id == "u-sponsor"
        roles = {m.user_id: m.role for m in channel.members}
        assert roles == {"u-sponsor": "ADMIN", "u-sponsor-2": "ADMIN", "u-cde-a": "GUEST"}

    @pytest.mark.asyncio
    async def test_channel_is_reused_and_membership_upserted(self, seeded, settings, email_cls):
        seeded.add(User(id="u-inv-1", organization_id="org-inv-1", name="Pat", role_type="investor"))
        seeded.commit()
        email = email_cls(settings)
        await dispatch(seeded, email, _ctx(seeded), ["cde-a-2024"])
        await dispatch(seeded, email, _ctx(seeded), ["org-cde-a"])
        await dispatch(seeded, email, _ctx(seeded, "investor"), ["inv-1"])

        assert len(seeded.execute(select(DealChannel)).scalars().all()) == 1
        members = seeded.execute(select(ChannelMember.user_id, ChannelMember.role)).all()
        assert sorted(members) == [
            ("u-cde-a", "GUEST"), ("u-inv-1", "GUEST"), ("u-sponsor", "ADMIN"), ("u-sponsor-2", "ADMIN"),
        ]
        bodies = [n.body for n in seeded.execute(select(Notification)).scalars()]
        assert bodies[-1] == 'Riverside Partners has requested investment for "Riverside Clinic"'

    @pytest.mark.asyncio
    async def test_not_onboarded_gets_email_only(self, seeded, settings, email_cls):
        outcome = await dispatch(seeded, email_cls(settings), _ctx(seeded), ["cde-d"])
        assert outcome.results[0].status == "sent"
        assert seeded.execute(select(Notification)).scalars().all() == []
        assert seeded.execute(select(DealChannel)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_provisioning_failure_does_not_block_email(self, seeded, settings, email_cls):
        with patch.object(dispatcher, "_ensure_deal_channel", side_effect=RuntimeError("db down")):
            outcome = await dispatch(seeded, email_cls(settings), _ctx(seeded), ["cde-a-2023"])
        assert outcome.results[0].status == "sent"
        # the savepoint rolled back the notifications written alongside the channel
        assert seeded.execute(select(Notification)).scalars().all() == []


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_order_preserved_when_completion_order_differs(self, seeded, settings, email_cls):
        class SlowFirst(email_cls):
            async def send(self, to, subject, html, text=None, attachments=None):
                if to == "ada@alpha.test":
                    await asyncio.sleep(0.05)
                return await super().send(to, subject, html, text, attachments)

        email = SlowFirst(settings)
        outcome = await dispatch(seeded, email, _ctx(seeded), ["cde-a-2024", "cde-d", "cde-b"], concurrency=3)
        assert [r.recipient_id for r in outcome.results] == ["cde-a-2024", "cde-d", "cde-b"]
        assert email.outbox[-1]["to"] == "ada@alpha.test"

    @pytest.mark.asyncio
    async def test_timeout_reports_unfinished_recipients(self, seeded, settings, email_cls):
        class Hangs(email_cls):
            async def send(self, to, subject, html, text=None, attachments=None):
                if to == "info@beta.test":
                    await asyncio.sleep(10)
                return await super().send(to, subject, html, text, attachments)

        outcome = await dispatch(seeded, Hangs(settings), _ctx(seeded), ["cde-d", "cde-b"], timeout=0.2)
        assert outcome.results[0].status == "sent"
        assert outcome.results[1].status == "processing_error"
        assert outcome.results[1].error == "Delivery timed out"
        assert outcome.sent + outcome.failed == 2
