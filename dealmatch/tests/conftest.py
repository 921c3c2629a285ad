"""Shared fixtures: in-memory database, seeded deal/candidates, fake email client."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealmatch.config import Settings
from dealmatch.email_client import EmailClient, SendResult
from dealmatch.models import CDE, Base, Deal, Investor, Sponsor, User
from dealmatch.services import CallerIdentity


class FakeEmailClient(EmailClient):
    """Renders the real templates but records sends instead of calling the provider."""

    def __init__(self, settings: Settings, fail_for=(), raise_for=()):
        super().__init__(settings)
        self.outbox: list[dict] = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)

    async def send(self, to, subject, html, text=None, attachments=None):
        if to in self.raise_for:
            raise RuntimeError(f"transport exploded for {to}")
        self.outbox.append({"to": to, "subject": subject, "html": html, "text": text,
                            "attachments": attachments})
        if to in self.fail_for:
            return SendResult(success=False, error="Mailbox unavailable")
        return SendResult(success=True, id=f"msg-{len(self.outbox)}")


@pytest.fixture()
def engine():
    """SQLite in-memory database shared by all connections (StaticPool)."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_path=tmp_path / "dealmatch.db",
        base_url="https://app.example.test",
        email_from="DealMatch <noreply@example.test>",
        resend_api_key="re_test_key",
        disable_emails=False,
        blacklisted_orgs=[],
        max_active_requests=3,
        request_expiry_days=7,
        delivery_concurrency=4,
        delivery_timeout_seconds=5.0,
    )


@pytest.fixture()
def email(settings) -> FakeEmailClient:
    return FakeEmailClient(settings)


@pytest.fixture()
def caller() -> CallerIdentity:
    return CallerIdentity(user_id="u-sponsor", organization_id="org-sponsor", organization_type="sponsor")


@pytest.fixture()
def seeded(session):
    """One sponsor-owned deal in Illinois plus a handful of CDEs and investors.

    - org-cde-a: two allocation-year rows (2023, 2024), onboarded via one active user
    - cde-b: national focus, only a total allocation on record
    - cde-c: Texas, no contact email
    - cde-d: Illinois, not onboarded
    - inv-1: NMTC investor in Illinois; inv-2: LIHTC, national
    """
    session.add_all([
        Sponsor(id="sp-1", organization_id="org-sponsor", organization_name="Riverside Partners"),
        User(id="u-sponsor", organization_id="org-sponsor", name="Sam Sponsor",
             email="sam@riverside.test", role_type="sponsor"),
        User(id="u-sponsor-2", organization_id="org-sponsor", name="Robin Sponsor",
             email="robin@riverside.test", role_type="sponsor"),
        Deal(id="deal-1", project_name="Riverside Clinic", sponsor_id="sp-1",
             sponsor_organization_id="org-sponsor", state="IL", city="Chicago",
             census_tract="17031010100", programs_json='["NMTC", "HTC"]',
             requested_amount=5_000_000, total_project_cost=12_000_000, financing_gap=1_500_000,
             community_impact="Primary care for 8,000 patients a year."),
        CDE(id="cde-a-2023", organization_id="org-cde-a", name="Alpha CDE", year=2023,
            primary_states_json='["IL"]', amount_remaining=10_000_000,
            contact_name="Ada Alpha", contact_email="ada@alpha.test"),
        CDE(id="cde-a-2024", organization_id="org-cde-a", name="Alpha CDE", year=2024,
            primary_states_json='["IL", "WI"]', amount_remaining=1_500_000,
            contact_name="Ada Alpha", contact_email="ada@alpha.test",
            innovative_activities="Rural health centers"),
        CDE(id="cde-b", organization_id="org-cde-b", name="Beta Fund", year=2022,
            primary_states_json='["National"]', total_allocation=2_000_000,
            contact_email="info@beta.test"),
        CDE(id="cde-c", organization_id="org-cde-c", name="Gamma Capital", year=2024,
            primary_states_json='["TX"]', amount_remaining=0, total_allocation=5_000_000),
        CDE(id="cde-d", organization_id="org-cde-d", name="Delta Community Fund", year=2024,
            primary_states_json='["IL"]', amount_remaining=250_000,
            contact_name="Dee Delta", contact_email="dee@delta.test"),
        User(id="u-cde-a", organization_id="org-cde-a", name="Ada Alpha",
             email="ada@alpha.test", role_type="cde"),
        Investor(id="inv-1", organization_id="org-inv-1", organization_name="Prairie Bank",
                 investor_type="bank", target_credit_types_json='["NMTC"]',
                 target_states_json='["IL"]', primary_contact_name="Pat Prairie",
                 primary_contact_email="pat@prairie.test", min_investment=1_000_000,
                 max_investment=10_000_000),
        Investor(id="inv-2", organization_id="org-inv-2", organization_name="Coastal Equity",
                 investor_type="fund", status="active", target_credit_types_json='["LIHTC"]',
                 target_states_json='["ALL"]', primary_contact_email="deals@coastal.test"),
    ])
    session.commit()
    return session


@pytest.fixture()
def email_cls():
    """The fake client class, for tests that need custom send behavior."""
    return FakeEmailClient
