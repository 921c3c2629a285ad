from __future__ import annotations

import uuid
from datetime import datetime, UTC

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dealmatch.utils import json_list

TARGET_TYPES = ("cde", "investor")
ACTIVE_STATUSES = ("pending", "accepted")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Sponsor(Base):
    __tablename__ = "sponsors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    organization_name: Mapped[str] = mapped_column(String(300), default="")


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_name: Mapped[str] = mapped_column(String(300), nullable=False)
    sponsor_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("sponsors.id"), nullable=True)
    sponsor_organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    state: Mapped[str] = mapped_column(String(2), default="")
    city: Mapped[str] = mapped_column(String(200), default="")
    address: Mapped[str] = mapped_column(String(300), default="")
    census_tract: Mapped[str] = mapped_column(String(20), default="")
    programs_json: Mapped[str] = mapped_column(Text, default="[]")  # first entry is the primary program
    requested_amount: Mapped[float] = mapped_column(Float, default=0.0)
    total_project_cost: Mapped[float] = mapped_column(Float, default=0.0)
    financing_gap: Mapped[float] = mapped_column(Float, default=0.0)
    community_impact: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default="available")

    sponsor: Mapped[Sponsor | None] = relationship("Sponsor")

    @property
    def programs(self) -> list[str]:
        return [p for p in json_list(self.programs_json) if isinstance(p, str)]

    @property
    def primary_program(self) -> str:
        programs = self.programs
        return programs[0] if programs else "NMTC"


class CDE(Base):
    """One row per CDE allocation year; rows sharing organization_id are one organization."""
    __tablename__ = "cdes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    status: Mapped[str] = mapped_column(String(30), default="active")
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    primary_states_json: Mapped[str] = mapped_column(Text, default="[]")
    target_sectors_json: Mapped[str] = mapped_column(Text, default="[]")
    amount_remaining: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_allocation: Mapped[float | None] = mapped_column(Float, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    innovative_activities: Mapped[str] = mapped_column(Text, default="")
    predominant_market: Mapped[str] = mapped_column(Text, default="")

    @property
    def primary_states(self) -> list[str]:
        return json_list(self.primary_states_json)

    @property
    def target_sectors(self) -> list[str]:
        return json_list(self.target_sectors_json)

    @property
    def canonical_org_id(self) -> str:
        return self.organization_id or self.id

    @property
    def allocation_available(self) -> float:
        return float(self.amount_remaining or self.total_allocation or 0)


class Investor(Base):
    __tablename__ = "investors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    organization_name: Mapped[str] = mapped_column(String(300), default="")
    investor_type: Mapped[str] = mapped_column(String(50), default="")
    status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    target_credit_types_json: Mapped[str] = mapped_column(Text, default="[]")
    target_states_json: Mapped[str] = mapped_column(Text, default="[]")
    target_sectors_json: Mapped[str] = mapped_column(Text, default="[]")
    min_investment: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_investment: Mapped[float | None] = mapped_column(Float, nullable=True)
    primary_contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    primary_contact_email: Mapped[str | None] = mapped_column(String(300), nullable=True)

    @property
    def target_credit_types(self) -> list[str]:
        return json_list(self.target_credit_types_json)

    @property
    def target_states(self) -> list[str]:
        return json_list(self.target_states_json)

    @property
    def target_sectors(self) -> list[str]:
        return json_list(self.target_sectors_json)

    @property
    def canonical_org_id(self) -> str:
        return self.organization_id or self.id


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    role_type: Mapped[str] = mapped_column(String(30), default="")  # sponsor | cde | investor | admin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class MatchRequest(Base):
    """Outreach record: one invitation from a sponsor to a candidate for one deal."""
    __tablename__ = "match_requests"
    __table_args__ = (
        UniqueConstraint("deal_id", "target_type", "target_id", name="uq_match_request_target"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sponsor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    deal_id: Mapped[str] = mapped_column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)  # cde | investor
    target_id: Mapped[str] = mapped_column(String(36), nullable=False)
    target_org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | accepted | declined | expired
    claim_code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    deal_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String(30), default="match")
    event: Mapped[str] = mapped_column(String(60), default="")
    title: Mapped[str] = mapped_column(String(300), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DealChannel(Base):
    """Shared communication space between a sponsor and its outreach targets for one deal."""
    __tablename__ = "deal_channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    deal_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    channel_type: Mapped[str] = mapped_column(String(20), default="deal")
    invite_code: Mapped[str] = mapped_column(String(16), default="")

    members: Mapped[list[ChannelMember]] = relationship(
        "ChannelMember", back_populates="channel", cascade="all, delete-orphan",
    )


class ChannelMember(Base):
    __tablename__ = "channel_members"
    __table_args__ = (UniqueConstraint("user_id", "channel_id", name="uq_channel_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_id: Mapped[str] = mapped_column(String(36), ForeignKey("deal_channels.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="GUEST")  # ADMIN | GUEST

    channel: Mapped[DealChannel] = relationship("DealChannel", back_populates="members")


class LedgerEvent(Base):
    """Append-only audit trail entry."""
    __tablename__ = "ledger_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(30), default="human")
    actor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    hash: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
