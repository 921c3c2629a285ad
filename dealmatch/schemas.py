"""Pydantic request/response schemas for the DealMatch API.

Field names follow the JSON the frontend already speaks (camelCase).
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, field_validator


class OutreachCreate(BaseModel):
    recipientIds: list[str]
    recipientType: Literal["cde", "investor"]
    message: str | None = None
    senderName: str | None = None
    senderOrg: str | None = None

    @field_validator("recipientIds")
    @classmethod
    def validate_recipient_ids(cls, v: list[str]) -> list[str]:
        cleaned: list[str] = []
        for rid in v:
            rid = rid.strip()
            if rid and rid not in cleaned:
                cleaned.append(rid)
        if not cleaned:
            raise ValueError("recipientIds must contain at least one id")
        return cleaned


class OutreachPreviewRequest(BaseModel):
    recipientId: str
    recipientType: Literal["cde", "investor"]
    senderName: str | None = None
    senderOrg: str | None = None


class DeliveryResultOut(BaseModel):
    recipientId: str
    recipientType: str
    organizationId: str | None = None
    organizationName: str | None = None
    contactEmail: str | None = None
    status: str
    emailId: str | None = None
    error: str | None = None


class OutreachResponse(BaseModel):
    success: bool
    partialSuccess: bool
    created: int
    skipped: int
    sent: int
    failed: int
    results: list[DeliveryResultOut] = []
    message: str


class RankedCDE(BaseModel):
    id: str
    organizationId: str
    name: str
    missionStatement: str = ""
    geographicFocus: list[Any] = []
    sectorFocus: list[Any] = []
    allocationAvailable: float = 0.0
    isSystemUser: bool = False
    isContacted: bool = False
    matchScore: int = 0
    matchReasons: list[str] = []


class RankedInvestor(BaseModel):
    id: str
    organizationId: str
    name: str
    investorType: str = ""
    programs: list[Any] = []
    geographicFocus: list[Any] = []
    sectors: list[Any] = []
    minInvestment: float | None = None
    maxInvestment: float | None = None
    isSystemUser: bool = False
    isContacted: bool = False
    matchScore: int = 0
    matchReasons: list[str] = []


class OutreachLimits(BaseModel):
    cde: int
    investor: int


class CandidatesOut(BaseModel):
    cdes: list[RankedCDE] = []
    investors: list[RankedInvestor] = []
    limits: OutreachLimits


class SlotUsage(BaseModel):
    used: int
    max: int
    available: int


class OutreachRequestOut(BaseModel):
    id: str
    targetType: str
    targetId: str
    targetOrgId: str
    status: str
    claimCode: str
    message: str | None = None
    requestedAt: str | None = None


class OutreachRequestsOut(BaseModel):
    requests: list[OutreachRequestOut] = []
    slots: dict[str, SlotUsage] = {}


class EmailPreviewOut(BaseModel):
    to: str | None = None
    subject: str
    html: str
    text: str


class ClaimContextOut(BaseModel):
    claimCode: str
    dealId: str
    projectName: str
    recipientType: str
    organizationId: str
    status: str


class ExpireOut(BaseModel):
    expired: int
