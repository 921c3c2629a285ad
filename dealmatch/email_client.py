"""Transactional email through the Resend HTTP API.

Handles:
- Rendering the CDE and investor outreach templates
- Optional attachment (base64-encoded)
- Disabled mode for local runs (no network, synthetic message id)

Sends never raise: every outcome comes back as a ``SendResult``.
"""
from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass

import httpx

from dealmatch import templates
from dealmatch.config import Settings
from dealmatch.templates import DealSummary

log = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    id: str | None = None
    error: str | None = None


def _attachment_name(project_name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9 ]", "", project_name).strip()
    stem = re.sub(r"\s+", "_", cleaned)
    return f"{stem}_Project_Profile.pdf"


class EmailClient:
    """Async Resend client. Pass ``transport`` to stub the network in tests."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: list[dict[str, str]] | None = None,
    ) -> SendResult:
        if self.settings.disable_emails:
            log.info("Email disabled, not sending %r to %s", subject, to)
            return SendResult(success=True, id=f"disabled-{int(time.time() * 1000)}")
        if not self.settings.resend_api_key:
            log.error("RESEND_API_KEY not configured")
            return SendResult(success=False, error="Email service not configured - RESEND_API_KEY missing")

        payload: dict = {
            "from": self.settings.email_from, "to": [to],
            "subject": subject, "html": html, "text": text,
        }
        if attachments:
            payload["attachments"] = attachments
        headers = {"Authorization": f"Bearer {self.settings.resend_api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.email_timeout_seconds, transport=self._transport,
            ) as client:
                resp = await client.post(self.settings.resend_api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            log.error("Email send to %s failed: %s", to, exc)
            return SendResult(success=False, error=str(exc) or exc.__class__.__name__)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400:
            error = data.get("message") or data.get("error") or f"HTTP {resp.status_code}"
            log.error("Email provider rejected %r to %s: %s", subject, to, error)
            return SendResult(success=False, error=str(error))
        log.info("Email sent to %s (id=%s)", to, data.get("id"))
        return SendResult(success=True, id=data.get("id"))

    def _attach(self, project_name: str, attachment: bytes | None) -> list[dict[str, str]] | None:
        if not attachment:
            return None
        return [{
            "filename": _attachment_name(project_name),
            "content": base64.b64encode(attachment).decode("ascii"),
        }]

    async def send_allocation_request(
        self,
        to: str,
        *,
        contact_name: str,
        cde_name: str,
        cde_allocation_amount: str,
        cde_allocation_year: int,
        sponsor_name: str,
        sponsor_contact_name: str,
        project_name: str,
        deal: DealSummary,
        claim_url: str,
        claim_code: str = "",
        attachment: bytes | None = None,
    ) -> SendResult:
        subject, html, text = templates.allocation_request(
            contact_name=contact_name, cde_name=cde_name,
            cde_allocation_amount=cde_allocation_amount, cde_allocation_year=cde_allocation_year,
            sponsor_name=sponsor_name, sponsor_contact_name=sponsor_contact_name,
            project_name=project_name, deal=deal, claim_url=claim_url, claim_code=claim_code,
        )
        return await self.send(to, subject, html, text, self._attach(project_name, attachment))

    async def send_investment_request(
        self,
        to: str,
        *,
        contact_name: str,
        investor_name: str,
        sponsor_name: str,
        sponsor_contact_name: str,
        project_name: str,
        deal: DealSummary,
        claim_url: str,
        claim_code: str = "",
        attachment: bytes | None = None,
    ) -> SendResult:
        subject, html, text = templates.investment_request(
            contact_name=contact_name, investor_name=investor_name,
            sponsor_name=sponsor_name, sponsor_contact_name=sponsor_contact_name,
            project_name=project_name, deal=deal, claim_url=claim_url, claim_code=claim_code,
        )
        return await self.send(to, subject, html, text, self._attach(project_name, attachment))
