"""Email template rendering for sponsor outreach.

Templates:
- Allocation request (sponsor -> CDE)
- Investment request (sponsor -> investor)

Each renders to ``(subject, html, text)``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from dealmatch.utils import format_currency

log = logging.getLogger(__name__)


@dataclass
class DealSummary:
    """The inline deal card carried by every outreach email."""
    city: str = ""
    state: str = ""
    address: str = ""
    census_tract: str = ""
    program_type: str = "NMTC"
    allocation: float = 0.0
    project_cost: float = 0.0
    financing_gap: float = 0.0
    community_impact: str = ""
    programs: list[str] = field(default_factory=list)

    @property
    def location(self) -> str:
        return ", ".join(p for p in (self.city, self.state) if p)


_DEAL_CARD_HTML = """\
<table class="deal-card">
  <tr><td>Location</td><td>{{ deal.location or "Not specified" }}</td></tr>
  {% if deal.census_tract %}<tr><td>Census tract</td><td>{{ deal.census_tract }}</td></tr>{% endif %}
  <tr><td>Program</td><td>{{ deal.program_type }}</td></tr>
  <tr><td>Request</td><td>{{ deal.allocation | money }}</td></tr>
  {% if deal.project_cost %}<tr><td>Total project cost</td><td>{{ deal.project_cost | money }}</td></tr>{% endif %}
  {% if deal.financing_gap %}<tr><td>Financing gap</td><td>{{ deal.financing_gap | money }}</td></tr>{% endif %}
</table>
{% if deal.community_impact %}<p class="impact">{{ deal.community_impact }}</p>{% endif %}
"""

_DEAL_CARD_TEXT = """\
Location: {{ deal.location or "Not specified" }}
{% if deal.census_tract %}Census tract: {{ deal.census_tract }}
{% endif %}Program: {{ deal.program_type }}
Request: {{ deal.allocation | money }}
{% if deal.project_cost %}Total project cost: {{ deal.project_cost | money }}
{% endif %}{% if deal.community_impact %}
{{ deal.community_impact }}
{% endif %}"""

_CLAIM_HTML = """\
<p><a class="cta" href="{{ claim_url }}">Review the project</a></p>
{% if claim_code %}<p>Your claim code: <strong>{{ claim_code }}</strong></p>{% endif %}
"""

_CLAIM_TEXT = """\
Review the project: {{ claim_url }}
{% if claim_code %}Your claim code: {{ claim_code }}
{% endif %}"""

_TEMPLATES: dict[str, str] = {
    "deal_card.html": _DEAL_CARD_HTML,
    "deal_card.txt": _DEAL_CARD_TEXT,
    "claim.html": _CLAIM_HTML,
    "claim.txt": _CLAIM_TEXT,
    "allocation_request.html": """\
<p>Hi {{ contact_name }},</p>
<p>{{ sponsor_contact_name }} at <strong>{{ sponsor_name }}</strong> is requesting an
{{ deal.program_type }} allocation from {{ cde_name }} for <strong>{{ project_name }}</strong>.</p>
<p>{{ cde_name }} has {{ cde_allocation_amount }} in available allocation ({{ cde_allocation_year }}).</p>
{% include "deal_card.html" %}
{% include "claim.html" %}
""",
    "allocation_request.txt": """\
Hi {{ contact_name }},

{{ sponsor_contact_name }} at {{ sponsor_name }} is requesting an {{ deal.program_type }} allocation from {{ cde_name }} for {{ project_name }}.
{{ cde_name }} has {{ cde_allocation_amount }} in available allocation ({{ cde_allocation_year }}).

{% include "deal_card.txt" %}
{% include "claim.txt" %}""",
    "investment_request.html": """\
<p>Hi {{ contact_name }},</p>
<p>{{ sponsor_contact_name }} at <strong>{{ sponsor_name }}</strong> is seeking
{{ deal.program_type }} investment from {{ investor_name }} for <strong>{{ project_name }}</strong>.</p>
{% include "deal_card.html" %}
{% include "claim.html" %}
""",
    "investment_request.txt": """\
Hi {{ contact_name }},

{{ sponsor_contact_name }} at {{ sponsor_name }} is seeking {{ deal.program_type }} investment from {{ investor_name }} for {{ project_name }}.

{% include "deal_card.txt" %}
{% include "claim.txt" %}""",
}

_env: Environment | None = None


def _get_env() -> Environment:
    """Get or create the Jinja2 environment."""
    global _env
    if _env is None:
        _env = Environment(
            loader=DictLoader(_TEMPLATES),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        _env.filters["money"] = format_currency
    return _env


def _render(name: str, context: dict) -> tuple[str, str]:
    env = _get_env()
    return env.get_template(f"{name}.html").render(**context), env.get_template(f"{name}.txt").render(**context)


def allocation_request(
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
) -> tuple[str, str, str]:
    subject = f"Allocation Request: {project_name} from {sponsor_name}"
    html, text = _render("allocation_request", {
        "contact_name": contact_name, "cde_name": cde_name,
        "cde_allocation_amount": cde_allocation_amount, "cde_allocation_year": cde_allocation_year,
        "sponsor_name": sponsor_name, "sponsor_contact_name": sponsor_contact_name,
        "project_name": project_name, "deal": deal,
        "claim_url": claim_url, "claim_code": claim_code,
    })
    return subject, html, text


def investment_request(
    *,
    contact_name: str,
    investor_name: str,
    sponsor_name: str,
    sponsor_contact_name: str,
    project_name: str,
    deal: DealSummary,
    claim_url: str,
    claim_code: str = "",
) -> tuple[str, str, str]:
    subject = f"Investment Request: {project_name} from {sponsor_name}"
    html, text = _render("investment_request", {
        "contact_name": contact_name, "investor_name": investor_name,
        "sponsor_name": sponsor_name, "sponsor_contact_name": sponsor_contact_name,
        "project_name": project_name, "deal": deal,
        "claim_url": claim_url, "claim_code": claim_code,
    })
    return subject, html, text
