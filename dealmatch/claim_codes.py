"""Claim codes let an organization that is not yet onboarded claim its seat.

A code is a bearer capability, not an identity proof, so it must come from
an unpredictable source. Uniqueness is enforced by the storage layer.
"""
from __future__ import annotations

import re
import secrets

CLAIM_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I/L
CLAIM_CODE_LENGTH = 8


def issue_claim_code() -> str:
    return "".join(secrets.choice(CLAIM_CODE_ALPHABET) for _ in range(CLAIM_CODE_LENGTH))


def normalize_claim_code(code: str) -> str:
    """Uppercase a user-typed code and drop dashes and whitespace for lookup."""
    return re.sub(r"[-\s]", "", code or "").upper()


def is_valid_claim_code(code: str) -> bool:
    return len(code) == CLAIM_CODE_LENGTH and all(c in CLAIM_CODE_ALPHABET for c in code)
