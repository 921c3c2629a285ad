from __future__ import annotations

from dealmatch.claim_codes import (
    CLAIM_CODE_ALPHABET,
    CLAIM_CODE_LENGTH,
    is_valid_claim_code,
    issue_claim_code,
    normalize_claim_code,
)


class TestClaimCodes:
    def test_alphabet_excludes_ambiguous_characters(self):
        assert len(CLAIM_CODE_ALPHABET) == 31
        for ch in "0O1IL":
            assert ch not in CLAIM_CODE_ALPHABET

    def test_issued_codes_have_fixed_shape(self):
        for _ in range(200):
            code = issue_claim_code()
            assert len(code) == CLAIM_CODE_LENGTH == 8
            assert set(code) <= set(CLAIM_CODE_ALPHABET)
            assert is_valid_claim_code(code)

    def test_codes_vary(self):
        assert len({issue_claim_code() for _ in range(50)}) > 45

    def test_normalize(self):
        assert normalize_claim_code("  abcd2345 ") == "ABCD2345"
        assert normalize_claim_code(None) == ""
        assert normalize_claim_code("abcd-2345") == "ABCD2345"
        assert normalize_claim_code("ABCD 2345\t") == "ABCD2345"

    def test_validation_rejects_bad_codes(self):
        assert not is_valid_claim_code("ABC")
        assert not is_valid_claim_code("ABCDEFG0")
        assert not is_valid_claim_code("abcdefgh")
