"""Tests for voucher validation."""

from datetime import date
from decimal import Decimal

import pytest

from linkist.vouchers import quote_voucher, validate_voucher


class TestValidateVoucher:
    def test_founder50(self):
        result = validate_voucher("FOUNDER50")
        assert result.valid is True
        assert result.discount_percent == 50
        assert result.code == "FOUNDER50"

    @pytest.mark.parametrize("code", ["founder50", "Founder50", "  FOUNDER50 "])
    def test_case_insensitive(self, code):
        assert validate_voucher(code) == validate_voucher("FOUNDER50")

    def test_unknown_code(self):
        result = validate_voucher("NOTACODE")
        assert result.valid is False
        assert result.discount_percent == 0
        assert result.message == "Invalid voucher code"

    @pytest.mark.parametrize("code", ["", "   ", None])
    def test_empty_code(self, code):
        result = validate_voucher(code)
        assert result.valid is False
        assert result.discount_percent == 0

    def test_expired_code(self):
        result = validate_voucher("LAUNCH15", today=date(2025, 1, 1))
        assert result.valid is False
        assert result.discount_percent == 0
        assert "expired" in result.message

    def test_code_valid_until_its_last_day(self):
        result = validate_voucher("LAUNCH15", today=date(2024, 12, 31))
        assert result.valid is True
        assert result.discount_percent == 15

    def test_full_discount_code(self):
        assert validate_voucher("FOUNDERFREE").discount_percent == 100


class TestQuoteVoucher:
    def test_welcome20(self):
        quote = quote_voucher("WELCOME20", Decimal("207.90"))
        assert quote.final_amount == Decimal("166.32")
        assert quote.discount_amount == Decimal("41.58")

    def test_invalid_code_leaves_amount(self):
        quote = quote_voucher("NOPE", Decimal("207.90"))
        assert quote.result.valid is False
        assert quote.final_amount == Decimal("207.90")
        assert quote.discount_amount == Decimal("0.00")
