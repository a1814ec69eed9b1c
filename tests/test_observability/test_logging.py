"""
Tests for log redaction.
"""

import pytest

from ledgerline.observability.logging import mask_phone, mask_phone_numbers


class TestMaskPhone:

    @pytest.mark.parametrize("raw,masked", [
        ("0712345678", "0712***678"),
        ("+254712345678", "+254712***678"),
        ("254110345678", "254110***678"),
    ])
    def test_formats(self, raw, masked):
        assert mask_phone(raw) == masked

    def test_inside_message(self):
        text = "received Ksh500.00 from JOHN DOE 0712345678 on 15/1/25"
        assert mask_phone(text) == "received Ksh500.00 from JOHN DOE 0712***678 on 15/1/25"

    def test_amounts_and_accounts_untouched(self):
        assert mask_phone("account 37194212345 balance Ksh1,500.00") == "account 37194212345 balance Ksh1,500.00"

    def test_processor_masks_string_values_only(self):
        event = {"event": "ocr_skipped", "phone": "0722000111", "count": 3}
        assert mask_phone_numbers(None, "info", event) == {
            "event": "ocr_skipped", "phone": "0722***111", "count": 3,
        }
