from __future__ import annotations

import unittest
from datetime import UTC, datetime

from vietbank.banking_service import (
    format_transaction_id,
    format_vnd,
    from_epoch_ms,
    is_valid_otp_format,
    is_valid_pin_format,
    mask_account_number,
    mask_email,
    parse_amount,
    to_epoch_ms,
)
from vietbank.errors import InvalidAmount


class BankingServiceTests(unittest.TestCase):
    def test_parse_amount_accepts_positive_integers(self) -> None:
        self.assertEqual(parse_amount(500_000), 500_000)

    def test_parse_amount_rejects_malformed_values(self) -> None:
        for raw in (0, -1, 1.5, 1000.0, "1000", "1,000", True, None):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidAmount):
                    parse_amount(raw)

    def test_otp_format_is_exactly_six_digits(self) -> None:
        self.assertTrue(is_valid_otp_format("012345"))
        self.assertFalse(is_valid_otp_format("12345"))
        self.assertFalse(is_valid_otp_format("1234567"))
        self.assertFalse(is_valid_otp_format("12a456"))

    def test_pin_format_allows_four_to_six_digits(self) -> None:
        self.assertTrue(is_valid_pin_format("1234"))
        self.assertTrue(is_valid_pin_format("123456"))
        self.assertFalse(is_valid_pin_format("123"))
        self.assertFalse(is_valid_pin_format("12 34"))

    def test_format_transaction_id_pads_sequence(self) -> None:
        self.assertEqual(format_transaction_id(1), "TXN000001")
        self.assertEqual(format_transaction_id(1234567), "TXN1234567")
        with self.assertRaises(ValueError):
            format_transaction_id(0)

    def test_format_vnd_uses_dot_grouping(self) -> None:
        self.assertEqual(format_vnd(20_000_000), "20.000.000 VND")
        self.assertEqual(format_vnd(500), "500 VND")

    def test_mask_account_number_keeps_last_four_digits(self) -> None:
        self.assertEqual(mask_account_number("1111222233"), "******2233")
        self.assertEqual(mask_account_number("123"), "123")

    def test_mask_email(self) -> None:
        self.assertEqual(mask_email("tuan2@gmail.com"), "t***2@gmail.com")
        self.assertEqual(mask_email("ab@gmail.com"), "a***@gmail.com")
        self.assertEqual(mask_email("not-an-email"), "***")
        self.assertEqual(mask_email(None), "")

    def test_epoch_ms_round_trip_is_utc(self) -> None:
        moment = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        self.assertEqual(from_epoch_ms(to_epoch_ms(moment)), moment)
        self.assertEqual(to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1)), 1000)


if __name__ == "__main__":
    unittest.main()
