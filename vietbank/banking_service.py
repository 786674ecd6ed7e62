from __future__ import annotations

from datetime import UTC, datetime
import re

from vietbank.errors import InvalidAmount

_OTP_PATTERN = re.compile(r"^\d{6}$")
_PIN_PATTERN = re.compile(r"^\d{4,6}$")


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def parse_amount(raw_amount: object) -> int:
    """Validate a minor-unit amount.

    Only real integers are accepted. Booleans, floats and numeric strings are
    rejected rather than coerced, so ``"1,000"`` or ``1e6`` never become money.
    """
    if isinstance(raw_amount, bool) or not isinstance(raw_amount, int):
        raise InvalidAmount()
    if raw_amount <= 0:
        raise InvalidAmount()
    return raw_amount


def is_valid_otp_format(code: str) -> bool:
    return bool(_OTP_PATTERN.match(code))


def is_valid_pin_format(pin: str) -> bool:
    return bool(_PIN_PATTERN.match(pin))


def format_transaction_id(sequence: int) -> str:
    if sequence <= 0:
        raise ValueError("Transaction sequence must be greater than 0.")
    return f"TXN{sequence:06d}"


def format_vnd(amount: int) -> str:
    return f"{amount:,}".replace(",", ".") + " VND"


def mask_account_number(account_number: str) -> str:
    normalized = account_number.strip()
    if len(normalized) <= 4:
        return normalized
    return f"{'*' * (len(normalized) - 4)}{normalized[-4:]}"


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, separator, domain = email.partition("@")
    if not separator or not local or not domain:
        return "***"
    if len(local) <= 2:
        return f"{local[0]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"
