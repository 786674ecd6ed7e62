from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import format_vnd, to_epoch_ms
from vietbank.errors import AccountLocked, BiometricFailed, BiometricUnavailable
from vietbank.models import BIOMETRIC_FAILED_REASON, UserProfile

logger = logging.getLogger(__name__)

HIGH_VALUE_THRESHOLD_VND = 10_000_000
BIOMETRIC_FAILURE_LIMIT = 5

BIOMETRIC_OK = "ok"
BIOMETRIC_CANCELLED = "cancelled"
BIOMETRIC_UNAVAILABLE = "unavailable"
BIOMETRIC_ERROR = "error"

# Raw plugin codes meaning "no sensor", "nothing enrolled" and "no passcode".
_UNAVAILABLE_PLUGIN_CODES = {1, 3, 14}
_UNAVAILABLE_MARKERS = (
    "not enrolled",
    "no enrolled",
    "no biometric",
    "no fingerprint",
    "no face",
    "not available",
    "unavailable",
    "no hardware",
    "passcode not set",
    "plugin_not_installed",
    "not implemented",
    "no plugin",
)
_USER_CANCEL_MARKERS = ("user cancel", "cancelled by user")


@dataclass(frozen=True)
class BiometricOutcome:
    success: bool
    code: str | None = None
    message: str | None = None


class BiometricCapability(Protocol):
    def verify(self, reason: str) -> BiometricOutcome: ...


def requires_biometric(amount: int) -> bool:
    return amount >= HIGH_VALUE_THRESHOLD_VND


def default_reason(amount: int | None = None) -> str:
    if amount is None:
        return (
            f"High-value transaction (>= {format_vnd(HIGH_VALUE_THRESHOLD_VND)}). "
            "Please confirm with fingerprint or Face ID."
        )
    return f"High-value transaction ({format_vnd(amount)}). Please confirm with fingerprint or Face ID."


def classify_biometric_error(code: int | str | None, message: str | None) -> str:
    """Map a raw platform error to ``cancelled``, ``unavailable`` or ``error``."""
    normalized = (message or "").strip().lower()
    if any(marker in normalized for marker in _USER_CANCEL_MARKERS):
        return BIOMETRIC_CANCELLED

    numeric_code: int | None = None
    if isinstance(code, int) and not isinstance(code, bool):
        numeric_code = code
    elif isinstance(code, str) and code.strip().lstrip("-").isdigit():
        numeric_code = int(code.strip())

    if numeric_code in _UNAVAILABLE_PLUGIN_CODES:
        return BIOMETRIC_UNAVAILABLE
    if normalized in {"cancelled", "canceled"}:
        return BIOMETRIC_UNAVAILABLE
    if any(marker in normalized for marker in _UNAVAILABLE_MARKERS):
        return BIOMETRIC_UNAVAILABLE
    return BIOMETRIC_ERROR


class BiometricGate:
    def __init__(
        self,
        repo: BankingRepository,
        clock: Callable[[], datetime],
        capability: BiometricCapability | None = None,
        failure_limit: int = BIOMETRIC_FAILURE_LIMIT,
    ) -> None:
        self._repo = repo
        self._clock = clock
        self._capability = capability
        self._failure_limit = failure_limit

    def run_biometric_challenge(self, reason: str | None = None) -> BiometricOutcome:
        reason_text = reason if reason and reason.strip() else default_reason()
        if self._capability is None:
            return BiometricOutcome(
                success=False,
                code=BIOMETRIC_UNAVAILABLE,
                message=BiometricUnavailable.default_message,
            )
        return self._capability.verify(reason_text)

    def record_biometric_failure(self, user_id: str, account_number: str) -> tuple[int, bool]:
        def increment(profile: UserProfile) -> UserProfile:
            if profile.is_locked:
                raise AccountLocked()
            return profile.model_copy(update={"biometric_fail_count": profile.biometric_fail_count + 1})

        updated = self._repo.transact_user_profile(user_id, increment)
        fail_count = updated.biometric_fail_count
        if fail_count < self._failure_limit:
            return fail_count, False

        self._repo.lock_user_and_account(
            user_id=user_id,
            account_number=account_number,
            reason=BIOMETRIC_FAILED_REASON,
            locked_at=to_epoch_ms(self._clock()),
        )
        logger.warning(
            "account_locked user_id=%s account_number=%s reason=%s",
            user_id,
            account_number,
            BIOMETRIC_FAILED_REASON,
        )
        return fail_count, True

    def reset_failures(self, user_id: str) -> None:
        def reset(profile: UserProfile) -> UserProfile:
            return profile.model_copy(update={"biometric_fail_count": 0})

        self._repo.transact_user_profile(user_id, reset)

    def evaluate(self, user_id: str, account_number: str, outcome: BiometricOutcome) -> None:
        if outcome.success:
            self.reset_failures(user_id)
            return

        if outcome.code == BIOMETRIC_UNAVAILABLE:
            logger.info("biometric_unavailable user_id=%s", user_id)
            raise BiometricUnavailable(outcome.message or None)

        fail_count, locked = self.record_biometric_failure(user_id, account_number)
        logger.warning(
            "biometric_failed user_id=%s code=%s fail_count=%s",
            user_id,
            outcome.code,
            fail_count,
        )
        if locked:
            raise AccountLocked(
                "Biometric verification failed too many times. Your account has been locked; "
                "please contact the bank."
            )
        raise BiometricFailed(attempts_left=max(self._failure_limit - fail_count, 0))
