from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Callable

from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import is_valid_pin_format, to_epoch_ms
from vietbank.database import DatabaseError
from vietbank.errors import AccountLocked, BankingError, InvalidPin, InvalidPinFormat, NotEligible, PinNotSet
from vietbank.models import PIN_FAILED_REASON, UserProfile

logger = logging.getLogger(__name__)

PIN_FAILURE_LIMIT = 5


def hash_pin(*, user_id: str, pin: str, signing_secret: str) -> str:
    payload = f"{user_id}:{pin}".encode("utf-8")
    return hmac.new(signing_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class PinGuard:
    def __init__(
        self,
        repo: BankingRepository,
        signing_secret: str,
        clock: Callable[[], datetime],
        failure_limit: int = PIN_FAILURE_LIMIT,
    ) -> None:
        self._repo = repo
        self._signing_secret = signing_secret
        self._clock = clock
        self._failure_limit = failure_limit

    def set_pin(self, user_id: str, pin: str) -> None:
        if not is_valid_pin_format(pin):
            raise InvalidPinFormat()

        pin_hash = hash_pin(user_id=user_id, pin=pin, signing_secret=self._signing_secret)

        def store_pin(profile: UserProfile) -> UserProfile:
            if profile.is_locked:
                raise AccountLocked()
            return profile.model_copy(update={"pin_hash": pin_hash, "pin_fail_count": 0})

        if self._repo.get_user_profile(user_id) is None:
            raise NotEligible("Customer information was not found.")
        self._repo.transact_user_profile(user_id, store_pin)
        logger.info("transaction_pin_set user_id=%s", user_id)

    def verify_pin(self, user_id: str, pin: str) -> None:
        """Compare ``pin`` with the stored credential.

        A mismatch increments ``pin_fail_count`` before ``InvalidPin`` is raised;
        a match resets it to 0. Locked profiles fail without touching the counter.
        """
        profile = self._repo.get_user_profile(user_id)
        if profile is None:
            raise NotEligible("Customer information was not found.")
        if profile.is_locked:
            raise AccountLocked()
        if not profile.pin_hash:
            raise PinNotSet()

        candidate = hash_pin(user_id=user_id, pin=pin.strip(), signing_secret=self._signing_secret)
        if hmac.compare_digest(candidate, profile.pin_hash):
            if profile.pin_fail_count:
                self._repo.transact_user_profile(
                    user_id,
                    lambda current: current.model_copy(update={"pin_fail_count": 0}),
                )
            return

        def increment(current: UserProfile) -> UserProfile:
            if current.is_locked:
                raise AccountLocked()
            return current.model_copy(update={"pin_fail_count": current.pin_fail_count + 1})

        updated = self._repo.transact_user_profile(user_id, increment)
        attempts_left = max(self._failure_limit - updated.pin_fail_count, 0)
        logger.warning(
            "pin_verification_failed user_id=%s fail_count=%s attempts_left=%s",
            user_id,
            updated.pin_fail_count,
            attempts_left,
        )
        raise InvalidPin(attempts_left=attempts_left)

    def lock_if_exceeded(self, user_id: str, account_number: str) -> bool:
        profile = self._repo.get_user_profile(user_id)
        if profile is None or profile.pin_fail_count < self._failure_limit:
            return False

        self._repo.lock_user_and_account(
            user_id=user_id,
            account_number=account_number,
            reason=PIN_FAILED_REASON,
            locked_at=to_epoch_ms(self._clock()),
        )
        logger.warning(
            "account_locked user_id=%s account_number=%s reason=%s",
            user_id,
            account_number,
            PIN_FAILED_REASON,
        )
        return True

    def check_pin(self, user_id: str, account_number: str, pin: str) -> None:
        try:
            self.verify_pin(user_id, pin)
        except InvalidPin as exc:
            # The failure count is already persisted; locking is best-effort.
            try:
                locked = self.lock_if_exceeded(user_id, account_number)
            except (DatabaseError, BankingError):
                logger.exception("pin_lock_check_failed user_id=%s account_number=%s", user_id, account_number)
                raise exc
            if locked:
                raise AccountLocked(
                    "Too many incorrect PIN entries. Your account has been locked; please contact the bank."
                ) from exc
            raise
