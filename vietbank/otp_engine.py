from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import from_epoch_ms, is_valid_otp_format, mask_email, to_epoch_ms
from vietbank.errors import (
    BiometricRequired,
    OtpAttemptsExceeded,
    OtpDeliveryFailed,
    OtpExpired,
    OtpMismatch,
    OtpStillValid,
    TransactionNotFound,
    TransactionNotPending,
)
from vietbank.models import PendingTransaction
from vietbank.otp_delivery import OtpDeliveryChannel

logger = logging.getLogger(__name__)

OTP_CODE_LENGTH = 6
DEFAULT_OTP_TTL_SECONDS = 180
DEFAULT_OTP_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class OtpSettings:
    signing_secret: str
    ttl_seconds: int = DEFAULT_OTP_TTL_SECONDS
    max_attempts: int = DEFAULT_OTP_MAX_ATTEMPTS
    enable_demo_code_in_response: bool = False

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError("OTP_TTL_SECONDS must be greater than 0.")
        if self.max_attempts <= 0:
            raise ValueError("OTP_MAX_ATTEMPTS must be greater than 0.")
        if not self.signing_secret:
            raise ValueError("OTP_SIGNING_SECRET must not be empty.")


@dataclass(frozen=True)
class OtpIssue:
    transaction_id: str
    masked_address: str
    expire_at: datetime
    demo_code: str | None = None


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_otp_code(*, transaction_id: str, code: str, signing_secret: str) -> str:
    payload = f"{transaction_id}:{code}".encode("utf-8")
    return hmac.new(signing_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class OtpEngine:
    def __init__(
        self,
        repo: BankingRepository,
        settings: OtpSettings,
        delivery: OtpDeliveryChannel,
        clock: Callable[[], datetime],
        code_generator: Callable[[], str] = generate_otp_code,
    ) -> None:
        self._repo = repo
        self._settings = settings
        self._delivery = delivery
        self._clock = clock
        self._code_generator = code_generator

    def _hash(self, transaction_id: str, code: str) -> str:
        return hash_otp_code(
            transaction_id=transaction_id,
            code=code,
            signing_secret=self._settings.signing_secret,
        )

    def _load(self, transaction_id: str) -> PendingTransaction:
        transaction = self._repo.get_pending_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound()
        return transaction

    def issue(self, transaction_id: str, purpose: str) -> OtpIssue:
        """Attach a fresh code to the transaction and send it out-of-band.

        If delivery fails the previous OTP fields are restored so a failed send
        never leaves an undeliverable code as the only valid one.
        """
        code = self._code_generator()
        now_ms = to_epoch_ms(self._clock())
        expire_at = now_ms + self._settings.ttl_seconds * 1000
        code_hash = self._hash(transaction_id, code)
        previous: dict[str, object] = {}

        def attach(transaction: PendingTransaction) -> PendingTransaction:
            if transaction.status not in ("PENDING", "AWAITING_BIOMETRIC"):
                raise TransactionNotPending()
            if transaction.requires_biometric and transaction.biometric_verified_at is None:
                raise BiometricRequired()
            if not transaction.delivery_address:
                raise OtpDeliveryFailed("No email address is registered to receive the OTP code.")
            previous.update(
                otp_hash=transaction.otp_hash,
                otp_expire_at=transaction.otp_expire_at,
                otp_attempts_left=transaction.otp_attempts_left,
                status=transaction.status,
            )
            return transaction.model_copy(
                update={
                    "otp_hash": code_hash,
                    "otp_expire_at": expire_at,
                    "otp_attempts_left": self._settings.max_attempts,
                    "status": "PENDING",
                }
            )

        transaction = self._repo.transact_pending_transaction(transaction_id, attach)
        address = transaction.delivery_address

        try:
            self._delivery.send(address=address, code=code, transaction_id=transaction_id, purpose=purpose)
        except OtpDeliveryFailed:
            def restore(current: PendingTransaction) -> PendingTransaction:
                if current.otp_hash != code_hash:
                    return current
                return current.model_copy(update=previous)

            self._repo.transact_pending_transaction(transaction_id, restore)
            logger.error("otp_issue_failed transaction_id=%s purpose=%s", transaction_id, purpose)
            raise

        logger.info(
            "otp_issued transaction_id=%s purpose=%s expire_at=%s",
            transaction_id,
            purpose,
            expire_at,
        )
        return OtpIssue(
            transaction_id=transaction_id,
            masked_address=mask_email(address),
            expire_at=from_epoch_ms(expire_at),
            demo_code=code if self._settings.enable_demo_code_in_response else None,
        )

    def check(self, transaction_id: str, code: str) -> PendingTransaction:
        transaction = self._load(transaction_id)
        if transaction.status == "AWAITING_BIOMETRIC":
            raise BiometricRequired()
        if transaction.status != "PENDING" or transaction.otp_hash is None or transaction.otp_expire_at is None:
            raise TransactionNotPending()

        submitted = code.strip()
        if not is_valid_otp_format(submitted):
            raise OtpMismatch("The OTP code must be exactly 6 digits.")

        if to_epoch_ms(self._clock()) > transaction.otp_expire_at:
            raise OtpExpired()
        if transaction.otp_attempts_left <= 0:
            raise OtpAttemptsExceeded()

        if hmac.compare_digest(self._hash(transaction_id, submitted), transaction.otp_hash):
            return transaction

        stored_hash = transaction.otp_hash

        def consume_attempt(current: PendingTransaction) -> PendingTransaction:
            if current.status != "PENDING" or current.otp_hash != stored_hash:
                raise TransactionNotPending()
            return current.model_copy(update={"otp_attempts_left": max(current.otp_attempts_left - 1, 0)})

        updated = self._repo.transact_pending_transaction(transaction_id, consume_attempt)
        logger.warning(
            "otp_mismatch transaction_id=%s attempts_left=%s",
            transaction_id,
            updated.otp_attempts_left,
        )
        raise OtpMismatch(attempts_left=updated.otp_attempts_left)

    def claim(self, transaction: PendingTransaction) -> PendingTransaction:
        """Move a verified transaction from PENDING to PROCESSING exactly once."""
        stored_hash = transaction.otp_hash
        now_ms = to_epoch_ms(self._clock())

        def take(current: PendingTransaction) -> PendingTransaction:
            if current.status != "PENDING" or current.otp_hash != stored_hash:
                raise TransactionNotPending()
            return current.model_copy(update={"status": "PROCESSING", "processing_started_at": now_ms})

        return self._repo.transact_pending_transaction(transaction.transaction_id, take)

    def resend(self, transaction_id: str, purpose: str) -> OtpIssue:
        transaction = self._load(transaction_id)
        if transaction.status == "AWAITING_BIOMETRIC":
            raise BiometricRequired()
        if transaction.status != "PENDING":
            raise TransactionNotPending()
        if transaction.otp_expire_at is not None and to_epoch_ms(self._clock()) <= transaction.otp_expire_at:
            raise OtpStillValid()
        return self.issue(transaction_id, purpose)
