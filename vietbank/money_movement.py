from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from vietbank.balance_engine import BalanceEngine
from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import format_vnd, mask_account_number, parse_amount, to_epoch_ms
from vietbank.biometric import BiometricGate, BiometricOutcome, requires_biometric
from vietbank.database import DatabaseError
from vietbank.eligibility import ensure_can_transact, ensure_not_locked, resolve_owned_account
from vietbank.errors import (
    AccountLocked,
    BankingError,
    BiometricRequired,
    InsufficientFunds,
    InvalidTransfer,
    OtpDeliveryFailed,
    TransactionNotFound,
    TransactionNotPending,
    TransferSettlementPending,
)
from vietbank.ledger import LedgerRecorder
from vietbank.models import (
    Account,
    Notification,
    PendingTransaction,
    TransactionHistoryEntry,
    TransactionKind,
    UserProfile,
)
from vietbank.otp_engine import OtpEngine, OtpIssue
from vietbank.pin_guard import PinGuard

logger = logging.getLogger(__name__)

# A PROCESSING transaction younger than this may still have its debit in flight.
SETTLEMENT_GRACE_SECONDS = 60

_OPEN_STATUSES = ("AWAITING_BIOMETRIC", "PENDING")


@dataclass(frozen=True)
class TransferRequest:
    source_account_number: str
    destination_account_number: str
    amount: Any
    destination_bank_code: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class CashResult:
    transaction_id: str
    balance_after: int


@dataclass(frozen=True)
class InitiateResult:
    transaction_id: str
    status: str
    biometric_required: bool
    masked_address: str | None = None
    expire_at: datetime | None = None
    demo_code: str | None = None


@dataclass(frozen=True)
class ConfirmResult:
    transaction_id: str
    status: str
    new_balance: int


class MoneyMovementService:
    """Runs every money operation through the gates before balances move.

    Direct cash operations: eligibility -> PIN -> biometric (high value) ->
    balance engine -> ledger. OTP operations stop after issuing the code and
    finish in ``confirm_otp``.
    """

    def __init__(
        self,
        repo: BankingRepository,
        pin_guard: PinGuard,
        biometric_gate: BiometricGate,
        otp_engine: OtpEngine,
        balance_engine: BalanceEngine,
        ledger: LedgerRecorder,
        clock: Callable[[], datetime],
    ) -> None:
        self._repo = repo
        self._pin_guard = pin_guard
        self._biometric_gate = biometric_gate
        self._otp_engine = otp_engine
        self._balance_engine = balance_engine
        self._ledger = ledger
        self._clock = clock

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    def _gate(self, user_id: str, account_number: str) -> tuple[UserProfile, Account]:
        ensure_not_locked(self._repo.get_user_profile(user_id))
        profile = ensure_can_transact(self._repo, user_id)
        account = resolve_owned_account(self._repo, user_id, account_number)
        ensure_not_locked(profile, account)
        return profile, account

    def _owned_transaction(self, user_id: str, transaction_id: str) -> PendingTransaction:
        transaction = self._repo.get_pending_transaction(transaction_id)
        if transaction is None or transaction.uid != user_id:
            raise TransactionNotFound()
        return transaction

    # Direct cash operations

    def deposit(self, user_id: str, account_number: str, amount: Any, pin: str) -> CashResult:
        self._gate(user_id, account_number)
        value = parse_amount(amount)
        self._pin_guard.check_pin(user_id, account_number, pin)

        transaction_id = self._repo.next_transaction_id()
        change = self._balance_engine.deposit(account_number, value)
        now_ms = self._now_ms()
        self._ledger.record_transaction(
            account_number,
            TransactionHistoryEntry(
                transaction_id=transaction_id,
                type="CASH_DEPOSIT",
                direction="IN",
                amount=value,
                currency=self._repo.config.default_currency,
                created_at=now_ms,
                description="Cash deposit",
                balance_after=change.balance_after,
            ),
        )
        self._notify_balance_change(
            user_id=user_id,
            account_number=account_number,
            direction="IN",
            amount=value,
            balance_after=change.balance_after,
            transaction_id=transaction_id,
            created_at=now_ms,
        )
        logger.info("cash_deposit_completed transaction_id=%s account_number=%s", transaction_id, account_number)
        return CashResult(transaction_id=transaction_id, balance_after=change.balance_after)

    def withdraw(
        self,
        user_id: str,
        account_number: str,
        amount: Any,
        pin: str,
        biometric: BiometricOutcome | None = None,
    ) -> CashResult:
        self._gate(user_id, account_number)
        value = parse_amount(amount)
        self._pin_guard.check_pin(user_id, account_number, pin)
        if requires_biometric(value):
            if biometric is None:
                raise BiometricRequired()
            self._biometric_gate.evaluate(user_id, account_number, biometric)

        transaction_id = self._repo.next_transaction_id()
        change = self._balance_engine.withdraw(account_number, value)
        now_ms = self._now_ms()
        self._ledger.record_transaction(
            account_number,
            TransactionHistoryEntry(
                transaction_id=transaction_id,
                type="CASH_WITHDRAW",
                direction="OUT",
                amount=value,
                currency=self._repo.config.default_currency,
                created_at=now_ms,
                description="Cash withdrawal",
                balance_after=change.balance_after,
            ),
        )
        self._notify_balance_change(
            user_id=user_id,
            account_number=account_number,
            direction="OUT",
            amount=value,
            balance_after=change.balance_after,
            transaction_id=transaction_id,
            created_at=now_ms,
        )
        logger.info("cash_withdraw_completed transaction_id=%s account_number=%s", transaction_id, account_number)
        return CashResult(transaction_id=transaction_id, balance_after=change.balance_after)

    # OTP operations

    def initiate_withdrawal(
        self,
        user_id: str,
        account_number: str,
        amount: Any,
        pin: str,
        biometric: BiometricOutcome | None = None,
    ) -> InitiateResult:
        profile, account = self._gate(user_id, account_number)
        value = parse_amount(amount)
        if value > account.balance:
            raise InsufficientFunds()
        self._pin_guard.check_pin(user_id, account_number, pin)

        return self._open_transaction(
            profile=profile,
            kind="CASH_WITHDRAW",
            amount=value,
            source_account_number=account_number,
            biometric=biometric,
            fields={},
        )

    def initiate_transfer(
        self,
        user_id: str,
        request: TransferRequest,
        pin: str,
        biometric: BiometricOutcome | None = None,
    ) -> InitiateResult:
        profile, account = self._gate(user_id, request.source_account_number)
        value = parse_amount(request.amount)
        fields = self._resolve_destination(account, request)
        if value > account.balance:
            raise InsufficientFunds()
        self._pin_guard.check_pin(user_id, account.account_number, pin)

        return self._open_transaction(
            profile=profile,
            kind="TRANSFER",
            amount=value,
            source_account_number=account.account_number,
            biometric=biometric,
            fields=fields,
        )

    def _resolve_destination(self, source: Account, request: TransferRequest) -> dict[str, Any]:
        destination_number = (request.destination_account_number or "").strip()
        if not destination_number:
            raise InvalidTransfer("Please enter the destination account number.")
        bank_code = (request.destination_bank_code or self._repo.config.internal_bank_code).strip().upper()
        note = (request.note or "").strip() or None

        if not self._repo.is_internal_bank(bank_code):
            external = self._repo.get_external_account(bank_code, destination_number)
            if external is None or external.status != "ACTIVE":
                raise InvalidTransfer("The destination account was not found at the selected bank.")
            return {
                "destination_account_number": destination_number,
                "destination_bank_code": bank_code,
                "destination_name": external.full_name,
                "is_internal": False,
                "note": note,
            }

        if destination_number == source.account_number:
            raise InvalidTransfer("You cannot transfer money to the same account.")
        destination = self._repo.get_account(destination_number)
        if destination is None:
            raise InvalidTransfer("The destination account was not found.")
        if destination.is_locked:
            raise InvalidTransfer("The destination account cannot receive transfers.")
        owner = self._repo.get_user_profile(destination.uid)
        return {
            "destination_account_number": destination_number,
            "destination_bank_code": bank_code,
            "destination_name": owner.full_name if owner is not None else None,
            "destination_uid": destination.uid,
            "is_internal": True,
            "note": note,
        }

    def _open_transaction(
        self,
        *,
        profile: UserProfile,
        kind: TransactionKind,
        amount: int,
        source_account_number: str,
        biometric: BiometricOutcome | None,
        fields: dict[str, Any],
    ) -> InitiateResult:
        needs_biometric = requires_biometric(amount)
        verified_at: int | None = None
        if needs_biometric and biometric is not None:
            self._biometric_gate.evaluate(profile.uid, source_account_number, biometric)
            verified_at = self._now_ms()

        awaiting = needs_biometric and verified_at is None
        transaction = PendingTransaction(
            transaction_id=self._repo.next_transaction_id(),
            kind=kind,
            uid=profile.uid,
            amount=amount,
            source_account_number=source_account_number,
            delivery_address=profile.email,
            requires_biometric=needs_biometric,
            biometric_verified_at=verified_at,
            status="AWAITING_BIOMETRIC" if awaiting else "PENDING",
            created_at=self._now_ms(),
            **fields,
        )
        self._repo.save_pending_transaction(transaction)
        logger.info(
            "transaction_initiated transaction_id=%s kind=%s amount=%s requires_biometric=%s",
            transaction.transaction_id,
            kind,
            amount,
            needs_biometric,
        )

        if awaiting:
            return InitiateResult(
                transaction_id=transaction.transaction_id,
                status=transaction.status,
                biometric_required=True,
            )

        try:
            issue = self._otp_engine.issue(transaction.transaction_id, kind)
        except OtpDeliveryFailed:
            # The client never learns this id, so nothing can resend for it.
            self._fail_open_transaction(transaction.transaction_id, "OTP_DELIVERY_FAILED")
            raise
        return self._initiate_result(issue, biometric_required=needs_biometric)

    def _initiate_result(self, issue: OtpIssue, *, biometric_required: bool) -> InitiateResult:
        return InitiateResult(
            transaction_id=issue.transaction_id,
            status="PENDING",
            biometric_required=biometric_required,
            masked_address=issue.masked_address,
            expire_at=issue.expire_at,
            demo_code=issue.demo_code,
        )

    def _fail_open_transaction(self, transaction_id: str, reason: str) -> None:
        def fail(current: PendingTransaction) -> PendingTransaction:
            if current.status not in _OPEN_STATUSES:
                return current
            return current.model_copy(update={"status": "FAILED", "failure_reason": reason, "otp_hash": None})

        self._repo.transact_pending_transaction(transaction_id, fail)
        logger.warning("transaction_failed transaction_id=%s reason=%s", transaction_id, reason)

    def submit_biometric(self, user_id: str, transaction_id: str, outcome: BiometricOutcome) -> InitiateResult:
        transaction = self._owned_transaction(user_id, transaction_id)
        if transaction.status != "AWAITING_BIOMETRIC":
            raise TransactionNotPending()
        self._gate(user_id, transaction.source_account_number)
        self._biometric_gate.evaluate(user_id, transaction.source_account_number, outcome)

        verified_at = self._now_ms()

        def mark_verified(current: PendingTransaction) -> PendingTransaction:
            if current.status != "AWAITING_BIOMETRIC":
                raise TransactionNotPending()
            return current.model_copy(update={"biometric_verified_at": verified_at, "status": "PENDING"})

        self._repo.transact_pending_transaction(transaction_id, mark_verified)
        # A failed send here leaves the transaction PENDING without a code; resend issues one.
        issue = self._otp_engine.issue(transaction_id, transaction.kind)
        return self._initiate_result(issue, biometric_required=True)

    def resend_otp(self, user_id: str, transaction_id: str) -> OtpIssue:
        transaction = self._owned_transaction(user_id, transaction_id)
        self._gate(user_id, transaction.source_account_number)
        return self._otp_engine.resend(transaction_id, transaction.kind)

    def cancel(self, user_id: str, transaction_id: str) -> PendingTransaction:
        self._owned_transaction(user_id, transaction_id)

        def close(current: PendingTransaction) -> PendingTransaction:
            if current.status not in _OPEN_STATUSES:
                raise TransactionNotPending()
            return current.model_copy(update={"status": "CANCELLED", "otp_hash": None})

        cancelled = self._repo.transact_pending_transaction(transaction_id, close)
        logger.info("transaction_cancelled transaction_id=%s", transaction_id)
        return cancelled

    def confirm_otp(self, user_id: str, transaction_id: str, code: str) -> ConfirmResult:
        transaction = self._owned_transaction(user_id, transaction_id)
        self._gate(user_id, transaction.source_account_number)

        verified = self._otp_engine.check(transaction_id, code)
        claimed = self._otp_engine.claim(verified)
        destination_number = claimed.destination_account_number if claimed.is_transfer and claimed.is_internal else None

        try:
            if claimed.is_transfer:
                result = self._balance_engine.transfer(
                    transaction_id,
                    claimed.source_account_number,
                    destination_number,
                    claimed.amount,
                )
                source_balance = result.source.balance_after
                destination_balance = result.destination.balance_after if result.destination else None
            else:
                change = self._balance_engine.withdraw(
                    claimed.source_account_number,
                    claimed.amount,
                    transaction_id=transaction_id,
                )
                source_balance = change.balance_after
                destination_balance = None
        except (InsufficientFunds, AccountLocked) as exc:
            self._close_processing(transaction_id, status="FAILED", failure_reason=exc.kind)
            raise
        except TransferSettlementPending as exc:
            now_ms = self._now_ms()
            self._update_processing(transaction_id, {"debited_at": now_ms})
            self._record_debit(claimed, exc.source_balance, now_ms)
            raise

        now_ms = self._now_ms()
        self._close_processing(
            transaction_id,
            status="CONFIRMED",
            debited_at=now_ms,
            credited_at=now_ms if destination_balance is not None else None,
        )
        self._record_debit(claimed, source_balance, now_ms)
        if destination_balance is not None:
            self._record_credit(claimed, destination_balance, now_ms)
        self._release_applied(claimed)
        logger.info(
            "transaction_confirmed transaction_id=%s kind=%s amount=%s",
            transaction_id,
            claimed.kind,
            claimed.amount,
        )
        return ConfirmResult(transaction_id=transaction_id, status="CONFIRMED", new_balance=source_balance)

    def settle_transfer(self, transaction_id: str) -> PendingTransaction:
        """Finish a transaction left in PROCESSING by an interrupted confirmation.

        The debit is never re-run: if it was not applied the transaction fails,
        otherwise only the idempotent credit is retried.
        """
        transaction = self._repo.get_pending_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound()
        if transaction.status != "PROCESSING":
            raise TransactionNotPending()

        now_ms = self._now_ms()
        if transaction.debited_at is None:
            if not self._balance_engine.has_applied(transaction.source_account_number, transaction_id):
                started = transaction.processing_started_at or transaction.created_at
                if now_ms - started < SETTLEMENT_GRACE_SECONDS * 1000:
                    logger.info("settlement_deferred transaction_id=%s reason=debit_in_flight", transaction_id)
                    return transaction
                return self._close_processing(transaction_id, status="FAILED", failure_reason="DEBIT_NOT_APPLIED")
            transaction = self._update_processing(transaction_id, {"debited_at": now_ms})
            self._record_debit(transaction, None, now_ms)

        destination_balance: int | None = None
        if transaction.is_transfer and transaction.is_internal and transaction.credited_at is None:
            change = self._balance_engine.credit(
                transaction_id,
                transaction.destination_account_number or "",
                transaction.amount,
            )
            destination_balance = change.balance_after

        settled = self._close_processing(
            transaction_id,
            status="CONFIRMED",
            debited_at=transaction.debited_at,
            credited_at=now_ms if destination_balance is not None else transaction.credited_at,
        )
        if destination_balance is not None:
            self._record_credit(settled, destination_balance, now_ms)
        self._release_applied(settled)
        logger.info("transaction_settled transaction_id=%s", transaction_id)
        return settled

    def _release_applied(self, transaction: PendingTransaction) -> None:
        accounts = [transaction.source_account_number]
        if transaction.is_transfer and transaction.is_internal and transaction.destination_account_number:
            accounts.append(transaction.destination_account_number)
        for account_number in accounts:
            try:
                self._balance_engine.release(account_number, transaction.transaction_id)
            except (DatabaseError, BankingError):
                # A leftover marker only keeps a replay of this id a no-op.
                logger.exception(
                    "applied_marker_release_failed transaction_id=%s account_number=%s",
                    transaction.transaction_id,
                    account_number,
                )

    def _update_processing(self, transaction_id: str, update: dict[str, Any]) -> PendingTransaction:
        def apply(current: PendingTransaction) -> PendingTransaction:
            if current.status != "PROCESSING":
                raise TransactionNotPending()
            return current.model_copy(update=update)

        return self._repo.transact_pending_transaction(transaction_id, apply)

    def _close_processing(
        self,
        transaction_id: str,
        *,
        status: str,
        failure_reason: str | None = None,
        debited_at: int | None = None,
        credited_at: int | None = None,
    ) -> PendingTransaction:
        now_ms = self._now_ms()
        update: dict[str, Any] = {"status": status, "executed_at": now_ms, "otp_hash": None}
        if failure_reason is not None:
            update["failure_reason"] = failure_reason
        if debited_at is not None:
            update["debited_at"] = debited_at
        if credited_at is not None:
            update["credited_at"] = credited_at
        closed = self._update_processing(transaction_id, update)
        if status == "FAILED":
            logger.warning("transaction_failed transaction_id=%s reason=%s", transaction_id, failure_reason)
        return closed

    # History and notifications

    def _record_debit(self, transaction: PendingTransaction, balance_after: int | None, created_at: int) -> None:
        if transaction.is_transfer:
            entry_type = "TRANSFER_OUT"
            bank = "" if transaction.is_internal else f" ({transaction.destination_bank_code})"
            description = transaction.note or (
                f"Transfer to {mask_account_number(transaction.destination_account_number or '')}{bank}"
            )
        else:
            entry_type = "CASH_WITHDRAW"
            description = "Cash withdrawal"

        self._ledger.record_transaction(
            transaction.source_account_number,
            TransactionHistoryEntry(
                transaction_id=transaction.transaction_id,
                type=entry_type,
                direction="OUT",
                amount=transaction.amount,
                currency=self._repo.config.default_currency,
                created_at=created_at,
                description=description,
                balance_after=balance_after,
            ),
        )
        self._notify_balance_change(
            user_id=transaction.uid,
            account_number=transaction.source_account_number,
            direction="OUT",
            amount=transaction.amount,
            balance_after=balance_after,
            transaction_id=transaction.transaction_id,
            created_at=created_at,
        )

    def _record_credit(self, transaction: PendingTransaction, balance_after: int, created_at: int) -> None:
        destination = transaction.destination_account_number or ""
        self._ledger.record_transaction(
            destination,
            TransactionHistoryEntry(
                transaction_id=transaction.transaction_id,
                type="TRANSFER_IN",
                direction="IN",
                amount=transaction.amount,
                currency=self._repo.config.default_currency,
                created_at=created_at,
                description=transaction.note
                or f"Transfer from {mask_account_number(transaction.source_account_number)}",
                balance_after=balance_after,
            ),
        )
        if transaction.destination_uid:
            self._notify_balance_change(
                user_id=transaction.destination_uid,
                account_number=destination,
                direction="IN",
                amount=transaction.amount,
                balance_after=balance_after,
                transaction_id=transaction.transaction_id,
                created_at=created_at,
            )

    def _notify_balance_change(
        self,
        *,
        user_id: str,
        account_number: str,
        direction: str,
        amount: int,
        balance_after: int | None,
        transaction_id: str,
        created_at: int,
    ) -> None:
        sign = "+" if direction == "IN" else "-"
        message = f"Account {mask_account_number(account_number)} {sign}{format_vnd(amount)}."
        if balance_after is not None:
            message += f" Balance: {format_vnd(balance_after)}."
        self._ledger.notify_user(
            user_id,
            Notification(
                type="BALANCE_CHANGE",
                title="Balance increased" if direction == "IN" else "Balance decreased",
                message=message,
                direction=direction,
                amount=amount,
                account_number=account_number,
                balance_after=balance_after,
                transaction_id=transaction_id,
                created_at=created_at,
            ),
        )

    # Account management

    def set_transaction_pin(self, user_id: str, pin: str) -> None:
        self._pin_guard.set_pin(user_id, pin)

    def list_history(self, user_id: str, account_number: str) -> list[TransactionHistoryEntry]:
        resolve_owned_account(self._repo, user_id, account_number)
        return self._repo.list_history(account_number)
