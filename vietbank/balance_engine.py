from __future__ import annotations

import logging
from dataclasses import dataclass

from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import parse_amount
from vietbank.database import DatabaseError
from vietbank.errors import AccountLocked, AccountNotFound, BankingError, InsufficientFunds, TransferSettlementPending
from vietbank.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceChange:
    account_number: str
    balance_after: int
    applied: bool


@dataclass(frozen=True)
class TransferResult:
    source: BalanceChange
    destination: BalanceChange | None


def _remember(account: Account, transaction_id: str | None) -> list[str]:
    if transaction_id is None:
        return account.applied_transaction_ids
    return account.applied_transaction_ids + [transaction_id]


class BalanceEngine:
    """Single-key conditional balance updates.

    Every change is one ``transact`` on ``accounts/{n}``. The update function
    re-checks status and funds against the value being replaced, so concurrent
    withdrawals serialize in the store and can never overdraw the account.

    A change made with a ``transaction_id`` leaves that id on the account until
    ``release`` is called, which the caller does only once the transaction has
    reached a final status. Ids are never evicted while a settlement may still
    ask about them.
    """

    def __init__(self, repo: BankingRepository) -> None:
        self._repo = repo

    def has_applied(self, account_number: str, transaction_id: str) -> bool:
        account = self._repo.get_account(account_number)
        if account is None:
            raise AccountNotFound()
        return transaction_id in account.applied_transaction_ids

    def release(self, account_number: str, transaction_id: str) -> None:
        """Drop the applied marker of a transaction that reached a final status."""

        def forget(account: Account) -> Account:
            if transaction_id not in account.applied_transaction_ids:
                return account
            remaining = [applied for applied in account.applied_transaction_ids if applied != transaction_id]
            return account.model_copy(update={"applied_transaction_ids": remaining})

        self._repo.transact_account(account_number, forget)

    def deposit(self, account_number: str, amount: object, transaction_id: str | None = None) -> BalanceChange:
        value = parse_amount(amount)
        applied = True

        def credit(account: Account) -> Account:
            nonlocal applied
            if transaction_id is not None and transaction_id in account.applied_transaction_ids:
                applied = False
                return account
            if account.is_locked:
                raise AccountLocked()
            applied = True
            return account.model_copy(
                update={
                    "balance": account.balance + value,
                    "applied_transaction_ids": _remember(account, transaction_id),
                }
            )

        updated = self._repo.transact_account(account_number, credit)
        if applied:
            logger.info(
                "balance_credited account_number=%s amount=%s balance_after=%s transaction_id=%s",
                account_number,
                value,
                updated.balance,
                transaction_id,
            )
        return BalanceChange(account_number=account_number, balance_after=updated.balance, applied=applied)

    def withdraw(self, account_number: str, amount: object, transaction_id: str | None = None) -> BalanceChange:
        value = parse_amount(amount)
        applied = True

        def debit(account: Account) -> Account:
            nonlocal applied
            if transaction_id is not None and transaction_id in account.applied_transaction_ids:
                applied = False
                return account
            if account.is_locked:
                raise AccountLocked()
            if account.balance < value:
                raise InsufficientFunds()
            applied = True
            return account.model_copy(
                update={
                    "balance": account.balance - value,
                    "applied_transaction_ids": _remember(account, transaction_id),
                }
            )

        try:
            updated = self._repo.transact_account(account_number, debit)
        except InsufficientFunds:
            logger.warning("balance_debit_rejected account_number=%s amount=%s reason=insufficient_funds", account_number, value)
            raise
        if applied:
            logger.info(
                "balance_debited account_number=%s amount=%s balance_after=%s transaction_id=%s",
                account_number,
                value,
                updated.balance,
                transaction_id,
            )
        return BalanceChange(account_number=account_number, balance_after=updated.balance, applied=applied)

    def credit(self, transaction_id: str, account_number: str, amount: object) -> BalanceChange:
        """Idempotent credit keyed by ``transaction_id``; safe to retry."""
        return self.deposit(account_number, amount, transaction_id=transaction_id)

    def transfer(
        self,
        transaction_id: str,
        source_account_number: str,
        destination_account_number: str | None,
        amount: object,
    ) -> TransferResult:
        """Debit the source, then credit the destination.

        The two accounts are separate keys, so a failed credit leaves the
        transfer half-applied. That surfaces as ``TransferSettlementPending``;
        the caller retries ``credit`` with the same transaction id and never
        re-runs the debit.
        """
        source = self.withdraw(source_account_number, amount, transaction_id=transaction_id)
        if destination_account_number is None:
            return TransferResult(source=source, destination=None)

        try:
            destination = self.credit(transaction_id, destination_account_number, amount)
        except (DatabaseError, BankingError) as exc:
            logger.error(
                "transfer_credit_pending transaction_id=%s destination=%s error=%s",
                transaction_id,
                destination_account_number,
                str(exc),
            )
            raise TransferSettlementPending(source_balance=source.balance_after) from exc
        return TransferResult(source=source, destination=destination)
