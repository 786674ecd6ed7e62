from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any, Callable, TypeVar

from vietbank.banking_service import format_transaction_id
from vietbank.database import DatabaseError, DocumentStore
from vietbank.errors import AccountNotFound, TransactionNotFound
from vietbank.models import (
    Account,
    ExternalAccount,
    Notification,
    PendingTransaction,
    StoreRecord,
    TransactionHistoryEntry,
    UserProfile,
    parse_record,
)

TRANSACTION_COUNTER_KEY = "counters/transactionCounter"
RECONCILIATION_KEY = "reconciliation"

RecordT = TypeVar("RecordT", bound=StoreRecord)


def account_key(account_number: str) -> str:
    return f"accounts/{account_number}"


def user_key(user_id: str) -> str:
    return f"users/{user_id}"


def transaction_key(transaction_id: str) -> str:
    return f"transactions/{transaction_id}"


def history_key(account_number: str) -> str:
    return f"accountTransactions/{account_number}"


def notifications_key(user_id: str) -> str:
    return f"notifications/{user_id}"


def external_account_key(bank_code: str, account_number: str) -> str:
    return f"externalAccounts/{bank_code}/{account_number}"


@dataclass(frozen=True)
class BankingConfig:
    default_currency: str = "VND"
    internal_bank_code: str = "VIETBANK"

    @classmethod
    def from_env(cls) -> "BankingConfig":
        currency = os.getenv("DEFAULT_CURRENCY", "VND").strip() or "VND"
        bank_code = os.getenv("INTERNAL_BANK_CODE", "VIETBANK").strip() or "VIETBANK"
        return cls(default_currency=currency, internal_bank_code=bank_code)


class BankingRepository:
    def __init__(self, store: DocumentStore, config: BankingConfig) -> None:
        self.store = store
        self.config = config

    def _read(self, model: type[RecordT], key: str) -> RecordT | None:
        raw = self.store.get(key)
        if raw is None:
            return None
        return parse_record(model, raw, key)

    def _transact(
        self,
        model: type[RecordT],
        key: str,
        mutate: Callable[[RecordT], RecordT],
    ) -> RecordT | None:
        # ``mutate`` may raise to abort; nothing is written in that case.
        def apply(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None:
                return None
            return mutate(parse_record(model, current, key)).to_record()

        result = self.store.transact(key, apply)
        if not result.committed or result.value is None:
            return None
        return parse_record(model, result.value, key)

    def is_internal_bank(self, bank_code: str | None) -> bool:
        if not bank_code:
            return True
        return bank_code.strip().upper() == self.config.internal_bank_code.upper()

    def get_account(self, account_number: str) -> Account | None:
        return self._read(Account, account_key(account_number))

    def save_account(self, account: Account) -> None:
        self.store.set(account_key(account.account_number), account.to_record())

    def transact_account(self, account_number: str, mutate: Callable[[Account], Account]) -> Account:
        account = self._transact(Account, account_key(account_number), mutate)
        if account is None:
            raise AccountNotFound()
        return account

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        return self._read(UserProfile, user_key(user_id))

    def save_user_profile(self, profile: UserProfile) -> None:
        self.store.set(user_key(profile.uid), profile.to_record())

    def transact_user_profile(
        self,
        user_id: str,
        mutate: Callable[[UserProfile], UserProfile],
    ) -> UserProfile:
        profile = self._transact(UserProfile, user_key(user_id), mutate)
        if profile is None:
            raise DatabaseError(f"User profile '{user_id}' could not be updated.")
        return profile

    def get_external_account(self, bank_code: str, account_number: str) -> ExternalAccount | None:
        return self._read(ExternalAccount, external_account_key(bank_code, account_number))

    def save_external_account(self, account: ExternalAccount) -> None:
        self.store.set(external_account_key(account.bank_code, account.account_number), account.to_record())

    def get_pending_transaction(self, transaction_id: str) -> PendingTransaction | None:
        return self._read(PendingTransaction, transaction_key(transaction_id))

    def save_pending_transaction(self, transaction: PendingTransaction) -> None:
        self.store.set(transaction_key(transaction.transaction_id), transaction.to_record())

    def transact_pending_transaction(
        self,
        transaction_id: str,
        mutate: Callable[[PendingTransaction], PendingTransaction],
    ) -> PendingTransaction:
        transaction = self._transact(PendingTransaction, transaction_key(transaction_id), mutate)
        if transaction is None:
            raise TransactionNotFound()
        return transaction

    def next_transaction_id(self) -> str:
        def increment(current: dict[str, Any] | None) -> dict[str, Any]:
            value = (current or {}).get("value")
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                value = 0
            return {"value": value + 1}

        result = self.store.transact(TRANSACTION_COUNTER_KEY, increment)
        if not result.committed or result.value is None:
            raise DatabaseError("Failed to allocate a transaction id.")
        return format_transaction_id(int(result.value["value"]))

    def lock_user_and_account(
        self,
        *,
        user_id: str,
        account_number: str,
        reason: str,
        locked_at: int,
    ) -> None:
        def lock_user(profile: UserProfile) -> UserProfile:
            if profile.is_locked:
                return profile
            return profile.model_copy(update={"status": "LOCKED", "lock_reason": reason, "locked_at": locked_at})

        def lock_account(account: Account) -> Account:
            if account.is_locked:
                return account
            return account.model_copy(update={"status": "LOCKED", "lock_reason": reason, "locked_at": locked_at})

        self.transact_user_profile(user_id, lock_user)
        self.transact_account(account_number, lock_account)

    def append_history(self, account_number: str, entry: TransactionHistoryEntry) -> str:
        return self.store.append(history_key(account_number), entry.to_record())

    def list_history(self, account_number: str) -> list[TransactionHistoryEntry]:
        key = history_key(account_number)
        return [parse_record(TransactionHistoryEntry, row, key) for row in self.store.list_items(key)]

    def append_notification(self, user_id: str, notification: Notification) -> str:
        return self.store.append(notifications_key(user_id), notification.to_record())

    def list_notifications(self, user_id: str) -> list[Notification]:
        key = notifications_key(user_id)
        return [parse_record(Notification, row, key) for row in self.store.list_items(key)]

    def append_reconciliation_item(self, payload: dict[str, Any]) -> str:
        return self.store.append(RECONCILIATION_KEY, payload)
