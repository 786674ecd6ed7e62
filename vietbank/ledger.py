from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from vietbank.banking_repository import BankingRepository
from vietbank.banking_service import to_epoch_ms
from vietbank.database import DatabaseError
from vietbank.models import Notification, TransactionHistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_ATTEMPTS = 3


class LedgerRecorder:
    """Append history entries and notifications after balances have moved.

    The balance change is already committed when these run, so a write failure
    must not turn a completed transaction into an error for the customer. Failed
    appends are retried, then parked on the ``reconciliation`` list.
    """

    def __init__(
        self,
        repo: BankingRepository,
        clock: Callable[[], datetime],
        max_attempts: int = DEFAULT_LEDGER_ATTEMPTS,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than 0.")
        self._repo = repo
        self._clock = clock
        self._max_attempts = max_attempts

    def record_transaction(self, account_number: str, entry: TransactionHistoryEntry) -> str | None:
        return self._append_with_retry(
            target="history",
            owner=account_number,
            payload=entry.to_record(),
            append=lambda: self._repo.append_history(account_number, entry),
        )

    def notify_user(self, user_id: str, notification: Notification) -> str | None:
        return self._append_with_retry(
            target="notification",
            owner=user_id,
            payload=notification.to_record(),
            append=lambda: self._repo.append_notification(user_id, notification),
        )

    def _append_with_retry(
        self,
        *,
        target: str,
        owner: str,
        payload: dict[str, Any],
        append: Callable[[], str],
    ) -> str | None:
        last_error: DatabaseError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return append()
            except DatabaseError as exc:
                last_error = exc
                logger.warning(
                    "ledger_append_retry target=%s owner=%s attempt=%s error=%s",
                    target,
                    owner,
                    attempt,
                    str(exc),
                )

        logger.error(
            "ledger_append_failed target=%s owner=%s transaction_id=%s error=%s",
            target,
            owner,
            payload.get("transaction_id"),
            str(last_error),
        )
        try:
            self._repo.append_reconciliation_item(
                {
                    "target": target,
                    "owner": owner,
                    "payload": payload,
                    "error": str(last_error),
                    "created_at": to_epoch_ms(self._clock()),
                }
            )
        except DatabaseError:
            logger.exception("ledger_reconciliation_failed target=%s owner=%s", target, owner)
        return None
