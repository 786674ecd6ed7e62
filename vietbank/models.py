from __future__ import annotations

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vietbank.database import MalformedRecordError

AccountStatus = Literal["ACTIVE", "LOCKED"]
AccountKind = Literal["PAYMENT", "SAVINGS", "MORTGAGE"]
UserRole = Literal["CUSTOMER", "OFFICER"]
TransactionKind = Literal["CASH_DEPOSIT", "CASH_WITHDRAW", "TRANSFER"]
TransactionStatus = Literal[
    "AWAITING_BIOMETRIC",
    "PENDING",
    "PROCESSING",
    "CONFIRMED",
    "EXPIRED",
    "FAILED",
    "CANCELLED",
]
Direction = Literal["IN", "OUT"]

PIN_FAILED_REASON = "PIN_FAILED"
BIOMETRIC_FAILED_REASON = "BIOMETRIC_FAILED"


class StoreRecord(BaseModel):
    # Stored documents are validated as-is: "1000" is not a balance.
    model_config = ConfigDict(strict=True, extra="ignore")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class Account(StoreRecord):
    account_number: str = Field(..., min_length=1)
    uid: str
    balance: int = Field(..., ge=0)
    status: AccountStatus = "ACTIVE"
    kind: AccountKind = "PAYMENT"
    currency: str = "VND"
    created_at: int = Field(..., ge=0)
    lock_reason: str | None = None
    locked_at: int | None = None
    applied_transaction_ids: list[str] = Field(default_factory=list)

    @property
    def is_locked(self) -> bool:
        return self.status == "LOCKED"


class UserProfile(StoreRecord):
    uid: str
    email: str | None = None
    full_name: str | None = None
    role: UserRole = "CUSTOMER"
    status: AccountStatus = "ACTIVE"
    ekyc_status: str = "PENDING"
    can_transact: bool = False
    pin_hash: str | None = None
    pin_fail_count: int = Field(default=0, ge=0)
    biometric_fail_count: int = Field(default=0, ge=0)
    lock_reason: str | None = None
    locked_at: int | None = None

    @property
    def is_locked(self) -> bool:
        return self.status == "LOCKED"


class PendingTransaction(StoreRecord):
    transaction_id: str
    kind: TransactionKind
    uid: str
    amount: int = Field(..., gt=0)
    source_account_number: str
    destination_account_number: str | None = None
    destination_bank_code: str | None = None
    destination_name: str | None = None
    destination_uid: str | None = None
    is_internal: bool = True
    note: str | None = None
    otp_hash: str | None = None
    otp_expire_at: int | None = None
    otp_attempts_left: int = Field(default=0, ge=0)
    delivery_address: str | None = None
    requires_biometric: bool = False
    biometric_verified_at: int | None = None
    status: TransactionStatus = "PENDING"
    processing_started_at: int | None = None
    debited_at: int | None = None
    credited_at: int | None = None
    created_at: int = Field(..., ge=0)
    executed_at: int | None = None
    failure_reason: str | None = None

    @property
    def is_transfer(self) -> bool:
        return self.kind == "TRANSFER"


class TransactionHistoryEntry(StoreRecord):
    transaction_id: str | None = None
    type: str
    direction: Direction
    amount: int = Field(..., gt=0)
    currency: str = "VND"
    created_at: int = Field(..., ge=0)
    description: str = ""
    balance_after: int | None = None


class Notification(StoreRecord):
    type: str
    title: str
    message: str
    direction: Direction | None = None
    amount: int | None = None
    account_number: str | None = None
    balance_after: int | None = None
    transaction_id: str | None = None
    created_at: int = Field(..., ge=0)
    read: bool = False


class ExternalAccount(StoreRecord):
    bank_code: str
    account_number: str
    full_name: str | None = None
    status: str = "ACTIVE"


RecordT = TypeVar("RecordT", bound=StoreRecord)


def parse_record(model: type[RecordT], raw: Any, key: str) -> RecordT:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise MalformedRecordError(
            f"Stored record '{key}' does not match the {model.__name__} schema "
            f"({exc.error_count()} validation error(s))."
        ) from exc
