from __future__ import annotations


class BankingError(Exception):
    """Base class for failures surfaced to the caller of a money operation.

    ``kind`` is the stable machine-readable identifier, ``message`` the text
    shown to the customer.
    """

    kind = "BankingError"
    status_code = 400
    default_message = "The operation could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotEligible(BankingError):
    kind = "NotEligible"
    status_code = 403
    default_message = (
        "Your identity verification (eKYC) is not complete or transactions are not enabled. "
        "Please contact the bank."
    )


class AccountLocked(BankingError):
    kind = "AccountLocked"
    status_code = 423
    default_message = "Your account is locked. Please contact the bank to unlock it."


class AccountNotFound(BankingError):
    kind = "AccountNotFound"
    status_code = 404
    default_message = "The account was not found or does not belong to you."


class TransactionNotFound(BankingError):
    kind = "TransactionNotFound"
    status_code = 404
    default_message = "The transaction was not found."


class TransactionNotPending(BankingError):
    kind = "TransactionNotPending"
    status_code = 409
    default_message = "The transaction has already been processed."


class InvalidPin(BankingError):
    kind = "InvalidPin"
    status_code = 401
    default_message = "The transaction PIN is incorrect."

    def __init__(self, message: str | None = None, attempts_left: int | None = None) -> None:
        self.attempts_left = attempts_left
        if message is None and attempts_left is not None:
            message = f"The transaction PIN is incorrect. {attempts_left} attempt(s) remaining."
        super().__init__(message)


class InvalidPinFormat(BankingError):
    kind = "InvalidPinFormat"
    status_code = 400
    default_message = "The transaction PIN must be 4 to 6 digits."


class PinNotSet(BankingError):
    kind = "PinNotSet"
    status_code = 400
    default_message = "You have not set up a transaction PIN yet."


class BiometricRequired(BankingError):
    kind = "BiometricRequired"
    status_code = 403
    default_message = "High-value transaction: biometric confirmation is required before completing it."


class BiometricFailed(BankingError):
    kind = "BiometricFailed"
    status_code = 401
    default_message = "Biometric verification failed."

    def __init__(self, message: str | None = None, attempts_left: int | None = None) -> None:
        self.attempts_left = attempts_left
        if message is None and attempts_left is not None:
            message = f"Biometric verification failed. {attempts_left} attempt(s) remaining."
        super().__init__(message)


class BiometricUnavailable(BankingError):
    kind = "BiometricUnavailable"
    status_code = 422
    default_message = (
        "This device does not support biometrics or none are enrolled. Please use another device."
    )


class OtpMismatch(BankingError):
    kind = "OtpMismatch"
    status_code = 401
    default_message = "The OTP code is incorrect."

    def __init__(self, message: str | None = None, attempts_left: int | None = None) -> None:
        self.attempts_left = attempts_left
        if message is None and attempts_left is not None:
            message = f"The OTP code is incorrect. {attempts_left} attempt(s) remaining."
        super().__init__(message)


class OtpExpired(BankingError):
    kind = "OtpExpired"
    status_code = 410
    default_message = "The OTP code has expired. Please request a new code."


class OtpStillValid(BankingError):
    kind = "OtpStillValid"
    status_code = 429
    default_message = "The current OTP code is still valid. A new code can be sent once it expires."


class OtpAttemptsExceeded(BankingError):
    kind = "OtpAttemptsExceeded"
    status_code = 429
    default_message = "Too many incorrect OTP entries. Request a new code once the current one expires."


class OtpDeliveryFailed(BankingError):
    kind = "OtpDeliveryFailed"
    status_code = 502
    default_message = "The OTP code could not be sent. Please try again."


class InsufficientFunds(BankingError):
    kind = "InsufficientFunds"
    status_code = 422
    default_message = "The account balance is not sufficient for this transaction."


class InvalidAmount(BankingError):
    kind = "InvalidAmount"
    status_code = 400
    default_message = "The amount must be a positive whole number."


class InvalidTransfer(BankingError):
    kind = "InvalidTransfer"
    status_code = 400
    default_message = "The transfer destination is not valid."


class TransferSettlementPending(BankingError):
    kind = "TransferSettlementPending"
    status_code = 503
    default_message = (
        "Your account was debited but crediting the recipient is still pending. "
        "It will be completed automatically; no money has been lost."
    )

    def __init__(self, message: str | None = None, source_balance: int | None = None) -> None:
        self.source_balance = source_balance
        super().__init__(message)


class InvalidRequest(BankingError):
    kind = "InvalidRequest"
    status_code = 400
    default_message = "The request is not valid for this operation."


class TooManyAttempts(BankingError):
    kind = "TooManyAttempts"
    status_code = 429
    default_message = "Too many attempts. Please retry later."

    def __init__(self, message: str | None = None, retry_after: int = 1) -> None:
        self.retry_after = retry_after
        super().__init__(message)
