from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Literal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from supabase import Client, create_client

from vietbank.balance_engine import BalanceEngine
from vietbank.banking_repository import BankingConfig, BankingRepository
from vietbank.banking_service import from_epoch_ms
from vietbank.biometric import BiometricGate, BiometricOutcome
from vietbank.database import (
    DatabaseError,
    DocumentStore,
    InMemoryDocumentStore,
    SupabaseConfig,
    SupabaseDocumentStore,
)
from vietbank.errors import (
    BankingError,
    InvalidRequest,
    TooManyAttempts,
    TransactionNotFound,
    TransferSettlementPending,
)
from vietbank.ledger import LedgerRecorder
from vietbank.models import PendingTransaction, TransactionHistoryEntry
from vietbank.money_movement import InitiateResult, MoneyMovementService, TransferRequest
from vietbank.otp_delivery import build_delivery_channel_from_env
from vietbank.otp_engine import DEFAULT_OTP_MAX_ATTEMPTS, DEFAULT_OTP_TTL_SECONDS, OtpEngine, OtpSettings
from vietbank.pin_guard import PinGuard
from vietbank.rate_limit import CredentialAttemptLimiter, RateLimitSettings, enforce_credential_rate_limit
from vietbank.security import AuthContext, SupabaseUserTokenVerifier, authenticate_banking_user

load_dotenv()

DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_REQUESTS = 20
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_ENABLE_DEMO_OTP_CODE_IN_RESPONSE = False
DEFAULT_OTP_SIGNING_SECRET = "change-this-otp-secret"
DEFAULT_PIN_SIGNING_SECRET = "change-this-pin-secret"
DEFAULT_STORE_BACKEND = "supabase"
DEFAULT_LOG_LEVEL = "INFO"
REQUEST_ID_HEADER = "X-Request-ID"
logger = logging.getLogger("vietbank_api")


def _configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    log_level = getattr(logging, log_level_name, logging.INFO)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(log_level)

    logger.setLevel(log_level)


_configure_logging()


def utc_now() -> datetime:
    return datetime.now(UTC)


class BiometricPayload(BaseModel):
    success: bool
    code: str | None = Field(default=None, max_length=40)
    message: str | None = Field(default=None, max_length=300)

    model_config = ConfigDict(extra="forbid")

    def to_outcome(self) -> BiometricOutcome:
        return BiometricOutcome(success=self.success, code=self.code, message=self.message)


class SetPinRequest(BaseModel):
    pin: str = Field(..., min_length=4, max_length=6)

    model_config = ConfigDict(extra="forbid")


class CashOperationRequest(BaseModel):
    # Amounts go to parse_amount untouched; strings, floats and non-positive
    # values come back as InvalidAmount.
    amount: Any = Field(...)
    pin: str = Field(..., min_length=1, max_length=6)
    biometric: BiometricPayload | None = None

    model_config = ConfigDict(extra="forbid")


class CashOperationResponse(BaseModel):
    transaction_id: str
    account_number: str
    balance_after: int
    request_id: str


class InitiateWithdrawalRequest(BaseModel):
    account_number: str = Field(..., min_length=1, max_length=34)
    amount: Any = Field(...)
    pin: str = Field(..., min_length=1, max_length=6)
    biometric: BiometricPayload | None = None

    model_config = ConfigDict(extra="forbid")


class InitiateTransferPayload(BaseModel):
    source_account_number: str = Field(..., min_length=1, max_length=34)
    destination_account_number: str = Field(..., min_length=1, max_length=34)
    destination_bank_code: str | None = Field(default=None, min_length=2, max_length=20)
    amount: Any = Field(...)
    note: str | None = Field(default=None, max_length=200)
    pin: str = Field(..., min_length=1, max_length=6)
    biometric: BiometricPayload | None = None

    model_config = ConfigDict(extra="forbid")


class InitiateResponse(BaseModel):
    transaction_id: str
    status: str
    biometric_required: bool
    masked_address: str | None = None
    expire_at: datetime | None = None
    demo_code: str | None = None
    request_id: str


class OtpConfirmRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)

    model_config = ConfigDict(extra="forbid")


class OtpConfirmResponse(BaseModel):
    transaction_id: str
    status: str
    new_balance: int
    request_id: str


class OtpResendResponse(BaseModel):
    transaction_id: str
    masked_address: str
    expire_at: datetime
    demo_code: str | None = None
    request_id: str


class TransactionStatusResponse(BaseModel):
    transaction_id: str
    kind: str
    status: str
    amount: int
    failure_reason: str | None = None
    executed_at: datetime | None = None


class HistoryItem(BaseModel):
    transaction_id: str | None = None
    type: str
    direction: Literal["IN", "OUT"]
    amount: int
    currency: str
    created_at: datetime
    description: str
    balance_after: int | None = None


class HistoryResponse(BaseModel):
    account_number: str
    items: list[HistoryItem]


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    if not raw_origins:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    if raw_origins.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in raw_origins.split(",") if origin.strip()]


def _parse_bool_env(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


def _load_rate_limit_settings() -> RateLimitSettings:
    enabled = _parse_bool_env(
        os.getenv("RATE_LIMIT_ENABLED"),
        DEFAULT_RATE_LIMIT_ENABLED,
        "RATE_LIMIT_ENABLED",
    )
    raw_requests = os.getenv("RATE_LIMIT_REQUESTS", str(DEFAULT_RATE_LIMIT_REQUESTS)).strip()
    raw_window_seconds = os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS)).strip()

    try:
        requests = int(raw_requests)
        window_seconds = int(raw_window_seconds)
    except ValueError as exc:
        raise ValueError(
            "RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be integer values."
        ) from exc

    return RateLimitSettings(enabled=enabled, requests=requests, window_seconds=window_seconds)


def _load_otp_settings() -> OtpSettings:
    raw_ttl = os.getenv("OTP_TTL_SECONDS", str(DEFAULT_OTP_TTL_SECONDS)).strip()
    raw_max_attempts = os.getenv("OTP_MAX_ATTEMPTS", str(DEFAULT_OTP_MAX_ATTEMPTS)).strip()
    signing_secret = os.getenv("OTP_SIGNING_SECRET", DEFAULT_OTP_SIGNING_SECRET).strip()

    try:
        ttl_seconds = int(raw_ttl)
        max_attempts = int(raw_max_attempts)
    except ValueError as exc:
        raise ValueError("OTP_TTL_SECONDS and OTP_MAX_ATTEMPTS must be integer values.") from exc

    enable_demo_code = _parse_bool_env(
        os.getenv("ENABLE_DEMO_OTP_CODE_IN_RESPONSE"),
        DEFAULT_ENABLE_DEMO_OTP_CODE_IN_RESPONSE,
        "ENABLE_DEMO_OTP_CODE_IN_RESPONSE",
    )
    return OtpSettings(
        signing_secret=signing_secret,
        ttl_seconds=ttl_seconds,
        max_attempts=max_attempts,
        enable_demo_code_in_response=enable_demo_code,
    )


def _load_pin_signing_secret() -> str:
    secret = os.getenv("PIN_SIGNING_SECRET", DEFAULT_PIN_SIGNING_SECRET).strip()
    if not secret:
        raise ValueError("PIN_SIGNING_SECRET must not be empty.")
    return secret


def _build_supabase_client(config: SupabaseConfig) -> Client:
    return create_client(config.url, config.service_role_key)


def _load_store(config: SupabaseConfig, client: Client) -> DocumentStore:
    backend = os.getenv("STORE_BACKEND", DEFAULT_STORE_BACKEND).strip().lower() or DEFAULT_STORE_BACKEND
    if backend == "supabase":
        return SupabaseDocumentStore(config=config, client=client)
    if backend == "memory":
        logger.warning("store_backend_memory data will not survive a restart")
        return InMemoryDocumentStore()
    raise ValueError("STORE_BACKEND must be one of: supabase, memory.")


def build_money_movement_service(
    store: DocumentStore,
    otp_settings: OtpSettings,
    pin_signing_secret: str,
) -> tuple[BankingRepository, MoneyMovementService]:
    repo = BankingRepository(store=store, config=BankingConfig.from_env())
    service = MoneyMovementService(
        repo=repo,
        pin_guard=PinGuard(repo, signing_secret=pin_signing_secret, clock=utc_now),
        biometric_gate=BiometricGate(repo, clock=utc_now),
        otp_engine=OtpEngine(repo, otp_settings, build_delivery_channel_from_env(), clock=utc_now),
        balance_engine=BalanceEngine(repo),
        ledger=LedgerRecorder(repo, clock=utc_now),
        clock=utc_now,
    )
    return repo, service


@asynccontextmanager
async def lifespan(app: FastAPI):
    supabase_config = SupabaseConfig.from_env()
    client = _build_supabase_client(supabase_config)
    store = _load_store(supabase_config, client)
    otp_settings = _load_otp_settings()
    rate_limit_settings = _load_rate_limit_settings()
    banking_repo, money_movement = build_money_movement_service(
        store,
        otp_settings,
        _load_pin_signing_secret(),
    )

    app.state.banking_repo = banking_repo
    app.state.money_movement = money_movement
    app.state.user_token_verifier = SupabaseUserTokenVerifier(client)
    app.state.rate_limiter = CredentialAttemptLimiter(settings=rate_limit_settings)

    yield


app = FastAPI(
    title="VietBank Money Movement API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS")),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_and_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_complete request_id=%s method=%s path=%s status_code=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


@app.exception_handler(BankingError)
async def banking_error_handler(request: Request, exc: BankingError) -> JSONResponse:
    request_id = _request_id(request)
    logger.info(
        "banking_error request_id=%s path=%s kind=%s",
        request_id,
        request.url.path,
        exc.kind,
    )
    body: dict[str, object] = {"kind": exc.kind, "detail": exc.message, "request_id": request_id}
    attempts_left = getattr(exc, "attempts_left", None)
    if attempts_left is not None:
        body["attempts_left"] = attempts_left
    if isinstance(exc, TransferSettlementPending) and exc.source_balance is not None:
        body["new_balance"] = exc.source_balance
    headers = None
    if isinstance(exc, TooManyAttempts):
        body["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    request_id = _request_id(request)
    logger.error("banking_db_error request_id=%s path=%s error=%s", request_id, request.url.path, str(exc))
    return JSONResponse(
        status_code=500,
        content={"kind": "DatabaseError", "detail": "A storage error occurred. Please try again.", "request_id": request_id},
    )


def _service() -> MoneyMovementService:
    return app.state.money_movement


def _initiate_response(result: InitiateResult, request_id: str) -> InitiateResponse:
    return InitiateResponse(
        transaction_id=result.transaction_id,
        status=result.status,
        biometric_required=result.biometric_required,
        masked_address=result.masked_address,
        expire_at=result.expire_at,
        demo_code=result.demo_code,
        request_id=request_id,
    )


def _transaction_status(transaction: PendingTransaction) -> TransactionStatusResponse:
    return TransactionStatusResponse(
        transaction_id=transaction.transaction_id,
        kind=transaction.kind,
        status=transaction.status,
        amount=transaction.amount,
        failure_reason=transaction.failure_reason,
        executed_at=from_epoch_ms(transaction.executed_at) if transaction.executed_at is not None else None,
    )


def _history_item(entry: TransactionHistoryEntry) -> HistoryItem:
    return HistoryItem(
        transaction_id=entry.transaction_id,
        type=entry.type,
        direction=entry.direction,
        amount=entry.amount,
        currency=entry.currency,
        created_at=from_epoch_ms(entry.created_at),
        description=entry.description,
        balance_after=entry.balance_after,
    )


@app.get("/health")
def health_check() -> dict[str, str]:
    return {
        "status": "ok",
        "service": "vietbank-money-movement",
    }


@app.post("/banking/pin")
def set_transaction_pin(
    payload: SetPinRequest,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> dict[str, str]:
    _service().set_transaction_pin(auth_context.principal, payload.pin)
    return {"status": "ok", "request_id": _request_id(request)}


@app.post("/banking/accounts/{account_number}/deposit", response_model=CashOperationResponse)
def deposit_cash(
    account_number: str,
    payload: CashOperationRequest,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> CashOperationResponse:
    if payload.biometric is not None:
        raise InvalidRequest("Deposits do not take a biometric confirmation.")
    result = _service().deposit(auth_context.principal, account_number, payload.amount, payload.pin)
    return CashOperationResponse(
        transaction_id=result.transaction_id,
        account_number=account_number,
        balance_after=result.balance_after,
        request_id=_request_id(request),
    )


@app.post("/banking/accounts/{account_number}/withdraw", response_model=CashOperationResponse)
def withdraw_cash(
    account_number: str,
    payload: CashOperationRequest,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> CashOperationResponse:
    result = _service().withdraw(
        auth_context.principal,
        account_number,
        payload.amount,
        payload.pin,
        biometric=payload.biometric.to_outcome() if payload.biometric else None,
    )
    return CashOperationResponse(
        transaction_id=result.transaction_id,
        account_number=account_number,
        balance_after=result.balance_after,
        request_id=_request_id(request),
    )


@app.get("/banking/accounts/{account_number}/transactions", response_model=HistoryResponse)
def list_account_transactions(
    account_number: str,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> HistoryResponse:
    entries = _service().list_history(auth_context.principal, account_number)
    return HistoryResponse(
        account_number=account_number,
        items=[_history_item(entry) for entry in entries],
    )


@app.post("/banking/withdrawals/initiate", response_model=InitiateResponse)
def initiate_withdrawal(
    payload: InitiateWithdrawalRequest,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> InitiateResponse:
    result = _service().initiate_withdrawal(
        auth_context.principal,
        payload.account_number,
        payload.amount,
        payload.pin,
        biometric=payload.biometric.to_outcome() if payload.biometric else None,
    )
    return _initiate_response(result, _request_id(request))


@app.post("/banking/transfers/initiate", response_model=InitiateResponse)
def initiate_transfer(
    payload: InitiateTransferPayload,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> InitiateResponse:
    transfer = TransferRequest(
        source_account_number=payload.source_account_number,
        destination_account_number=payload.destination_account_number,
        destination_bank_code=payload.destination_bank_code,
        amount=payload.amount,
        note=payload.note,
    )
    result = _service().initiate_transfer(
        auth_context.principal,
        transfer,
        payload.pin,
        biometric=payload.biometric.to_outcome() if payload.biometric else None,
    )
    return _initiate_response(result, _request_id(request))


@app.post("/banking/transactions/{transaction_id}/biometric", response_model=InitiateResponse)
def submit_biometric(
    transaction_id: str,
    payload: BiometricPayload,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> InitiateResponse:
    result = _service().submit_biometric(auth_context.principal, transaction_id, payload.to_outcome())
    return _initiate_response(result, _request_id(request))


@app.post("/banking/transactions/{transaction_id}/otp/confirm", response_model=OtpConfirmResponse)
def confirm_otp(
    transaction_id: str,
    payload: OtpConfirmRequest,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> OtpConfirmResponse:
    request_id = _request_id(request)
    result = _service().confirm_otp(auth_context.principal, transaction_id, payload.code)
    logger.info(
        "otp_confirmed request_id=%s principal=%s transaction_id=%s",
        request_id,
        auth_context.principal,
        transaction_id,
    )
    return OtpConfirmResponse(
        transaction_id=result.transaction_id,
        status=result.status,
        new_balance=result.new_balance,
        request_id=request_id,
    )


@app.post("/banking/transactions/{transaction_id}/otp/resend", response_model=OtpResendResponse)
def resend_otp(
    transaction_id: str,
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_credential_rate_limit),
) -> OtpResendResponse:
    issue = _service().resend_otp(auth_context.principal, transaction_id)
    return OtpResendResponse(
        transaction_id=issue.transaction_id,
        masked_address=issue.masked_address,
        expire_at=issue.expire_at,
        demo_code=issue.demo_code,
        request_id=_request_id(request),
    )


@app.post("/banking/transactions/{transaction_id}/cancel", response_model=TransactionStatusResponse)
def cancel_transaction(
    transaction_id: str,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> TransactionStatusResponse:
    return _transaction_status(_service().cancel(auth_context.principal, transaction_id))


@app.post("/banking/transactions/{transaction_id}/settle", response_model=TransactionStatusResponse)
def settle_transaction(
    transaction_id: str,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> TransactionStatusResponse:
    transaction = app.state.banking_repo.get_pending_transaction(transaction_id)
    if transaction is None or transaction.uid != auth_context.principal:
        raise TransactionNotFound()
    return _transaction_status(_service().settle_transfer(transaction_id))
