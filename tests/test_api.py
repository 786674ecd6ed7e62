from __future__ import annotations

import unittest
from contextlib import contextmanager
from unittest.mock import patch

from fastapi import HTTPException
from fastapi.testclient import TestClient

import vietbank.main as main_module
from vietbank.banking_repository import BankingConfig, BankingRepository
from vietbank.database import InMemoryDocumentStore
from vietbank.models import Account, UserProfile
from vietbank.otp_engine import OtpSettings
from vietbank.rate_limit import RateLimitSettings

AUTH_HEADERS = {"Authorization": "Bearer valid-jwt-token"}
OTHER_USER_HEADERS = {"Authorization": "Bearer other-jwt-token"}


class FakeTokenVerifier:
    def __init__(self, valid_tokens: dict[str, dict] | None = None) -> None:
        self.valid_tokens = valid_tokens or {
            "valid-jwt-token": {"id": "user-123", "email": "tuan2@gmail.com"},
            "other-jwt-token": {"id": "user-456", "email": "binh@example.com"},
        }

    def verify_access_token(self, access_token: str) -> dict:
        if access_token in self.valid_tokens:
            return self.valid_tokens[access_token]
        raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")


class RecordingDelivery:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, *, address: str, code: str, transaction_id: str, purpose: str) -> None:
        self.sent.append({"address": address, "code": code, "transaction_id": transaction_id, "purpose": purpose})


def seeded_store(balance: int = 50_000_000, ekyc_status: str = "VERIFIED") -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    repo = BankingRepository(store=store, config=BankingConfig())
    repo.save_user_profile(
        UserProfile(
            uid="user-123",
            email="tuan2@gmail.com",
            full_name="Nguyen Van Tuan",
            ekyc_status=ekyc_status,
            can_transact=True,
        )
    )
    repo.save_account(Account(account_number="1000000001", uid="user-123", balance=balance, created_at=1))
    repo.save_user_profile(
        UserProfile(uid="user-456", email="binh@example.com", full_name="Tran Binh", ekyc_status="VERIFIED", can_transact=True)
    )
    repo.save_account(Account(account_number="1000000002", uid="user-456", balance=0, created_at=1))
    return store


@contextmanager
def api_client(
    store: InMemoryDocumentStore | None = None,
    rate_limit_settings: RateLimitSettings | None = None,
    token_verifier: FakeTokenVerifier | None = None,
    delivery: RecordingDelivery | None = None,
):
    backing_store = store or seeded_store()
    fake_token_verifier = token_verifier or FakeTokenVerifier()
    fake_delivery = delivery or RecordingDelivery()

    with patch.object(
        main_module.SupabaseConfig,
        "from_env",
        classmethod(
            lambda cls: cls(
                url="https://example.supabase.co",
                service_role_key="test-service-role-key",
            )
        ),
    ):
        with patch.object(main_module, "_build_supabase_client", lambda config: object()):
            with patch.object(main_module, "_load_store", lambda config, client: backing_store):
                with patch.object(main_module, "SupabaseUserTokenVerifier", lambda client: fake_token_verifier):
                    with patch.object(main_module, "build_delivery_channel_from_env", lambda: fake_delivery):
                        with patch.object(
                            main_module,
                            "_load_otp_settings",
                            lambda: OtpSettings(signing_secret="test-otp-secret", enable_demo_code_in_response=True),
                        ):
                            with patch.object(
                                main_module,
                                "_load_rate_limit_settings",
                                lambda: rate_limit_settings or RateLimitSettings(enabled=False),
                            ):
                                with TestClient(main_module.app) as client:
                                    yield client


def set_pin(client: TestClient, pin: str = "1234") -> None:
    response = client.post("/banking/pin", json={"pin": pin}, headers=AUTH_HEADERS)
    assert response.status_code == 200, response.text


class HealthEndpointTests(unittest.TestCase):
    def test_health_check(self) -> None:
        with api_client() as client:
            response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "service": "vietbank-money-movement"})

    def test_lifespan_wires_only_used_state(self) -> None:
        with api_client() as client:
            state = client.app.state
            self.assertIsInstance(state.money_movement, main_module.MoneyMovementService)
            self.assertIsInstance(state.rate_limiter, main_module.CredentialAttemptLimiter)
            self.assertFalse(hasattr(state, "otp_settings"))
            self.assertFalse(hasattr(state, "rate_limit_settings"))


class AuthenticationTests(unittest.TestCase):
    def test_missing_token_is_rejected(self) -> None:
        with api_client() as client:
            response = client.post("/banking/accounts/1000000001/deposit", json={"amount": 1000, "pin": "1234"})
        self.assertEqual(response.status_code, 401)

    def test_invalid_token_is_rejected(self) -> None:
        with api_client() as client:
            response = client.get(
                "/banking/accounts/1000000001/transactions",
                headers={"Authorization": "Bearer expired-token"},
            )
        self.assertEqual(response.status_code, 401)

    def test_request_id_header_is_echoed(self) -> None:
        with api_client() as client:
            response = client.get("/health", headers={"X-Request-ID": "req-42"})
        self.assertEqual(response.headers["X-Request-ID"], "req-42")


class CashEndpointTests(unittest.TestCase):
    def test_deposit_updates_balance_and_history(self) -> None:
        with api_client() as client:
            set_pin(client)
            response = client.post(
                "/banking/accounts/1000000001/deposit",
                json={"amount": 500_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            history = client.get("/banking/accounts/1000000001/transactions", headers=AUTH_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["balance_after"], 50_500_000)
        items = history.json()["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["type"], "CASH_DEPOSIT")
        self.assertEqual(items[0]["direction"], "IN")

    def test_deposit_rejects_biometric_payload(self) -> None:
        with api_client() as client:
            set_pin(client)
            response = client.post(
                "/banking/accounts/1000000001/deposit",
                json={"amount": 500_000, "pin": "1234", "biometric": {"success": True}},
                headers=AUTH_HEADERS,
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["kind"], "InvalidRequest")

    def test_not_eligible_returns_error_kind(self) -> None:
        with api_client(store=seeded_store(ekyc_status="PENDING")) as client:
            set_pin(client)
            response = client.post(
                "/banking/accounts/1000000001/deposit",
                json={"amount": 500_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["kind"], "NotEligible")
        self.assertIn("request_id", response.json())

    def test_wrong_pin_reports_attempts_left(self) -> None:
        with api_client() as client:
            set_pin(client)
            response = client.post(
                "/banking/accounts/1000000001/withdraw",
                json={"amount": 100_000, "pin": "9999"},
                headers=AUTH_HEADERS,
            )

        body = response.json()
        self.assertEqual(body["kind"], "InvalidPin")
        self.assertEqual(body["attempts_left"], 4)

    def test_history_of_another_users_account_is_not_found(self) -> None:
        with api_client() as client:
            response = client.get("/banking/accounts/1000000002/transactions", headers=AUTH_HEADERS)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["kind"], "AccountNotFound")

    def test_malformed_amounts_are_invalid_amount(self) -> None:
        with api_client() as client:
            set_pin(client)
            for amount in (-5, 0, "1000", 10.5, True):
                with self.subTest(amount=amount):
                    response = client.post(
                        "/banking/accounts/1000000001/deposit",
                        json={"amount": amount, "pin": "1234"},
                        headers=AUTH_HEADERS,
                    )
                    self.assertEqual(response.status_code, 422)
                    self.assertEqual(response.json()["kind"], "InvalidAmount")
            initiated = client.post(
                "/banking/withdrawals/initiate",
                json={"account_number": "1000000001", "amount": "1000", "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            history = client.get("/banking/accounts/1000000001/transactions", headers=AUTH_HEADERS)

        self.assertEqual(initiated.json()["kind"], "InvalidAmount")
        self.assertEqual(history.json()["items"], [])


class OtpFlowEndpointTests(unittest.TestCase):
    def test_high_value_withdrawal_flow(self) -> None:
        delivery = RecordingDelivery()
        with api_client(delivery=delivery) as client:
            set_pin(client)
            initiated = client.post(
                "/banking/withdrawals/initiate",
                json={"account_number": "1000000001", "amount": 20_000_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            transaction_id = initiated.json()["transaction_id"]
            issued = client.post(
                f"/banking/transactions/{transaction_id}/biometric",
                json={"success": True, "code": "ok"},
                headers=AUTH_HEADERS,
            )
            confirmed = client.post(
                f"/banking/transactions/{transaction_id}/otp/confirm",
                json={"code": issued.json()["demo_code"]},
                headers=AUTH_HEADERS,
            )
            history = client.get("/banking/accounts/1000000001/transactions", headers=AUTH_HEADERS)

        self.assertEqual(initiated.status_code, 200)
        self.assertEqual(initiated.json()["status"], "AWAITING_BIOMETRIC")
        self.assertTrue(initiated.json()["biometric_required"])
        self.assertEqual(issued.json()["masked_address"], "t***2@gmail.com")
        self.assertEqual(delivery.sent[0]["code"], issued.json()["demo_code"])
        self.assertEqual(confirmed.status_code, 200)
        self.assertEqual(confirmed.json()["new_balance"], 30_000_000)
        self.assertEqual([item["direction"] for item in history.json()["items"]], ["OUT"])

    def test_wrong_otp_reports_attempts_left(self) -> None:
        with api_client() as client:
            set_pin(client)
            initiated = client.post(
                "/banking/withdrawals/initiate",
                json={"account_number": "1000000001", "amount": 1_000_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            code = initiated.json()["demo_code"]
            wrong = "000000" if code != "000000" else "111111"
            response = client.post(
                f"/banking/transactions/{initiated.json()['transaction_id']}/otp/confirm",
                json={"code": wrong},
                headers=AUTH_HEADERS,
            )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["kind"], "OtpMismatch")
        self.assertEqual(response.json()["attempts_left"], 4)

    def test_resend_while_code_valid_is_rejected(self) -> None:
        with api_client() as client:
            set_pin(client)
            initiated = client.post(
                "/banking/withdrawals/initiate",
                json={"account_number": "1000000001", "amount": 1_000_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            response = client.post(
                f"/banking/transactions/{initiated.json()['transaction_id']}/otp/resend",
                headers=AUTH_HEADERS,
            )
        self.assertEqual(response.json()["kind"], "OtpStillValid")

    def test_internal_transfer_flow(self) -> None:
        with api_client() as client:
            set_pin(client)
            initiated = client.post(
                "/banking/transfers/initiate",
                json={
                    "source_account_number": "1000000001",
                    "destination_account_number": "1000000002",
                    "amount": 300_000,
                    "note": "Lunch",
                    "pin": "1234",
                },
                headers=AUTH_HEADERS,
            )
            confirmed = client.post(
                f"/banking/transactions/{initiated.json()['transaction_id']}/otp/confirm",
                json={"code": initiated.json()["demo_code"]},
                headers=AUTH_HEADERS,
            )
            receiver_history = client.get("/banking/accounts/1000000002/transactions", headers=OTHER_USER_HEADERS)

        self.assertEqual(confirmed.json()["new_balance"], 49_700_000)
        items = receiver_history.json()["items"]
        self.assertEqual(items[0]["type"], "TRANSFER_IN")
        self.assertEqual(items[0]["description"], "Lunch")
        self.assertEqual(items[0]["balance_after"], 300_000)

    def test_cancel_and_other_user_cannot_see_transaction(self) -> None:
        with api_client() as client:
            set_pin(client)
            initiated = client.post(
                "/banking/withdrawals/initiate",
                json={"account_number": "1000000001", "amount": 1_000_000, "pin": "1234"},
                headers=AUTH_HEADERS,
            )
            transaction_id = initiated.json()["transaction_id"]
            foreign = client.post(f"/banking/transactions/{transaction_id}/cancel", headers=OTHER_USER_HEADERS)
            cancelled = client.post(f"/banking/transactions/{transaction_id}/cancel", headers=AUTH_HEADERS)
            settle = client.post(f"/banking/transactions/{transaction_id}/settle", headers=OTHER_USER_HEADERS)

        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(cancelled.json()["status"], "CANCELLED")
        self.assertEqual(settle.status_code, 404)
        self.assertEqual(settle.json()["kind"], "TransactionNotFound")


class RateLimitEndpointTests(unittest.TestCase):
    def test_pin_submissions_are_throttled(self) -> None:
        with api_client(rate_limit_settings=RateLimitSettings(enabled=True, requests=2, window_seconds=60)) as client:
            responses = [
                client.post("/banking/pin", json={"pin": "1234"}, headers=AUTH_HEADERS) for _ in range(3)
            ]

        self.assertEqual([response.status_code for response in responses], [200, 200, 429])
        self.assertIn("Retry-After", responses[2].headers)
        self.assertEqual(responses[2].json()["kind"], "TooManyAttempts")


if __name__ == "__main__":
    unittest.main()
