from __future__ import annotations

import unittest
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx

from vietbank.errors import OtpDeliveryFailed
from vietbank.otp_delivery import LoggingOtpDelivery, WebhookOtpDelivery, build_delivery_channel_from_env


class WebhookOtpDeliveryTests(unittest.TestCase):
    def test_posts_form_to_webhook(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text="sent")

        channel = WebhookOtpDelivery(
            url="https://mail.example.com/exec",
            api_key="secret-key",
            transport=httpx.MockTransport(handler),
        )
        channel.send(address="tuan2@gmail.com", code="123456", transaction_id="TXN000001", purpose="TRANSFER")

        self.assertEqual(len(captured), 1)
        form = parse_qs(captured[0].content.decode("utf-8"))
        self.assertEqual(form["email"], ["tuan2@gmail.com"])
        self.assertEqual(form["otp"], ["123456"])
        self.assertEqual(form["transactionId"], ["TXN000001"])
        self.assertEqual(form["apiKey"], ["secret-key"])

    def test_http_error_is_delivery_failure(self) -> None:
        channel = WebhookOtpDelivery(
            url="https://mail.example.com/exec",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with self.assertRaises(OtpDeliveryFailed):
            channel.send(address="a@b.vn", code="123456", transaction_id="TXN000001", purpose="CASH_WITHDRAW")

    def test_network_error_is_delivery_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        channel = WebhookOtpDelivery(url="https://mail.example.com/exec", transport=httpx.MockTransport(handler))
        with self.assertRaises(OtpDeliveryFailed):
            channel.send(address="a@b.vn", code="123456", transaction_id="TXN000001", purpose="CASH_WITHDRAW")


class BuildDeliveryChannelTests(unittest.TestCase):
    def test_without_webhook_logs_code(self) -> None:
        with patch.dict("os.environ", {"OTP_DELIVERY_WEBHOOK_URL": ""}, clear=False):
            self.assertIsInstance(build_delivery_channel_from_env(), LoggingOtpDelivery)

    def test_webhook_settings_from_env(self) -> None:
        env = {
            "OTP_DELIVERY_WEBHOOK_URL": "https://mail.example.com/exec",
            "OTP_DELIVERY_API_KEY": "k",
            "OTP_DELIVERY_TIMEOUT_SECONDS": "5",
        }
        with patch.dict("os.environ", env, clear=False):
            channel = build_delivery_channel_from_env()

        self.assertIsInstance(channel, WebhookOtpDelivery)
        self.assertEqual(channel.timeout, 5.0)
        self.assertEqual(channel.api_key, "k")

    def test_invalid_timeout_is_rejected(self) -> None:
        env = {"OTP_DELIVERY_WEBHOOK_URL": "https://mail.example.com/exec", "OTP_DELIVERY_TIMEOUT_SECONDS": "soon"}
        with patch.dict("os.environ", env, clear=False):
            with self.assertRaises(ValueError):
                build_delivery_channel_from_env()


if __name__ == "__main__":
    unittest.main()
