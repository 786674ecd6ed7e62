from __future__ import annotations

import logging
import os
from typing import Protocol

import httpx

from vietbank.errors import OtpDeliveryFailed

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_TIMEOUT_SECONDS = 12.0


class OtpDeliveryChannel(Protocol):
    def send(self, *, address: str, code: str, transaction_id: str, purpose: str) -> None: ...


class LoggingOtpDelivery:
    """Development channel: writes the code to the log instead of sending it."""

    def send(self, *, address: str, code: str, transaction_id: str, purpose: str) -> None:
        logger.info(
            "otp_dev_delivery transaction_id=%s purpose=%s address=%s code=%s",
            transaction_id,
            purpose,
            address,
            code,
        )


class WebhookOtpDelivery:
    """Posts the code to an email-sending web app as a form submission."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_DELIVERY_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def send(self, *, address: str, code: str, transaction_id: str, purpose: str) -> None:
        form = {
            "email": address,
            "otp": code,
            "transactionId": transaction_id,
            "purpose": purpose,
        }
        if self.api_key:
            form["apiKey"] = self.api_key

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = client.post(self.url, data=form)
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                logger.error("otp_delivery_timeout transaction_id=%s timeout=%s", transaction_id, self.timeout)
                raise OtpDeliveryFailed() from exc
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "otp_delivery_http_error transaction_id=%s status_code=%s",
                    transaction_id,
                    exc.response.status_code,
                )
                raise OtpDeliveryFailed() from exc
            except httpx.HTTPError as exc:
                logger.error("otp_delivery_error transaction_id=%s error=%s", transaction_id, str(exc))
                raise OtpDeliveryFailed() from exc


def build_delivery_channel_from_env() -> OtpDeliveryChannel:
    url = os.getenv("OTP_DELIVERY_WEBHOOK_URL", "").strip()
    if not url:
        return LoggingOtpDelivery()

    api_key = os.getenv("OTP_DELIVERY_API_KEY", "").strip() or None
    raw_timeout = os.getenv("OTP_DELIVERY_TIMEOUT_SECONDS", str(DEFAULT_DELIVERY_TIMEOUT_SECONDS)).strip()
    try:
        timeout = float(raw_timeout)
    except ValueError as exc:
        raise ValueError("OTP_DELIVERY_TIMEOUT_SECONDS must be numeric.") from exc
    if timeout <= 0:
        raise ValueError("OTP_DELIVERY_TIMEOUT_SECONDS must be greater than 0.")
    return WebhookOtpDelivery(url=url, api_key=api_key, timeout=timeout)
