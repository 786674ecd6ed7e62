from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from fastapi import Depends, Request

from vietbank.errors import TooManyAttempts
from vietbank.security import AuthContext, authenticate_banking_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool = True
    requests: int = 20
    window_seconds: int = 60

    def __post_init__(self) -> None:
        if self.requests <= 0:
            raise ValueError("RATE_LIMIT_REQUESTS must be greater than 0.")
        if self.window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be greater than 0.")


class CredentialAttemptLimiter:
    """Sliding-window cap on PIN and OTP submissions per signed-in customer.

    Sits in front of the persistent PIN and OTP counters and only slows
    guessing down; it keeps no state across restarts.
    """

    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.monotonic) -> None:
        self._settings = settings
        self._clock = clock
        self._attempts: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def consume(self, principal: str) -> None:
        if not self._settings.enabled:
            return

        now = self._clock()
        with self._lock:
            attempts = self._attempts[principal]
            while attempts and now - attempts[0] >= self._settings.window_seconds:
                attempts.popleft()

            if len(attempts) >= self._settings.requests:
                retry_after = max(1, math.ceil(self._settings.window_seconds - (now - attempts[0])))
                logger.warning("credential_rate_limited principal=%s retry_after=%s", principal, retry_after)
                raise TooManyAttempts(retry_after=retry_after)

            attempts.append(now)


def enforce_credential_rate_limit(
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> None:
    limiter: CredentialAttemptLimiter = request.app.state.rate_limiter
    limiter.consume(auth_context.principal)
