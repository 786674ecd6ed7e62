from __future__ import annotations

import logging

from vietbank.banking_repository import BankingRepository
from vietbank.errors import AccountLocked, AccountNotFound, NotEligible
from vietbank.models import Account, UserProfile

logger = logging.getLogger(__name__)

VERIFIED_EKYC_STATUS = "VERIFIED"


def ensure_can_transact(repo: BankingRepository, user_id: str) -> UserProfile:
    """Resolve the acting profile and require eKYC ``VERIFIED`` plus transact permission.

    The status comparison is exact; ``"verified"`` or ``" VERIFIED"`` do not pass.
    """
    profile = repo.get_user_profile(user_id)
    if profile is None:
        logger.warning("eligibility_rejected user_id=%s reason=profile_missing", user_id)
        raise NotEligible("Customer information was not found.")
    if profile.ekyc_status != VERIFIED_EKYC_STATUS or not profile.can_transact:
        logger.warning(
            "eligibility_rejected user_id=%s ekyc_status=%s can_transact=%s",
            user_id,
            profile.ekyc_status,
            profile.can_transact,
        )
        raise NotEligible()
    return profile


def ensure_not_locked(profile: UserProfile | None, account: Account | None = None) -> None:
    if profile is not None and profile.is_locked:
        raise AccountLocked()
    if account is not None and account.is_locked:
        raise AccountLocked()


def resolve_owned_account(repo: BankingRepository, user_id: str, account_number: str) -> Account:
    account = repo.get_account(account_number)
    if account is None or account.uid != user_id:
        raise AccountNotFound()
    return account
