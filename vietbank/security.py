from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

_bearer_header = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    auth_method: str
    principal: str
    email: str | None = None


class SupabaseUserTokenVerifier:
    def __init__(self, client: Client) -> None:
        self._client = client

    def verify_access_token(self, access_token: str) -> dict[str, Any]:
        try:
            response = self._client.auth.get_user(access_token)
        except Exception as exc:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.") from exc

        user = getattr(response, "user", None)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        if hasattr(user, "model_dump"):
            user_payload = user.model_dump()
        elif isinstance(user, dict):
            user_payload = user
        else:
            user_payload = {"id": getattr(user, "id", None), "email": getattr(user, "email", None)}

        if not user_payload.get("id"):
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        return user_payload


def authenticate_banking_user(
    request: Request,
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(_bearer_header),
) -> AuthContext:
    """Resolve the signed-in customer; every money operation acts as this uid."""
    if bearer_credentials is None or bearer_credentials.scheme.lower() != "bearer" or not bearer_credentials.credentials:
        raise HTTPException(status_code=401, detail="Invalid or missing Bearer token.")

    verifier: SupabaseUserTokenVerifier | None = getattr(request.app.state, "user_token_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=500, detail="Token verification is not configured.")

    user_payload = verifier.verify_access_token(bearer_credentials.credentials)
    auth_context = AuthContext(
        auth_method="jwt",
        principal=str(user_payload["id"]),
        email=user_payload.get("email"),
    )
    request.state.auth_context = auth_context
    return auth_context
