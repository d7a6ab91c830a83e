"""Authentication dependencies for API user scoping."""

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import IdentityClaims, verify_identity_token


auth_scheme = HTTPBearer(auto_error=False)


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match the authenticated user.")
    return auth_user_id


async def get_identity(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> IdentityClaims:
    """Resolve the authenticated user from a Bearer identity token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer identity token.")

    try:
        return verify_identity_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
