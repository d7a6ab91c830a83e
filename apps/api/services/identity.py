"""Identity tokens issued by the external identity provider."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


IDENTITY_TOKEN_TYPE = "coach_identity"


@dataclass
class IdentityClaims:
    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None


def issue_identity_token(
    user_id: str,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed identity token; used by the provider bridge and tests."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.IDENTITY_TOKEN_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": IDENTITY_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if display_name:
        claims["name"] = display_name
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.IDENTITY_TOKEN_SECRET, algorithm=settings.IDENTITY_TOKEN_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def verify_identity_token(token: str) -> IdentityClaims:
    """Decode and validate a signed identity token."""
    try:
        payload = jwt.decode(
            token,
            settings.IDENTITY_TOKEN_SECRET,
            algorithms=[settings.IDENTITY_TOKEN_ALGORITHM],
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired identity token.") from exc

    if str(payload.get("type", "")).strip() != IDENTITY_TOKEN_TYPE:
        raise ValueError("Invalid identity token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Identity token missing subject.")

    return IdentityClaims(
        user_id=subject,
        display_name=str(payload.get("name", "")) or None,
        email=str(payload.get("email", "")) or None,
    )
