"""Bearer tokens guarding the admin endpoints."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from payments_service.core_settings import Settings, get_settings
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
REQUIRED_CLAIMS = ["sub", "role", "exp"]


def create_access_token(
    subject: str,
    role: str = ADMIN_ROLE,
    expires_minutes: int = 60,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "role": role,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> Optional[Dict[str, Any]]:
    """Returns the token's claims, or None when PyJWT rejects it."""
    settings = settings or get_settings()
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALG],
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.PyJWTError as e:
        logger.warning(
            f"Rejected admin token: {e}",
            extra={'extra_fields': {'reason': type(e).__name__}},
        )
        return None


def is_admin(claims: Optional[Dict[str, Any]]) -> bool:
    return bool(claims) and claims.get("role") == ADMIN_ROLE
