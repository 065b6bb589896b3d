from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from clinic_messaging.core.config import get_settings


def create_access_token(
    user_id: str,
    role: Optional[str] = None,
    expires_minutes: Optional[int] = None,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    minutes = settings.jwt_expire_minutes if expires_minutes is None else expires_minutes
    payload: Dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + timedelta(minutes=minutes)}
    if role:
        payload["role"] = role
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token. Raises ``jwt.InvalidTokenError``."""
    settings = get_settings()
    options = {"require": ["exp", "sub"]}
    if settings.jwt_audience:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm], options=options)
