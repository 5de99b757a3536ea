import re
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from jose import ExpiredSignatureError, JWTError, jwt
from leaveflow.core.config import settings

logger = logging.getLogger(__name__)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue a signed access token.
    Production tokens come from the identity provider; this is used by
    scripts and tests that need to act as a given staff member.
    """
    to_encode = dict(data)
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire, "type": to_encode.get("type", "access")})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Returns the claims, {"error": "TOKEN_EXPIRED"} for expired tokens, or None if invalid."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        return {"error": "TOKEN_EXPIRED"}
    except JWTError as e:
        logger.warning(f"Token decode failed: {e}")
        return None


def sanitize_input(text: str) -> str:
    """Basic input sanitization to prevent XSS."""
    if not isinstance(text, str):
        return text
    sanitized = re.sub(r'<script.*?>.*?</script>', '', text, flags=re.DOTALL | re.IGNORECASE)
    return html.escape(sanitized).strip()
