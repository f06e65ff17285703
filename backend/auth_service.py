"""Session verification for API routes.

Sessions are issued elsewhere; this side only checks the signed bearer token.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from pydantic import BaseModel

from config import get_session_secret

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24
E2E_TEST_USER_ID = "e2e_test_user"


class SessionUser(BaseModel):
    user_id: str
    exp: Optional[datetime] = None


def create_session_token(user_id: str, expires_in: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS)) -> str:
    """Sign a session token (used by tooling and tests)."""
    secret = get_session_secret()
    if not secret:
        raise RuntimeError("SESSION_JWT_SECRET environment variable is required")
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[SessionUser]:
    """Verify and decode a session token. Returns None when it is not acceptable."""
    secret = get_session_secret()
    if not secret:
        logger.error("SESSION_JWT_SECRET is not set; rejecting session token")
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {str(e)}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Token has no subject")
        return None
    exp = payload.get("exp")
    return SessionUser(
        user_id=user_id,
        exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )
