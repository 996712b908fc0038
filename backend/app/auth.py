import logging
import time
from typing import Optional, Dict, Any

import httpx
from jose import jwt, JWTError

from .config import settings
from .errors import Unauthorized

logger = logging.getLogger("snapmeal-auth")

BEARER_PREFIX = "bearer "


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized(details={"reason": "missing_authorization"})
    if not authorization.lower().startswith(BEARER_PREFIX):
        raise Unauthorized(details={"reason": "not_bearer"})
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthorized(details={"reason": "empty_token"})
    return token


def create_access_token(data: dict, expires_in_sec: int = 3600) -> str:
    to_encode = data.copy()
    to_encode.setdefault("aud", settings.SUPABASE_JWT_AUDIENCE)
    to_encode.update({"exp": int(time.time()) + expires_in_sec})
    return jwt.encode(to_encode, settings.SUPABASE_JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> Optional[dict]:
    try:
        decoded_token = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except JWTError:
        return None
    exp = decoded_token.get("exp")
    if exp is None or exp < time.time():
        return None
    return decoded_token


async def fetch_remote_user(token: str) -> Optional[dict]:
    """Ask Supabase Auth who owns the token. Returns None when it says nobody."""
    if not settings.SUPABASE_URL:
        logger.error("SUPABASE_URL is not set, remote token verification is unavailable")
        return None

    timeout = httpx.Timeout(
        connect=settings.AUTH_CONNECT_TIMEOUT_SEC,
        read=settings.AUTH_READ_TIMEOUT_SEC,
        write=5.0,
        pool=5.0,
    )
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(
                f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.SUPABASE_ANON_KEY,
                },
            )
    except httpx.HTTPError as exc:
        logger.warning("Remote token verification failed reason=%s", type(exc).__name__)
        return None

    if response.status_code != 200:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def authenticate_bearer(authorization: Optional[str]) -> Dict[str, Any]:
    """Resolve the caller behind an ``Authorization: Bearer`` header.

    Tokens are checked locally with the project JWT secret when one is
    configured, otherwise against Supabase Auth. Any failure raises
    ``Unauthorized``; callers rely on that happening before they touch
    storage.
    """
    token = extract_bearer_token(authorization)

    if settings.uses_local_jwt_verification():
        claims = decode_access_token(token)
        if claims is None:
            raise Unauthorized(details={"reason": "invalid_token"})
        user_id = claims.get("sub")
        email = claims.get("email")
    else:
        remote_user = await fetch_remote_user(token)
        if remote_user is None:
            raise Unauthorized(details={"reason": "invalid_token"})
        user_id = remote_user.get("id")
        email = remote_user.get("email")

    if not isinstance(user_id, str) or not user_id:
        raise Unauthorized(details={"reason": "missing_subject"})

    return {"id": user_id, "email": email}
