from typing import Optional

from fastapi import Header

from .auth import authenticate_bearer


async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    return await authenticate_bearer(authorization)
