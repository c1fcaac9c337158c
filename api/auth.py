"""
Request authentication for the staff API.

The session cookie holds an HS256 JWT issued at login with ``discord_id`` and
``username`` claims. Staff access is decided per request by reading the
caller's guild member record and checking for the staff role.

Usage:
    from api.auth import require_staff

    @router.post("/thing")
    async def thing(staff: StaffUser = Depends(require_staff)):
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, Request

from config import DISCORD_STAFF_ROLE_ID, SESSION_COOKIE_NAME, SESSION_SECRET
from discord_api import DiscordAPIError, get_api_client
from errors import AuthError, ExternalServiceError, ForbiddenError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class StaffUser:
    discord_id: str
    username: str | None = None


def decode_session(token: str, secret: str | None = None) -> dict[str, Any] | None:
    """Claims of a valid session token, or None if it fails verification."""
    secret = secret or SESSION_SECRET
    if not secret:
        logger.error("SESSION_SECRET is not configured; rejecting session")
        return None
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info("Rejected session token: %s", e)
        return None
    if not claims.get("discord_id"):
        return None
    return claims


async def require_session(request: Request) -> dict[str, Any]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise AuthError("Unauthorized")
    claims = decode_session(token)
    if claims is None:
        raise AuthError("Unauthorized")
    return claims


async def require_staff(claims: dict[str, Any] = Depends(require_session)) -> StaffUser:
    discord_id = str(claims["discord_id"])
    try:
        api_client = await get_api_client()
        member = await api_client.get_member(discord_id)
    except DiscordAPIError as e:
        raise ExternalServiceError(f"Guild lookup failed: {e.message}") from e
    roles = (member or {}).get("roles") or []
    if not DISCORD_STAFF_ROLE_ID or DISCORD_STAFF_ROLE_ID not in roles:
        logger.warning("Forbidden: %s lacks the staff role", discord_id)
        raise ForbiddenError("Forbidden")
    return StaffUser(discord_id=discord_id, username=claims.get("username"))
