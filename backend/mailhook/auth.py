"""
Operator authentication for the delivery-log endpoints.

Operators sign in through Supabase Auth; their access token is sent as
"Authorization: Bearer <jwt>".

- When SUPABASE_JWT_SECRET is set the JWT is verified locally with python-jose
  (HS256), with no network round-trip.
- Otherwise the token is checked against the Supabase Auth API.

Inbound webhook deliveries do not use this module; they are authenticated by
their HMAC signature.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from mailhook.db import supabase

SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Extract and verify the bearer token; return the operator's user id.

    Raises:
        HTTPException: 401 if the token is missing, malformed, invalid or expired
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    token = parts[1]

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)
    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """Verify a Supabase-issued HS256 JWT with the project secret and return its subject."""
    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase JWTs carry the 'authenticated' audience
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """Verify a JWT via the Supabase Auth API (fallback when no JWT secret is set)."""
    if supabase is None:
        raise HTTPException(
            status_code=401,
            detail="Operator auth unavailable: SUPABASE_URL/SUPABASE_KEY or SUPABASE_JWT_SECRET must be set",
        )

    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        if "expired" in str(e).lower():
            raise HTTPException(status_code=401, detail="Token expired")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not response or not response.user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return response.user.id
