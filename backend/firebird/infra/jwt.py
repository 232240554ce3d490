"""Access tokens for chat clients.

HS256 with the application's secret key. Every token names its subject and
role; the role decides whether the holder may create team chats.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from jwt import InvalidTokenError

from firebird.settings import settings


ISSUER = "firebird-api"
AUDIENCE = "firebird-fe"
ALGORITHM = "HS256"


@dataclass(slots=True, frozen=True)
class AccessClaims:
    sub: str
    role: str
    name: Optional[str] = None
    sid: Optional[str] = None


def _text_claim(payload: Dict[str, Any], key: str, *, required: bool) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        if required:
            raise InvalidTokenError(f"missing_claim:{key}")
        return None
    if not isinstance(value, str):
        raise InvalidTokenError(f"invalid_claim:{key}")
    value = value.strip()
    if required and not value:
        raise InvalidTokenError(f"missing_claim:{key}")
    return value or None


def encode_access(
    sub: str,
    role: str,
    *,
    name: Optional[str] = None,
    sid: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    now = int(time.time())
    ttl = settings.access_token_ttl_seconds if ttl_seconds is None else ttl_seconds
    body: Dict[str, Any] = {"iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + ttl, "sub": sub, "role": role}
    if name is not None:
        body["name"] = name
    if sid is not None:
        body["sid"] = sid
    return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> AccessClaims:
    """Decode and validate an access token.

    Raises jwt.InvalidTokenError subclasses on failure, including a missing
    or non-string ``sub``/``role``.
    """
    payload = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[ALGORITHM],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=5,
        options={"require": ["exp", "iat", "iss", "aud", "sub"]},
    )
    return AccessClaims(
        sub=_text_claim(payload, "sub", required=True),
        role=_text_claim(payload, "role", required=True).lower(),
        name=_text_claim(payload, "name", required=False),
        sid=_text_claim(payload, "sid", required=False),
    )
