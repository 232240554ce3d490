import time

import jwt
import pytest
from fastapi import HTTPException

from firebird.infra.auth import AuthenticatedUser, user_from_handshake, verify_access_jwt
from firebird.infra.jwt import AUDIENCE, ISSUER, decode_access, encode_access
from firebird.settings import settings


def test_access_token_round_trip():
    token = encode_access("coach-1", "Coach", name="Sam")

    user = verify_access_jwt(token)

    assert user.id == "coach-1"
    assert user.display_name == "Sam"
    assert user.is_privileged() is True


def test_invalid_token_is_rejected():
    with pytest.raises(HTTPException) as excinfo:
        verify_access_jwt("not-a-token")

    assert excinfo.value.status_code == 401


def test_only_coaches_and_assistants_are_privileged():
    assert AuthenticatedUser(id="a", role="assistant").is_privileged()
    assert not AuthenticatedUser(id="b", role="athlete").is_privileged()


def test_handshake_headers_only_accepted_in_dev():
    environ = {"asgi.scope": {"headers": [(b"x-user-id", b"athlete-1")]}}

    assert user_from_handshake(environ).id == "athlete-1"

    settings.environment = "production"
    with pytest.raises(ValueError):
        user_from_handshake(environ)


def test_handshake_reads_bearer_header():
    token = encode_access("athlete-2", "athlete")
    environ = {"asgi.scope": {"headers": [(b"authorization", f"Bearer {token}".encode())]}}

    assert user_from_handshake(environ).id == "athlete-2"


def _raw_token(**claims):
    now = int(time.time())
    body = {"iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 60}
    body.update(claims)
    return jwt.encode(body, settings.secret_key, algorithm="HS256")


def test_decoded_claims_normalise_role():
    claims = decode_access(encode_access("coach-1", " Coach ", sid="s-1"))

    assert claims.sub == "coach-1"
    assert claims.role == "coach"
    assert claims.sid == "s-1"
    assert claims.name is None


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "athlete-1"},
        {"sub": "athlete-1", "role": ""},
        {"sub": "athlete-1", "role": ["coach"]},
        {"role": "coach"},
    ],
)
def test_tokens_without_a_usable_role_or_subject_are_rejected(claims):
    token = _raw_token(**claims)

    with pytest.raises(jwt.InvalidTokenError):
        decode_access(token)
    with pytest.raises(HTTPException) as excinfo:
        verify_access_jwt(token)
    assert excinfo.value.detail == "invalid_token"


def test_expired_token_is_rejected():
    token = encode_access("athlete-1", "athlete", ttl_seconds=-60)

    with pytest.raises(HTTPException):
        verify_access_jwt(token)
