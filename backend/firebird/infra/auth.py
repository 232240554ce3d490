"""Authentication helpers for FastAPI endpoints and Socket.IO handshakes.

Bearer JWTs are always accepted. The X-User-Id / X-User-Role headers are only
respected in development.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from firebird.infra import jwt as jwt_helper
from firebird.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	role: str = "athlete"
	display_name: Optional[str] = None
	session_id: Optional[str] = None

	def is_privileged(self) -> bool:
		"""Coaches and assistants may create team chats."""
		return self.role.lower() in settings.chat_privileged_roles


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode an access JWT (claims: sub, role, name, sid) into a user."""
	try:
		claims = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	return AuthenticatedUser(id=claims.sub, role=claims.role, display_name=claims.name, session_id=claims.sid)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id, role=(x_user_role or "athlete").strip())
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def user_from_handshake(environ: dict, auth: Optional[dict] = None) -> AuthenticatedUser:
	"""Resolve the user for a Socket.IO connection.

	Raises ValueError when no acceptable credentials are present.
	"""
	scope = environ.get("asgi.scope", environ)
	auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
	token = auth_payload.get("token")
	if not token:
		header = _header(scope, "authorization") or ""
		if header.lower().startswith("bearer "):
			token = header[7:].strip()
	if token:
		try:
			return verify_access_jwt(token)
		except HTTPException as exc:
			raise ValueError(exc.detail) from None
	if settings.is_dev():
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		role = auth_payload.get("role") or _header(scope, "x-user-role") or "athlete"
		if user_id:
			return AuthenticatedUser(id=str(user_id), role=str(role))
	raise ValueError("missing_credentials")
