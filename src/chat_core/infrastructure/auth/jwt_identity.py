from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import jwt

from chat_core.application.exceptions import AuthExpiredError
from chat_core.application.ports.clock import Clock, SystemClock


class JwtIdentityProvider:
    """Current user taken from a bearer JWT.

    ``sub`` is the user id and ``name`` the display name. The signature is
    verified only when a secret is configured; expiry is never enforced at
    decode time so that ``is_expired`` can report it instead.
    """

    def __init__(
        self,
        token: str,
        *,
        secret: str = "",
        algorithm: str = "HS256",
        clock: Clock | None = None,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock or SystemClock()
        self._token = token
        self._claims = self._decode(token)

    def _decode(self, token: str) -> dict[str, Any]:
        try:
            if self._secret:
                claims = jwt.decode(
                    token,
                    self._secret,
                    algorithms=[self._algorithm],
                    options={"verify_exp": False},
                )
            else:
                claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise AuthExpiredError("Invalid auth token", operation="decode token", cause=exc) from exc
        if not claims.get("sub"):
            raise AuthExpiredError("Auth token has no subject", operation="decode token")
        return claims

    def replace_token(self, token: str) -> None:
        """Swap in a fresh token after the user logs in again."""
        claims = self._decode(token)
        self._token = token
        self._claims = claims

    @property
    def user_id(self) -> str:
        return str(self._claims["sub"])

    @property
    def user_name(self) -> str:
        return str(self._claims.get("name") or self._claims.get("username") or "")

    def auth_token(self) -> str | None:
        return self._token

    def is_expired(self) -> bool:
        exp = self._claims.get("exp")
        if exp is None:
            return False
        return self._clock.now() >= datetime.fromtimestamp(int(exp), tz=timezone.utc)
