"""Access token issuing and verification shared by HTTP and socket entry points."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from agent_desk.config import AuthConfig
from agent_desk.errors import AuthenticationError


@dataclass(frozen=True, slots=True)
class TokenClaims:
    tenant_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenService:
    def __init__(self, config: AuthConfig):
        self._config = config

    def issue(self, tenant_id: int, role: str = "user") -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(tenant_id),
            "role": role,
            "iss": self._config.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._config.token_ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._config.secret_key, algorithm=self._config.algorithm)

    def verify(self, token: str) -> TokenClaims:
        if not token:
            raise AuthenticationError("missing token")
        try:
            payload = jwt.decode(
                token,
                self._config.secret_key,
                algorithms=[self._config.algorithm],
                issuer=self._config.issuer,
                options={"require_sub": True, "require_exp": True},
            )
        except JWTError as e:
            raise AuthenticationError(f"invalid token: {e}") from e
        try:
            tenant_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError("invalid token subject") from e
        return TokenClaims(tenant_id=tenant_id, role=str(payload.get("role", "user")))
