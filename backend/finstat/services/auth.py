import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from ..auth_utils import decode_token, encode_token, hash_password, verify_password
from ..config import Settings
from ..errors import AuthError, ConflictError, NotFoundError, ValidationError
from ..persistence import EMAIL_TAKEN, Persistence

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_TOKEN = "Invalid or expired token"


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str


def public_user(row: dict[str, Any]) -> dict[str, Any]:
    return {"id": row["id"], "email": row["email"], "full_name": row["full_name"], "created_at": row["created_at"]}


class AuthService:
    """Registers users, checks credentials and issues bearer tokens.

    The signing key, token lifetime and bcrypt work factor all come from the
    ``Settings`` handed in at construction.
    """

    def __init__(
        self,
        persistence: Persistence,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.persistence = persistence
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue_token(self, user: dict[str, Any]) -> str:
        return encode_token(
            {"userId": user["id"], "email": user["email"]},
            self.settings.jwt_secret,
            issued_at=self._clock(),
            ttl=timedelta(hours=self.settings.token_ttl_hours),
            algorithm=self.settings.jwt_algorithm,
        )

    def register(self, email: str, full_name: str, password: str, confirm_password: str) -> tuple[dict[str, Any], str]:
        if password != confirm_password:
            raise ValidationError(
                "Validation failed",
                details=[{"field": "confirmPassword", "message": "Passwords don't match"}],
            )
        if self.persistence.get_user_by_email(email) is not None:
            raise ConflictError(EMAIL_TAKEN)
        password_hash = hash_password(password, rounds=self.settings.bcrypt_rounds)
        user = self.persistence.create_user(email, full_name, password_hash)
        logger.info("registered user %s", user["id"])
        return public_user(user), self.issue_token(user)

    def login(self, email: str, password: str) -> tuple[dict[str, Any], str]:
        user = self.persistence.get_user_by_email(email)
        if user is None or not verify_password(password, user["password_hash"]):
            logger.info("failed login attempt")
            raise AuthError(INVALID_CREDENTIALS)
        return public_user(user), self.issue_token(user)

    def verify_token(self, token: str) -> TokenClaims:
        try:
            claims = decode_token(token, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        except jwt.InvalidTokenError as exc:
            raise AuthError(INVALID_TOKEN) from exc
        user_id = claims.get("userId")
        email = claims.get("email")
        if not isinstance(user_id, int) or not isinstance(email, str):
            raise AuthError(INVALID_TOKEN)
        return TokenClaims(user_id=user_id, email=email)

    def get_user(self, user_id: int) -> dict[str, Any]:
        user = self.persistence.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return public_user(user)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = self.persistence.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(current_password, user["password_hash"]):
            raise ValidationError("Current password is incorrect")
        self.persistence.update_password_hash(user_id, hash_password(new_password, rounds=self.settings.bcrypt_rounds))
        logger.info("password changed for user %s", user_id)
