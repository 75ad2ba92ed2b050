from datetime import datetime, timedelta
from typing import Any

import bcrypt
import jwt


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        return False


def encode_token(claims: dict[str, Any], secret: str, issued_at: datetime, ttl: timedelta, algorithm: str = "HS256") -> str:
    payload = {**claims, "iat": issued_at, "exp": issued_at + ttl}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> dict[str, Any]:
    """Return the claims of a token signed with ``secret``.

    Raises ``jwt.InvalidTokenError`` (or a subclass such as
    ``jwt.ExpiredSignatureError``) for anything that does not verify.
    """
    return jwt.decode(token, secret, algorithms=[algorithm], options={"require": ["exp", "iat"]})
