"""JWT helpers for realtime connections.

The server verifies tokens fully. The client only reads the expiry claim of
its cached credential, without a network round-trip and without the secret.
"""

import time
from typing import Any

import jwt
import structlog

from genrelay.config import Settings, settings
from genrelay.services.exceptions import AuthExpiredError, AuthRejectedError

logger = structlog.get_logger(__name__)


def create_token(user_id: str | int, *, ttl: int | None = None, config: Settings | None = None) -> str:
    """Mint a user token. Used by the CLI and tests; production tokens come from the auth service."""
    cfg = config or settings
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (cfg.jwt_ttl_seconds if ttl is None else ttl),
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=cfg.jwt_algorithm)


def verify_token(token: str | None, *, config: Settings | None = None) -> str:
    """Verify signature and expiry, returning the user id.

    Raises:
        AuthExpiredError: Token is well-formed but expired
        AuthRejectedError: Token is missing, malformed, or has a bad signature
    """
    cfg = config or settings
    if not token:
        raise AuthRejectedError("Missing token")
    try:
        claims = jwt.decode(token, cfg.jwt_secret, algorithms=[cfg.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthExpiredError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthRejectedError(f"Invalid token: {e}") from e

    user_id = claims.get("sub") or claims.get("userId") or claims.get("id")
    if user_id is None:
        raise AuthRejectedError("Token has no subject")
    return str(user_id)


def read_expiry(token: str) -> float | None:
    """Return the `exp` claim (epoch seconds) without verifying the signature.

    Returns None when the token carries no expiry. Malformed tokens raise
    AuthRejectedError.
    """
    try:
        claims: dict[str, Any] = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        raise AuthRejectedError(f"Malformed token: {e}") from e
    exp = claims.get("exp")
    if exp is None:
        return None
    return float(exp)


def is_token_expired(token: str | None, *, now: float | None = None) -> bool:
    """True if the token is missing, malformed, or its expiry is in the past."""
    if not token:
        return True
    try:
        exp = read_expiry(token)
    except AuthRejectedError:
        logger.warning("Cached credential is malformed")
        return True
    if exp is None:
        return False
    return exp <= (time.time() if now is None else now)
