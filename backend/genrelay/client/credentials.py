"""Cached user credential for the realtime client."""

import structlog

from genrelay.services.tokens import is_token_expired, read_expiry

logger = structlog.get_logger(__name__)


class CredentialStore:
    """Holds the bearer token shared by the socket and the collaborator API.

    The token may be replaced out-of-band (refreshed by the auth layer), which
    is why the connection manager re-reads it on every connect.
    """

    def __init__(self, token: str | None = None) -> None:
        self._token = token

    @property
    def token(self) -> str | None:
        return self._token

    def update(self, token: str) -> None:
        self._token = token
        logger.info("Credential updated", expires_at=read_expiry(token))

    def purge(self) -> None:
        if self._token is not None:
            logger.info("Purging cached credential")
        self._token = None

    def is_expired(self, now: float | None = None) -> bool:
        return is_token_expired(self._token, now=now)
