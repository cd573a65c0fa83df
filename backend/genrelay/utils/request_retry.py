"""Retry policy for collaborator HTTP calls, built on tenacity."""

from dataclasses import dataclass

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from genrelay.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class RequestRetryConfig:
    """Exponential backoff bounds for network-level failures."""

    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 10.0
    multiplier: float = 1.0

    @classmethod
    def from_settings(cls, config: Settings) -> "RequestRetryConfig":
        return cls(max_attempts=config.api_retry_attempts, max_wait=config.api_retry_max_wait)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Collaborator request failed, retrying",
        attempt=state.attempt_number,
        wait=round(state.next_action.sleep, 2) if state.next_action else None,
        error=str(exc),
    )


def get_request_retrying(config: RequestRetryConfig | None = None) -> AsyncRetrying:
    """AsyncRetrying that retries httpx.RequestError only.

    HTTP status errors surface on the first attempt; the last network error
    is re-raised once attempts run out.

    Usage:
        async for attempt in get_request_retrying(cfg):
            with attempt:
                response = await client.get(url)
    """
    cfg = config or RequestRetryConfig()
    return AsyncRetrying(
        retry=retry_if_exception_type(httpx.RequestError),
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(multiplier=cfg.multiplier, min=cfg.min_wait, max=cfg.max_wait),
        before_sleep=_log_retry,
        reraise=True,
    )
