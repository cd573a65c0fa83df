"""Utility functions and helpers."""

from genrelay.utils.background_tasks import BackgroundTasks
from genrelay.utils.request_retry import RequestRetryConfig, get_request_retrying

__all__ = [
    "BackgroundTasks",
    "RequestRetryConfig",
    "get_request_retrying",
]
