"""Retry policies for backend calls.

- Transient failures (BackendUnavailableError): exponential backoff up to
  the configured attempt limit, then re-raised.
- Optimistic-version races (ConflictError): bounded re-read/re-apply loop
  driven by the mutating operation.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import tenacity

from ..config import MemoryConfig
from ..errors import BackendUnavailableError, ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_before_sleep(kind: str) -> Callable[[tenacity.RetryCallState], None]:
    def _log(rs: tenacity.RetryCallState) -> None:
        exc = rs.outcome.exception() if rs.outcome is not None else None
        logger.debug(
            "Retrying after %s (attempt %d): %s",
            kind,
            rs.attempt_number + 1,
            exc,
        )

    return _log


class RetryPolicy:
    """Callable wrapper around a tenacity.Retrying configuration.

    Example:
        policy = transient_policy(config)
        node = policy.call(backend.get_node, node_id)
    """

    def __init__(self, retrying: tenacity.Retrying) -> None:
        self._retrying = retrying

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        # copy() gives each call its own retry state
        return self._retrying.copy()(fn, *args, **kwargs)


def transient_policy(config: MemoryConfig) -> RetryPolicy:
    """Retry BackendUnavailableError with exponential backoff."""
    return RetryPolicy(
        tenacity.Retrying(
            stop=tenacity.stop_after_attempt(config.retry_attempts),
            wait=tenacity.wait_exponential(
                multiplier=config.retry_wait_multiplier,
                min=config.retry_wait_min,
                max=config.retry_wait_max,
            ),
            retry=tenacity.retry_if_exception_type(BackendUnavailableError),
            before_sleep=_log_before_sleep("backend unavailable"),
            reraise=True,
        )
    )


def conflict_policy(config: MemoryConfig) -> RetryPolicy:
    """Retry ConflictError a bounded number of times with short jittered backoff."""
    return RetryPolicy(
        tenacity.Retrying(
            stop=tenacity.stop_after_attempt(config.conflict_retries),
            wait=tenacity.wait_random_exponential(
                multiplier=config.retry_wait_multiplier,
                max=config.retry_wait_max,
            ),
            retry=tenacity.retry_if_exception_type(ConflictError),
            before_sleep=_log_before_sleep("version conflict"),
            reraise=True,
        )
    )


__all__ = ["RetryPolicy", "conflict_policy", "transient_policy"]
