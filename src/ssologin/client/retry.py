"""Retry policy for identity provider calls.

:class:`RetryStrategy` bounds the number of attempts and spaces them with
capped exponential backoff and full jitter. Whether a failure is retried at
all is decided by a *decider* callable:

* :func:`default_retry_decider` -- transport errors, throttling, and
  transient server faults.
* :func:`oidc_retry_decider` -- the default, plus ``InvalidGrantException``
  when ``retry_invalid_grant`` is enabled. Token issuance occasionally
  reports an invalid grant for a code that succeeds on a second attempt.

Only :class:`~ssologin.client.oidc.OidcClient` is built with a strategy;
authenticated portal calls are never retried.
"""

from __future__ import annotations

import random
from functools import partial
from typing import Callable

import httpx

from ssologin.exceptions import ServiceError

RetryDecider = Callable[[BaseException], bool]

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})

INVALID_GRANT = "InvalidGrantException"


def default_retry_decider(error: BaseException) -> bool:
    """Return True for failures that are safe to retry blindly."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, ServiceError):
        return error.is_throttling or error.status_code in TRANSIENT_STATUS_CODES
    return False


def oidc_retry_decider(error: BaseException, retry_invalid_grant: bool = True) -> bool:
    """Identity provider decider: the default policy plus ``InvalidGrantException``."""
    if default_retry_decider(error):
        return True
    return (
        retry_invalid_grant
        and isinstance(error, ServiceError)
        and error.name == INVALID_GRANT
    )


def make_oidc_decider(retry_invalid_grant: bool = True) -> RetryDecider:
    return partial(oidc_retry_decider, retry_invalid_grant=retry_invalid_grant)


class RetryStrategy:
    """Bounded retry with capped exponential backoff and full jitter.

    Args:
        max_attempts: Total attempts, including the first one.
        decider: Predicate deciding whether a failure may be retried.
        base_delay: Backoff unit in seconds.
        max_delay: Upper bound on a single delay in seconds.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        decider: RetryDecider = default_retry_decider,
        base_delay: float = 0.1,
        max_delay: float = 20.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.decider = decider
        self.base_delay = base_delay
        self.max_delay = max_delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Return True if *attempt* (1-based) failed with *error* and another may follow."""
        return attempt < self.max_attempts and self.decider(error)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (1-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)


NO_RETRY = RetryStrategy(max_attempts=1, decider=lambda _: False)
