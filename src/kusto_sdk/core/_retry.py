# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Exponential backoff with jitter, driven by a pluggable error classifier.

:class:`RetryPolicy` is the only component allowed to suppress an error, and it
does so only by retrying it. Permanent errors propagate on the first failure;
transient errors are retried until ``max_attempts`` is reached, after which the
last error is re-raised unchanged and tagged with ``retries_exhausted``.
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from typing import Any, Callable, Optional, TypeVar

from .errors import KustoError, OperationCancelledError, RequestTimeoutError
from ._error_codes import VALIDATION_CANCELLED

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Classification(str, enum.Enum):
    """Outcome of classifying a failed attempt."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"


def classify_error(error: BaseException) -> Classification:
    """
    Default classifier: trust the ``is_permanent`` flag carried by SDK errors.

    Anything that is not a :class:`~kusto_sdk.core.errors.KustoError` is a bug or
    an unexpected condition and is never retried.
    """
    if isinstance(error, KustoError) and not error.is_permanent:
        return Classification.TRANSIENT
    return Classification.PERMANENT


class RetryPolicy:
    """
    Retry a callable with exponential backoff and jitter.

    The delay before retrying after the failure of attempt ``k`` (zero based) is
    ``base_delay * 2**k + uniform(0, max_jitter)``.

    :param max_attempts: Total number of attempts, including the first one. Default is 3.
    :type max_attempts: :class:`int`
    :param base_delay: Base delay in seconds. Default is 1.0.
    :type base_delay: :class:`float`
    :param max_jitter: Upper bound in seconds of the random jitter added to each delay. Default is 1.0.
    :type max_jitter: :class:`float`

    Example::

        policy = RetryPolicy(max_attempts=3, base_delay=0.5, max_jitter=0.5)
        result = policy.execute(lambda attempt: send(attempt))
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_jitter: Optional[float] = None,
    ) -> None:
        self.max_attempts = max_attempts if max_attempts is not None else 3
        self.base_delay = base_delay if base_delay is not None else 1.0
        self.max_jitter = max_jitter if max_jitter is not None else 1.0
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def compute_delay(self, attempt: int) -> float:
        """Return the sleep in seconds before retrying after the failure of ``attempt``."""
        jitter = random.uniform(0, self.max_jitter) if self.max_jitter > 0 else 0.0
        return self.base_delay * (2**attempt) + jitter

    def execute(
        self,
        attempt_fn: Callable[[int], T],
        classify: Optional[Callable[[BaseException], Classification]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        """
        Invoke ``attempt_fn(attempt)`` until it succeeds, fails permanently or runs out of attempts.

        :param attempt_fn: Callable receiving the zero based attempt number.
        :param classify: Maps a failure to :class:`Classification`. Defaults to :func:`classify_error`.
        :param cancel_event: When set during a backoff delay, the retry loop stops with
            :class:`~kusto_sdk.core.errors.OperationCancelledError`.
        :return: The value returned by the first successful attempt.
        :raises Exception: The permanent error, or the last transient error once attempts are exhausted.
        """
        classify = classify or classify_error
        attempt = 0
        while True:
            try:
                return attempt_fn(attempt)
            except Exception as e:
                if classify(e) is Classification.PERMANENT:
                    logger.error("Error is permanent, stopping after attempt %d: %s", attempt + 1, e)
                    raise
                if attempt + 1 >= self.max_attempts:
                    logger.info("Max retry attempts reached: %d.", attempt + 1)
                    if isinstance(e, KustoError):
                        e.retries_exhausted = True
                        e.attempts = attempt + 1
                    raise
                delay = self.compute_delay(attempt)
                logger.info(
                    "Attempt %d failed, trying again after sleep of %.2f seconds: %s",
                    attempt + 1,
                    delay,
                    e,
                )
            self._sleep(delay, cancel_event)
            attempt += 1

    def execute_until_result(
        self,
        attempt_fn: Callable[[int], Any],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """
        Synchronous polling form for flows that report "not ready yet" with a sentinel.

        A ``None`` result, or a numeric result that is zero or negative, means that no
        result is available yet and the call is retried with the usual backoff. Errors
        raised by ``attempt_fn`` propagate immediately.

        :raises ~kusto_sdk.core.errors.RequestTimeoutError: If no result is produced
            within ``max_attempts`` calls.
        """
        for attempt in range(self.max_attempts):
            result = attempt_fn(attempt)
            if not _is_pending(result):
                return result
            if attempt + 1 < self.max_attempts:
                self._sleep(self.compute_delay(attempt), cancel_event)
        err = RequestTimeoutError(f"No result was produced after {self.max_attempts} attempts")
        err.retries_exhausted = True
        err.attempts = self.max_attempts
        raise err

    @staticmethod
    def _sleep(delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            time.sleep(delay)
            return
        if cancel_event.wait(delay):
            raise OperationCancelledError("Operation was cancelled", subcode=VALIDATION_CANCELLED)


def _is_pending(result: Any) -> bool:
    if result is None:
        return True
    if isinstance(result, bool):
        return not result
    if isinstance(result, (int, float)):
        return result <= 0
    return False


__all__ = ["RetryPolicy", "Classification", "classify_error"]
