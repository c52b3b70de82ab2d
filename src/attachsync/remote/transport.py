"""Retrying executor for calls to the remote work-item service.

This module provides:
- TransportExecutor: runs one HTTP operation with exponential backoff
- Success / Failure: typed outcome of an execution
- TransportError hierarchy raised when a call cannot succeed
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds

RETRYABLE_STATUS_CODES = frozenset({408, 429})

# Exceptions that indicate the request never got a usable answer
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.NetworkError,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)

STATUS_GUIDANCE = {
    400: "Check the organization URL, project name and API version.",
    401: "The personal access token is invalid or expired.",
    403: "The personal access token lacks the Work Items (read and write) scope.",
    404: "Resource not found. Check the organization URL and project name.",
}

Operation = Callable[[], Awaitable[httpx.Response]]


class TransportError(Exception):
    """Base exception for remote call failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteStatusError(TransportError):
    """The remote service answered with an error status."""

    def __init__(self, status_code: int, body: str, url: str) -> None:
        self.body = body
        self.url = url
        self.guidance = STATUS_GUIDANCE.get(status_code, "")
        message = f"Remote service returned {status_code} for {url}"
        if self.guidance:
            message = f"{message}: {self.guidance}"
        super().__init__(message, status_code)


class NetworkFailure(TransportError):
    """The request failed before a response was received."""


class RetriesExhaustedError(TransportError):
    """A retryable failure persisted through every attempt."""

    def __init__(self, last_error: TransportError, attempts: int) -> None:
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            last_error.status_code,
        )
        self.last_error = last_error
        self.attempts = attempts


@dataclass
class Success:
    """Operation returned a 2xx/3xx response."""

    response: httpx.Response
    attempts: int

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Failure:
    """Operation failed.

    ``retries_exhausted`` is True when every attempt hit a retryable error,
    False when a fatal error stopped execution immediately.
    """

    error: TransportError
    attempts: int
    retries_exhausted: bool

    @property
    def ok(self) -> bool:
        return False


Result = Success | Failure


def is_retryable_status(status_code: int) -> bool:
    """Check if an HTTP status is worth retrying (408, 429, 5xx)."""
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code <= 599


class TransportExecutor:
    """Executes HTTP operations with bounded exponential backoff.

    At most ``max_retries + 1`` attempts are made. The delay before retry
    ``n`` (0-based) is ``base_delay * 2**n``, capped at ``max_delay``.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry following ``attempt``."""
        delay: float = min(self.base_delay * (2**attempt), self.max_delay)
        return delay

    async def execute(self, operation: Operation) -> Result:
        """Run ``operation`` until it succeeds, fails fatally, or retries run out.

        Args:
            operation: Zero-argument coroutine function performing one request.

        Returns:
            Success with the response, or Failure describing the last error.
        """
        last_error: TransportError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await operation()
            except NETWORK_EXCEPTIONS as e:
                last_error = NetworkFailure(f"Network error: {e}")
            else:
                if response.status_code < 400:
                    return Success(response=response, attempts=attempt + 1)
                error = RemoteStatusError(
                    response.status_code, response.text, str(response.request.url)
                )
                if not is_retryable_status(response.status_code):
                    logger.warning(f"Fatal remote error: {error}")
                    return Failure(error=error, attempts=attempt + 1, retries_exhausted=False)
                last_error = error

            if attempt == self.max_retries:
                break

            delay = self.backoff_delay(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {last_error}. "
                f"Retrying in {delay:.1f}s..."
            )
            await self._sleep(delay)

        assert last_error is not None
        attempts = self.max_retries + 1
        logger.error(f"All {attempts} attempts failed: {last_error}")
        return Failure(
            error=RetriesExhaustedError(last_error, attempts),
            attempts=attempts,
            retries_exhausted=True,
        )

    async def call(self, operation: Operation) -> httpx.Response:
        """Execute and unwrap the result.

        Raises:
            RetriesExhaustedError: If retryable failures persisted.
            RemoteStatusError: On a fatal error status.
        """
        result = await self.execute(operation)
        if isinstance(result, Failure):
            raise result.error
        return result.response
