import asyncio
from collections.abc import Awaitable, Callable
from logging import Logger
from typing import Any, Self, TypeVar

import httpx
from fastmcp.utilities.logging import get_logger
from githubkit.exception import RequestError as GitHubKitRequestError
from githubkit.exception import RequestFailed as GitHubKitRequestFailed
from githubkit.exception import RequestTimeout as GitHubKitRequestTimeout
from githubkit.response import Response as GitHubKitResponse
from pydantic import BaseModel, ConfigDict, Field

logger: Logger = get_logger(name=__name__)

T = TypeVar("T")

RetryObserver = Callable[[BaseException, int], Any]
RetryPredicate = Callable[[BaseException], bool]
Sleeper = Callable[[float], Awaitable[Any]]

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_ATTEMPT_TIMEOUT = 30.0

TOO_MANY_REQUESTS = 429
FORBIDDEN = 403
SERVER_ERROR = 500


def is_rate_limited(response: GitHubKitResponse[Any]) -> bool:
    """GitHub signals rate limits with a 429, or with a 403 that carries rate limit headers."""

    if response.status_code == TOO_MANY_REQUESTS:
        return True

    if response.status_code == FORBIDDEN:
        return response.headers.get("x-ratelimit-remaining") == "0" or "retry-after" in response.headers

    return False


def is_transient_error(error: BaseException) -> bool:
    """Whether the error is worth another attempt: network failures, timeouts, server errors and rate limits."""

    if isinstance(error, TimeoutError | httpx.TransportError | GitHubKitRequestTimeout | GitHubKitRequestError):
        return True

    if isinstance(error, GitHubKitRequestFailed):
        return error.response.status_code >= SERVER_ERROR or is_rate_limited(error.response)

    return False


class RetryPolicy(BaseModel):
    """Retry an async call with exponential backoff.

    The delay before attempt `n + 1` is `min(base_delay * 2 ** (n - 1), max_delay)`. Every attempt is bounded by
    `attempt_timeout` so a hung connection counts as a failed attempt instead of stalling the loop. Errors rejected
    by `retry_on` are raised immediately.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="The maximum number of attempts, including the first one.")
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0, description="The delay in seconds after the first failed attempt.")
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0, description="The upper bound for any single delay in seconds.")
    attempt_timeout: float | None = Field(default=DEFAULT_ATTEMPT_TIMEOUT, description="The timeout in seconds for a single attempt.")

    on_retry: RetryObserver | None = Field(default=None, exclude=True, description="Called with the error and attempt number.")
    retry_on: RetryPredicate = Field(default=is_transient_error, exclude=True)
    sleep: Sleeper = Field(default=asyncio.sleep, exclude=True)

    def with_overrides(self, **overrides: Any) -> Self:  # pyright: ignore[reportAny]
        return self.model_copy(update=overrides)

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    async def _attempt(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await fn()

        async with asyncio.timeout(self.attempt_timeout):
            return await fn()

    async def run(self, fn: Callable[[], Awaitable[T]], description: str = "request") -> T:
        """Run `fn` until it succeeds, a non-retryable error is raised, or the attempts are exhausted."""

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt(fn)
            except Exception as e:
                if not self.retry_on(e):
                    raise

                if self.on_retry is not None:
                    self.on_retry(e, attempt)

                if attempt >= self.max_attempts:
                    logger.warning(f"Giving up on {description} after {attempt} attempts: {e!r}")
                    raise

                delay = self.delay_for(attempt)
                logger.warning(f"Retrying {description} (attempt {attempt} of {self.max_attempts}) in {delay}s after error: {e!r}")
                await self.sleep(delay)

        msg = f"Retry loop for {description} exited without a result"
        raise RuntimeError(msg)


METADATA_RETRY_POLICY = RetryPolicy(max_attempts=3)
TREE_RETRY_POLICY = RetryPolicy(max_attempts=3)
BLOB_RETRY_POLICY = RetryPolicy(max_attempts=2)
