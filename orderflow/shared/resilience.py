"""
Retry-with-timeout wrapper shared by remote API calls and local storage calls.

Every operation is raced against a timeout and retried with linear backoff
(``retry_delay * attempt``). Errors that describe a client-side problem
(unauthorized, forbidden, not found, invalid, bad request) are raised on the
first attempt without consuming the retry budget.
Sync callables run in a worker thread; one that overruns its timeout is waited
out and reported as StorageTimeoutError instead of being retried alongside itself.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy.exc import DataError, IntegrityError, ProgrammingError

from ..config import QUICKBOOKS_HTTP_TIMEOUT, QUICKBOOKS_MAX_RETRIES, QUICKBOOKS_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_MESSAGES = (
    "unauthorized",
    "permission denied",
    "forbidden",
    "not found",
    "invalid",
    "bad request",
)

# Statement-level database errors fail the same way on every attempt
NON_RETRYABLE_ERRORS = (IntegrityError, DataError, ProgrammingError)


class OperationTimeoutError(Exception):
    """Raised when an operation does not finish within its timeout"""

    retryable = True


class StorageTimeoutError(OperationTimeoutError):
    """
    A sync (storage) operation overran its timeout. Its worker thread has been
    waited out, so the outcome is unknown; never retried.
    """

    retryable = False


@dataclass(frozen=True)
class RetryOptions:
    timeout: float = QUICKBOOKS_HTTP_TIMEOUT
    max_retries: int = QUICKBOOKS_MAX_RETRIES
    retry_delay: float = QUICKBOOKS_RETRY_DELAY


DEFAULT_RETRY_OPTIONS = RetryOptions()
# Single attempt, still bounded by the timeout
NO_RETRY = RetryOptions(max_retries=1)


def is_retryable(error: BaseException) -> bool:
    """Classify an error; an explicit ``retryable`` attribute wins over the message text"""
    flag = getattr(error, "retryable", None)
    if flag is not None:
        return bool(flag)
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return False
    message = str(error).lower()
    return not any(text in message for text in NON_RETRYABLE_MESSAGES)


def _is_async(operation: Callable[[], Any]) -> bool:
    return inspect.iscoroutinefunction(operation) or inspect.iscoroutinefunction(
        getattr(operation, "__call__", None)
    )


async def _run_in_thread(operation: Callable[[], Any], timeout: float, description: str) -> Any:
    """
    Run a sync callable (SQLAlchemy session work) off the event loop.

    A thread cannot be cancelled, so on timeout the call is waited out before
    StorageTimeoutError is raised: at most one attempt touches the session at a time.
    """
    task = asyncio.ensure_future(asyncio.to_thread(operation))
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()

    logger.warning(f"⚠️ {description} exceeded {timeout}s, waiting for it to finish")
    try:
        await task
    except Exception as e:
        raise StorageTimeoutError(f"Operation timed out after {timeout}s: {e}") from e
    raise StorageTimeoutError(f"Operation timed out after {timeout}s")


async def _run_once(operation: Callable[[], Any], timeout: float, description: str = "operation") -> Any:
    if not _is_async(operation):
        result = await _run_in_thread(operation, timeout, description)
        if not inspect.isawaitable(result):
            return result
    else:
        try:
            result = await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"Operation timed out after {timeout}s") from None
    if inspect.isawaitable(result):
        # Plain callables returning a coroutine (lambdas wrapping async calls)
        try:
            result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"Operation timed out after {timeout}s") from None
    return result


async def execute(
    operation: Callable[[], Union[T, Awaitable[T]]],
    options: Optional[RetryOptions] = None,
    *,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` with a timeout, retrying transient failures.

    Args:
        operation: zero-argument callable; may be async or sync
        options: base RetryOptions, individual keyword arguments override it
        description: label used in log lines

    Returns:
        Whatever ``operation`` returns

    Raises:
        The last error raised by ``operation``, or OperationTimeoutError
    """
    options = options or DEFAULT_RETRY_OPTIONS
    timeout = options.timeout if timeout is None else timeout
    max_retries = options.max_retries if max_retries is None else max_retries
    retry_delay = options.retry_delay if retry_delay is None else retry_delay
    max_retries = max(1, max_retries)

    for attempt in range(1, max_retries + 1):
        try:
            return await _run_once(operation, timeout, description)
        except Exception as e:
            if not is_retryable(e):
                logger.debug(f"{description} failed with non-retryable error: {e}")
                raise
            if attempt == max_retries:
                logger.error(f"❌ {description} failed after {attempt} attempt(s): {e}")
                raise
            delay = retry_delay * attempt
            logger.warning(
                f"🔄 Retry {attempt}/{max_retries} for {description} in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{description} did not run")  # pragma: no cover
