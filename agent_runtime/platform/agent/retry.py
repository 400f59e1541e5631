"""Backoff scheduling and cancellable retries for stream iterations.

Retries run on tenacity. The wait honours provider ``retry-after-ms`` /
``retry-after`` hints and otherwise backs off exponentially; the sleep
returns early as soon as the run's abort event is set.
"""

import asyncio
import email.utils
import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from agent_runtime.platform.agent.errors import RunCancelledError, classify_error
from agent_runtime.platform.settings import RetrySettings

type RetryCallback = Callable[[int, BaseException, int], None]


def _response_headers(error: Any) -> dict[str, Any]:
    """Response headers attached to an error, keyed in lower case."""
    for candidate in (
        getattr(error, "response_headers", None),
        getattr(error, "headers", None),
        getattr(getattr(error, "response", None), "headers", None),
    ):
        if candidate is None:
            continue
        try:
            return {str(key).lower(): value for key, value in candidate.items()}
        except (AttributeError, TypeError):
            continue
    return {}


def _parse_retry_after(value: Any, unit_ms: float) -> int | None:
    """Parse a numeric count (in ``unit_ms`` units) or an HTTP date to milliseconds."""
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    text = str(value).strip()
    try:
        number = float(text)
    except ValueError:
        number = math.nan
    if math.isfinite(number):
        return math.ceil(number * unit_ms) if number >= 0 else None

    try:
        when = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    offset_ms = (when - datetime.now(UTC)).total_seconds() * 1000
    return max(0, math.ceil(offset_ms))


def retry_after_ms(error: Any) -> int | None:
    """Delay requested by the provider through response headers, if any."""
    headers = _response_headers(error)
    if "retry-after-ms" in headers:
        parsed = _parse_retry_after(headers["retry-after-ms"], unit_ms=1)
        if parsed is not None:
            return parsed
    if "retry-after" in headers:
        parsed = _parse_retry_after(headers["retry-after"], unit_ms=1000)
        if parsed is not None:
            return parsed
    return None


def delay_ms(attempt: int, error: Any, settings: RetrySettings | None = None) -> int:
    """Compute the delay before retry number ``attempt`` (1-based).

    Args:
        attempt: Retry number, starting at 1
        error: Failure that triggered the retry
        settings: Retry policy; defaults apply when omitted

    Returns:
        Delay in milliseconds
    """
    settings = settings or RetrySettings()
    hinted = retry_after_ms(error)
    if hinted is not None:
        return hinted
    return int(settings.initial_delay_ms * settings.backoff_factor ** max(0, attempt - 1))


def can_retry(attempt: int, retryable: bool, settings: RetrySettings | None = None) -> bool:
    """Whether retry number ``attempt`` (1-based) is permitted."""
    settings = settings or RetrySettings()
    return retryable and attempt <= settings.max_retries


async def wait_with_abort(ms: float, abort: asyncio.Event) -> None:
    """Sleep for ``ms`` milliseconds, returning early once ``abort`` is set.

    No timer outlives the call: the pending wait is cancelled on timeout.
    """
    if abort.is_set() or ms <= 0:
        return
    try:
        await asyncio.wait_for(abort.wait(), timeout=ms / 1000)
    except TimeoutError:
        pass


class StreamRetrying:
    """Builds tenacity controllers that retry one stream iteration.

    Usage:
        retrying = StreamRetrying(settings, abort, on_retry=emit_retry)
        async for attempt in retrying.controller():
            with attempt:
                ...
    """

    def __init__(
        self,
        settings: RetrySettings,
        abort: asyncio.Event,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self._settings = settings
        self._abort = abort
        self._on_retry = on_retry

    def controller(self) -> AsyncRetrying:
        """A fresh controller; the attempt count starts at zero per iteration."""
        return AsyncRetrying(
            retry=self._should_retry,
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )

    def _should_retry(self, retry_state: RetryCallState) -> bool:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if not isinstance(error, Exception) or isinstance(error, RunCancelledError):
            return False
        if self._abort.is_set():
            return False
        return can_retry(retry_state.attempt_number, classify_error(error).retryable, self._settings)

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return delay_ms(retry_state.attempt_number, error, self._settings) / 1000

    async def _sleep(self, seconds: float) -> None:
        await wait_with_abort(seconds * 1000, self._abort)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_seconds = retry_state.next_action.sleep if retry_state.next_action else 0
        if error is None or self._on_retry is None:
            return
        self._on_retry(retry_state.attempt_number, error, round(sleep_seconds * 1000))
