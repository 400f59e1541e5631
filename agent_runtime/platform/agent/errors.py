"""Exception hierarchy and failure classification for agent runs.

``classify_error`` maps any failure raised while streaming a model
iteration into a closed taxonomy with a retryability verdict and a fixed
operator-facing message.
"""

import errno
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx


class AgentRuntimeError(Exception):
    """Base exception for agent runtime errors."""


class RunCancelledError(AgentRuntimeError):
    """Raised when the run's abort signal is set before a stream attempt."""

    def __init__(self, agent_id: str | None = None):
        self.agent_id = agent_id
        super().__init__(f"Run cancelled{f' for agent {agent_id}' if agent_id else ''}")


class ErrorKind(StrEnum):
    """Failure taxonomy."""

    NETWORK_SOCKET_CLOSED = "network_socket_closed"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"
    # Raised by loop detection, never by the classifier
    STUCK_LOOP = "stuck_loop"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK_SOCKET_CLOSED: "The connection to the model provider was closed unexpectedly.",
    ErrorKind.AUTH: "Authentication with the model provider failed. Check the API key and its permissions.",
    ErrorKind.RATE_LIMITED: "The model provider is rate limiting requests.",
    ErrorKind.TIMEOUT: "The request to the model provider timed out.",
    ErrorKind.PROVIDER_UNAVAILABLE: "The model provider is temporarily unavailable.",
    ErrorKind.UNKNOWN: "An unexpected error occurred while generating a response.",
}


@dataclass(frozen=True)
class ClassifiedError:
    """Classification verdict for a failure.

    Attributes:
        kind: Error kind
        retryable: Whether the iteration may be retried
        raw_message: Message of the original failure
        user_message: Fixed message for display to an operator
    """

    kind: ErrorKind
    retryable: bool
    raw_message: str
    user_message: str


_SOCKET_CLOSED_RE = re.compile(r"other side closed|socket|connection reset|econnreset", re.IGNORECASE)
_TIMEOUT_RE = re.compile(r"timeout|timed out", re.IGNORECASE)
_UNAVAILABLE_RE = re.compile(
    r"provider unavailable|service unavailable|bad gateway|gateway timeout", re.IGNORECASE
)
_SOCKET_CAUSE_CODES = frozenset({"UND_ERR_SOCKET", "ECONNRESET"})
_UNAVAILABLE_STATUSES = frozenset({502, 503, 504, 529})
_MAX_CHAIN_DEPTH = 8


def _error_chain(error: Any) -> list[Any]:
    """The error followed by its causes/contexts, without cycles."""
    chain: list[Any] = []
    current = error
    while current is not None and len(chain) < _MAX_CHAIN_DEPTH and not any(
        current is seen for seen in chain
    ):
        chain.append(current)
        current = getattr(current, "__cause__", None) or getattr(current, "__context__", None)
    return chain


def _message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def _has_socket_cause(chain: list[Any]) -> bool:
    for link in chain:
        if isinstance(link, ConnectionResetError | BrokenPipeError | httpx.RemoteProtocolError):
            return True
        if isinstance(link, OSError) and link.errno in (errno.ECONNRESET, errno.EPIPE):
            return True
        if getattr(link, "code", None) in _SOCKET_CAUSE_CODES:
            return True
    return False


def status_code_of(error: Any) -> int | None:
    """HTTP-like status carried by an error, if any."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _flagged_retryable(error: Any) -> bool:
    return getattr(error, "retryable", None) is True or getattr(error, "is_retryable", None) is True


def _classified(kind: ErrorKind, retryable: bool, raw_message: str) -> ClassifiedError:
    return ClassifiedError(
        kind=kind,
        retryable=retryable,
        raw_message=raw_message,
        user_message=USER_MESSAGES[kind],
    )


def classify_error(error: Any) -> ClassifiedError:
    """Map a failure to an error kind, first match wins.

    Precedence: socket closed, auth (401/403), rate limited (429), timeout,
    provider unavailable, unknown. Unknown errors are retryable only when
    the error flags itself retryable.

    Args:
        error: Any raised failure (or a non-exception error value)

    Returns:
        ClassifiedError verdict
    """
    chain = _error_chain(error)
    raw_message = _message_of(error)
    text = " ".join(_message_of(link) for link in chain)
    status = status_code_of(error)

    if _has_socket_cause(chain) or _SOCKET_CLOSED_RE.search(text):
        return _classified(ErrorKind.NETWORK_SOCKET_CLOSED, True, raw_message)
    if status in (401, 403):
        return _classified(ErrorKind.AUTH, False, raw_message)
    if status == 429:
        return _classified(ErrorKind.RATE_LIMITED, True, raw_message)
    if (
        any(isinstance(link, TimeoutError | httpx.TimeoutException) for link in chain)
        or _TIMEOUT_RE.search(text)
    ):
        return _classified(ErrorKind.TIMEOUT, True, raw_message)
    if status in _UNAVAILABLE_STATUSES or _UNAVAILABLE_RE.search(text):
        return _classified(ErrorKind.PROVIDER_UNAVAILABLE, True, raw_message)
    return _classified(ErrorKind.UNKNOWN, _flagged_retryable(error), raw_message)
