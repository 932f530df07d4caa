# dns_autoswitch/health/errors.py
"""Probe failure taxonomy and classification of network exceptions"""

import logging
from enum import Enum
from typing import Union

from OpenSSL import SSL
from service_identity import VerificationError
from twisted.internet import defer, error
from twisted.names import error as dns_error
from twisted.python.failure import Failure

from ..constants import RETRY_BACKOFF_FACTOR, RETRY_SLOW_BACKOFF_FACTOR

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Why a probe failed"""

    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    NAME_RESOLUTION_FAILURE = "name_resolution_failure"
    TLS_OR_AUTH_FAILURE = "tls_or_auth_failure"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def backoff_factor(self) -> float:
        """Exponential base used between retries of this kind"""
        if self in (ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED):
            return RETRY_SLOW_BACKOFF_FACTOR
        return RETRY_BACKOFF_FACTOR

    @property
    def suggested_action(self) -> str:
        return _SUGGESTIONS[self]


_RETRYABLE = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.NAME_RESOLUTION_FAILURE,
        ErrorKind.RATE_LIMITED,
        ErrorKind.UNKNOWN,
    }
)

_SUGGESTIONS = {
    ErrorKind.TIMEOUT: "Check your internet connection",
    ErrorKind.HOST_UNREACHABLE: "Verify network connectivity",
    ErrorKind.NAME_RESOLUTION_FAILURE: "Try a different DNS server",
    ErrorKind.TLS_OR_AUTH_FAILURE: "Check the server's TLS name and certificate",
    ErrorKind.RATE_LIMITED: "Wait before trying again",
    ErrorKind.UNKNOWN: "Check the logs for details",
}

# Order matters: error.TimeoutError and DNSLookupError are ConnectErrors too
_EXCEPTION_KINDS = (
    (
        (
            defer.TimeoutError,
            error.TimeoutError,
            error.TCPTimedOutError,
            dns_error.DNSQueryTimeoutError,
        ),
        ErrorKind.TIMEOUT,
    ),
    (
        (error.DNSLookupError, error.UnknownHostError, dns_error.DNSNameError),
        ErrorKind.NAME_RESOLUTION_FAILURE,
    ),
    ((SSL.Error, VerificationError), ErrorKind.TLS_OR_AUTH_FAILURE),
    ((dns_error.DNSQueryRefusedError,), ErrorKind.RATE_LIMITED),
    (
        (error.ConnectionRefusedError, error.NoRouteError, error.ConnectError),
        ErrorKind.HOST_UNREACHABLE,
    ),
)

# Fallback when only the message says what happened
_MESSAGE_KINDS = (
    ("connection refused", ErrorKind.HOST_UNREACHABLE),
    ("network is unreachable", ErrorKind.HOST_UNREACHABLE),
    ("no route to host", ErrorKind.HOST_UNREACHABLE),
    ("timed out", ErrorKind.TIMEOUT),
    ("certificate", ErrorKind.TLS_OR_AUTH_FAILURE),
    ("too many requests", ErrorKind.RATE_LIMITED),
    ("rate limit", ErrorKind.RATE_LIMITED),
    ("name or service not known", ErrorKind.NAME_RESOLUTION_FAILURE),
)


def classify_failure(reason: Union[Failure, BaseException]) -> ErrorKind:
    """Map a Failure or exception raised by a probe transport to an ErrorKind"""
    exc = reason.value if isinstance(reason, Failure) else reason

    for exc_types, kind in _EXCEPTION_KINDS:
        if isinstance(exc, exc_types):
            return kind

    message = str(exc).lower()
    for pattern, kind in _MESSAGE_KINDS:
        if pattern in message:
            return kind

    logger.debug(f"Unclassified probe failure {type(exc).__name__}: {exc}")
    return ErrorKind.UNKNOWN
