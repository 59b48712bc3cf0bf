import re
import socket

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError


class AnalysisError(Exception):
    """Base class for evidence analysis failures."""


# ── Precondition failures: raised before any job row exists ──
class PreconditionFailed(AnalysisError):
    status_code = 400


class FrameworkNotFound(PreconditionFailed):
    status_code = 404


class NoMatchingControls(PreconditionFailed):
    pass


class NoDocuments(PreconditionFailed):
    pass


class NoEvidenceAvailable(PreconditionFailed):
    pass


class AnalysisNotFound(AnalysisError):
    pass


class OracleError(AnalysisError):
    """The language model call failed; never retried for the same control."""


class VerdictParseError(AnalysisError):
    pass


# ---------- Transient storage classification ----------
_TRANSIENT_PATTERNS = re.compile(
    r"connection refused|could not connect|connection reset|connection timed out|"
    r"server closed the connection|name or service not known|"
    r"temporary failure in name resolution|nodename nor servname|getaddrinfo|"
    r"fetch failed|network is unreachable|econnrefused|econnreset|enotfound|etimedout",
    re.IGNORECASE,
)


def is_transient_error(exc: BaseException) -> bool:
    """
    True for connectivity problems worth retrying: refused/reset connections,
    DNS failures, network fetch failures. Anything else fails fast.
    """
    if isinstance(exc, (ConnectionError, socket.gaierror, TimeoutError)):
        return True
    if isinstance(exc, DisconnectionError):
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        if getattr(exc, "connection_invalidated", False):
            return True
        return bool(_TRANSIENT_PATTERNS.search(str(exc)))
    return bool(isinstance(exc, OSError) and _TRANSIENT_PATTERNS.search(str(exc)))
