from typing import Optional

# =============================================================================
# Error Taxonomy
# =============================================================================


class ProxyError(Exception):
    """Base class for every error the proxy turns into an HTTP response."""

    status_code = 500
    reason = "Internal Server Error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.reason)
        if status_code is not None:
            self.status_code = status_code


class ConfigurationConflict(ProxyError):
    """Ambiguous or invalid rule set. Raised at load time only."""

    reason = "Configuration Conflict"


class UpstreamUnreachable(ProxyError):
    """Connect failure, refusal, or I/O failure before any response byte was sent."""

    status_code = 502
    reason = "Bad Gateway"


class UpstreamTimeout(ProxyError):
    """The exchange exceeded its time budget."""

    status_code = 504
    reason = "Gateway Timeout"


class MalformedRequest(ProxyError):
    """Inbound request violates HTTP/1.1 framing."""

    status_code = 400
    reason = "Bad Request"


class InternalError(ProxyError):
    """Unexpected failure inside the forwarder."""


class ClientDisconnected(Exception):
    """The caller went away mid-exchange. Never answered, only logged."""


class StreamAborted(Exception):
    """The upstream failed after response bytes reached the caller."""
