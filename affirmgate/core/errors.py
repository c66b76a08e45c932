"""Project error hierarchy."""

from __future__ import annotations


class AffirmGateError(Exception):
    """Base error."""


class RelayError(AffirmGateError):
    """Failure that can still be reported to the browser as a JSON body."""

    def __init__(self, http_status: int, code: str, user_message: str) -> None:
        super().__init__(f"{code}: {user_message}")
        self.http_status = http_status
        self.code = code
        self.user_message = user_message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.user_message, "code": self.code}


class ValidationError(RelayError):
    """Rejected client input, always pre-stream."""

    def __init__(self, code: str, user_message: str) -> None:
        super().__init__(400, code, user_message)


class ConfigurationError(RelayError):
    """Missing secret or broken setup; operator actionable."""

    def __init__(self, detail: str) -> None:
        super().__init__(500, "CONFIG_ERROR", "Service configuration error. Please contact support.")
        self.detail = detail


class UpstreamTransportError(RelayError):
    """DNS, connect or timeout failure before the upstream answered."""


class UpstreamProtocolError(RelayError):
    """Upstream answered with a non-success status."""

    def __init__(self, http_status: int, code: str, user_message: str, upstream_status: int) -> None:
        super().__init__(http_status, code, user_message)
        self.upstream_status = upstream_status


class StreamDecodeError(AffirmGateError):
    """A single chunk could not be decoded; recovered by skipping it."""


class StreamTransportError(AffirmGateError):
    """The upstream stream broke after response headers were committed."""


class StreamTimeoutError(StreamTransportError):
    """No bytes arrived from the upstream within the read timeout."""
