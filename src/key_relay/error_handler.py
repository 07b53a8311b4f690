import json
from typing import Any, Dict, Optional

INVALID_API_KEY_CODE = "invalid_api_key"


def mask_credential(credential: Optional[str]) -> str:
    """Returns a log-safe representation of a credential (its last 6 characters)."""
    if not credential:
        return "N/A"
    if len(credential) <= 6:
        return "..."
    return f"...{credential[-6:]}"


class NoCredentialsAvailable(Exception):
    """Raised when the pool has no credential for the requested tier."""

    pass


class KeyServerNotConfigured(Exception):
    """Raised when an operation needs the remote key server but none is configured."""

    pass


class InvalidKeyServerAccess(Exception):
    """Raised when the key server rejects our authorization."""

    pass


class RelayError(Exception):
    """An error object reported by the upstream API: {error: {message, type, param, code}}."""

    def __init__(
        self,
        message: str,
        type: Optional[str] = None,
        param: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.type = type
        self.param = param
        self.code = code
        self.status_code = status_code

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], status_code: Optional[int] = None
    ) -> "RelayError":
        error = payload.get("error") or {}
        return cls(
            message=error.get("message") or "Unknown upstream error",
            type=error.get("type"),
            param=error.get("param"),
            code=error.get("code"),
            status_code=status_code,
        )

    def __str__(self):
        return f"RelayError(status={self.status_code}, code={self.code}, message={self.message})"


class UpstreamError(Exception):
    """A non-success response from the upstream API. Carries the status and raw body."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        error: Optional[RelayError] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.error = error


class UpstreamAuthError(UpstreamError):
    """The upstream rejected every credential we were allowed to try."""

    pass


class UpstreamConnectionError(UpstreamError):
    """The transport to the upstream failed before or during a response."""

    pass


class StreamParseError(Exception):
    """Raised on the output stream when an event payload cannot be parsed."""

    def __init__(self, message, data=None):
        super().__init__(message)
        self.data = data


class ClassifiedError:
    """A structured representation of a classified upstream response."""

    def __init__(
        self,
        error_type: str,
        status_code: Optional[int],
        body: str,
        relay_error: Optional[RelayError] = None,
    ):
        self.error_type = error_type
        self.status_code = status_code
        self.body = body
        self.relay_error = relay_error

    @property
    def message(self) -> str:
        if self.relay_error:
            return self.relay_error.message
        return self.body or f"Upstream returned status {self.status_code}"

    def __str__(self):
        return f"ClassifiedError(type={self.error_type}, status={self.status_code}, error={self.relay_error})"


def parse_relay_error(body: str, status_code: Optional[int] = None) -> Optional[RelayError]:
    """Parses an upstream JSON error body. Returns None when it carries no `error` object."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    return RelayError.from_payload(payload, status_code=status_code)


def classify_response(status_code: int, body: str) -> ClassifiedError:
    """
    Classifies a non-success upstream response.

    Only an explicit `invalid_api_key` code counts as an authentication failure;
    a bare 401 without that code is an invalid request (nothing to rotate away from).
    """
    relay_error = parse_relay_error(body, status_code)

    if relay_error and relay_error.code == INVALID_API_KEY_CODE:
        error_type = "authentication"
    elif status_code == 429:
        error_type = "rate_limit"
    elif 400 <= status_code < 500:
        error_type = "invalid_request"
    elif status_code >= 500:
        error_type = "server_error"
    else:
        error_type = "unknown"

    return ClassifiedError(
        error_type=error_type,
        status_code=status_code,
        body=body,
        relay_error=relay_error,
    )


def is_invalid_credential(classified: ClassifiedError) -> bool:
    return classified.error_type == "authentication"
