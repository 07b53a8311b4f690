from typing import TYPE_CHECKING

from .client import RelayClient
from .config import RelaySettings
from .credential_pool import CredentialPool
from .error_handler import (
    InvalidKeyServerAccess,
    KeyServerNotConfigured,
    NoCredentialsAvailable,
    RelayError,
    StreamParseError,
    UpstreamAuthError,
    UpstreamConnectionError,
    UpstreamError,
)
from .relay_stream import RelayStream
from .types import CapabilityTier, ChatRequest, Credential, StreamState

# For type checkers, import the key tool statically.
# At runtime, it's lazy-loaded via __getattr__ (it pulls in rich).
if TYPE_CHECKING:
    from .key_tool import run_key_tool

__all__ = [
    "RelayClient",
    "RelaySettings",
    "CredentialPool",
    "RelayStream",
    "CapabilityTier",
    "ChatRequest",
    "Credential",
    "StreamState",
    "NoCredentialsAvailable",
    "KeyServerNotConfigured",
    "InvalidKeyServerAccess",
    "RelayError",
    "UpstreamError",
    "UpstreamAuthError",
    "UpstreamConnectionError",
    "StreamParseError",
    "run_key_tool",
]


def __getattr__(name):
    """Lazy-load the interactive key tool to keep library imports light."""
    if name == "run_key_tool":
        from .key_tool import run_key_tool
        return run_key_tool
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
