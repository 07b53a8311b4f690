from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class CapabilityTier(IntEnum):
    """
    Capability classification of a credential.

    HIGHEST is a selection-only value meaning "best tier available"; loaded
    credentials are always STANDARD or PREMIUM.
    """

    HIGHEST = 0
    STANDARD = 3
    PREMIUM = 4

    @classmethod
    def from_record_type(cls, record_type: str) -> "CapabilityTier":
        """Maps a key record's `type` field ("gpt-3" / "gpt-4") to a tier."""
        return cls.STANDARD if record_type == "gpt-3" else cls.PREMIUM

    @property
    def record_type(self) -> str:
        return "gpt-3" if self is CapabilityTier.STANDARD else "gpt-4"


@dataclass(frozen=True)
class Credential:
    """An API secret together with the tier it was loaded under."""

    key: str = field(repr=False)
    tier: CapabilityTier
    is_override: bool = False

    @property
    def masked(self) -> str:
        return f"...{self.key[-6:]}" if len(self.key) > 6 else "..."

    def __repr__(self) -> str:
        return f"Credential({self.masked}, tier={self.tier.name}, override={self.is_override})"


@dataclass
class ChatRequest:
    """A streamed chat completion request as accepted by the relay."""

    model: str
    messages: List[Dict[str, Any]]
    system_prompt: str = ""
    temperature: float = 1.0
    max_tokens: Optional[int] = None


class StreamState(Enum):
    STREAMING = "streaming"
    CLOSED_SUCCESS = "closed_success"
    CLOSED_ERROR = "closed_error"


@dataclass
class UpstreamEvent:
    """One parsed event-stream record: a text delta, the finish signal, or a failure."""

    delta: str = ""
    finished: bool = False
    error: Optional[Exception] = None

    @classmethod
    def finish(cls) -> "UpstreamEvent":
        return cls(finished=True)

    @classmethod
    def failure(cls, error: Exception) -> "UpstreamEvent":
        return cls(error=error)

    @property
    def is_terminal(self) -> bool:
        return self.finished or self.error is not None
