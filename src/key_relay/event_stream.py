"""
Incremental parsing of a `text/event-stream` body.

`EventStreamParser` accepts arbitrary text chunks (records may be split at
any point, including inside a CRLF pair) and returns the events completed by
each chunk. `parse_completion_event` turns the data of one event into an
`UpstreamEvent` for the relay stream.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from .error_handler import StreamParseError
from .types import UpstreamEvent

lib_logger = logging.getLogger("key_relay")

DONE_SENTINEL = "[DONE]"


@dataclass
class ServerSentEvent:
    data: str
    event: str = "message"
    id: Optional[str] = None


class EventStreamParser:
    def __init__(self):
        self._buffer = ""
        self._data_lines: List[str] = []
        self._event_type = ""
        self._last_event_id: Optional[str] = None
        self._started = False
        self._pending_cr = False
        self.reconnect_interval: Optional[int] = None

    def feed(self, chunk: str) -> List[ServerSentEvent]:
        if not self._started and chunk:
            self._started = True
            if chunk.startswith("\ufeff"):
                chunk = chunk[1:]

        # A CR that ended the previous chunk already terminated its line.
        if self._pending_cr and chunk:
            if chunk.startswith("\n"):
                chunk = chunk[1:]
            self._pending_cr = False

        self._buffer += chunk
        events: List[ServerSentEvent] = []

        while True:
            cr = self._buffer.find("\r")
            lf = self._buffer.find("\n")
            if cr == -1 and lf == -1:
                break

            if cr != -1 and (lf == -1 or cr < lf):
                line = self._buffer[:cr]
                if cr + 1 < len(self._buffer):
                    skip = 2 if self._buffer[cr + 1] == "\n" else 1
                else:
                    skip = 1
                    self._pending_cr = True
                self._buffer = self._buffer[cr + skip:]
            else:
                line = self._buffer[:lf]
                self._buffer = self._buffer[lf + 1:]

            event = self._process_line(line)
            if event is not None:
                events.append(event)

        return events

    def _process_line(self, line: str) -> Optional[ServerSentEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._event_type = value
        elif field == "id":
            if "\0" not in value:
                self._last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self.reconnect_interval = int(value)
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data_lines:
            self._event_type = ""
            return None
        event = ServerSentEvent(
            data="\n".join(self._data_lines),
            event=self._event_type or "message",
            id=self._last_event_id,
        )
        self._data_lines = []
        self._event_type = ""
        return event


def parse_completion_event(data: str) -> UpstreamEvent:
    """
    Interprets one event's data as a streamed chat completion chunk.

    A non-null `finish_reason` on the first choice (or the `[DONE]` sentinel)
    is terminal. Anything that is not a completion chunk becomes a parse error.
    """
    if data.strip() == DONE_SENTINEL:
        return UpstreamEvent.finish()

    try:
        payload = json.loads(data)
        choices = payload["choices"]
        if not choices:
            # Azure sends prompt-filter results in a chunk without choices.
            return UpstreamEvent()
        choice = choices[0]
        if choice.get("finish_reason") is not None:
            return UpstreamEvent.finish()
        content = (choice.get("delta") or {}).get("content")
        if content is not None and not isinstance(content, str):
            raise TypeError(f"delta content must be a string, got {type(content).__name__}")
        return UpstreamEvent(delta=content or "")
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError) as e:
        lib_logger.warning(f"Could not parse event payload: {data[:200]!r} ({type(e).__name__}: {e})")
        return UpstreamEvent.failure(
            StreamParseError(f"Malformed event payload: {e}", data=data)
        )
