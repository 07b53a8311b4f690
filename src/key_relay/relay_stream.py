import asyncio
import logging
from typing import Optional

import httpx

from .error_handler import UpstreamConnectionError, mask_credential
from .event_stream import EventStreamParser, parse_completion_event
from .types import Credential, StreamState, UpstreamEvent

lib_logger = logging.getLogger("key_relay")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())


class RelayStream:
    """
    A single-pass async byte stream of the text generated by an upstream
    completion.

    A producer task reads the upstream body, parses its event-stream records
    and pushes one `UpstreamEvent` at a time into a bounded channel. Iterating
    the stream consumes that channel: deltas come out as UTF-8 bytes, the finish
    signal (or the end of the upstream body) ends iteration, and a parse or
    transport failure is raised to the consumer. Both closed states are final.

    Closing the stream early (`aclose()` or leaving `async with`) cancels the
    producer and releases the upstream response.
    """

    def __init__(
        self,
        response: httpx.Response,
        credential: Optional[Credential] = None,
        model: Optional[str] = None,
        max_buffered_events: int = 1,
    ):
        self._response = response
        self.credential = credential
        self.model = model
        self._channel: "asyncio.Queue[UpstreamEvent]" = asyncio.Queue(maxsize=max_buffered_events)
        self._producer: Optional[asyncio.Task] = None
        self.state = StreamState.STREAMING
        self.error: Optional[Exception] = None
        self.bytes_emitted = 0

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def closed(self) -> bool:
        return self.state is not StreamState.STREAMING

    async def _produce(self):
        parser = EventStreamParser()
        try:
            async for chunk in self._response.aiter_text():
                for event in parser.feed(chunk):
                    upstream_event = parse_completion_event(event.data)
                    await self._channel.put(upstream_event)
                    if upstream_event.is_terminal:
                        return
            # Upstream closed the body without a finish signal.
            await self._channel.put(UpstreamEvent.finish())
        except httpx.HTTPError as e:
            lib_logger.warning(
                f"Upstream transport failed mid-stream for credential {self._masked}: {e}"
            )
            await self._channel.put(
                UpstreamEvent.failure(
                    UpstreamConnectionError(f"Upstream stream failed: {e}", status_code=self.status_code)
                )
            )
        except Exception as e:
            lib_logger.error(f"Unexpected error while reading upstream stream: {type(e).__name__}: {e}")
            await self._channel.put(UpstreamEvent.failure(e))
        finally:
            await self._response.aclose()

    @property
    def _masked(self) -> str:
        return mask_credential(self.credential.key) if self.credential else "N/A"

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.closed:
            raise StopAsyncIteration
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())

        while True:
            event = await self._channel.get()
            if event.error is not None:
                self.state = StreamState.CLOSED_ERROR
                self.error = event.error
                await self._shutdown()
                raise event.error
            if event.finished:
                self.state = StreamState.CLOSED_SUCCESS
                await self._shutdown()
                lib_logger.info(
                    f"STREAM FINISHED for credential {self._masked} ({self.bytes_emitted} bytes)."
                )
                raise StopAsyncIteration
            if event.delta:
                data = event.delta.encode("utf-8")
                self.bytes_emitted += len(data)
                return data

    async def _shutdown(self):
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass
        elif self._producer is None:
            await self._response.aclose()

    async def aclose(self):
        """Abandons the stream, releasing the producer and the upstream connection."""
        if not self.closed:
            lib_logger.info(f"Stream closed by consumer for credential {self._masked}.")
            self.state = StreamState.CLOSED_SUCCESS
        await self._shutdown()

    async def read(self) -> bytes:
        """Drains the remaining stream into a single bytes object."""
        parts = [chunk async for chunk in self]
        return b"".join(parts)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
