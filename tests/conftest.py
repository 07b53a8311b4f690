import os
import json
import asyncio
import tempfile
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

# Failure records go to a scratch directory instead of ./logs.
os.environ.setdefault(
    "RELAY_LOG_DIR", os.path.join(tempfile.gettempdir(), "key_relay_test_logs")
)

import httpx
import pytest

from key_relay import RelayClient, RelaySettings

KEY_SERVER = "keys.local"
KEY_SERVER_AUTH = "secret"
UPSTREAM_HOST = "https://upstream.test"

STOP = {"choices": [{"finish_reason": "stop", "delta": {}}]}


def delta(text: str) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


def sse_body(*events) -> bytes:
    """Frames each event as an SSE record; strings are sent as-is, anything else as JSON."""
    records = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        records.append(f"data: {data}\n\n")
    return "".join(records).encode("utf-8")


def sse_response(*events) -> httpx.Response:
    return httpx.Response(
        200,
        content=sse_body(*events),
        headers={"content-type": "text/event-stream"},
    )


def invalid_key_response() -> httpx.Response:
    return httpx.Response(
        401,
        json={
            "error": {
                "message": "Incorrect API key provided.",
                "type": "invalid_request_error",
                "param": None,
                "code": "invalid_api_key",
            }
        },
    )


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "").split(" ", 1)[-1]


class FakeKeyServer:
    """In-memory stand-in for the key server's getKeys/getKey/deleteKey endpoints."""

    def __init__(
        self,
        records: Optional[List[Dict[str, str]]] = None,
        auth_key: str = KEY_SERVER_AUTH,
        delay: float = 0.0,
        delete_success: Optional[bool] = None,
        remove_on_delete: bool = True,
    ):
        self.records = list(records or [])
        self.auth_key = auth_key
        self.delay = delay
        self.delete_success = delete_success
        self.remove_on_delete = remove_on_delete
        self.calls: Counter = Counter()
        self.deleted: List[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.strip("/")
        body = json.loads(request.content)
        self.calls[endpoint] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if body.get("authKey") != self.auth_key:
            return httpx.Response(404)

        if endpoint == "getKeys":
            return httpx.Response(200, json=self.records)
        if endpoint == "getKey":
            matching = [r["key"] for r in self.records if r.get("type") == body.get("keyType")]
            if not matching:
                return httpx.Response(503, text="No keys available")
            return httpx.Response(200, json={"key": matching[0]})
        if endpoint == "deleteKey":
            key = body.get("key")
            present = any(r.get("key") == key for r in self.records)
            success = present if self.delete_success is None else self.delete_success
            if success:
                self.deleted.append(key)
                if self.remove_on_delete:
                    self.records = [r for r in self.records if r.get("key") != key]
            return httpx.Response(200, json={"success": success})
        return httpx.Response(404)


class FakeUpstream:
    """Records every upstream request and answers through `respond(request)`."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def keys_used(self) -> List[str]:
        return [bearer(request) for request in self.requests]


def make_transport(
    key_server: Optional[FakeKeyServer] = None,
    upstream: Optional[FakeUpstream] = None,
) -> httpx.MockTransport:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == KEY_SERVER:
            if key_server is None:
                raise httpx.ConnectError("key server is down", request=request)
            return await key_server(request)
        if upstream is None:
            raise httpx.ConnectError("upstream is down", request=request)
        return upstream(request)

    return httpx.MockTransport(handler)


def server_settings(**overrides) -> RelaySettings:
    values = dict(
        key_server=KEY_SERVER,
        key_server_auth=KEY_SERVER_AUTH,
        api_host=UPSTREAM_HOST,
    )
    values.update(overrides)
    return RelaySettings(**values)


def make_client(
    settings: RelaySettings,
    key_server: Optional[FakeKeyServer] = None,
    upstream: Optional[FakeUpstream] = None,
) -> RelayClient:
    http_client = httpx.AsyncClient(transport=make_transport(key_server, upstream))
    return RelayClient(settings=settings, http_client=http_client, configure_logging=False)


@pytest.fixture
def first_key_wins(monkeypatch):
    """Makes pool selection deterministic: the lexically smallest key is picked."""
    monkeypatch.setattr(
        "key_relay.credential_pool.random.choice", lambda keys: sorted(keys)[0]
    )
