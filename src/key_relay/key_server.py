import json
import logging
from typing import Any, Dict, List

import httpx

from .error_handler import InvalidKeyServerAccess, NoCredentialsAvailable, mask_credential
from .types import CapabilityTier

lib_logger = logging.getLogger("key_relay")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())


class KeyServerClient:
    """
    Thin client for the remote key server.

    Every call is a JSON POST carrying the shared `authKey`. The server is
    addressed as `host:port` and spoken to over plain http.
    """

    def __init__(self, server: str, auth_key: str, http_client: httpx.AsyncClient):
        self.server = server
        self.auth_key = auth_key
        self.http_client = http_client

    def _url(self, endpoint: str) -> str:
        return f"http://{self.server}/{endpoint}"

    async def _post(self, endpoint: str, body: Dict[str, Any]) -> httpx.Response:
        response = await self.http_client.post(
            self._url(endpoint),
            json={"authKey": self.auth_key, **body},
            headers={"Content-Type": "application/json"},
        )
        if response.status_code == 404:
            raise InvalidKeyServerAccess("Invalid access to the key server")
        return response

    async def get_keys(self) -> List[Dict[str, str]]:
        """Fetches every key record ({key, type}) the server holds."""
        response = await self._post("getKeys", {})
        response.raise_for_status()
        records = json.loads(response.text)
        if not isinstance(records, list):
            raise ValueError(f"Key server returned an unexpected payload for getKeys: {type(records).__name__}")
        lib_logger.debug(f"Fetched {len(records)} key record(s) from key server {self.server}")
        return records

    async def get_key(self, tier: CapabilityTier = CapabilityTier.PREMIUM) -> str:
        """Fetches a single key of the given tier."""
        record_type = (
            CapabilityTier.PREMIUM.record_type
            if tier is CapabilityTier.HIGHEST
            else tier.record_type
        )
        response = await self._post("getKey", {"keyType": record_type})
        if response.status_code == 503 and "No keys available" in (
            response.reason_phrase,
            response.text.strip(),
        ):
            raise NoCredentialsAvailable("No keys available")
        response.raise_for_status()
        return response.json()["key"]

    async def delete_key(self, key: str) -> bool:
        """Asks the server to permanently delete a key. Returns the server's success flag."""
        response = await self._post("deleteKey", {"key": key})
        response.raise_for_status()
        success = bool(response.json().get("success"))
        lib_logger.info(
            f"Key server {'deleted' if success else 'did not delete'} key {mask_credential(key)}."
        )
        return success
