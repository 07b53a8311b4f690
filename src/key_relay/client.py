import time
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from .config import RelaySettings
from .credential_pool import CredentialPool
from .error_handler import (
    ClassifiedError,
    KeyServerNotConfigured,
    InvalidKeyServerAccess,
    UpstreamAuthError,
    UpstreamConnectionError,
    UpstreamError,
    classify_response,
    is_invalid_credential,
    mask_credential,
)
from .failure_logger import log_failure
from .model_definitions import ModelCatalog
from .relay_stream import RelayStream
from .types import CapabilityTier, ChatRequest, Credential
from .upstream import UpstreamEndpoint

lib_logger = logging.getLogger("key_relay")
# Applications opt in to receiving these records via configure_logging.
lib_logger.propagate = False


class RelayClient:
    """
    Relays streamed chat completions to the upstream API using credentials from
    a `CredentialPool`, evicting and replacing credentials the upstream rejects.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        pool: Optional[CredentialPool] = None,
        catalog: Optional[ModelCatalog] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        configure_logging: bool = True,
        max_buffered_events: int = 1,
    ):
        if configure_logging:
            # Let the parent application's logging configuration handle our records.
            lib_logger.propagate = True
            if lib_logger.hasHandlers():
                lib_logger.handlers.clear()
                lib_logger.addHandler(logging.NullHandler())
        else:
            lib_logger.propagate = False

        self.settings = settings or RelaySettings.from_env()
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(600.0, connect=30.0)
        )
        self.pool = pool or CredentialPool.from_settings(self.settings, self.http_client)
        self.catalog = catalog or ModelCatalog(models_json=self.settings.models_json)
        self.endpoint = UpstreamEndpoint(self.settings)
        self.max_attempts = self.settings.max_attempts
        self.global_timeout = self.settings.global_timeout
        self.max_buffered_events = max_buffered_events

        if self.pool.override:
            lib_logger.info("Static OPENAI_API_KEY configured; credential pool is bypassed.")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client to prevent resource leaks."""
        if self.http_client:
            await self.http_client.aclose()

    async def _resolve_credential(
        self, tier: CapabilityTier, credential_override: Optional[str]
    ) -> Credential:
        if credential_override:
            if tier is CapabilityTier.HIGHEST:
                tier = CapabilityTier.PREMIUM
            return Credential(credential_override, tier)
        return await self.pool.acquire(tier)

    async def _evict_quietly(self, credential: Credential):
        """Best-effort eviction; failures are logged and otherwise ignored."""
        lib_logger.warning(f"Key {credential.masked} was invalid. Removing it.")
        try:
            evicted = await self.pool.evict(credential)
            if not evicted:
                lib_logger.warning(f"Eviction of key {credential.masked} was refused by the key server.")
        except KeyServerNotConfigured:
            lib_logger.warning(
                f"Cannot evict key {credential.masked}: no key server configured. It will only be skipped for this request."
            )
        except (InvalidKeyServerAccess, httpx.HTTPError, ValueError) as e:
            lib_logger.error(f"Eviction of key {credential.masked} failed: {type(e).__name__}: {e}")

    async def _send(
        self, method: str, url: str, credential: Credential, **kwargs
    ) -> httpx.Response:
        request = self.http_client.build_request(
            method, url, headers=self.endpoint.headers(credential.key), **kwargs
        )
        try:
            return await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            lib_logger.error(f"Could not reach upstream at {url}: {type(e).__name__}: {e}")
            raise UpstreamConnectionError(f"Could not reach upstream: {e}") from e

    @staticmethod
    async def _read_error_body(response: httpx.Response) -> str:
        try:
            await response.aread()
            return response.text
        except httpx.HTTPError as e:
            return f"<unreadable response body: {e}>"
        finally:
            await response.aclose()

    async def _with_credential_rotation(
        self,
        tier: CapabilityTier,
        credential_override: Optional[str],
        model: Optional[str],
        send,
        rotate_when=None,
    ):
        """
        Runs `send(credential)` until it yields a 200 response.

        On an invalid-credential response the credential is evicted and a fresh
        one of the same tier, not yet tried by this call, is acquired. The loop is
        bounded by `max_attempts` and the global deadline. Any other failure is
        raised as UpstreamError right away.
        """
        deadline = time.time() + self.global_timeout
        credential = await self._resolve_credential(tier, credential_override)
        tried: Set[str] = set()
        attempt = 0

        while True:
            attempt += 1
            tried.add(credential.key)
            lib_logger.info(
                f"Calling upstream for model {model} with key {credential.masked} (attempt {attempt}/{self.max_attempts})."
            )
            response = await send(credential)
            if response.status_code == 200:
                return credential, response

            body = await self._read_error_body(response)
            classified = classify_response(response.status_code, body)
            log_failure(
                api_key=credential.key,
                model=model,
                attempt=attempt,
                status_code=response.status_code,
                raw_response_text=body,
                error=classified.relay_error,
            )

            if not is_invalid_credential(classified):
                raise self._upstream_error(classified)
            if rotate_when is not None and not rotate_when():
                raise self._auth_error(classified, "Credential was rejected and cannot be evicted")

            if credential.is_override:
                raise self._auth_error(classified, "The configured OPENAI_API_KEY was rejected")

            # Evict even when the bounds stop the rotation below.
            await self._evict_quietly(credential)
            if attempt >= self.max_attempts:
                raise self._auth_error(classified, f"Upstream rejected {attempt} credential(s)")
            if time.time() >= deadline:
                raise self._auth_error(classified, "Credential rotation deadline exceeded")

            # NoCredentialsAvailable propagates from here once the pool is exhausted.
            credential = await self.pool.acquire(tier, exclude=tried)

    @staticmethod
    def _upstream_error(classified: ClassifiedError) -> UpstreamError:
        return UpstreamError(
            f"Upstream API returned an error {classified.status_code}: {classified.message}",
            status_code=classified.status_code,
            body=classified.body,
            error=classified.relay_error,
        )

    @staticmethod
    def _auth_error(classified: ClassifiedError, reason: str) -> UpstreamAuthError:
        lib_logger.error(f"{reason}; giving up on credential rotation.")
        return UpstreamAuthError(
            f"{reason}: {classified.message}",
            status_code=classified.status_code,
            body=classified.body,
            error=classified.relay_error,
        )

    async def relay(
        self, request: ChatRequest, credential_override: Optional[str] = None
    ) -> RelayStream:
        """
        Starts a streamed completion and returns its text as a RelayStream.

        Args:
            request: The chat request to relay.
            credential_override: A caller-supplied key to try first instead of the pool.

        Raises:
            NoCredentialsAvailable: The pool has no untried credential for the model's tier.
            UpstreamAuthError: Credentials kept being rejected past the retry bounds.
            UpstreamError: Any other non-success upstream response.
        """
        tier = self.catalog.tier_for(request.model)
        url = self.endpoint.chat_url()
        payload = self.endpoint.chat_payload(request)

        async def send(credential: Credential) -> httpx.Response:
            return await self._send("POST", url, credential, json=payload)

        credential, response = await self._with_credential_rotation(
            tier, credential_override, request.model, send
        )
        lib_logger.info(f"Streaming model {request.model} with key {mask_credential(credential.key)}.")
        return RelayStream(
            response,
            credential=credential,
            model=request.model,
            max_buffered_events=self.max_buffered_events,
        )

    async def list_models(self, credential_override: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Returns the upstream models known to the catalog as [{id, name}].

        Invalid credentials are only rotated when a key server can evict them;
        otherwise the rejection is raised as UpstreamAuthError.
        """
        url = self.endpoint.models_url()

        async def send(credential: Credential) -> httpx.Response:
            return await self._send("GET", url, credential)

        _, response = await self._with_credential_rotation(
            CapabilityTier.HIGHEST,
            credential_override,
            None,
            send,
            rotate_when=lambda: self.pool.key_server is not None,
        )
        try:
            await response.aread()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
            entries = payload.get("data") or []
        except ValueError as e:
            raise UpstreamError(
                f"Upstream returned an unreadable model list: {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e
        finally:
            await response.aclose()

        models = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            model_name = self.endpoint.model_name(entry)
            if self.catalog.is_known(model_name):
                models.append({"id": entry.get("id"), "name": self.catalog.name_for(model_name)})
        return models
