import json
import random
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import aiofiles
import httpx

from .config import RelaySettings
from .error_handler import (
    KeyServerNotConfigured,
    NoCredentialsAvailable,
    mask_credential,
)
from .key_server import KeyServerClient
from .types import CapabilityTier, Credential

lib_logger = logging.getLogger("key_relay")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())


class CredentialPool:
    """
    Holds the known API credentials, partitioned by capability tier, and hands
    them out one call at a time.

    Credentials are loaded lazily on the first `acquire`, either from the remote
    key server (when one is configured) or from a local JSON file of
    `{"key": ..., "type": "gpt-3" | "gpt-4"}` records. Loading happens once; a
    successful eviction throws the whole in-memory pool away so the next
    `acquire` reloads it from the source.

    A statically configured override credential bypasses all of this: every
    acquisition returns it and pool state is never touched.

    All reads and writes of the tier sets and the `initialized` flag happen under
    a single asyncio lock, so concurrent first acquisitions trigger exactly one
    load and an eviction reset never interleaves with an in-flight load.
    """

    def __init__(
        self,
        override_credential: Optional[str] = None,
        keys_file: Union[str, Path] = "keys.json",
        key_server: Optional[KeyServerClient] = None,
    ):
        self.override = (
            Credential(override_credential, CapabilityTier.PREMIUM, is_override=True)
            if override_credential
            else None
        )
        self.keys_file = Path(keys_file)
        self.key_server = key_server

        self._keys: Dict[CapabilityTier, Set[str]] = {
            CapabilityTier.STANDARD: set(),
            CapabilityTier.PREMIUM: set(),
        }
        self._evicted: Set[str] = set()
        self._lock = asyncio.Lock()
        self.initialized = False
        self.load_count = 0

    @classmethod
    def from_settings(
        cls, settings: RelaySettings, http_client: httpx.AsyncClient
    ) -> "CredentialPool":
        key_server = None
        if settings.key_server_configured:
            key_server = KeyServerClient(
                settings.key_server, settings.key_server_auth, http_client
            )
        return cls(
            override_credential=settings.api_key,
            keys_file=settings.keys_file,
            key_server=key_server,
        )

    @property
    def source(self) -> str:
        if self.override:
            return "override"
        return "key_server" if self.key_server else "file"

    async def _read_records(self) -> List[Dict[str, Any]]:
        if self.key_server:
            return await self.key_server.get_keys()

        path = self.keys_file if self.keys_file.is_absolute() else Path.cwd() / self.keys_file
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        records = json.loads(content)
        if not isinstance(records, list):
            raise ValueError(f"Keys file '{path}' must contain a JSON array of key records.")
        return records

    async def _load(self):
        """Loads and partitions the full credential list. Caller must hold the lock."""
        records = await self._read_records()
        self.load_count += 1

        standard: Set[str] = set()
        premium: Set[str] = set()
        seen: Set[str] = set()
        tombstoned: Set[str] = set()
        for record in records:
            key = record.get("key") if isinstance(record, dict) else None
            if not key:
                lib_logger.warning(f"Skipping malformed key record: {record!r}")
                continue
            if key in self._evicted:
                tombstoned.add(key)
                continue
            if key in seen:
                lib_logger.warning(f"Duplicate key {mask_credential(key)} in source; keeping its first tier.")
                continue
            seen.add(key)
            tier = CapabilityTier.from_record_type(record.get("type"))
            (premium if tier is CapabilityTier.PREMIUM else standard).add(key)

        # Tombstones are only needed while the source still lists the key.
        self._evicted = tombstoned

        self._keys[CapabilityTier.STANDARD] = standard
        self._keys[CapabilityTier.PREMIUM] = premium
        # An empty load is retried on the next acquisition.
        self.initialized = bool(standard or premium)
        lib_logger.info(
            f"Loaded {len(premium)} premium and {len(standard)} standard key(s) from {self.source}."
        )

    def _select(self, tier: CapabilityTier, exclude: Set[str]) -> Credential:
        standard = self._keys[CapabilityTier.STANDARD] - exclude
        premium = self._keys[CapabilityTier.PREMIUM] - exclude

        if tier is CapabilityTier.HIGHEST:
            chosen_tier = CapabilityTier.PREMIUM if premium else CapabilityTier.STANDARD
        elif tier is CapabilityTier.STANDARD:
            chosen_tier = CapabilityTier.STANDARD if standard else CapabilityTier.PREMIUM
        else:
            chosen_tier = CapabilityTier.PREMIUM

        keys = premium if chosen_tier is CapabilityTier.PREMIUM else standard
        if not keys:
            raise NoCredentialsAvailable(f"No keys available for tier {tier.name}")
        return Credential(random.choice(tuple(keys)), chosen_tier)

    async def acquire(
        self,
        tier: CapabilityTier = CapabilityTier.HIGHEST,
        exclude: Optional[Iterable[str]] = None,
    ) -> Credential:
        """
        Returns one credential for the requested tier.

        Args:
            tier: HIGHEST prefers premium keys and falls back to standard ones;
                STANDARD prefers standard keys and falls back to premium ones;
                PREMIUM only ever returns premium keys.
            exclude: Secrets the caller has already tried and does not want again.

        Raises:
            NoCredentialsAvailable: If the effective set for the tier is empty.
        """
        if self.override:
            return self.override

        async with self._lock:
            if not self.initialized:
                await self._load()
            return self._select(tier, set(exclude or ()))

    async def acquire_single(
        self, tier: CapabilityTier = CapabilityTier.HIGHEST
    ) -> Credential:
        """Fetches one key straight from the key server's single-key endpoint."""
        if self.override:
            return self.override
        if not self.key_server:
            raise KeyServerNotConfigured("Key server not configured")

        key = await self.key_server.get_key(tier)
        effective_tier = CapabilityTier.PREMIUM if tier is CapabilityTier.HIGHEST else tier
        return Credential(key, effective_tier)

    async def evict(self, credential: Union[Credential, str]) -> bool:
        """
        Permanently deletes a credential through the key server.

        On success the whole pool is invalidated and reloaded on next use.
        Returns False when the server refuses; pool state is left untouched.

        Raises:
            KeyServerNotConfigured: For file-backed pools, which cannot evict.
        """
        if not self.key_server:
            raise KeyServerNotConfigured("Key server not configured")

        key = credential.key if isinstance(credential, Credential) else credential
        success = await self.key_server.delete_key(key)
        if not success:
            lib_logger.warning(f"Key server refused to delete key {mask_credential(key)}.")
            return False

        async with self._lock:
            self._evicted.add(key)
            self._keys[CapabilityTier.STANDARD] = set()
            self._keys[CapabilityTier.PREMIUM] = set()
            self.initialized = False
        lib_logger.info(f"Evicted key {mask_credential(key)}; pool will reload on next use.")
        return True

    async def refresh(self):
        """Forces a reload from the source (no-op for override pools)."""
        if self.override:
            return
        async with self._lock:
            await self._load()

    def status(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "initialized": self.initialized,
            "standard": len(self._keys[CapabilityTier.STANDARD]),
            "premium": len(self._keys[CapabilityTier.PREMIUM]),
            "evicted": len(self._evicted),
            "loads": self.load_count,
        }
