"""Tests for CredentialPool: tier selection, lazy loading, eviction and the override."""

import asyncio
import json

import httpx
import pytest

from conftest import KEY_SERVER, KEY_SERVER_AUTH, FakeKeyServer, make_transport
from key_relay import (
    CapabilityTier,
    CredentialPool,
    InvalidKeyServerAccess,
    KeyServerNotConfigured,
    NoCredentialsAvailable,
)
from key_relay.key_server import KeyServerClient

STANDARD_KEYS = ["sk-std-aaaaaa", "sk-std-bbbbbb", "sk-std-cccccc"]
PREMIUM_KEYS = ["sk-pre-aaaaaa", "sk-pre-bbbbbb"]


def _records(standard=(), premium=()):
    return [{"key": k, "type": "gpt-3"} for k in standard] + [
        {"key": k, "type": "gpt-4"} for k in premium
    ]


def _write_keys(tmp_path, records):
    path = tmp_path / "keys.json"
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


def _server_pool(key_server: FakeKeyServer) -> CredentialPool:
    http_client = httpx.AsyncClient(transport=make_transport(key_server=key_server))
    return CredentialPool(key_server=KeyServerClient(KEY_SERVER, KEY_SERVER_AUTH, http_client))


# ---------------------------------------------------------------------------
# Override credential
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_override_is_always_returned_and_pool_untouched(tmp_path):
    pool = CredentialPool(
        override_credential="sk-static-123456",
        keys_file=_write_keys(tmp_path, _records(STANDARD_KEYS, PREMIUM_KEYS)),
    )

    for tier in CapabilityTier:
        for _ in range(5):
            credential = await pool.acquire(tier)
            assert credential.key == "sk-static-123456"
            assert credential.is_override

    assert pool.load_count == 0
    assert pool.status()["initialized"] is False
    assert pool.status()["source"] == "override"


@pytest.mark.asyncio
async def test_override_ignores_exclusions():
    pool = CredentialPool(override_credential="sk-static-123456")
    credential = await pool.acquire(CapabilityTier.PREMIUM, exclude={"sk-static-123456"})
    assert credential.key == "sk-static-123456"


# ---------------------------------------------------------------------------
# Tier selection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_highest_prefers_premium(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(STANDARD_KEYS, PREMIUM_KEYS)))

    for _ in range(25):
        credential = await pool.acquire(CapabilityTier.HIGHEST)
        assert credential.tier is CapabilityTier.PREMIUM
        assert credential.key in PREMIUM_KEYS


@pytest.mark.asyncio
async def test_highest_falls_back_to_standard(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(STANDARD_KEYS)))

    credential = await pool.acquire(CapabilityTier.HIGHEST)
    assert credential.tier is CapabilityTier.STANDARD
    assert credential.key in STANDARD_KEYS


@pytest.mark.asyncio
async def test_standard_prefers_standard_then_falls_back_to_premium(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(["sk-std-aaaaaa"], PREMIUM_KEYS)))

    credential = await pool.acquire(CapabilityTier.STANDARD)
    assert credential.key == "sk-std-aaaaaa"

    fallback = await pool.acquire(CapabilityTier.STANDARD, exclude={"sk-std-aaaaaa"})
    assert fallback.tier is CapabilityTier.PREMIUM
    assert fallback.key in PREMIUM_KEYS


@pytest.mark.asyncio
async def test_premium_never_falls_back(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(STANDARD_KEYS)))

    with pytest.raises(NoCredentialsAvailable):
        await pool.acquire(CapabilityTier.PREMIUM)


@pytest.mark.asyncio
async def test_exclude_skips_already_tried_keys(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(premium=PREMIUM_KEYS)))

    credential = await pool.acquire(CapabilityTier.PREMIUM, exclude={"sk-pre-aaaaaa"})
    assert credential.key == "sk-pre-bbbbbb"

    with pytest.raises(NoCredentialsAvailable):
        await pool.acquire(CapabilityTier.PREMIUM, exclude=PREMIUM_KEYS)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_file_load_skips_malformed_and_duplicate_records(tmp_path):
    records = [
        {"key": "sk-std-aaaaaa", "type": "gpt-3"},
        {"type": "gpt-4"},
        "not-a-record",
        {"key": "sk-std-aaaaaa", "type": "gpt-4"},
        {"key": "sk-pre-aaaaaa", "type": "gpt-4"},
    ]
    pool = CredentialPool(keys_file=_write_keys(tmp_path, records))

    await pool.acquire()

    status = pool.status()
    assert status["standard"] == 1
    assert status["premium"] == 1
    assert status["source"] == "file"


@pytest.mark.asyncio
async def test_relative_keys_file_is_resolved_against_cwd(tmp_path, monkeypatch):
    _write_keys(tmp_path, _records(premium=["sk-pre-aaaaaa"]))
    monkeypatch.chdir(tmp_path)
    pool = CredentialPool(keys_file="keys.json")

    credential = await pool.acquire()
    assert credential.key == "sk-pre-aaaaaa"


@pytest.mark.asyncio
async def test_missing_keys_file_raises(tmp_path):
    pool = CredentialPool(keys_file=tmp_path / "missing.json")

    with pytest.raises(FileNotFoundError):
        await pool.acquire()
    assert pool.initialized is False


@pytest.mark.asyncio
async def test_concurrent_first_acquires_load_once():
    key_server = FakeKeyServer(_records(STANDARD_KEYS, PREMIUM_KEYS), delay=0.05)
    pool = _server_pool(key_server)

    credentials = await asyncio.gather(*(pool.acquire() for _ in range(10)))

    assert key_server.calls["getKeys"] == 1
    assert pool.load_count == 1
    assert all(c.key in PREMIUM_KEYS for c in credentials)


@pytest.mark.asyncio
async def test_empty_load_is_retried_on_next_acquire():
    key_server = FakeKeyServer([])
    pool = _server_pool(key_server)

    with pytest.raises(NoCredentialsAvailable):
        await pool.acquire()
    assert pool.initialized is False

    key_server.records = _records(premium=["sk-pre-aaaaaa"])
    credential = await pool.acquire()

    assert credential.key == "sk-pre-aaaaaa"
    assert pool.load_count == 2


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_evicted_key_is_never_returned_and_pool_reloads_once():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS))
    pool = _server_pool(key_server)
    await pool.acquire()

    assert await pool.evict("sk-pre-aaaaaa") is True
    assert pool.initialized is False

    for _ in range(20):
        credential = await pool.acquire()
        assert credential.key == "sk-pre-bbbbbb"

    assert pool.load_count == 2
    assert key_server.calls["getKeys"] == 2
    assert key_server.deleted == ["sk-pre-aaaaaa"]


@pytest.mark.asyncio
async def test_evicted_key_stays_out_even_if_source_still_lists_it():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS), remove_on_delete=False)
    pool = _server_pool(key_server)
    await pool.acquire()

    assert await pool.evict("sk-pre-aaaaaa") is True

    for _ in range(20):
        credential = await pool.acquire()
        assert credential.key != "sk-pre-aaaaaa"
    assert pool.status()["evicted"] == 1


@pytest.mark.asyncio
async def test_refused_eviction_leaves_pool_state_alone():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS), delete_success=False)
    pool = _server_pool(key_server)
    await pool.acquire()

    assert await pool.evict("sk-pre-aaaaaa") is False

    assert pool.initialized is True
    assert pool.status()["premium"] == 2
    assert pool.status()["evicted"] == 0


@pytest.mark.asyncio
async def test_double_eviction_is_safe():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS))
    pool = _server_pool(key_server)
    await pool.acquire()

    assert await pool.evict("sk-pre-aaaaaa") is True
    assert await pool.evict("sk-pre-aaaaaa") is False

    credential = await pool.acquire()
    assert credential.key == "sk-pre-bbbbbb"
    assert pool.load_count == 2


@pytest.mark.asyncio
async def test_file_pool_cannot_evict(tmp_path):
    pool = CredentialPool(keys_file=_write_keys(tmp_path, _records(premium=PREMIUM_KEYS)))
    await pool.acquire()

    with pytest.raises(KeyServerNotConfigured):
        await pool.evict("sk-pre-aaaaaa")
    assert pool.initialized is True


@pytest.mark.asyncio
async def test_wrong_key_server_auth_raises_invalid_access():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS), auth_key="something-else")
    pool = _server_pool(key_server)

    with pytest.raises(InvalidKeyServerAccess):
        await pool.acquire()


# ---------------------------------------------------------------------------
# Single-key path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_acquire_single_maps_highest_to_premium():
    key_server = FakeKeyServer(_records(STANDARD_KEYS, PREMIUM_KEYS))
    pool = _server_pool(key_server)

    credential = await pool.acquire_single(CapabilityTier.HIGHEST)

    assert credential.key == PREMIUM_KEYS[0]
    assert credential.tier is CapabilityTier.PREMIUM
    assert pool.load_count == 0


@pytest.mark.asyncio
async def test_acquire_single_reports_exhausted_server():
    key_server = FakeKeyServer(_records(STANDARD_KEYS))
    pool = _server_pool(key_server)

    with pytest.raises(NoCredentialsAvailable):
        await pool.acquire_single(CapabilityTier.PREMIUM)


@pytest.mark.asyncio
async def test_acquire_single_needs_a_key_server(tmp_path):
    pool = CredentialPool(keys_file=tmp_path / "keys.json")

    with pytest.raises(KeyServerNotConfigured):
        await pool.acquire_single()


@pytest.mark.asyncio
async def test_eviction_waits_for_in_flight_load():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS), delay=0.05)
    pool = _server_pool(key_server)

    loading = asyncio.create_task(pool.acquire())
    while not pool._lock.locked():
        await asyncio.sleep(0)

    assert await pool.evict("sk-pre-aaaaaa") is True

    first = await loading
    assert first.key in PREMIUM_KEYS
    assert pool.load_count == 1
    assert pool.initialized is False
    assert pool.status()["premium"] == 0

    for _ in range(10):
        credential = await pool.acquire()
        assert credential.key == "sk-pre-bbbbbb"
    assert pool.load_count == 2
    assert key_server.calls["getKeys"] == 2


@pytest.mark.asyncio
async def test_tombstones_are_dropped_once_source_forgets_the_key():
    key_server = FakeKeyServer(_records(premium=PREMIUM_KEYS), remove_on_delete=False)
    pool = _server_pool(key_server)
    await pool.acquire()
    await pool.evict("sk-pre-aaaaaa")

    await pool.acquire()
    assert pool.status()["evicted"] == 1

    key_server.records = _records(premium=["sk-pre-bbbbbb"])
    await pool.refresh()
    assert pool.status()["evicted"] == 0

    await pool.acquire()
    assert pool.status()["premium"] == 1
