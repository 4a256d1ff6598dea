"""
SparkChat - Peer key directory tests.

Tests for caching and import deduplication of peer public keys.
"""

import asyncio
import threading
import time

import pytest

from sparkchat.crypto import generate_key_pair, import_public_key
from sparkchat.errors import MalformedKey
from sparkchat.keystore import PeerKeyDirectory


class CountingImporter:
    """Wraps import_public_key, counting calls and slowing them down."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, serialized):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return import_public_key(serialized)


@pytest.mark.asyncio
class TestPeerKeyDirectory:
    """Async tests for PeerKeyDirectory."""

    async def test_import_and_cache(self, peer_key_pair):
        directory = PeerKeyDirectory()
        serialized = peer_key_pair.export_public_key()

        imported = await directory.import_or_get(serialized)

        assert imported.serialized == serialized
        assert directory.get(serialized) is imported
        assert serialized in directory
        assert len(directory) == 1

    async def test_cached_key_not_reimported(self, peer_key_pair):
        importer = CountingImporter(delay=0)
        directory = PeerKeyDirectory(importer=importer)
        serialized = peer_key_pair.export_public_key()

        first = await directory.import_or_get(serialized)
        second = await directory.import_or_get(serialized)

        assert first is second
        assert importer.calls == 1

    async def test_concurrent_imports_deduplicated(self, peer_key_pair):
        """Two concurrent requests for an unseen key share one import."""
        importer = CountingImporter()
        directory = PeerKeyDirectory(importer=importer)
        serialized = peer_key_pair.export_public_key()

        first, second = await asyncio.gather(
            directory.import_or_get(serialized), directory.import_or_get(serialized)
        )

        assert importer.calls == 1
        assert first is second
        assert first.key is second.key
        assert not directory.is_pending(serialized)

    async def test_many_concurrent_imports(self):
        importer = CountingImporter()
        directory = PeerKeyDirectory(importer=importer)
        keys = [generate_key_pair().export_public_key() for _ in range(3)]

        results = await asyncio.gather(*[directory.import_or_get(k) for k in keys * 4])

        assert importer.calls == 3
        assert len({id(r) for r in results}) == 3
        assert len(directory) == 3

    async def test_failed_import_clears_pending(self):
        """A malformed key raises for every waiter and leaves nothing behind."""
        importer = CountingImporter()
        directory = PeerKeyDirectory(importer=importer)

        results = await asyncio.gather(
            directory.import_or_get("bm90IGEga2V5"),
            directory.import_or_get("bm90IGEga2V5"),
            return_exceptions=True,
        )

        assert all(isinstance(r, MalformedKey) for r in results)
        assert importer.calls == 1
        assert not directory.is_pending("bm90IGEga2V5")
        assert "bm90IGEga2V5" not in directory

    async def test_failed_import_can_be_retried(self, peer_key_pair):
        serialized = peer_key_pair.export_public_key()
        attempts = []

        def flaky(value):
            attempts.append(value)
            if len(attempts) == 1:
                raise MalformedKey("transient")
            return import_public_key(value)

        directory = PeerKeyDirectory(importer=flaky)

        with pytest.raises(MalformedKey):
            await directory.import_or_get(serialized)
        imported = await directory.import_or_get(serialized)

        assert imported.serialized == serialized
        assert len(attempts) == 2

    async def test_clear_during_import(self, peer_key_pair):
        """An import that finishes after a reset is returned but not cached."""
        directory = PeerKeyDirectory(importer=CountingImporter(delay=0.1))
        serialized = peer_key_pair.export_public_key()

        task = asyncio.create_task(directory.import_or_get(serialized))
        await asyncio.sleep(0.02)
        directory.clear()
        imported = await task

        assert imported.serialized == serialized
        assert serialized not in directory
        assert len(directory) == 0

    async def test_values_in_import_order(self):
        directory = PeerKeyDirectory()
        keys = [generate_key_pair().export_public_key() for _ in range(3)]

        for key in keys:
            await directory.import_or_get(key)

        assert [k.serialized for k in directory.values()] == keys
        assert list(directory) == keys
