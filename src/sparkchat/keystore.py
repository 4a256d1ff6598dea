"""
SparkChat - Peer public key directory.

Caches imported peer public keys by their serialized form. Importing is a
suspension point (it runs off the event loop), so two inbound messages from
the same unseen sender can both reach the import while the first one is
still in flight. The directory closes that window: the first caller starts
the import and parks a future under the serialized key; every later caller
for the same key awaits that future instead of importing again, and all of
them receive the same ImportedKey.

The pending marker is cleared whether the import succeeds or fails, so a
bad key never leaves the directory stuck.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from .crypto import import_public_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportedKey:
    """A peer public key in both wire and usable form."""

    serialized: str
    key: ec.EllipticCurvePublicKey


class PeerKeyDirectory:
    """
    Concurrency-safe cache of imported peer public keys.

    The directory is the only writer of its entries. Session code queries it
    and asks it to import, but never touches the cache directly.
    """

    def __init__(self, importer: Callable[[str], ec.EllipticCurvePublicKey] = import_public_key):
        """
        Initialize directory.

        Args:
            importer: Function parsing a serialized key (raises MalformedKey)
        """
        self._importer = importer
        self._keys: Dict[str, ImportedKey] = {}
        self._pending: Dict[str, "asyncio.Future[ImportedKey]"] = {}
        self._epoch = 0

    def get(self, serialized: str) -> Optional[ImportedKey]:
        """Cache lookup; None if the key was never imported."""
        return self._keys.get(serialized)

    def is_pending(self, serialized: str) -> bool:
        """Check if an import for this key is in flight."""
        return serialized in self._pending

    async def import_or_get(self, serialized: str) -> ImportedKey:
        """
        Return the cached key, importing it first if needed.

        Concurrent callers for the same unseen key share one import.

        Raises:
            MalformedKey: If the serialized key cannot be parsed
        """
        cached = self._keys.get(serialized)
        if cached is not None:
            return cached

        pending = self._pending.get(serialized)
        if pending is not None:
            # shield: a cancelled waiter must not cancel the shared import
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[ImportedKey]" = loop.create_future()
        self._pending[serialized] = future
        epoch = self._epoch

        try:
            key = await asyncio.to_thread(self._importer, serialized)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # mark retrieved so a waiter-less failure is not reported as unhandled
            future.exception()
            logger.debug(f"Public key import failed: {e}")
            raise
        else:
            imported = ImportedKey(serialized=serialized, key=key)
            if epoch == self._epoch:
                self._keys[serialized] = imported
            else:
                logger.debug("Directory was reset during import; key not cached")
            future.set_result(imported)
            return imported
        finally:
            if self._pending.get(serialized) is future:
                del self._pending[serialized]

    def clear(self) -> None:
        """
        Forget every key.

        Imports still in flight complete for their callers but are not cached.
        """
        self._keys.clear()
        self._pending.clear()
        self._epoch += 1

    def values(self) -> List[ImportedKey]:
        """Snapshot of cached keys in import order."""
        return list(self._keys.values())

    def __contains__(self, serialized: object) -> bool:
        return serialized in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._keys))
