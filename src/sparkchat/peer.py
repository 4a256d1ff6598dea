"""
SparkChat - Peer table.

A peer is whoever shows up on the broker under a display name. Names are
self-asserted labels, not verified identities; the serialized public key
is what actually identifies a peer cryptographically.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Peer:
    """What we know about one peer in the current epoch."""

    username: str
    public_key: Optional[str] = None
    has_public_key: bool = False
    last_seen: int = 0

    def to_dict(self) -> Dict:
        """Convert peer to dictionary."""
        return {
            "username": self.username,
            "public_key": self.public_key,
            "has_public_key": self.has_public_key,
            "last_seen": self.last_seen,
        }


class PeerTable:
    """Peers keyed by display name."""

    def __init__(self):
        self.peers: Dict[str, Peer] = {}

    def update(
        self,
        username: str,
        last_seen: int,
        has_public_key: bool = False,
        public_key: Optional[str] = None,
    ) -> Peer:
        """
        Insert or refresh a peer record.

        A peer already marked as keyed is never downgraded by traffic that
        happens to arrive before its key is cached.

        Args:
            username: Peer display name
            last_seen: Timestamp of the traffic (ms)
            has_public_key: Mark the peer as having a usable cached key
            public_key: Serialized key the peer is using, if known

        Returns:
            The updated Peer
        """
        peer = self.peers.get(username)
        if peer is None:
            peer = Peer(username=username)
            self.peers[username] = peer
            logger.debug(f"New peer: {username}")

        if public_key is not None:
            if peer.public_key is not None and peer.public_key != public_key:
                logger.info(f"Peer {username} is now using a different public key")
                peer.has_public_key = False
            peer.public_key = public_key

        if has_public_key:
            peer.has_public_key = True

        peer.last_seen = max(peer.last_seen, last_seen)
        return peer

    def get(self, username: str) -> Optional[Peer]:
        """Get peer by display name."""
        return self.peers.get(username)

    def sorted(self) -> List[Peer]:
        """Peers ordered by most recently seen."""
        return sorted(self.peers.values(), key=lambda p: p.last_seen, reverse=True)

    def count_with_keys(self) -> int:
        """Number of peers we can encrypt for."""
        return sum(1 for p in self.peers.values() if p.has_public_key)

    def clear(self) -> None:
        """Forget every peer."""
        self.peers.clear()

    def __len__(self) -> int:
        return len(self.peers)

    def __contains__(self, username: object) -> bool:
        return username in self.peers
