"""
SparkChat - Message log and delivery receipts.

Messages live in memory for one connection epoch only; there is no
history across sessions. The message id is the sole deduplication key:
a message whose id was already appended is discarded.

Receipts follow a ladder, sent < received < decrypted. A peer's receipt
for a message may only move up the ladder, never down.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class ReceiptStatus(Enum):
    """Delivery status reported by one peer for one message.

    SENT is reserved: no code path emits it, but it is valid on the wire.
    """

    SENT = "sent"
    RECEIVED = "received"
    DECRYPTED = "decrypted"

    @property
    def rank(self) -> int:
        return _RECEIPT_RANK[self]

    def supersedes(self, other: "ReceiptStatus") -> bool:
        """True if moving from other to self is an upgrade."""
        return self.rank > other.rank


_RECEIPT_RANK = {
    ReceiptStatus.SENT: 0,
    ReceiptStatus.RECEIVED: 1,
    ReceiptStatus.DECRYPTED: 2,
}


@dataclass
class MessageReceipt:
    """One peer's delivery acknowledgement for one message."""

    username: str
    status: ReceiptStatus
    timestamp: int


@dataclass
class DeliverySummary:
    """Aggregated receipts of a message, as shown next to it."""

    decrypted_by: List[str]
    received_by: List[str]
    total_peers: int

    @property
    def decrypted_count(self) -> int:
        return len(self.decrypted_by)

    @property
    def received_count(self) -> int:
        return len(self.received_by)

    @property
    def state(self) -> str:
        """"complete" once every peer decrypted, "partial" with any receipt, else "pending"."""
        if self.total_peers > 0 and self.decrypted_count >= self.total_peers:
            return "complete"
        if self.decrypted_count or self.received_count:
            return "partial"
        return "pending"


@dataclass
class Message:
    """A chat message, either sent locally or decrypted from a peer."""

    id: str
    username: str
    text: str
    timestamp: int
    receipts: Dict[str, MessageReceipt] = field(default_factory=dict)

    def apply_receipt(self, receipt: MessageReceipt) -> bool:
        """
        Record a peer's receipt, respecting the status ladder.

        Returns:
            True if the receipt table changed
        """
        existing = self.receipts.get(receipt.username)
        if existing is not None and not receipt.status.supersedes(existing.status):
            return False

        self.receipts[receipt.username] = receipt
        return True

    def delivery_summary(self, total_peers: int) -> Optional[DeliverySummary]:
        """
        Summarise receipts for display.

        Args:
            total_peers: Number of peers the message could have reached

        Returns:
            DeliverySummary, or None when there are no peers to report on
        """
        if total_peers <= 0:
            return None

        decrypted = [r.username for r in self.receipts.values() if r.status is ReceiptStatus.DECRYPTED]
        received = [r.username for r in self.receipts.values() if r.status is ReceiptStatus.RECEIVED]
        return DeliverySummary(decrypted_by=decrypted, received_by=received, total_peers=total_peers)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary."""
        return {
            "id": self.id,
            "username": self.username,
            "text": self.text,
            "timestamp": self.timestamp,
            "receipts": {
                name: {"status": r.status.value, "timestamp": r.timestamp}
                for name, r in self.receipts.items()
            },
        }


class MessageLog:
    """Ordered, id-deduplicated log of the current epoch's messages."""

    def __init__(self):
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def add(self, message: Message) -> bool:
        """
        Append a message unless its id was already seen.

        Returns:
            True if the message was appended
        """
        if message.id in self._by_id:
            logger.debug(f"Duplicate message {message.id} ignored")
            return False

        self._messages.append(message)
        self._by_id[message.id] = message
        return True

    def get(self, message_id: str) -> Optional[Message]:
        """Get message by id."""
        return self._by_id.get(message_id)

    def apply_receipt(self, message_id: str, receipt: MessageReceipt) -> bool:
        """
        Apply a receipt to a logged message.

        A receipt for an unknown message id is a no-op: the message may have
        arrived out of order or belong to another epoch.

        Returns:
            True if a receipt table changed
        """
        message = self._by_id.get(message_id)
        if message is None:
            logger.debug(f"Receipt for unknown message {message_id} ignored")
            return False
        return message.apply_receipt(receipt)

    def clear(self) -> None:
        """Drop every message."""
        self._messages.clear()
        self._by_id.clear()

    def all(self) -> List[Message]:
        """Get a snapshot of the log in arrival order."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id
