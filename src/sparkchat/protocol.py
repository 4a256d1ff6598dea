"""
SparkChat - Wire protocol definitions.

This module defines the five envelope shapes exchanged over the broker
and the topics they travel on. Every payload is a UTF-8 JSON object:

- messages:        {id, username, encrypted, timestamp, senderPublicKey}
- typing:          {username, isTyping, timestamp, publicKey}
- pubkeys:         {username, publicKey, timestamp}
- pubkey-request:  {requesterId, timestamp}
- receipts:        {messageId, username, status, timestamp}

Unknown fields are ignored; a missing or mistyped required field makes the
whole envelope invalid. Inbound payloads are untrusted: decode() either
returns a fully validated envelope or raises SchemaError.
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .constants import (
    DEFAULT_TOPIC_PREFIX,
    MAX_PAYLOAD_SIZE,
    TOPIC_MESSAGES,
    TOPIC_PUBKEY_REQUEST,
    TOPIC_PUBKEYS,
    TOPIC_RECEIPTS,
    TOPIC_TYPING,
)
from .errors import ErrorCode, SchemaError
from .message import ReceiptStatus


class EnvelopeKind(Enum):
    """Envelope types, one per topic."""

    MESSAGE = TOPIC_MESSAGES
    TYPING = TOPIC_TYPING
    PUBKEY_ANNOUNCE = TOPIC_PUBKEYS
    PUBKEY_REQUEST = TOPIC_PUBKEY_REQUEST
    RECEIPT = TOPIC_RECEIPTS


@dataclass(frozen=True)
class Topics:
    """Topic names for one chat room prefix."""

    prefix: str = DEFAULT_TOPIC_PREFIX

    def topic(self, kind: EnvelopeKind) -> str:
        return f"{self.prefix}/{kind.value}"

    @property
    def messages(self) -> str:
        return self.topic(EnvelopeKind.MESSAGE)

    @property
    def typing(self) -> str:
        return self.topic(EnvelopeKind.TYPING)

    @property
    def pubkeys(self) -> str:
        return self.topic(EnvelopeKind.PUBKEY_ANNOUNCE)

    @property
    def pubkey_request(self) -> str:
        return self.topic(EnvelopeKind.PUBKEY_REQUEST)

    @property
    def receipts(self) -> str:
        return self.topic(EnvelopeKind.RECEIPT)

    def all(self) -> List[str]:
        """Every topic a session subscribes to."""
        return [self.topic(kind) for kind in EnvelopeKind]

    def kind_for(self, topic: str) -> Optional[EnvelopeKind]:
        """Map a topic back to its envelope kind (None if not ours)."""
        for kind in EnvelopeKind:
            if topic == self.topic(kind):
                return kind
        return None


@dataclass
class EncryptedMessage:
    """A chat message, encrypted once per recipient public key."""

    id: str
    username: str
    encrypted: Dict[str, str]
    timestamp: int
    sender_public_key: str

    kind = EnvelopeKind.MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "encrypted": self.encrypted,
            "timestamp": self.timestamp,
            "senderPublicKey": self.sender_public_key,
        }


@dataclass
class TypingEvent:
    """Typing start/stop signal."""

    username: str
    is_typing: bool
    timestamp: int
    public_key: str

    kind = EnvelopeKind.TYPING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "isTyping": self.is_typing,
            "timestamp": self.timestamp,
            "publicKey": self.public_key,
        }


@dataclass
class PublicKeyAnnouncement:
    """A peer broadcasting its public key."""

    username: str
    public_key: str
    timestamp: int

    kind = EnvelopeKind.PUBKEY_ANNOUNCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "publicKey": self.public_key,
            "timestamp": self.timestamp,
        }


@dataclass
class PublicKeyRequest:
    """Ask every other peer to re-announce its public key."""

    requester_id: str
    timestamp: int

    kind = EnvelopeKind.PUBKEY_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requesterId": self.requester_id,
            "timestamp": self.timestamp,
        }


@dataclass
class DeliveryReceipt:
    """A peer reporting how far it got with a message."""

    message_id: str
    username: str
    status: ReceiptStatus
    timestamp: int

    kind = EnvelopeKind.RECEIPT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "username": self.username,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }


Envelope = Union[
    EncryptedMessage, TypingEvent, PublicKeyAnnouncement, PublicKeyRequest, DeliveryReceipt
]


# Field validators: each returns the converted value or raises ValueError


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("expected string")
    return value


def _number(value: Any) -> Union[int, float]:
    # bool is an int subclass; JSON true/false is not a timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("expected finite number")
    return value


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("expected boolean")
    return value


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError("expected object")
    for key, item in value.items():
        if not isinstance(item, str):
            raise ValueError(f"expected string value for {key!r}")
    return dict(value)


def _receipt_status(value: Any) -> ReceiptStatus:
    try:
        return ReceiptStatus(value)
    except ValueError:
        raise ValueError(f"expected one of {[s.value for s in ReceiptStatus]}")


# (wire name, attribute name, validator) per envelope kind
FieldSpec = Tuple[str, str, Callable[[Any], Any]]

SCHEMAS: Dict[EnvelopeKind, Tuple[type, List[FieldSpec]]] = {
    EnvelopeKind.MESSAGE: (
        EncryptedMessage,
        [
            ("id", "id", _string),
            ("username", "username", _string),
            ("encrypted", "encrypted", _string_map),
            ("timestamp", "timestamp", _number),
            ("senderPublicKey", "sender_public_key", _string),
        ],
    ),
    EnvelopeKind.TYPING: (
        TypingEvent,
        [
            ("username", "username", _string),
            ("isTyping", "is_typing", _boolean),
            ("timestamp", "timestamp", _number),
            ("publicKey", "public_key", _string),
        ],
    ),
    EnvelopeKind.PUBKEY_ANNOUNCE: (
        PublicKeyAnnouncement,
        [
            ("username", "username", _string),
            ("publicKey", "public_key", _string),
            ("timestamp", "timestamp", _number),
        ],
    ),
    EnvelopeKind.PUBKEY_REQUEST: (
        PublicKeyRequest,
        [
            ("requesterId", "requester_id", _string),
            ("timestamp", "timestamp", _number),
        ],
    ),
    EnvelopeKind.RECEIPT: (
        DeliveryReceipt,
        [
            ("messageId", "message_id", _string),
            ("username", "username", _string),
            ("status", "status", _receipt_status),
            ("timestamp", "timestamp", _number),
        ],
    ),
}


def validate(kind: EnvelopeKind, payload: Any) -> Envelope:
    """
    Validate a parsed JSON payload against the shape for kind.

    Args:
        kind: Expected envelope kind
        payload: Parsed JSON value

    Returns:
        The typed envelope

    Raises:
        SchemaError: If a required field is missing or has the wrong type
    """
    if not isinstance(payload, dict):
        raise SchemaError(
            f"{kind.name} envelope must be a JSON object",
            {"envelope": kind.name, "type": type(payload).__name__},
        )

    envelope_class, fields = SCHEMAS[kind]
    values: Dict[str, Any] = {}

    for wire_name, attr_name, check in fields:
        if wire_name not in payload:
            raise SchemaError(
                f"Missing required field: {wire_name}",
                {"envelope": kind.name, "field": wire_name},
            )
        try:
            values[attr_name] = check(payload[wire_name])
        except ValueError as e:
            raise SchemaError(
                f"Invalid field {wire_name}: {e}",
                {"envelope": kind.name, "field": wire_name},
            ) from e

    return envelope_class(**values)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def decode(kind: EnvelopeKind, raw: bytes) -> Envelope:
    """
    Decode and validate an inbound payload.

    Raises:
        SchemaError: If the payload is too large, not UTF-8 JSON, or does not
            match the envelope shape
    """
    if len(raw) > MAX_PAYLOAD_SIZE:
        raise SchemaError(
            f"Payload too large: {len(raw)} bytes",
            {"size": len(raw), "max_size": MAX_PAYLOAD_SIZE},
            code=ErrorCode.E207_MESSAGE_TOO_LARGE,
        )

    try:
        payload = json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise SchemaError(f"Failed to parse payload: {e}", {"envelope": kind.name}) from e

    return validate(kind, payload)


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to its UTF-8 JSON wire form."""
    return json.dumps(envelope.to_dict(), separators=(",", ":")).encode("utf-8")
