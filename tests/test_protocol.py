"""
SparkChat - Wire protocol tests.

Tests for topic naming and validation of the five envelope shapes.
"""

import json

import pytest

from sparkchat.constants import MAX_PAYLOAD_SIZE
from sparkchat.errors import ErrorCode, SchemaError
from sparkchat.message import ReceiptStatus
from sparkchat.protocol import (
    DeliveryReceipt,
    EncryptedMessage,
    EnvelopeKind,
    PublicKeyAnnouncement,
    PublicKeyRequest,
    Topics,
    TypingEvent,
    decode,
    encode,
    validate,
)


def _raw(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


VALID_MESSAGE = {
    "id": "1700000000000-abc1234",
    "username": "alice",
    "encrypted": {"key-a": "cipher-a", "key-b": "cipher-b"},
    "timestamp": 1700000000000,
    "senderPublicKey": "key-a",
}


class TestTopics:
    """Tests for topic naming."""

    def test_default_prefix(self):
        topics = Topics()
        assert topics.messages == "spark-chat-room/messages"
        assert topics.typing == "spark-chat-room/typing"
        assert topics.pubkeys == "spark-chat-room/pubkeys"
        assert topics.pubkey_request == "spark-chat-room/pubkey-request"
        assert topics.receipts == "spark-chat-room/receipts"

    def test_all_topics(self):
        topics = Topics("room")
        assert topics.all() == [
            "room/messages",
            "room/typing",
            "room/pubkeys",
            "room/pubkey-request",
            "room/receipts",
        ]

    def test_kind_for(self):
        topics = Topics("room")
        assert topics.kind_for("room/receipts") is EnvelopeKind.RECEIPT
        assert topics.kind_for("room/pubkey-request") is EnvelopeKind.PUBKEY_REQUEST
        assert topics.kind_for("other/messages") is None


class TestDecode:
    """Tests for inbound validation."""

    def test_valid_message(self):
        envelope = decode(EnvelopeKind.MESSAGE, _raw(VALID_MESSAGE))

        assert isinstance(envelope, EncryptedMessage)
        assert envelope.sender_public_key == "key-a"
        assert envelope.encrypted == {"key-a": "cipher-a", "key-b": "cipher-b"}

    def test_missing_sender_public_key(self):
        payload = dict(VALID_MESSAGE)
        del payload["senderPublicKey"]

        with pytest.raises(SchemaError) as exc_info:
            decode(EnvelopeKind.MESSAGE, _raw(payload))

        assert exc_info.value.details["field"] == "senderPublicKey"
        assert exc_info.value.code == ErrorCode.E206_INVALID_MESSAGE

    def test_extra_fields_ignored(self):
        payload = dict(VALID_MESSAGE, extra="ignored", nested={"a": 1})
        envelope = decode(EnvelopeKind.MESSAGE, _raw(payload))
        assert envelope.id == VALID_MESSAGE["id"]

    def test_float_timestamp_accepted(self):
        payload = {"requesterId": "spark-chat-12345678", "timestamp": 1700000000000.5}
        envelope = decode(EnvelopeKind.PUBKEY_REQUEST, _raw(payload))
        assert isinstance(envelope, PublicKeyRequest)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("timestamp", True),
            ("timestamp", "1700000000000"),
            ("username", 42),
            ("encrypted", ["cipher"]),
            ("encrypted", {"key-a": 1}),
            ("id", None),
        ],
    )
    def test_wrong_types_rejected(self, field, value):
        payload = dict(VALID_MESSAGE, **{field: value})
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.MESSAGE, _raw(payload))

    def test_typing_flag_must_be_boolean(self):
        payload = {"username": "bob", "isTyping": 1, "timestamp": 1, "publicKey": "k"}
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.TYPING, _raw(payload))

    def test_receipt_status_enumerated(self):
        payload = {"messageId": "m", "username": "bob", "status": "read", "timestamp": 1}
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.RECEIPT, _raw(payload))

    @pytest.mark.parametrize("status", ["sent", "received", "decrypted"])
    def test_receipt_statuses(self, status):
        payload = {"messageId": "m", "username": "bob", "status": status, "timestamp": 1}
        envelope = decode(EnvelopeKind.RECEIPT, _raw(payload))
        assert envelope.status is ReceiptStatus(status)

    def test_not_an_object(self):
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.PUBKEY_ANNOUNCE, _raw(["username", "publicKey"]))

    def test_invalid_json(self):
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.MESSAGE, b"{not json")

    def test_invalid_utf8(self):
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.MESSAGE, b"\xff\xfe\x00")

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_literals_rejected(self, literal):
        raw = _raw(dict(VALID_MESSAGE, timestamp="TS")).replace(b'"TS"', literal.encode())
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.MESSAGE, raw)

    def test_overflowing_number_rejected(self):
        raw = _raw(dict(VALID_MESSAGE, timestamp="TS")).replace(b'"TS"', b"1e400")
        with pytest.raises(SchemaError) as exc_info:
            decode(EnvelopeKind.MESSAGE, raw)
        assert exc_info.value.details["field"] == "timestamp"

    def test_non_finite_value_in_parsed_dict(self):
        with pytest.raises(SchemaError):
            validate(EnvelopeKind.MESSAGE, dict(VALID_MESSAGE, timestamp=float("inf")))

    def test_deeply_nested_json_rejected(self):
        with pytest.raises(SchemaError):
            decode(EnvelopeKind.MESSAGE, b"[" * 100000 + b"]" * 100000)

    def test_oversized_payload(self):
        with pytest.raises(SchemaError) as exc_info:
            decode(EnvelopeKind.MESSAGE, b" " * (MAX_PAYLOAD_SIZE + 1))
        assert exc_info.value.code == ErrorCode.E207_MESSAGE_TOO_LARGE


class TestEncode:
    """Tests for outbound serialization."""

    def test_camel_case_fields(self):
        event = TypingEvent(username="bob", is_typing=True, timestamp=5, public_key="k")
        assert json.loads(encode(event)) == {
            "username": "bob",
            "isTyping": True,
            "timestamp": 5,
            "publicKey": "k",
        }

    def test_receipt_status_serialized_as_string(self):
        receipt = DeliveryReceipt(
            message_id="m1", username="bob", status=ReceiptStatus.DECRYPTED, timestamp=9
        )
        assert json.loads(encode(receipt))["status"] == "decrypted"
        assert json.loads(encode(receipt))["messageId"] == "m1"

    def test_encoded_envelope_validates(self):
        announcement = PublicKeyAnnouncement(username="carol", public_key="k", timestamp=7)
        decoded = decode(EnvelopeKind.PUBKEY_ANNOUNCE, encode(announcement))
        assert decoded == announcement

    def test_validate_accepts_parsed_dict(self):
        envelope = validate(EnvelopeKind.MESSAGE, VALID_MESSAGE)
        assert envelope.to_dict() == VALID_MESSAGE
