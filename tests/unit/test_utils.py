"""
Unit tests for sparkchat.utils module.

Tests utility functions for formatting, validation, and helpers.
"""

import time

from sparkchat.utils import (
    format_fingerprint,
    format_timestamp,
    format_typing_summary,
    now_ms,
    truncate_string,
    validate_broker_url,
    validate_port,
    validate_username,
)


class TestTypingSummary:
    """Test the typing indicator text."""

    def test_nobody(self):
        assert format_typing_summary([]) is None

    def test_one(self):
        assert format_typing_summary(["alice"]) == "alice is typing…"

    def test_two(self):
        assert format_typing_summary(["alice", "bob"]) == "alice and bob are typing…"

    def test_many(self):
        names = ["alice", "bob", "carol", "dave"]
        assert format_typing_summary(names) == "alice, bob, and 2 others are typing…"

    def test_three(self):
        assert format_typing_summary(["a", "b", "c"]) == "a, b, and 1 others are typing…"


class TestPortValidation:
    """Test port number validation."""

    def test_valid_ports(self):
        assert validate_port(1) is True
        assert validate_port(1883) is True
        assert validate_port(65535) is True

    def test_invalid_ports(self):
        assert validate_port(0) is False
        assert validate_port(65536) is False
        assert validate_port("1883") is False
        assert validate_port(True) is False


class TestBrokerUrlValidation:
    """Test broker URL validation."""

    def test_valid_urls(self):
        assert validate_broker_url("wss://test.mosquitto.org") is True
        assert validate_broker_url("mqtt://localhost") is True
        assert validate_broker_url("ws://10.0.0.1/mqtt") is True

    def test_invalid_urls(self):
        assert validate_broker_url("") is False
        assert validate_broker_url("http://example.com") is False
        assert validate_broker_url("wss://") is False
        assert validate_broker_url("test.mosquitto.org") is False
        assert validate_broker_url(None) is False


class TestUsernameValidation:
    """Test display name validation."""

    def test_valid(self):
        assert validate_username("alice") is True
        assert validate_username("  padded  ") is True

    def test_invalid(self):
        assert validate_username("") is False
        assert validate_username("   ") is False
        assert validate_username("x" * 65) is False
        assert validate_username(42) is False


class TestFormatting:
    """Test display helpers."""

    def test_format_fingerprint(self):
        fingerprint = "1a2b3c4d5e6f7a8b9c0d"
        assert format_fingerprint(fingerprint) == "1a2b 3c4d 5e6f 7a8b"
        assert format_fingerprint(fingerprint, groups=2) == "1a2b 3c4d"

    def test_truncate_string(self):
        assert truncate_string("short", 10) == "short"
        assert truncate_string("a very long message", 10) == "a very ..."
        assert len(truncate_string("a very long message", 10)) == 10

    def test_format_timestamp(self):
        assert format_timestamp(0, "%Y") in ("1970", "1969")

    def test_format_timestamp_invalid(self):
        assert format_timestamp("soon") == "soon"

    def test_now_ms(self):
        before = int(time.time() * 1000)
        value = now_ms()
        assert isinstance(value, int)
        assert before <= value <= before + 1000
