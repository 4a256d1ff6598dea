"""
SparkChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
SparkChat. Each error has a unique code for logging and debugging.

Errors fall into two groups. Failures caused by untrusted network input
(MalformedKey, SchemaError, DecryptionFailed) are caught where inbound
traffic is dispatched and never end a session. Failures of local identity
bootstrap (CryptoUnavailable) propagate and block session start.

Author: sparkchat contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all SparkChat error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_CRYPTO_UNAVAILABLE = "E104"

    # Protocol Errors (E200-E299)
    E200_PROTOCOL_ERROR = "E200"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"

    # Transport Errors (E300-E399)
    E300_TRANSPORT_ERROR = "E300"
    E301_CONNECTION_FAILED = "E301"
    E302_SUBSCRIBE_FAILED = "E302"
    E303_PUBLISH_FAILED = "E303"
    E304_PUBLISH_ABORTED = "E304"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class SparkChatError(Exception):
    """Base exception class for all SparkChat errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a SparkChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(SparkChatError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class CryptoUnavailable(CryptoError):
    """The platform's cryptographic primitives cannot be used.

    Fatal to session start: without a key pair there is no identity.
    """

    def __init__(
        self,
        message: str = "Cryptographic primitives are unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E104_CRYPTO_UNAVAILABLE, message, details)


class MalformedKey(CryptoError):
    """A serialized public key could not be parsed."""

    def __init__(
        self,
        message: str = "Malformed public key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E103_INVALID_KEY, message, details)


class EncryptionFailed(CryptoError):
    """Encrypting a payload for a recipient failed."""

    def __init__(
        self,
        message: str = "Encryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E101_ENCRYPTION_FAILED, message, details)


class DecryptionFailed(CryptoError):
    """Authentication tag mismatch, corrupted payload or wrong key."""

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class ProtocolError(SparkChatError):
    """Exception raised for wire protocol violations."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_PROTOCOL_ERROR,
        message: str = "Protocol error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SchemaError(ProtocolError):
    """An inbound envelope does not match its wire shape."""

    def __init__(
        self,
        message: str = "Envelope failed validation",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
    ):
        super().__init__(code, message, details)


class TransportError(SparkChatError):
    """Exception raised for pub/sub transport failures.

    Reflected as a connection status change; the transport library retries
    per its own policy.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_TRANSPORT_ERROR,
        message: str = "Transport operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RaceAbort(TransportError):
    """A publish was aborted because the transport handle went away mid-send."""

    def __init__(
        self,
        message: str = "Publish aborted: transport is no longer available",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E304_PUBLISH_ABORTED, message, details)


class ConfigError(SparkChatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
