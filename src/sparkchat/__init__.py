"""
SparkChat - End-to-end encrypted group chat over MQTT

Peers meet on a shared publish/subscribe broker and exchange messages
encrypted once per recipient with ECDH P-256 and AES-256-GCM. The broker
only ever sees ciphertext.

Author: sparkchat contributors
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "sparkchat contributors"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config, ServerConfig, SessionSettings
from .connection_fsm import ConnectionStatus
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    CryptoError,
    CryptoUnavailable,
    DecryptionFailed,
    ErrorCode,
    MalformedKey,
    ProtocolError,
    RaceAbort,
    SchemaError,
    SparkChatError,
    TransportError,
)
from .message import Message, MessageReceipt, ReceiptStatus
from .session import ChatSession, Identity, create_identity
from .transport import MqttTransport, Transport

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChatSession",
    "Config",
    "ConfigError",
    "ConnectionStatus",
    "CryptoError",
    "CryptoUnavailable",
    "DecryptionFailed",
    "ErrorCode",
    "Identity",
    "MalformedKey",
    "Message",
    "MessageReceipt",
    "MqttTransport",
    "ProtocolError",
    "RaceAbort",
    "ReceiptStatus",
    "SchemaError",
    "ServerConfig",
    "SessionSettings",
    "SparkChatError",
    "Transport",
    "TransportError",
    "__author__",
    "__license__",
    "__version__",
    "create_identity",
]
