"""
SparkChat - Global Constants and Configuration Values

This module defines all constants used throughout SparkChat.
All magic numbers and configuration defaults are centralized here.

Author: sparkchat contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "SparkChat"

# Broker Defaults
DEFAULT_BROKER_URL = "wss://test.mosquitto.org"
DEFAULT_PORT = 8081
DEFAULT_TOPIC_PREFIX = "spark-chat-room"
DEFAULT_WEBSOCKET_PATH = "/mqtt"
RECONNECT_INTERVAL = 5  # seconds
KEEPALIVE_INTERVAL = 60  # seconds
CONNECT_TIMEOUT = 10  # seconds
SUBSCRIBE_TIMEOUT = 10  # seconds

# Topic suffixes (appended to the configured prefix)
TOPIC_MESSAGES = "messages"
TOPIC_TYPING = "typing"
TOPIC_PUBKEYS = "pubkeys"
TOPIC_PUBKEY_REQUEST = "pubkey-request"
TOPIC_RECEIPTS = "receipts"

# Delivery QoS for every publish (at-most-once)
PUBLISH_QOS = 0

# Typing Indicator Timing
TYPING_THROTTLE_MS = 1000  # min gap between two typing-start signals
TYPING_TIMEOUT_MS = 3000  # idle time before an automatic typing-stop
TYPING_EXPIRY_MS = 3000  # max age of a peer's typing entry
TYPING_SWEEP_INTERVAL = 1.0  # seconds

# Identifiers
CLIENT_ID_PREFIX = "spark-chat-"
CLIENT_ID_HEX_LENGTH = 8
MESSAGE_ID_RANDOM_LENGTH = 7
ANONYMOUS_NAME_PREFIX = "Anonymous-"
ANONYMOUS_NAME_RANDOM_LENGTH = 5

# Message Limits
MAX_PAYLOAD_SIZE = 1024 * 1024  # 1 MiB
MAX_TEXT_MESSAGE_SIZE = 100 * 1024  # 100 KB
MAX_USERNAME_LENGTH = 64

# Cryptography Constants
NONCE_SIZE = 12  # 96 bits for AES-GCM
AES_KEY_SIZE = 32  # 256 bits

# File Paths
DEFAULT_DATA_DIR = "~/.sparkchat"
CONFIG_FILENAME = "config.toml"
LOG_FILENAME = "sparkchat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Connection State Machine
STATE_HISTORY_SIZE = 100
