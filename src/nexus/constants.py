"""
Nexus - Global Constants and Configuration Values

This module defines all constants used throughout the Nexus application.
All magic numbers and configuration defaults are centralized here.

Author: Nexus contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Nexus"

# Relay Server Constants
DEFAULT_RELAY_PORT = 3001
DEFAULT_HOST = "0.0.0.0"
LOCALHOST = "127.0.0.1"

# Relay Room Constants
ROOM_NAME = "global-server-chat"
ROOM_HISTORY_CAPACITY = 100
SEND_QUEUE_MAX_SIZE = 1000  # Outbound frames buffered per relay connection
READ_CHUNK_SIZE = 4096
CLIENT_CONNECT_TIMEOUT = 5.0  # seconds
CLIENT_REQUEST_TIMEOUT = 30.0  # seconds

# Friend Codes
FRIEND_CODE_LENGTH = 6
FRIEND_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Message Limits
MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MB per newline-delimited frame
MAX_TEXT_MESSAGE_SIZE = 16 * 1024  # 16 KB, fits one data channel message
MAX_USERNAME_LENGTH = 64
MAX_SIGNALING_CODE_SIZE = 256 * 1024  # Decompressed envelope size
LOCAL_HISTORY_CAPACITY = 1000

# Rate Limiting Constants
RATE_LIMIT_MESSAGES_PER_MINUTE = 0  # Disabled unless configured
RATE_LIMIT_MESSAGES_BURST = 20

# Direct Session Constants
DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]
DATA_CHANNEL_LABEL = "chat"
GATHERING_TIMEOUT = 30  # seconds, 0 disables

# Sender identifiers used in local histories
SENDER_ME = "me"
SENDER_PEER = "peer"
SENDER_SYSTEM = "system"
SENDER_ASSISTANT = "assistant"

# AI Assistant
ASSISTANT_DEFAULT_MODEL = "gpt-4o-mini"
ASSISTANT_MISSING_KEY_REPLY = (
    "Error: AI assistant API key is missing. Please configure your environment."
)
ASSISTANT_ERROR_REPLY = "Sorry, I encountered an error while processing your request."
ASSISTANT_EMPTY_REPLY = "I couldn't generate a response."

# File Paths
DEFAULT_DATA_DIR = "~/.nexus"
CONFIG_FILENAME = "config.toml"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Connection State Machine Constants
STATE_HISTORY_LIMIT = 100

# Local notices shown in chat histories
DIRECT_WELCOME_NOTICE = "Welcome to Nexus P2P. Encrypted, serverless communication."
CONNECTED_NOTICE = "Secure peer connection established. Channel open."
CONNECTION_LOST_NOTICE = "Connection lost."
NOT_CONNECTED_NOTICE = "Message not sent: no peer is connected."
RELAY_DISCONNECTED_NOTICE = "Disconnected from the relay server."
