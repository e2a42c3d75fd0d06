"""
Parley - Global Constants and Configuration Values

This module defines all constants used throughout the Parley agent.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Parley"
AUTHOR = "orpheus497"

# Network Timeouts (seconds)
NETWORK_TIMEOUT = 30
NETWORK_RETRY_ATTEMPTS = 3
NETWORK_RETRY_DELAY = 1  # seconds, doubled per attempt
NETWORK_MAX_RETRY_DELAY = 30

# Synchronization
SYNC_INTERVAL = 60  # seconds between periodic sync passes
SYNC_TIMEOUT = 30  # seconds per pull
SYNC_ALL_EVERY = 10  # full reconciliation every N periodic passes

# Message Stream
STREAM_DEDUP_WINDOW = 10000  # recently seen message IDs
STREAM_REORDER_WINDOW = 0.25  # seconds to collect a batch before ordering
STREAM_BATCH_SIZE = 100  # maximum messages per ordered batch
STREAM_BACKOFF_BASE = 1.0  # seconds
STREAM_MAX_BACKOFF = 300.0  # 5 minutes
STREAM_MAX_RECONNECT_ATTEMPTS = 5
STREAM_WORKER_QUEUE_SIZE = 1000  # per conversation

# Content Types
CONTENT_TYPE_TEXT = "text"
CONTENT_TYPE_REPLY = "reply"
CONTENT_TYPE_REACTION = "reaction"
CONTENT_TYPE_ATTACHMENT = "attachment"
DEFAULT_CONTENT_TYPES = (CONTENT_TYPE_TEXT, CONTENT_TYPE_REPLY)

# Group Chat Constants
MAX_GROUP_MEMBERS = 250
MAX_GROUP_NAME_LENGTH = 100
MAX_GROUP_DESCRIPTION_LENGTH = 1000
MAX_IMAGE_URL_LENGTH = 2048

# Pending Mutation Queue
PENDING_MUTATION_MAX_AGE = 604800  # 7 days in seconds
PENDING_MUTATION_RETRY_ATTEMPTS = 10
PENDING_MUTATION_RETRY_DELAY = 5  # seconds

# File Paths
DEFAULT_DATA_DIR = "~/.parley"
CONFIG_FILENAME = "config.toml"
IDENTITY_FILENAME = "identity.json"
CONVERSATIONS_DIR = "conversations"
PENDING_DB_FILENAME = "pending.db"
SYNC_STATE_FILENAME = "sync.json"
STATUS_FILENAME = "status.json"
PID_FILENAME = "agent.pid"
LOGS_DIR = "logs"
LOG_FILENAME = "parley.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Identity Key Derivation (Argon2id)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
SALT_SIZE = 16
NONCE_SIZE = 12

# Matrix Protocol Constants
MATRIX_DEFAULT_HOMESERVER = "https://matrix.org"
MATRIX_DEVICE_NAME = "Parley Agent"
MATRIX_SYNC_TIMEOUT = 30000  # milliseconds
MATRIX_POWER_SUPER_ADMIN = 100
MATRIX_POWER_ADMIN = 50
MATRIX_POWER_MEMBER = 0
