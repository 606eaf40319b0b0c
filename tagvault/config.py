# config.py
"""
Configuration constants for tagvault
"""
import os

# Thumbnail pool grid
POOL_ROWS = 8
POOL_COLUMNS = 8
THUMBNAIL_DOWNSCALE = 10

# Encryption
ENCRYPT_MESSAGE_LIMIT = 1_000_000
KEY_LENGTH = 32
NONCE_LENGTH = 12

# Argon2id defaults for password based key derivation
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 64 * 1024  # KiB
ARGON2_PARALLELISM = 4
ARGON2_SALT_LENGTH = 16

# Image formats: thumbnail pools are lossless, full images are lossy
THUMBNAIL_FORMAT_NAME = "PNG"
THUMBNAIL_EXTENSION = ".png"
THUMBNAIL_HEADER_LENGTH = 33  # signature (8) + IHDR chunk (25)
IMAGE_FORMAT_NAME = "WEBP"
IMAGE_EXTENSION = ".webp"
IMAGE_HEADER_LENGTH = 12  # RIFF + size + WEBP
WEBP_QUALITY = 90

# Cache settings
THUMBNAIL_CACHE_SIZE = 256
CACHE_CLEANUP_THRESHOLD = 0.8

# Retry settings for fetch collaborators
FETCH_MAX_RETRY = 3
FETCH_RETRY_DELAY_SECS = 0.5

# Package layout
DATA_MEMBER_NAME = "data.json"
DELTA_PACKAGE_NAME = "database-delta.zip"
FULL_PACKAGE_NAME = "database.zip"

# Logging
LOG_PATH = os.environ.get("TAGVAULT_LOG_PATH", "tagvault.log")
LOG_MAX_BYTES = 1_048_576
LOG_BACKUP_COUNT = 5
