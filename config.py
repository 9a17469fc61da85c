import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
TESTING = os.getenv("TESTING", "false").lower() == "true"

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL")
# Create missing tables on startup (migrations are managed outside this service)
DB_AUTO_CREATE = os.getenv("DB_AUTO_CREATE", "false").lower() == "true"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "Relay Chat API"
APP_VERSION = "1.0.0"

# Descope settings
DESCOPE_PROJECT_ID = os.getenv("DESCOPE_PROJECT_ID", "")
DESCOPE_JWT_LEEWAY = int(os.getenv("DESCOPE_JWT_LEEWAY", "60"))  # seconds of clock-skew tolerance
DESCOPE_JWT_LEEWAY_FALLBACK = int(os.getenv("DESCOPE_JWT_LEEWAY_FALLBACK", "300"))

# Redis settings (empty disables Redis; in-process fallbacks are used)
REDIS_URL = os.getenv("REDIS_URL", "")

# Realtime transport: 'memory' (single process) or 'redis' (pub/sub across workers)
REALTIME_BROKER = os.getenv("REALTIME_BROKER", "redis" if REDIS_URL else "memory")

# SSE settings
SSE_HEARTBEAT_SECONDS = int(os.getenv("SSE_HEARTBEAT_SECONDS", "25"))
SSE_MAX_MISSED_HEARTBEATS = int(os.getenv("SSE_MAX_MISSED_HEARTBEATS", "2"))
SSE_RETRY_MS = int(os.getenv("SSE_RETRY_MS", "5000"))

# Realtime session settings
SESSION_OUTBOX_SIZE = int(os.getenv("SESSION_OUTBOX_SIZE", "500"))
SESSION_IDLE_TIMEOUT_SECONDS = int(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "120"))
SESSION_MAX_PER_USER = int(os.getenv("SESSION_MAX_PER_USER", "5"))

# Presence Settings
PRESENCE_ENABLED = os.getenv("PRESENCE_ENABLED", "true").lower() == "true"
PRESENCE_AWAY_TIMEOUT_SECONDS = int(os.getenv("PRESENCE_AWAY_TIMEOUT_SECONDS", "300"))
PRESENCE_HEARTBEAT_SECONDS = int(os.getenv("PRESENCE_HEARTBEAT_SECONDS", "30"))
PRESENCE_MISS_THRESHOLD = int(os.getenv("PRESENCE_MISS_THRESHOLD", "3"))  # 3 misses = 90s
PRESENCE_SWEEP_SECONDS = int(os.getenv("PRESENCE_SWEEP_SECONDS", "10"))

# Message Settings
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "4000"))
MESSAGE_HISTORY_LIMIT = int(os.getenv("MESSAGE_HISTORY_LIMIT", "100"))
MESSAGE_MAX_PER_MINUTE = int(os.getenv("MESSAGE_MAX_PER_MINUTE", "60"))
EMOJI_MAX_LENGTH = int(os.getenv("EMOJI_MAX_LENGTH", "32"))

# Groups Settings
GROUP_MAX_PARTICIPANTS = int(os.getenv("GROUP_MAX_PARTICIPANTS", "100"))
GROUP_TITLE_MAX_LENGTH = int(os.getenv("GROUP_TITLE_MAX_LENGTH", "100"))

# File upload Settings
FILE_MAX_BYTES = int(os.getenv("FILE_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
FILE_ALLOWED_IMAGE_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]
FILE_ALLOWED_DOCUMENT_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
]
FILE_ALLOWED_TYPES = FILE_ALLOWED_IMAGE_TYPES + FILE_ALLOWED_DOCUMENT_TYPES

# AWS S3 Settings (message attachments)
AWS_REGION = os.getenv("AWS_REGION", "us-east-2")
S3_MESSAGE_FILES_BUCKET = os.getenv("S3_MESSAGE_FILES_BUCKET", "message-files")
S3_PUBLIC_BASE_URL = os.getenv("S3_PUBLIC_BASE_URL", "")
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "s3")  # 's3' or 'memory'
