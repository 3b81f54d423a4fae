"""
Configuration file for Media Backup Engine
"""
import os
from pathlib import Path

# Application Info
APP_NAME = "Media Backup Engine"
APP_VERSION = "1.0.0"

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.environ.get("MEDIA_BACKUP_HOME", Path.home() / ".media_backup"))
DATABASE_PATH = DATA_DIR / "backup_ledger.db"
DATABASE_URL = f"sqlite:///{DATABASE_PATH}"
LOG_PATH = DATA_DIR / "logs"
ENCRYPTION_KEY_PATH = DATA_DIR / ".settings_key"

# Default connection settings
DEFAULT_FTP_PORT = 21
DEFAULT_UPLOAD_ROOT = "backup"

# Supported File Extensions
SUPPORTED_PHOTO_FORMATS = {
    '.jpg', '.jpeg', '.png', '.heic', '.heif',
    '.gif', '.bmp', '.webp', '.tiff', '.raw', '.cr2', '.nef', '.dng'
}
SUPPORTED_VIDEO_FORMATS = {
    '.mp4', '.mov', '.avi', '.mkv', '.m4v',
    '.mpg', '.mpeg', '.wmv', '.flv', '.webm', '.3gp'
}
ALL_SUPPORTED_FORMATS = SUPPORTED_PHOTO_FORMATS | SUPPORTED_VIDEO_FORMATS

# Transfer retry policy
CONNECT_MAX_ATTEMPTS = 5
LOGIN_MAX_ATTEMPTS = 3
UPLOAD_MAX_ATTEMPTS = 3
BACKOFF_BASE_MS = 1000  # delay = min(2^attempt * base, cap)
BACKOFF_CAP_MS = 10000
LOGIN_RETRY_DELAY_MS = 500

# Transfer timeouts
CONNECT_TIMEOUT_SECONDS = 20
DATA_TIMEOUT_SECONDS = 20
KEEPALIVE_INTERVAL_SECONDS = 10  # NOOP on the control channel during long uploads
TRANSFER_BLOCK_SIZE = 1024 * 1024  # 1MB
MAX_UPLOAD_SIZE = 50 * 1024 * 1024 * 1024  # 50GB, larger files only log a warning

# Performance
MAX_CONCURRENT_UPLOADS = 5

# Network monitoring
CHECK_NETWORK_INTERVAL_SECONDS = 5
NETWORK_CHECK_TIMEOUT_SECONDS = 3

# Logging
LOG_LEVEL = "INFO"  # DEBUG, INFO, WARNING, ERROR
MAX_LOG_SIZE_MB = 10
LOG_BACKUP_COUNT = 5

# Housekeeping
SESSION_RETENTION_DAYS = 90


def create_directories():
    """Create necessary directories if they don't exist"""
    directories = [
        DATA_DIR,
        LOG_PATH,
    ]
    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
