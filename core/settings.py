"""
Connection settings for the remote FTP server
"""
import logging
from dataclasses import dataclass
from typing import Optional
import config
from core.encryption import EncryptionManager
from core.exceptions import ConfigurationMissing
from database.operations import DatabaseOperations

logger = logging.getLogger(__name__)

# app_settings keys
FTP_HOST = "ftp_host"
FTP_PORT = "ftp_port"
UPLOAD_ROOT = "upload_root"
USERNAME = "username"
PASSWORD = "password_encrypted"


@dataclass(frozen=True)
class ConnectionSettings:
    """Parameters for one FTP connection"""
    host: str = ""
    port: int = config.DEFAULT_FTP_PORT
    upload_root: str = config.DEFAULT_UPLOAD_ROOT
    username: str = ""
    password: str = ""

    def validate(self):
        """Raise ConfigurationMissing if the server cannot be addressed"""
        if not self.host or not self.host.strip():
            raise ConfigurationMissing(
                "FTP server address is not set. Configure the server before backing up."
            )
        if not 0 < self.port < 65536:
            raise ConfigurationMissing(f"Invalid FTP port: {self.port}")

    def __repr__(self):
        return (f"ConnectionSettings(host={self.host!r}, port={self.port}, "
                f"upload_root={self.upload_root!r}, username={self.username!r})")


class SettingsRepository:
    """Reads and writes connection settings in the app_settings table"""

    def __init__(self, encryption_manager: Optional[EncryptionManager] = None):
        self.encryption_manager = encryption_manager

    def _cipher(self) -> EncryptionManager:
        if self.encryption_manager is None:
            self.encryption_manager = EncryptionManager()
        return self.encryption_manager

    def get_connection_settings(self) -> ConnectionSettings:
        with DatabaseOperations() as db:
            stored = db.get_all_settings()

        port_value = stored.get(FTP_PORT)
        try:
            port = int(port_value) if port_value else config.DEFAULT_FTP_PORT
        except ValueError:
            logger.warning(f"Ignoring invalid stored port {port_value!r}")
            port = config.DEFAULT_FTP_PORT

        password = ""
        if stored.get(PASSWORD):
            password = self._cipher().decrypt_string(stored[PASSWORD])

        return ConnectionSettings(
            host=stored.get(FTP_HOST) or "",
            port=port,
            upload_root=stored.get(UPLOAD_ROOT) or config.DEFAULT_UPLOAD_ROOT,
            username=stored.get(USERNAME) or "",
            password=password,
        )

    def save_connection_settings(self, settings: ConnectionSettings):
        encrypted = self._cipher().encrypt_string(settings.password) if settings.password else ""
        with DatabaseOperations() as db:
            db.set_setting(FTP_HOST, settings.host.strip())
            db.set_setting(FTP_PORT, str(settings.port))
            db.set_setting(UPLOAD_ROOT, settings.upload_root)
            db.set_setting(USERNAME, settings.username)
            db.set_setting(PASSWORD, encrypted)
        logger.info(f"Saved connection settings for {settings.host}:{settings.port}")
