"""
Exception hierarchy for the backup engine

TransferError subclasses are scoped to a single file: the pipeline records
the file as failed and keeps going. Everything else ends the run.
"""


class BackupError(Exception):
    """Base class for all backup engine errors"""


class TransferError(BackupError):
    """A single file could not be transferred"""


class ConnectFailed(TransferError):
    """Could not open a control connection to the server"""


class AuthFailed(TransferError):
    """Server rejected the configured credentials"""


class DirectoryCreateFailed(TransferError):
    """A remote directory segment could not be created"""

    def __init__(self, segment: str, reason: str = ""):
        self.segment = segment
        message = f"Could not create directory: {segment}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class UploadFailed(TransferError):
    """File bytes could not be stored on the server"""

    def __init__(self, message: str, server_reply: str = None):
        self.server_reply = server_reply
        super().__init__(message)


class ConfigurationMissing(BackupError):
    """Connection settings are incomplete, the run cannot start"""


class SessionAlreadyFinalized(BackupError):
    """A terminal session record cannot be updated again"""
