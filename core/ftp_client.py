"""
FTP transfer client for Media Backup Engine

Every upload call opens its own connection and walks
Disconnected -> Connecting -> Authenticating -> Navigating -> Transferring
-> Disconnected. Connecting, Authenticating and Transferring each retry with
their own policy; navigation is deterministic and is not retried.
"""
import enum
import ftplib
import logging
import posixpath
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from tenacity import (
    Retrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, stop_when_event_set, wait_fixed
)
import config
from core.exceptions import AuthFailed, ConnectFailed, DirectoryCreateFailed, UploadFailed
from core.settings import ConnectionSettings

logger = logging.getLogger(__name__)

# Socket, EOF and ftplib reply errors
FTP_ERRORS = ftplib.all_errors

DATE_TOKEN = re.compile(r"\d{8}")


class TransferPhase(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    NAVIGATING = "navigating"
    TRANSFERRING = "transferring"


@dataclass(frozen=True)
class TransferPolicy:
    """Retry counts, backoff and timeouts for one transfer client"""
    connect_attempts: int = config.CONNECT_MAX_ATTEMPTS
    login_attempts: int = config.LOGIN_MAX_ATTEMPTS
    upload_attempts: int = config.UPLOAD_MAX_ATTEMPTS
    backoff_base_ms: int = config.BACKOFF_BASE_MS
    backoff_cap_ms: int = config.BACKOFF_CAP_MS
    login_delay_ms: int = config.LOGIN_RETRY_DELAY_MS
    connect_timeout: float = config.CONNECT_TIMEOUT_SECONDS
    data_timeout: float = config.DATA_TIMEOUT_SECONDS
    keepalive_interval: float = config.KEEPALIVE_INTERVAL_SECONDS
    block_size: int = config.TRANSFER_BLOCK_SIZE

    def backoff_ms(self, failed_attempts: int) -> int:
        """Delay after the given number of failed attempts"""
        return min(2 ** failed_attempts * self.backoff_base_ms, self.backoff_cap_ms)


def remote_directory_for(file_name: str, upload_root: str) -> str:
    """
    Remote directory a file belongs in.
    Names carrying a YYYYMMDD token go to <root>/<YYYY>/<YYYYMM>, the rest to <root>.
    """
    root = upload_root if upload_root == "/" else upload_root.rstrip("/")
    match = DATE_TOKEN.search(file_name)
    if not match:
        return root

    token = match.group()
    return posixpath.join(root, token[:4], token[:6])


class FtpTransferClient:
    """Uploads single files to an FTP server, one fresh connection per file"""

    def __init__(self, policy: Optional[TransferPolicy] = None,
                 ftp_factory: Callable[[], ftplib.FTP] = ftplib.FTP,
                 sleep: Optional[Callable[[float], None]] = None):
        self.policy = policy or TransferPolicy()
        self.ftp_factory = ftp_factory
        self.sleep = sleep

    def upload(self, local_file, settings: ConnectionSettings,
               cancel_event: Optional[threading.Event] = None) -> int:
        """
        Upload one file and return the transfer time in milliseconds.
        Raises a TransferError subclass once the phase's retries are exhausted.
        """
        job = _UploadJob(self, Path(local_file), settings, cancel_event)
        return job.run()


class _UploadJob:
    """State of a single upload call, discarded when the call returns"""

    def __init__(self, client: FtpTransferClient, local_file: Path,
                 settings: ConnectionSettings, cancel_event: Optional[threading.Event]):
        self.policy = client.policy
        self.ftp_factory = client.ftp_factory
        self.local_file = local_file
        self.settings = settings
        self.cancel_event = cancel_event
        self.ftp: Optional[ftplib.FTP] = None
        self.phase = TransferPhase.DISCONNECTED
        self.remote_dir = ""
        self._pending_noops = 0
        self._last_noop = 0.0

        if client.sleep is not None:
            self._sleep = client.sleep
        elif cancel_event is not None:
            # Cancelling cuts a backoff wait short
            self._sleep = cancel_event.wait
        else:
            self._sleep = time.sleep

    def run(self) -> int:
        try:
            self._connect_with_retry()
            self._login_with_retry()
            self._navigate()
            return self._store_with_retry()
        finally:
            self._disconnect()

    # Retry plumbing
    def _enter(self, phase: TransferPhase):
        logger.debug(f"{self.local_file.name}: {self.phase.value} -> {phase.value}")
        self.phase = phase

    def _backoff_wait(self, retry_state: RetryCallState) -> float:
        return self.policy.backoff_ms(retry_state.attempt_number) / 1000

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"{self.phase.value} attempt {retry_state.attempt_number} failed for "
            f"{self.local_file.name}: {error}. Retrying in {delay:.1f}s"
        )

    def _retrying(self, attempts: int, wait) -> Retrying:
        stop = stop_after_attempt(attempts)
        if self.cancel_event is not None:
            stop = stop | stop_when_event_set(self.cancel_event)
        return Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(FTP_ERRORS),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    # Connecting
    def _open_connection(self):
        self._close_socket()
        host, port = self.settings.host, self.settings.port
        logger.info(f"Attempting to connect to FTP server: {host}:{port}")

        ftp = self.ftp_factory()
        ftp.encoding = "utf-8"
        self.ftp = ftp
        welcome = ftp.connect(host, port, timeout=self.policy.connect_timeout)
        # ftplib lets 1xx/3xx greetings through
        if not welcome or not welcome.startswith("2"):
            raise ftplib.error_reply(welcome or "No greeting from server")

        # ftplib applies this to every data connection it opens
        ftp.timeout = self.policy.data_timeout
        ftp.set_pasv(True)
        logger.info(f"Connected to FTP server: {host}:{port}")

    def _connect_with_retry(self):
        self._enter(TransferPhase.CONNECTING)
        attempts = 0
        try:
            for attempt in self._retrying(self.policy.connect_attempts, self._backoff_wait):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._open_connection()
        except FTP_ERRORS as e:
            logger.error(f"All connection attempts failed after {attempts} tries")
            raise ConnectFailed(
                f"Failed to connect to FTP server after {attempts} attempts: {e}"
            ) from e

    # Authenticating
    def _login(self):
        self.ftp.login(self.settings.username, self.settings.password)
        logger.info(f"Logged in as user: {self.settings.username}")

    def _login_with_retry(self):
        self._enter(TransferPhase.AUTHENTICATING)
        attempts = 0
        delay = wait_fixed(self.policy.login_delay_ms / 1000)
        try:
            for attempt in self._retrying(self.policy.login_attempts, delay):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._login()
        except FTP_ERRORS as e:
            raise AuthFailed(f"FTP login failed after {attempts} attempts: {e}") from e

    # Navigating
    def _navigate(self):
        self._enter(TransferPhase.NAVIGATING)
        target = remote_directory_for(self.local_file.name, self.settings.upload_root)
        self.remote_dir = target
        if not target:
            return

        try:
            self.ftp.cwd(target)
            logger.debug(f"Changed to directory: {target}")
            return
        except FTP_ERRORS as e:
            logger.info(f"Remote directory {target} not available ({e}), creating it")

        walked = ""
        if target.startswith("/"):
            walked = "/"
            try:
                self.ftp.cwd("/")
            except FTP_ERRORS as e:
                raise DirectoryCreateFailed("/", str(e)) from e

        for segment in (s for s in target.split("/") if s):
            walked = posixpath.join(walked, segment)
            try:
                self.ftp.cwd(segment)
                continue
            except FTP_ERRORS:
                pass
            try:
                self.ftp.mkd(segment)
                self.ftp.cwd(segment)
                logger.info(f"Created remote directory: {walked}")
            except FTP_ERRORS as e:
                raise DirectoryCreateFailed(walked, str(e)) from e

    # Transferring
    def _connection_alive(self) -> bool:
        if self.ftp is None or self.ftp.sock is None:
            return False
        try:
            self.ftp.voidcmd("NOOP")
            return True
        except FTP_ERRORS:
            return False

    def _ensure_connected(self):
        if self._connection_alive():
            return
        logger.info("FTP connection lost, reconnecting...")
        self._open_connection()
        self._login()
        self._navigate()
        self._enter(TransferPhase.TRANSFERRING)

    def _keepalive(self, block: bytes):
        interval = self.policy.keepalive_interval
        if interval <= 0:
            return
        now = time.monotonic()
        if now - self._last_noop >= interval:
            self.ftp.putcmd("NOOP")
            self._pending_noops += 1
            self._last_noop = now

    def _drain_noop_replies(self):
        # storbinary consumed one reply already; the completion reply is still queued
        while self._pending_noops:
            self.ftp.voidresp()
            self._pending_noops -= 1

    def _store_once(self) -> int:
        self._pending_noops = 0
        self._last_noop = time.monotonic()
        started = time.monotonic()
        try:
            with open(self.local_file, 'rb') as fp:
                self.ftp.storbinary(
                    f"STOR {self.local_file.name}", fp,
                    blocksize=self.policy.block_size,
                    callback=self._keepalive,
                )
            self._drain_noop_replies()
        except FTP_ERRORS:
            if self._pending_noops:
                # Unread NOOP replies would desync the next command; start over
                logger.info(f"Dropping connection with {self._pending_noops} "
                            f"unanswered keep-alive NOOPs")
                self._close_socket()
            raise
        return int((time.monotonic() - started) * 1000)

    def _store_with_retry(self) -> int:
        self._enter(TransferPhase.TRANSFERRING)
        attempts = 0
        try:
            file_size = self.local_file.stat().st_size
            if file_size > config.MAX_UPLOAD_SIZE:
                logger.warning(
                    f"File size ({file_size // 1024 // 1024}MB) exceeds limit of "
                    f"{config.MAX_UPLOAD_SIZE // 1024 // 1024}MB: {self.local_file.name}"
                )

            for attempt in self._retrying(self.policy.upload_attempts, self._backoff_wait):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        self._ensure_connected()
                    elapsed_ms = self._store_once()
        except FTP_ERRORS as e:
            server_reply = str(e) if isinstance(e, ftplib.Error) else None
            raise UploadFailed(
                f"Upload of {self.local_file.name} failed after {attempts} attempts: {e}",
                server_reply=server_reply,
            ) from e

        logger.info(f"File uploaded successfully: {self.local_file.name}, "
                    f"size: {file_size // 1024}KB, time: {elapsed_ms}ms")
        return elapsed_ms

    # Cleanup
    def _close_socket(self):
        if self.ftp is not None:
            self.ftp.close()
            self.ftp = None

    def _disconnect(self):
        if self.ftp is not None and self.ftp.sock is not None:
            try:
                self.ftp.quit()
                logger.debug("Logged out and disconnected from FTP server")
            except FTP_ERRORS as e:
                logger.warning(f"Error during FTP logout/disconnect: {e}")
        self._close_socket()
        self._enter(TransferPhase.DISCONNECTED)
