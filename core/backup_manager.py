"""
Backup Manager for Media Backup Engine
Coordinates the backup process
"""
import enum
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional
import config
from core.candidates import CandidateResolver
from core.ftp_client import FtpTransferClient
from core.pipeline import FileOutcome, PipelineResult, UploadPipeline
from core.progress import (
    BackupState, ProgressBroadcaster, Started, Completed, Cancelled, Failed
)
from database.models import BackupResult
from database.operations import SessionLedger

logger = logging.getLogger(__name__)

NO_CANDIDATES_MESSAGE = "No new files to back up"


class BackupPhase(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BackupManager:
    """
    Runs backup sessions: resolves candidates, drives the upload pipeline,
    keeps the ledger and publishes progress.

    media_source needs list_local_media_paths(); settings_source needs
    get_connection_settings(). Only start() and cancel() change the run.
    """

    def __init__(self, media_source, settings_source,
                 ledger: Optional[SessionLedger] = None,
                 transfer_client: Optional[FtpTransferClient] = None,
                 resolver: Optional[CandidateResolver] = None,
                 broadcaster: Optional[ProgressBroadcaster] = None,
                 concurrency_limit: int = config.MAX_CONCURRENT_UPLOADS):
        self.media_source = media_source
        self.settings_source = settings_source
        self.ledger = ledger or SessionLedger()
        self.transfer_client = transfer_client or FtpTransferClient()
        self.resolver = resolver or CandidateResolver()
        self.pipeline = UploadPipeline(self.transfer_client, self.ledger)
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.concurrency_limit = concurrency_limit

        self.state = BackupState()
        self.phase = BackupPhase.IDLE
        self.session_id: Optional[int] = None
        self.last_event = None

        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._network_available = True
        self._worker: Optional[threading.Thread] = None

    # Observers
    def subscribe(self, listener: Callable) -> Callable[[], None]:
        return self.broadcaster.subscribe(listener)

    def _publish(self, event):
        self.last_event = event
        self.broadcaster.publish(event)

    @property
    def is_running(self) -> bool:
        return self.phase == BackupPhase.RUNNING

    def status_text(self) -> str:
        with self._lock:
            return self.state.status_text()

    def get_state(self) -> dict:
        with self._lock:
            return self.state.to_dict()

    # Control surface
    def start(self) -> bool:
        """Start a backup on a worker thread; no-op while one is running"""
        if not self._claim():
            logger.info("Backup already running, ignoring start request")
            return False

        self._worker = threading.Thread(
            target=self._execute, name="backup-session", daemon=True
        )
        self._worker.start()
        return True

    def run_backup(self):
        """Run a backup on the calling thread and return its terminal event"""
        if not self._claim():
            logger.info("Backup already running, ignoring start request")
            return None
        return self._execute()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background run; True once it has finished"""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def cancel(self) -> bool:
        """Stop admitting new files; in-flight transfers are allowed to finish"""
        with self._lock:
            if self.phase != BackupPhase.RUNNING:
                return False
            self._cancel_event.set()
        logger.info("Backup stop requested")
        return True

    def set_network_available(self, available: bool):
        """Connectivity signal; only changes the reported status"""
        with self._lock:
            if available == self._network_available:
                return
            self._network_available = available
            self.state.network_available = available
            if available:
                logger.info("Network became available")
            else:
                logger.warning("Network connection lost")
            if self.phase == BackupPhase.RUNNING:
                self._publish(self.state.snapshot())

    # Run lifecycle
    def _claim(self) -> bool:
        with self._lock:
            if self.phase == BackupPhase.RUNNING:
                return False
            self.phase = BackupPhase.RUNNING
            self._cancel_event.clear()
            self.state = BackupState()
            self.state.is_running = True
            self.state.network_available = self._network_available
            self.state.start_time = datetime.now()
            self.session_id = None
            self.last_event = None
            return True

    def _execute(self):
        started_at = self.state.start_time
        started = time.monotonic()
        session_id = None

        try:
            session_id = self.ledger.begin_session(started_at)
            with self._lock:
                self.session_id = session_id
                self._publish(Started(session_id=session_id, started_at=started_at))

            settings = self.settings_source.get_connection_settings()
            settings.validate()

            candidates = self.resolver.resolve(
                self.media_source.list_local_media_paths(),
                self.ledger.list_succeeded_paths(),
            )

            if self._cancel_event.is_set():
                return self._finish_cancelled(session_id, started)
            if not candidates:
                logger.info(NO_CANDIDATES_MESSAGE)
                return self._finish_completed(
                    session_id, started, PipelineResult(0, 0, 0), NO_CANDIDATES_MESSAGE
                )

            with self._lock:
                self.state.total_count = len(candidates)
                self._publish(self.state.snapshot())
            logger.info(f"Found {len(candidates)} files to backup")

            result = self.pipeline.run(
                candidates,
                settings,
                session_id,
                on_file_done=self._on_file_done,
                cancel_event=self._cancel_event,
                concurrency_limit=self.concurrency_limit,
            )

            if self._cancel_event.is_set():
                return self._finish_cancelled(session_id, started)
            return self._finish_completed(session_id, started, result)

        except Exception as e:
            logger.error(f"Backup failed: {e}", exc_info=True)
            return self._finish_failed(session_id, started, e)

    def _on_file_done(self, outcome: FileOutcome):
        with self._lock:
            state = self.state
            if outcome.succeeded:
                state.success_count += 1
                state.total_uploaded_bytes += outcome.candidate.size
            else:
                state.failure_count += 1
                state.last_error = outcome.error
            state.completed_count = state.success_count + state.failure_count

            if state.completed_count > state.total_count:
                raise RuntimeError(
                    f"Completed count {state.completed_count} exceeds total {state.total_count}"
                )
            self._publish(state.snapshot())

    def _elapsed_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _finish_completed(self, session_id: int, started: float,
                          result: PipelineResult, message: str = None):
        duration_ms = self._elapsed_ms(started)
        self.ledger.finalize_session(
            session_id, BackupResult.COMPLETED,
            result.success_count, result.failure_count, duration_ms
        )
        message = message or (f"Backup completed: {result.success_count} succeeded, "
                              f"{result.failure_count} failed")
        event = Completed(
            success_count=result.success_count,
            failure_count=result.failure_count,
            total_bytes=result.total_bytes,
            duration_ms=duration_ms,
            message=message,
        )
        with self._lock:
            self.state.is_running = False
            self.phase = BackupPhase.COMPLETED
            self._publish(event)
        logger.info(message)
        return event

    def _finish_cancelled(self, session_id: int, started: float):
        duration_ms = self._elapsed_ms(started)
        with self._lock:
            success_count = self.state.success_count
            failure_count = self.state.failure_count
        self.ledger.finalize_session(
            session_id, BackupResult.USER_CANCELLED,
            success_count, failure_count, duration_ms
        )
        event = Cancelled(
            success_count=success_count,
            failure_count=failure_count,
            duration_ms=duration_ms,
        )
        with self._lock:
            self.state.is_running = False
            self.state.last_error = event.message
            self.phase = BackupPhase.CANCELLED
            self._publish(event)
        logger.info(f"Backup stopped by user after {success_count + failure_count} files")
        return event

    def _finish_failed(self, session_id: Optional[int], started: float, error: Exception):
        message = str(error) or type(error).__name__
        with self._lock:
            success_count = self.state.success_count
            failure_count = self.state.failure_count

        if session_id is not None:
            try:
                self.ledger.finalize_session(
                    session_id, BackupResult.ERROR_STOPPED,
                    success_count, failure_count, self._elapsed_ms(started),
                    error_message=message,
                )
            except Exception:
                logger.exception(f"Could not record failure of session {session_id}")

        event = Failed(message=message)
        with self._lock:
            self.state.is_running = False
            self.state.last_error = message
            self.phase = BackupPhase.FAILED
            self._publish(event)
        return event
