"""
Upload pipeline for Media Backup Engine
Runs transfers concurrently behind a permit pool and records each outcome
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
import config
from core.candidates import Candidate
from core.exceptions import TransferError
from core.settings import ConnectionSettings
from database.models import BackupStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileOutcome:
    """Resolved transfer attempt of one candidate, already written to the ledger"""
    candidate: Candidate
    status: BackupStatus
    duration_ms: int
    completed_at: datetime
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == BackupStatus.SUCCESS


@dataclass(frozen=True)
class PipelineResult:
    success_count: int
    failure_count: int
    total_bytes: int


class UploadPipeline:
    """Bounded-concurrency upload of candidate files"""

    def __init__(self, transfer_client, ledger):
        self.transfer_client = transfer_client
        self.ledger = ledger

    def run(self, candidates: List[Candidate], settings: ConnectionSettings,
            session_id: int,
            on_file_done: Optional[Callable[[FileOutcome], None]] = None,
            cancel_event: Optional[threading.Event] = None,
            concurrency_limit: int = config.MAX_CONCURRENT_UPLOADS) -> PipelineResult:
        """
        Transfer every candidate unless cancelled.
        TransferErrors count as failed files; any other error stops admission
        and is re-raised once in-flight transfers have drained.
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be positive, got {concurrency_limit}")

        cancel_event = cancel_event or threading.Event()
        permits = threading.BoundedSemaphore(concurrency_limit)
        counters_lock = threading.Lock()
        counters = {'success': 0, 'failure': 0, 'bytes': 0}
        fatal = threading.Event()

        def process(candidate: Candidate):
            try:
                outcome = self._transfer(candidate, settings, session_id, cancel_event)
                with counters_lock:
                    if outcome.succeeded:
                        counters['success'] += 1
                        counters['bytes'] += candidate.size
                    else:
                        counters['failure'] += 1
                if on_file_done:
                    on_file_done(outcome)
            except Exception:
                fatal.set()
                raise
            finally:
                permits.release()

        futures = []
        with ThreadPoolExecutor(max_workers=concurrency_limit,
                                thread_name_prefix="upload") as executor:
            for candidate in candidates:
                permits.acquire()
                if cancel_event.is_set() or fatal.is_set():
                    permits.release()
                    logger.info(f"Stopped admitting uploads, "
                                f"{len(candidates) - len(futures)} files not started")
                    break
                futures.append(executor.submit(process, candidate))

            wait(futures)

        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

        return PipelineResult(
            success_count=counters['success'],
            failure_count=counters['failure'],
            total_bytes=counters['bytes'],
        )

    def _transfer(self, candidate: Candidate, settings: ConnectionSettings,
                  session_id: int, cancel_event: threading.Event) -> FileOutcome:
        started = time.monotonic()
        try:
            duration_ms = self.transfer_client.upload(candidate.path, settings, cancel_event)
            status, error = BackupStatus.SUCCESS, None
        except TransferError as e:
            logger.error(f"Failed to back up {candidate.path}: {e}")
            duration_ms = int((time.monotonic() - started) * 1000)
            status, error = BackupStatus.FAILURE, str(e)

        outcome = FileOutcome(
            candidate=candidate,
            status=status,
            duration_ms=duration_ms,
            completed_at=datetime.now(),
            error=error,
        )
        self.ledger.record_file(
            session_id,
            str(candidate.path),
            candidate.name,
            candidate.size,
            outcome.completed_at,
            outcome.duration_ms,
            outcome.status,
            error_message=error,
        )
        return outcome
