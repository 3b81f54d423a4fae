"""
Backup progress state and observer notifications
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Started:
    session_id: int
    started_at: datetime


@dataclass(frozen=True)
class ProgressSnapshot:
    completed_count: int
    total_count: int
    success_count: int
    failure_count: int
    network_available: bool
    status_text: str = ""


@dataclass(frozen=True)
class Completed:
    success_count: int
    failure_count: int
    total_bytes: int
    duration_ms: int
    message: str = ""


@dataclass(frozen=True)
class Cancelled:
    success_count: int
    failure_count: int
    duration_ms: int
    message: str = "Backup was stopped by the user"


@dataclass(frozen=True)
class Failed:
    message: str


TERMINAL_EVENTS = (Completed, Cancelled, Failed)


class BackupState:
    """Live counters of the current run"""

    def __init__(self, total_count: int = 0):
        self.is_running = False
        self.completed_count = 0
        self.total_count = total_count
        self.success_count = 0
        self.failure_count = 0
        self.total_uploaded_bytes = 0
        self.last_error: Optional[str] = None
        self.network_available = True
        self.start_time: Optional[datetime] = None

    def get_progress_percentage(self) -> float:
        """Get progress as percentage"""
        if self.total_count == 0:
            return 0.0
        return (self.completed_count / self.total_count) * 100

    def get_estimated_time_remaining(self) -> Optional[int]:
        """Estimate time remaining in seconds"""
        if not self.start_time or self.completed_count == 0:
            return None

        elapsed = (datetime.now() - self.start_time).total_seconds()
        rate = self.completed_count / elapsed if elapsed > 0 else 0
        remaining_files = self.total_count - self.completed_count

        return int(remaining_files / rate) if rate > 0 else None

    def status_text(self) -> str:
        if not self.is_running:
            return "Preparing backup..."
        if not self.network_available:
            return f"Waiting for network... ({self.completed_count}/{self.total_count})"
        percent = int(self.get_progress_percentage())
        return f"{self.completed_count}/{self.total_count} files backing up... ({percent}%)"

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            completed_count=self.completed_count,
            total_count=self.total_count,
            success_count=self.success_count,
            failure_count=self.failure_count,
            network_available=self.network_available,
            status_text=self.status_text(),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return {
            'is_running': self.is_running,
            'completed_count': self.completed_count,
            'total_count': self.total_count,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'total_uploaded_bytes': self.total_uploaded_bytes,
            'last_error': self.last_error,
            'network_available': self.network_available,
            'progress_percentage': self.get_progress_percentage(),
            'estimated_time_remaining': self.get_estimated_time_remaining(),
        }


class ProgressBroadcaster:
    """Delivers backup events to subscribed listeners in publication order"""

    def __init__(self):
        self._listeners: List[Callable] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: Callable) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it"""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event):
        # Held across delivery so concurrent publishers cannot reorder events
        with self._lock:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception(f"Progress listener {listener!r} failed on {event!r}")
