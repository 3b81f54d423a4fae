"""
Database operations for Media Backup Engine
"""
import logging
import threading
from typing import Optional, List, Set
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from core.exceptions import SessionAlreadyFinalized
from database.models import (
    BackupSession, FileHistory, AppSettings,
    BackupResult, BackupStatus, get_session
)

logger = logging.getLogger(__name__)


class DatabaseOperations:
    """Handles all database operations"""

    def __init__(self):
        self.session: Optional[Session] = None

    def __enter__(self):
        self.session = get_session()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            if exc_type is not None:
                self.session.rollback()
            self.session.close()

    # BackupSession operations
    def create_backup_session(self, started_at: datetime) -> BackupSession:
        """Create a provisional session record"""
        backup_session = BackupSession(
            started_at=started_at,
            result=BackupResult.IN_PROGRESS.value,
            success_count=0,
            failure_count=0,
            total_duration_ms=0,
        )
        self.session.add(backup_session)
        self.session.commit()
        return backup_session

    def get_backup_session(self, session_id: int) -> Optional[BackupSession]:
        """Get backup session by ID"""
        return self.session.get(BackupSession, session_id)

    def finalize_backup_session(self, session_id: int, result: BackupResult,
                                success_count: int, failure_count: int,
                                duration_ms: int, error_message: str = None) -> BackupSession:
        """Write the single terminal update of a session"""
        backup_session = self.get_backup_session(session_id)
        if backup_session is None:
            raise ValueError(f"Session {session_id} not found")
        if backup_session.is_terminal:
            raise SessionAlreadyFinalized(
                f"Session {session_id} already finished as {backup_session.result}"
            )

        backup_session.result = BackupResult(result).value
        backup_session.success_count = success_count
        backup_session.failure_count = failure_count
        backup_session.total_duration_ms = duration_ms
        backup_session.error_message = error_message
        backup_session.finished_at = datetime.now()
        self.session.commit()
        return backup_session

    def get_recent_sessions(self, limit: int = 20) -> List[BackupSession]:
        """Get recent sessions, newest first"""
        return self.session.query(BackupSession).order_by(
            BackupSession.started_at.desc(), BackupSession.id.desc()
        ).limit(limit).all()

    def delete_backup_session(self, session_id: int) -> bool:
        """Delete a session together with its file records"""
        backup_session = self.get_backup_session(session_id)
        if not backup_session:
            return False
        self.session.delete(backup_session)
        self.session.commit()
        return True

    def cleanup_old_sessions(self, days: int = 90) -> int:
        """Delete finished sessions older than the cutoff"""
        cutoff_date = datetime.now() - timedelta(days=days)
        old_sessions = self.session.query(BackupSession).filter(
            BackupSession.result != BackupResult.IN_PROGRESS.value,
            BackupSession.started_at < cutoff_date
        ).all()
        for backup_session in old_sessions:
            self.session.delete(backup_session)
        self.session.commit()
        return len(old_sessions)

    # FileHistory operations
    def add_file_history(self, file_data: dict) -> FileHistory:
        """Add a file record, replacing an earlier one for the same path in the session"""
        existing = self.session.query(FileHistory).filter_by(
            session_id=file_data['session_id'],
            file_path=file_data['file_path']
        ).first()

        if existing:
            logger.debug(f"Replacing history for {file_data['file_path']} "
                         f"in session {file_data['session_id']}")
            for key, value in file_data.items():
                setattr(existing, key, value)
            record = existing
        else:
            record = FileHistory(**file_data)
            self.session.add(record)

        self.session.commit()
        return record

    def get_succeeded_paths(self) -> Set[str]:
        """Get every path that has been transferred successfully at least once"""
        rows = self.session.query(FileHistory.file_path).filter_by(
            status=BackupStatus.SUCCESS.value
        ).distinct().all()
        return {row[0] for row in rows}

    def get_files_for_session(self, session_id: int) -> List[FileHistory]:
        """Get file records of a session, newest first"""
        return self.session.query(FileHistory).filter_by(
            session_id=session_id
        ).order_by(FileHistory.completed_at.desc(), FileHistory.id.desc()).all()

    def count_files_for_session(self, session_id: int) -> int:
        return self.session.query(FileHistory).filter_by(session_id=session_id).count()

    def get_history_after(self, since: datetime) -> List[FileHistory]:
        """Get file records completed at or after a timestamp"""
        return self.session.query(FileHistory).filter(
            FileHistory.completed_at >= since
        ).order_by(FileHistory.completed_at.desc()).all()

    def get_all_history(self) -> List[FileHistory]:
        return self.session.query(FileHistory).order_by(
            FileHistory.completed_at.desc()
        ).all()

    # AppSettings operations
    def get_setting(self, key: str, default: str = None) -> Optional[str]:
        """Get application setting"""
        setting = self.session.query(AppSettings).filter_by(key=key).first()
        return setting.value if setting else default

    def set_setting(self, key: str, value: str):
        """Set application setting"""
        setting = self.session.query(AppSettings).filter_by(key=key).first()
        if setting:
            setting.value = value
            setting.updated_at = datetime.now()
        else:
            setting = AppSettings(key=key, value=value)
            self.session.add(setting)
        self.session.commit()

    def get_all_settings(self) -> dict:
        """Get all settings as dictionary"""
        settings = self.session.query(AppSettings).all()
        return {s.key: s.value for s in settings}


class SessionLedger:
    """
    Durable record of backup sessions and per-file outcomes.

    Upload tasks finish concurrently, so every write goes through one
    process-wide lock and its own committed transaction.
    """

    _write_lock = threading.Lock()

    def begin_session(self, started_at: datetime) -> int:
        with self._write_lock, DatabaseOperations() as db:
            backup_session = db.create_backup_session(started_at)
            logger.info(f"Started backup session {backup_session.id}")
            return backup_session.id

    def finalize_session(self, session_id: int, result: BackupResult,
                         success_count: int, failure_count: int,
                         duration_ms: int, error_message: str = None):
        with self._write_lock, DatabaseOperations() as db:
            db.finalize_backup_session(
                session_id, result, success_count, failure_count,
                duration_ms, error_message
            )
        logger.info(f"Session {session_id} finished: {BackupResult(result).value} "
                    f"({success_count} succeeded, {failure_count} failed, {duration_ms}ms)")

    def record_file(self, session_id: int, path: str, name: str, size: int,
                    completed_at: datetime, duration_ms: int, status: BackupStatus,
                    error_message: str = None):
        with self._write_lock, DatabaseOperations() as db:
            db.add_file_history({
                'session_id': session_id,
                'file_path': path,
                'file_name': name,
                'file_size': size,
                'completed_at': completed_at,
                'duration_ms': duration_ms,
                'status': BackupStatus(status).value,
                'error_message': error_message,
            })

    def list_succeeded_paths(self) -> Set[str]:
        with DatabaseOperations() as db:
            return db.get_succeeded_paths()

    def get_session(self, session_id: int) -> Optional[BackupSession]:
        with DatabaseOperations() as db:
            return db.get_backup_session(session_id)

    def get_recent_sessions(self, limit: int = 20) -> List[BackupSession]:
        with DatabaseOperations() as db:
            return db.get_recent_sessions(limit)

    def get_files_for_session(self, session_id: int) -> List[FileHistory]:
        with DatabaseOperations() as db:
            return db.get_files_for_session(session_id)

    def get_history_after(self, since: datetime) -> List[FileHistory]:
        with DatabaseOperations() as db:
            return db.get_history_after(since)

    def delete_session(self, session_id: int) -> bool:
        with self._write_lock, DatabaseOperations() as db:
            return db.delete_backup_session(session_id)

    def cleanup_old_sessions(self, days: int) -> int:
        with self._write_lock, DatabaseOperations() as db:
            removed = db.cleanup_old_sessions(days)
        logger.info(f"Removed {removed} sessions older than {days} days")
        return removed
