"""
Database models for Media Backup Engine
"""
import enum
from datetime import datetime
from sqlalchemy import (
    create_engine, event, Column, Integer, String, DateTime, BigInteger,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
import config

Base = declarative_base()


class BackupResult(str, enum.Enum):
    """Outcome of a backup session"""
    IN_PROGRESS = "in_progress"  # provisional, until the run ends
    COMPLETED = "completed"
    USER_CANCELLED = "user_cancelled"
    ERROR_STOPPED = "error_stopped"


class BackupStatus(str, enum.Enum):
    """Outcome of a single file transfer"""
    SUCCESS = "success"
    FAILURE = "failure"


class BackupSession(Base):
    """One backup run, from start to terminal outcome"""
    __tablename__ = 'backup_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, nullable=False, default=datetime.now)
    finished_at = Column(DateTime)
    result = Column(String(20), nullable=False, default=BackupResult.IN_PROGRESS.value)

    # Statistics
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    total_duration_ms = Column(BigInteger, nullable=False, default=0)

    error_message = Column(String)

    files = relationship(
        "FileHistory",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_session_started', 'started_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.result != BackupResult.IN_PROGRESS.value

    def __repr__(self):
        return (f"BackupSession(id={self.id}, result={self.result}, "
                f"success={self.success_count}, failure={self.failure_count})")


class FileHistory(Base):
    """Outcome of one file transfer attempt within a session"""
    __tablename__ = 'file_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        Integer,
        ForeignKey('backup_sessions.id', ondelete='CASCADE'),
        nullable=False,
    )
    file_path = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)

    completed_at = Column(DateTime, nullable=False, default=datetime.now)
    duration_ms = Column(BigInteger, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    error_message = Column(String)

    session = relationship("BackupSession", back_populates="files")

    __table_args__ = (
        UniqueConstraint('session_id', 'file_path', name='uq_file_history_session_path'),
        Index('idx_file_history_session', 'session_id'),
        Index('idx_file_history_status_path', 'status', 'file_path'),
        Index('idx_file_history_completed', 'completed_at'),
    )

    def __repr__(self):
        return f"FileHistory(session={self.session_id}, name={self.file_name}, status={self.status})"


class AppSettings(Base):
    """Application settings"""
    __tablename__ = 'app_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(String)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


_engine = None
_SessionLocal = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless this is set per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_database(url: str = None):
    """Bind the module to a database URL, replacing any previous engine"""
    global _engine, _SessionLocal

    url = url or config.DATABASE_URL
    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in url:
            _engine = create_engine(url, echo=False, connect_args=connect_args,
                                    poolclass=StaticPool)
        else:
            _engine = create_engine(url, echo=False, connect_args=connect_args)
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(url, echo=False)

    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine


def get_engine():
    if _engine is None:
        config.create_directories()
        configure_database()
    return _engine


# Database initialization
def init_database():
    """Initialize the database and create all tables"""
    engine = get_engine()
    Base.metadata.create_all(engine)
    return engine


def get_session():
    """Get a database session"""
    get_engine()
    return _SessionLocal()
