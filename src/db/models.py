"""
SQLAlchemy ORM models for the follow-along pipeline database.
"""

import json
from datetime import datetime

from sqlalchemy import create_engine, Column, Integer, String, Float, Text, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

JOB_STATUS_PENDING = 'pending'
JOB_STATUS_EXTRACTING = 'extracting'
JOB_STATUS_TRANSCRIBING = 'transcribing'
JOB_STATUS_ALIGNING = 'aligning'
JOB_STATUS_COMPLETED = 'completed'
JOB_STATUS_FAILED = 'failed'
JOB_STATUS_CANCELLED = 'cancelled'

ACTIVE_JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_EXTRACTING, JOB_STATUS_TRANSCRIBING, JOB_STATUS_ALIGNING)
TERMINAL_JOB_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, JOB_STATUS_CANCELLED)

JOB_TYPE_TRANSCRIPTION = 'transcription'
JOB_TYPE_ALIGNMENT = 'alignment'


def _isoformat(value):
    return value.isoformat() if value else None


class Chapter(Base):
    """
    One ordered audio track of a book, as registered by the library scanner.
    """
    __tablename__ = 'chapters'
    __table_args__ = (UniqueConstraint('book_id', 'order_index', name='uq_chapter_book_order'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(255), nullable=False, index=True)
    order_index = Column(Integer, nullable=False)
    title = Column(String(500), nullable=True)
    file_path = Column(String(1000), nullable=False)
    duration_seconds = Column(Float, nullable=True)

    def __init__(self, book_id: str, order_index: int, file_path: str,
                 title: str = None, duration_seconds: float = None):
        self.book_id = book_id
        self.order_index = order_index
        self.file_path = file_path
        self.title = title
        self.duration_seconds = duration_seconds

    def __repr__(self):
        return f"<Chapter(book_id='{self.book_id}', order_index={self.order_index})>"


class Document(Base):
    """
    An uploaded document (PDF or plain text) that belongs to a book.
    """
    __tablename__ = 'documents'

    id = Column(String(255), primary_key=True)
    book_id = Column(String(255), nullable=False, index=True)
    filename = Column(String(500), nullable=True)
    file_path = Column(String(1000), nullable=False)
    page_count = Column(Integer, nullable=True)
    is_scanned = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, id: str, book_id: str, file_path: str, filename: str = None,
                 page_count: int = None, is_scanned: bool = False):
        self.id = id
        self.book_id = book_id
        self.file_path = file_path
        self.filename = filename
        self.page_count = page_count
        self.is_scanned = is_scanned
        self.created_at = datetime.utcnow()

    def __repr__(self):
        return f"<Document(id='{self.id}', book_id='{self.book_id}', scanned={self.is_scanned})>"


class TranscriptionJob(Base):
    """
    A queued unit of pipeline work for one subject (a book or a document).
    """
    __tablename__ = 'transcription_jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(20), nullable=False, default=JOB_TYPE_TRANSCRIPTION)
    subject_id = Column(String(255), nullable=False, index=True)
    book_id = Column(String(255), nullable=False, index=True)
    document_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=JOB_STATUS_PENDING, index=True)
    progress = Column(Integer, default=0)
    status_message = Column(String(500), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __init__(self, subject_id: str, book_id: str, job_type: str = JOB_TYPE_TRANSCRIPTION,
                 document_id: str = None, status: str = JOB_STATUS_PENDING, progress: int = 0,
                 status_message: str = None, error_message: str = None):
        self.subject_id = subject_id
        self.book_id = book_id
        self.job_type = job_type
        self.document_id = document_id
        self.status = status
        self.progress = progress
        self.status_message = status_message
        self.error_message = error_message
        self.created_at = datetime.utcnow()
        self.updated_at = self.created_at

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'jobType': self.job_type,
            'subjectId': self.subject_id,
            'bookId': self.book_id,
            'documentId': self.document_id,
            'status': self.status,
            'progress': self.progress,
            'statusMessage': self.status_message,
            'errorMessage': self.error_message,
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at),
            'startedAt': _isoformat(self.started_at),
            'completedAt': _isoformat(self.completed_at),
        }

    def __repr__(self):
        return f"<TranscriptionJob(id={self.id}, subject='{self.subject_id}', status='{self.status}')>"


class ChapterTranscript(Base):
    """
    Cached transcription of one chapter. Written once, removed only by explicit invalidation.
    """
    __tablename__ = 'chapter_transcripts'
    __table_args__ = (UniqueConstraint('book_id', 'chapter_index', name='uq_transcript_book_chapter'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(255), nullable=False, index=True)
    chapter_index = Column(Integer, nullable=False)
    sentences_json = Column(Text, nullable=False)
    is_synthetic = Column(Boolean, default=False)
    duration = Column(Float, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, book_id: str, chapter_index: int, sentences_json: str,
                 is_synthetic: bool = False, duration: float = 0.0):
        self.book_id = book_id
        self.chapter_index = chapter_index
        self.sentences_json = sentences_json
        self.is_synthetic = is_synthetic
        self.duration = duration
        self.created_at = datetime.utcnow()

    @property
    def sentences(self) -> list:
        try:
            return json.loads(self.sentences_json) if self.sentences_json else []
        except json.JSONDecodeError:
            return []

    def __repr__(self):
        return (f"<ChapterTranscript(book_id='{self.book_id}', chapter={self.chapter_index}, "
                f"synthetic={self.is_synthetic})>")


class DocumentAlignment(Base):
    """
    The alignment of a document's sentences to the book's audio timeline.
    """
    __tablename__ = 'document_alignments'

    subject_id = Column(String(255), primary_key=True)
    alignment_json = Column(Text, nullable=False)
    quality = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __init__(self, subject_id: str, alignment_json: str, quality: int = 0):
        self.subject_id = subject_id
        self.alignment_json = alignment_json
        self.quality = quality
        self.created_at = datetime.utcnow()

    @property
    def alignment(self) -> dict:
        return json.loads(self.alignment_json)

    def __repr__(self):
        return f"<DocumentAlignment(subject_id='{self.subject_id}', quality={self.quality})>"


class Setting(Base):
    """
    Setting model storing application configuration.
    """
    __tablename__ = 'settings'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)

    def __init__(self, key: str, value: str = None):
        self.key = key
        self.value = value

    def __repr__(self):
        return f"<Setting(key='{self.key}', value='{self.value}')>"


class DatabaseManager:
    """
    Database manager handling SQLAlchemy engine and session management.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        # The orchestrator worker thread shares this engine with the web threads
        self.engine = create_engine(
            f'sqlite:///{db_path}',
            echo=False,
            connect_args={'timeout': 30, 'check_same_thread': False}
        )

        from sqlalchemy import event
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        self.SessionLocal = sessionmaker(bind=self.engine)

    def get_session(self):
        """Get a new database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database engine."""
        self.engine.dispose()
