"""
Unified SQLAlchemy database service for the follow-along pipeline.
Direct model-based interface without dictionary conversions.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .models import (
    DatabaseManager, Base, Setting, Chapter, Document, TranscriptionJob, ChapterTranscript,
    DocumentAlignment, ACTIVE_JOB_STATUSES, JOB_STATUS_COMPLETED,
)

logger = logging.getLogger(__name__)


class DatabaseService:
    """
    SQLAlchemy-based database service providing direct model operations.

    Every returned model is expunged from its session so callers on other
    threads (the job worker, request handlers) can read it freely.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_manager = DatabaseManager(str(self.db_path))

        # Run Alembic migrations to ensure schema is up to date
        self._run_alembic_migrations()

        # Ensure all tables exist (covers new models not yet in migrations)
        Base.metadata.create_all(self.db_manager.engine)

    def _run_alembic_migrations(self):
        """Run Alembic migrations to ensure database schema is up to date."""
        try:
            from alembic.config import Config
            from alembic import command
            import io

            project_root = Path(__file__).parent.parent.parent
            alembic_cfg_path = project_root / "alembic.ini"

            if not alembic_cfg_path.exists():
                logger.warning("alembic.ini not found, skipping migrations")
                return

            alembic_cfg = Config(str(alembic_cfg_path))
            alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")

            # Suppress stdout
            alembic_cfg.attributes['output_buffer'] = io.StringIO()

            alembic_logger = logging.getLogger('alembic')
            original_level = alembic_logger.level
            alembic_logger.setLevel(logging.WARNING)

            try:
                command.upgrade(alembic_cfg, "head")
                logger.debug("Database migrations completed successfully")
            finally:
                alembic_logger.setLevel(original_level)

        except Exception as e:
            logger.error(f"Alembic migration failed: {e}")
            import traceback
            logger.debug(f"Migration error details: {traceback.format_exc()}")

    @contextmanager
    def get_session(self):
        """Context manager for database sessions with automatic commit/rollback."""
        session = self.db_manager.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    # Setting operations
    def get_setting(self, key: str, default: str = None) -> Optional[str]:
        """Get a setting value by key."""
        with self.get_session() as session:
            setting = session.query(Setting).filter(Setting.key == key).first()
            if setting:
                return setting.value
            return default

    def set_setting(self, key: str, value: str) -> Setting:
        """Set a setting value."""
        with self.get_session() as session:
            existing = session.query(Setting).filter(Setting.key == key).first()
            if existing:
                existing.value = str(value) if value is not None else None
                session.flush()
                session.refresh(existing)
                session.expunge(existing)
                return existing
            else:
                new_setting = Setting(key=key, value=str(value) if value is not None else None)
                session.add(new_setting)
                session.flush()
                session.refresh(new_setting)
                session.expunge(new_setting)
                return new_setting

    def get_all_settings(self) -> dict:
        """Get all settings as a dictionary."""
        with self.get_session() as session:
            settings = session.query(Setting).all()
            return {s.key: s.value for s in settings}

    def delete_setting(self, key: str) -> bool:
        """Delete a setting by key."""
        with self.get_session() as session:
            setting = session.query(Setting).filter(Setting.key == key).first()
            if setting:
                session.delete(setting)
                return True
            return False

    # Chapter operations
    def get_chapters(self, book_id: str) -> List[Chapter]:
        """Get the chapters of a book in playback order."""
        with self.get_session() as session:
            chapters = session.query(Chapter).filter(
                Chapter.book_id == book_id
            ).order_by(Chapter.order_index.asc()).all()
            for chapter in chapters:
                session.expunge(chapter)
            return chapters

    def save_chapter(self, chapter: Chapter) -> Chapter:
        """Save or update a chapter, keyed on (book_id, order_index)."""
        with self.get_session() as session:
            existing = session.query(Chapter).filter(
                Chapter.book_id == chapter.book_id,
                Chapter.order_index == chapter.order_index
            ).first()

            if existing:
                for attr in ['title', 'file_path', 'duration_seconds']:
                    setattr(existing, attr, getattr(chapter, attr))
                session.flush()
                session.refresh(existing)
                session.expunge(existing)
                return existing

            session.add(chapter)
            session.flush()
            session.refresh(chapter)
            session.expunge(chapter)
            return chapter

    def replace_chapters(self, book_id: str, chapters: List[Chapter]) -> Tuple[List[Chapter], int]:
        """
        Make chapters the complete chapter list of a book in one transaction.

        Chapters whose order_index is not in the new list are deleted. Cached
        transcripts are dropped for removed indices and for indices whose
        file_path changed. Returns (saved chapters, transcripts dropped).
        """
        with self.get_session() as session:
            existing = {
                c.order_index: c for c in session.query(Chapter).filter(Chapter.book_id == book_id).all()
            }
            new_indices = {c.order_index for c in chapters}
            stale_indices = set()

            for order_index, chapter in existing.items():
                if order_index not in new_indices:
                    session.delete(chapter)
                    stale_indices.add(order_index)

            saved = []
            for chapter in chapters:
                current = existing.get(chapter.order_index)
                if current is not None:
                    if current.file_path != chapter.file_path:
                        stale_indices.add(chapter.order_index)
                    for attr in ['title', 'file_path', 'duration_seconds']:
                        setattr(current, attr, getattr(chapter, attr))
                    saved.append(current)
                else:
                    # A transcript left at a new index belongs to audio that is gone
                    stale_indices.add(chapter.order_index)
                    session.add(chapter)
                    saved.append(chapter)

            dropped = 0
            if stale_indices:
                dropped = session.query(ChapterTranscript).filter(
                    ChapterTranscript.book_id == book_id,
                    ChapterTranscript.chapter_index.in_(stale_indices)
                ).delete(synchronize_session=False)

            session.flush()
            saved.sort(key=lambda c: c.order_index)
            for chapter in saved:
                session.refresh(chapter)
                session.expunge(chapter)
            return saved, dropped

    # Document operations
    def get_document(self, document_id: str) -> Optional[Document]:
        """Get a document by id."""
        with self.get_session() as session:
            document = session.query(Document).filter(Document.id == document_id).first()
            if document:
                session.expunge(document)
            return document

    def save_document(self, document: Document) -> Document:
        """Save or update a document model."""
        with self.get_session() as session:
            existing = session.query(Document).filter(Document.id == document.id).first()

            if existing:
                for attr in ['book_id', 'filename', 'file_path', 'page_count', 'is_scanned']:
                    setattr(existing, attr, getattr(document, attr))
                session.flush()
                session.refresh(existing)
                session.expunge(existing)
                return existing

            session.add(document)
            session.flush()
            session.refresh(document)
            session.expunge(document)
            return document

    def update_document(self, document_id: str, **kwargs) -> Optional[Document]:
        """Update selected fields of a document."""
        with self.get_session() as session:
            document = session.query(Document).filter(Document.id == document_id).first()
            if not document:
                return None
            for key, value in kwargs.items():
                if hasattr(document, key):
                    setattr(document, key, value)
            session.flush()
            session.refresh(document)
            session.expunge(document)
            return document

    # Job operations
    def create_job(self, job: TranscriptionJob) -> TranscriptionJob:
        """Persist a new job."""
        with self.get_session() as session:
            session.add(job)
            session.flush()
            session.refresh(job)
            session.expunge(job)
            return job

    def get_job(self, job_id: int) -> Optional[TranscriptionJob]:
        """Get a job by id."""
        with self.get_session() as session:
            job = session.query(TranscriptionJob).filter(TranscriptionJob.id == job_id).first()
            if job:
                session.expunge(job)
            return job

    def get_active_job(self, job_type: str, subject_id: str) -> Optional[TranscriptionJob]:
        """Get the non-terminal job for a subject, if any."""
        with self.get_session() as session:
            job = session.query(TranscriptionJob).filter(
                TranscriptionJob.job_type == job_type,
                TranscriptionJob.subject_id == subject_id,
                TranscriptionJob.status.in_(ACTIVE_JOB_STATUSES)
            ).order_by(TranscriptionJob.id.desc()).first()
            if job:
                session.expunge(job)
            return job

    def get_latest_job(self, job_type: str, subject_id: str) -> Optional[TranscriptionJob]:
        """Get the most recently created job for a subject."""
        with self.get_session() as session:
            job = session.query(TranscriptionJob).filter(
                TranscriptionJob.job_type == job_type,
                TranscriptionJob.subject_id == subject_id
            ).order_by(TranscriptionJob.id.desc()).first()
            if job:
                session.expunge(job)
            return job

    def get_jobs_by_status(self, statuses: Iterable[str]) -> List[TranscriptionJob]:
        """Get jobs in any of the given statuses, oldest first."""
        with self.get_session() as session:
            jobs = session.query(TranscriptionJob).filter(
                TranscriptionJob.status.in_(list(statuses))
            ).order_by(TranscriptionJob.created_at.asc(), TranscriptionJob.id.asc()).all()
            for job in jobs:
                session.expunge(job)
            return jobs

    def update_job(self, job_id: int, **kwargs) -> Optional[TranscriptionJob]:
        """Update a job's fields and bump updated_at."""
        with self.get_session() as session:
            job = session.query(TranscriptionJob).filter(TranscriptionJob.id == job_id).first()
            if not job:
                return None
            for key, value in kwargs.items():
                if hasattr(job, key):
                    setattr(job, key, value)
            job.updated_at = datetime.utcnow()
            session.flush()
            session.refresh(job)
            session.expunge(job)
            return job

    def delete_jobs_for_subject(self, job_type: str, subject_id: str) -> int:
        """Delete all jobs of a type for a subject."""
        with self.get_session() as session:
            query = session.query(TranscriptionJob).filter(
                TranscriptionJob.job_type == job_type,
                TranscriptionJob.subject_id == subject_id
            )
            count = query.count()
            query.delete(synchronize_session=False)
            return count

    # Chapter transcript operations
    def get_chapter_transcript(self, book_id: str, chapter_index: int) -> Optional[ChapterTranscript]:
        """Get the cached transcript of one chapter."""
        with self.get_session() as session:
            transcript = session.query(ChapterTranscript).filter(
                ChapterTranscript.book_id == book_id,
                ChapterTranscript.chapter_index == chapter_index
            ).first()
            if transcript:
                session.expunge(transcript)
            return transcript

    def get_chapter_transcripts(self, book_id: str) -> List[ChapterTranscript]:
        """Get every cached chapter transcript of a book in chapter order."""
        with self.get_session() as session:
            transcripts = session.query(ChapterTranscript).filter(
                ChapterTranscript.book_id == book_id
            ).order_by(ChapterTranscript.chapter_index.asc()).all()
            for transcript in transcripts:
                session.expunge(transcript)
            return transcripts

    def save_chapter_transcript(self, transcript: ChapterTranscript) -> ChapterTranscript:
        """
        Store a chapter transcript. Cached transcripts are immutable: if one
        already exists for (book_id, chapter_index) it is returned unchanged.
        """
        with self.get_session() as session:
            existing = session.query(ChapterTranscript).filter(
                ChapterTranscript.book_id == transcript.book_id,
                ChapterTranscript.chapter_index == transcript.chapter_index
            ).first()
            if existing:
                session.expunge(existing)
                return existing

            session.add(transcript)
            session.flush()
            session.refresh(transcript)
            session.expunge(transcript)
            return transcript

    def count_chapter_transcripts(self, book_id: str) -> int:
        with self.get_session() as session:
            return session.query(ChapterTranscript).filter(ChapterTranscript.book_id == book_id).count()

    def delete_chapter_transcripts(self, book_id: str) -> int:
        """Invalidate the transcript cache of a book."""
        with self.get_session() as session:
            query = session.query(ChapterTranscript).filter(ChapterTranscript.book_id == book_id)
            count = query.count()
            query.delete(synchronize_session=False)
            return count

    # Alignment operations
    def get_alignment(self, subject_id: str) -> Optional[DocumentAlignment]:
        """Get the stored alignment of a subject."""
        with self.get_session() as session:
            alignment = session.query(DocumentAlignment).filter(
                DocumentAlignment.subject_id == subject_id
            ).first()
            if alignment:
                session.expunge(alignment)
            return alignment

    def save_alignment(self, alignment: DocumentAlignment, complete_job_id: int = None) -> DocumentAlignment:
        """
        Replace the alignment of a subject.

        The previous record is deleted and the new one inserted in a single
        transaction. When complete_job_id is given the job is marked completed
        in that same transaction.
        """
        with self.get_session() as session:
            session.query(DocumentAlignment).filter(
                DocumentAlignment.subject_id == alignment.subject_id
            ).delete(synchronize_session=False)
            session.add(alignment)

            if complete_job_id is not None:
                job = session.query(TranscriptionJob).filter(TranscriptionJob.id == complete_job_id).first()
                if job:
                    now = datetime.utcnow()
                    job.status = JOB_STATUS_COMPLETED
                    job.progress = 100
                    job.status_message = 'Alignment complete'
                    job.error_message = None
                    job.completed_at = now
                    job.updated_at = now

            session.flush()
            session.refresh(alignment)
            session.expunge(alignment)
            return alignment

    def delete_alignment(self, subject_id: str) -> bool:
        """Delete the stored alignment of a subject."""
        with self.get_session() as session:
            alignment = session.query(DocumentAlignment).filter(
                DocumentAlignment.subject_id == subject_id
            ).first()
            if alignment:
                session.delete(alignment)
                return True
            return False
