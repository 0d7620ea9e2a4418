"""
Job Orchestrator.

Runs pipeline jobs one at a time on a background worker thread:

    pending -> (extracting ->) transcribing -> (aligning ->) completed | failed | cancelled

Alignment jobs (a document against its book's audio) run all three stages;
transcription jobs only transcribe. Every transition is committed before the
next stage starts, so resume_pending_jobs() can restart anything a crash
left behind from the first stage.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import List, Optional

from src.db.models import (
    TranscriptionJob, ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES,
    JOB_STATUS_PENDING, JOB_STATUS_EXTRACTING, JOB_STATUS_TRANSCRIBING, JOB_STATUS_ALIGNING,
    JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, JOB_STATUS_CANCELLED,
    JOB_TYPE_ALIGNMENT, JOB_TYPE_TRANSCRIPTION,
)
from src.utils.errors import JobCancelledError, PipelineError, UnsupportedDocumentError
from src.utils.logging_utils import sanitize_log_data

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = 'Cancelled by user'


class CancellationToken:
    """Set once by cancel(); checked by the worker at stage boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelledError(CANCELLED_MESSAGE)


class JobOrchestrator:
    def __init__(self, database_service, transcriber, text_extractor, alignment_service, library_service):
        self.database_service = database_service
        self.transcriber = transcriber
        self.text_extractor = text_extractor
        self.alignment_service = alignment_service
        self.library_service = library_service

        # Guards the queue and current job, and serializes stage commits against cancel()
        self._lock = threading.Lock()
        # Serializes the check-then-create in start_job()
        self._submit_lock = threading.Lock()
        self._queue = deque()
        self._current_job_id: Optional[int] = None
        self._current_token: Optional[CancellationToken] = None
        self._job_thread: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()

    # Control operations
    def start_job(self, book_id: str, document_id: str = None) -> TranscriptionJob:
        """
        Start an alignment job (document_id given) or a transcription job for
        a book. An already active job for the same subject is returned instead
        of creating a second one.
        """
        job_type = JOB_TYPE_ALIGNMENT if document_id else JOB_TYPE_TRANSCRIPTION
        subject_id = document_id or book_id

        with self._submit_lock:
            existing = self.database_service.get_active_job(job_type, subject_id)
            if existing:
                logger.info(f"[JOB] {job_type} job {existing.id} already active for {sanitize_log_data(subject_id)}")
                self.enqueue(existing.id)
                return existing

            job = self.database_service.create_job(TranscriptionJob(
                subject_id=subject_id,
                book_id=book_id,
                job_type=job_type,
                document_id=document_id,
                status=JOB_STATUS_PENDING,
                status_message='Queued',
            ))

        logger.info(f"[JOB] Created {job_type} job {job.id} for {sanitize_log_data(subject_id)}")
        self.enqueue(job.id)
        return job

    def enqueue(self, job_id: int) -> bool:
        """Append a job to the FIFO and wake the worker. A job is never queued twice."""
        with self._lock:
            if job_id == self._current_job_id or job_id in self._queue:
                return False
            self._queue.append(job_id)
            self._idle.clear()
        self.process_next()
        return True

    def process_next(self) -> bool:
        """Start the next queued job if nothing is running. Returns True when one was started."""
        with self._lock:
            if self._current_job_id is not None or not self._queue:
                return False
            job_id = self._queue.popleft()
            token = CancellationToken()
            self._current_job_id = job_id
            self._current_token = token
            self._job_thread = threading.Thread(
                target=self._worker,
                args=(job_id, token),
                name=f"job-{job_id}",
                daemon=True
            )
            self._job_thread.start()
        return True

    def cancel(self, job_id: int) -> bool:
        """
        Cancel a job. A queued job is dropped before any stage runs; a running
        job stops at its next stage boundary. Returns False for unknown or
        finished jobs.
        """
        with self._lock:
            job = self.database_service.get_job(job_id)
            if job is None or job.status in TERMINAL_JOB_STATUSES:
                return False

            if job_id in self._queue:
                self._queue.remove(job_id)
                where = 'queued'
            elif job_id == self._current_job_id and self._current_token:
                self._current_token.cancel()
                where = 'running'
            else:
                where = 'not queued'

            self.database_service.update_job(
                job_id,
                status=JOB_STATUS_CANCELLED,
                status_message='Cancelled',
                error_message=CANCELLED_MESSAGE,
                completed_at=datetime.utcnow()
            )
            if not self._queue and self._current_job_id is None:
                self._idle.set()

        logger.info(f"[JOB] Cancelled job {job_id} ({where})")
        return True

    def cancel_subject(self, job_type: str, subject_id: str) -> Optional[int]:
        """Cancel the active job of a subject; returns its id, or None if there was none."""
        job = self.database_service.get_active_job(job_type, subject_id)
        if job and self.cancel(job.id):
            return job.id
        return None

    def resume_pending_jobs(self) -> int:
        """
        Re-queue every job a previous process left in a non-terminal state,
        reset to pending with zero progress. Returns the number re-queued.
        """
        with self._lock:
            in_process = set(self._queue)
            if self._current_job_id is not None:
                in_process.add(self._current_job_id)

        resumed = 0
        for job in self.database_service.get_jobs_by_status(ACTIVE_JOB_STATUSES):
            if job.id in in_process:
                continue
            logger.info(f"[JOB] Recovering interrupted job {job.id} "
                        f"({job.job_type} {sanitize_log_data(job.subject_id)}, was {job.status})")
            self.database_service.update_job(
                job.id,
                status=JOB_STATUS_PENDING,
                progress=0,
                status_message='Queued after restart',
                error_message=None
            )
            if self.enqueue(job.id):
                resumed += 1

        if resumed:
            logger.info(f"[JOB] Resumed {resumed} interrupted job(s)")
        return resumed

    def invalidate_transcripts(self, book_id: str) -> int:
        """
        Drop a book's cached chapter transcripts and its transcription job
        history. Refused while any job is still working on the book.
        """
        for job in self.database_service.get_jobs_by_status(ACTIVE_JOB_STATUSES):
            if job.book_id == book_id:
                raise ValueError(f"Book {book_id} has an active {job.job_type} job; cancel it first")

        removed = self.database_service.delete_chapter_transcripts(book_id)
        self.database_service.delete_jobs_for_subject(JOB_TYPE_TRANSCRIPTION, book_id)
        logger.info(f"[JOB] Invalidated {removed} cached chapter transcripts for {sanitize_log_data(book_id)}")
        return removed

    # Status
    def get_status(self, job_id: int) -> Optional[dict]:
        job = self.database_service.get_job(job_id)
        return self._status_dict(job) if job else None

    def get_subject_status(self, job_type: str, subject_id: str) -> Optional[dict]:
        job = self.database_service.get_latest_job(job_type, subject_id)
        return self._status_dict(job) if job else None

    def queued_job_ids(self) -> List[int]:
        with self._lock:
            return list(self._queue)

    def _status_dict(self, job: TranscriptionJob) -> dict:
        status = job.to_dict()
        with self._lock:
            status['running'] = job.id == self._current_job_id
            status['queuePosition'] = self._queue.index(job.id) + 1 if job.id in self._queue else None
        return status

    def wait_until_idle(self, timeout: float = None) -> bool:
        """Block until no job is running or queued. Returns False on timeout."""
        return self._idle.wait(timeout)

    # Worker
    def _worker(self, job_id: int, token: CancellationToken):
        try:
            self._run_job(job_id, token)
        except Exception as e:
            logger.error(f"[JOB {job_id}] Worker error: {e}")
        finally:
            with self._lock:
                self._current_job_id = None
                self._current_token = None
                if not self._queue:
                    self._idle.set()
            self.process_next()

    def _run_job(self, job_id: int, token: CancellationToken):
        job = self.database_service.get_job(job_id)
        if job is None:
            logger.warning(f"[JOB {job_id}] Job no longer exists, skipping")
            return
        if token.cancelled or job.status not in ACTIVE_JOB_STATUSES:
            logger.info(f"[JOB {job_id}] Status is '{job.status}', skipping")
            return

        logger.info(f"[JOB {job_id}] Processing {job.job_type} job for {sanitize_log_data(job.subject_id)}")
        try:
            if job.job_type == JOB_TYPE_ALIGNMENT:
                self._run_alignment_job(job, token)
            else:
                self._run_transcription_job(job, token)
        except JobCancelledError:
            logger.info(f"[JOB {job_id}] Cancellation honoured, no further stages run")
        except Exception as e:
            logger.error(f"[FAIL] Job {job_id} ({sanitize_log_data(job.subject_id)}): {e}")
            with self._lock:
                if not token.cancelled:
                    self.database_service.update_job(
                        job_id,
                        status=JOB_STATUS_FAILED,
                        status_message='Failed',
                        error_message=str(e),
                        completed_at=datetime.utcnow()
                    )

    def _run_alignment_job(self, job: TranscriptionJob, token: CancellationToken):
        # Stage 1: extract
        self._transition(job.id, token, JOB_STATUS_EXTRACTING, 10, 'Extracting document text',
                         started_at=datetime.utcnow())
        document = self.library_service.get_document(job.document_id)
        if document is None:
            raise PipelineError(f"Document {job.document_id} not found")

        document_text = self.text_extractor.extract(document.file_path)
        self.library_service.record_document_scan(document.id, document_text.page_count, not document_text.has_text)
        if not document_text.has_text:
            raise UnsupportedDocumentError(
                "Document appears to be scanned or image-based; no extractable text found"
            )
        self._transition(job.id, token, JOB_STATUS_EXTRACTING, 30,
                         f"Extracted {len(document_text.sentences)} sentences from {document_text.page_count} pages")

        # Stage 2: transcribe
        self._transition(job.id, token, JOB_STATUS_TRANSCRIBING, 40, 'Preparing...')
        transcription = self.transcriber.transcribe_book(
            job.book_id, progress_callback=self._progress_mapper(job.id, token, 40, 70)
        )

        # Stage 3: align
        self._transition(job.id, token, JOB_STATUS_ALIGNING, 75, 'Aligning document text to audio')
        result = self.alignment_service.align(document_text, transcription)
        metadata = result['metadata']
        self._transition(job.id, token, JOB_STATUS_ALIGNING, 90,
                         f"Matched {metadata['matchedCount']} of {metadata['totalCount']} sentences")

        # Alignment and job completion commit together, or not at all
        with self._lock:
            token.raise_if_cancelled()
            self.alignment_service.store_alignment(job.subject_id, result, complete_job_id=job.id)
        logger.info(f"[JOB {job.id}] Completed: quality {result['quality']}%")

    def _run_transcription_job(self, job: TranscriptionJob, token: CancellationToken):
        self._transition(job.id, token, JOB_STATUS_TRANSCRIBING, 5, 'Preparing...',
                         started_at=datetime.utcnow())
        transcription = self.transcriber.transcribe_book(
            job.book_id, progress_callback=self._progress_mapper(job.id, token, 5, 95)
        )

        message = f"Transcribed {len(transcription.sentences)} sentences from {transcription.chapter_count} chapters"
        if transcription.synthetic_chapters:
            message += f" ({len(transcription.synthetic_chapters)} synthetic)"
        with self._lock:
            token.raise_if_cancelled()
            self.database_service.update_job(
                job.id,
                status=JOB_STATUS_COMPLETED,
                progress=100,
                status_message=message,
                error_message=None,
                completed_at=datetime.utcnow()
            )
        logger.info(f"[JOB {job.id}] Completed: {message}")

    def _transition(self, job_id: int, token: CancellationToken, status: str, progress: int,
                    message: str = None, **fields):
        """Record a stage checkpoint, or stop here if the job was cancelled."""
        with self._lock:
            token.raise_if_cancelled()
            self.database_service.update_job(job_id, status=status, progress=progress,
                                             status_message=message, **fields)

    def _progress_mapper(self, job_id: int, token: CancellationToken, low: int, high: int):
        """Map a stage's own 0-100 progress into the job's [low, high] band."""
        def update_progress(percent, message=None):
            with self._lock:
                # Late updates must not overwrite a cancelled status
                if token.cancelled:
                    return
                progress = low + round(max(0, min(100, percent)) * (high - low) / 100)
                self.database_service.update_job(job_id, progress=progress, status_message=message)
        return update_progress
