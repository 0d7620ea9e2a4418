"""
Read/write access to the library data the pipeline consumes: a book's
ordered chapters and its uploaded documents.
"""

import logging
from pathlib import Path
from typing import List, Optional

from src.db.models import Chapter, Document, JOB_TYPE_ALIGNMENT

logger = logging.getLogger(__name__)


class LibraryService:
    def __init__(self, database_service):
        self.database_service = database_service

    def get_chapters(self, book_id: str) -> List[Chapter]:
        return self.database_service.get_chapters(book_id)

    def register_chapters(self, book_id: str, chapters: List[dict]) -> List[Chapter]:
        """
        Register a book's chapters from dicts with 'file_path' and optional
        'duration_seconds', 'title' and 'order_index' (defaults to list position).

        The list replaces the book's chapters: indices missing from it are
        removed, and cached transcripts of removed or re-pointed chapters are
        dropped.
        """
        models = []
        for position, data in enumerate(chapters):
            if not data.get('file_path'):
                raise ValueError(f"Chapter {position} has no file_path")
            duration = data.get('duration_seconds')
            models.append(Chapter(
                book_id=book_id,
                order_index=int(data.get('order_index', position)),
                file_path=str(data['file_path']),
                title=data.get('title'),
                duration_seconds=float(duration) if duration is not None else None,
            ))

        indices = [c.order_index for c in models]
        if len(set(indices)) != len(indices):
            raise ValueError(f"Duplicate order_index in chapters for book {book_id}")

        saved, dropped = self.database_service.replace_chapters(book_id, models)
        logger.info(f"📚 Registered {len(saved)} chapters for book {book_id}")
        if dropped:
            logger.info(f"🧹 Dropped {dropped} stale chapter transcripts for book {book_id}")
        return saved

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.database_service.get_document(document_id)

    def register_document(self, document_id: str, book_id: str, file_path: str, filename: str = None) -> Document:
        """
        Register (or replace) a document. A replaced document's previous
        alignment and jobs are dropped so stale results never outlive it.
        """
        if self.database_service.get_document(document_id):
            if self.database_service.get_active_job(JOB_TYPE_ALIGNMENT, document_id):
                raise ValueError(f"Document {document_id} has an active job; cancel it before replacing the file")
            self.database_service.delete_alignment(document_id)
            self.database_service.delete_jobs_for_subject(JOB_TYPE_ALIGNMENT, document_id)
            logger.info(f"📄 Replacing document {document_id}, previous alignment removed")

        document = Document(
            id=document_id,
            book_id=book_id,
            file_path=str(file_path),
            filename=filename or Path(file_path).name,
        )
        return self.database_service.save_document(document)

    def record_document_scan(self, document_id: str, page_count: int, is_scanned: bool) -> Optional[Document]:
        return self.database_service.update_document(document_id, page_count=page_count, is_scanned=is_scanned)
