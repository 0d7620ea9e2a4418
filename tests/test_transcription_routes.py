"""
Flask integration tests for the transcription and alignment API.
Dependencies are injected through a mock container, no network or engine.
"""

import logging
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from src.db.models import Chapter, Document, DocumentAlignment, TranscriptionJob, JOB_TYPE_ALIGNMENT


class MockContainer:
    """Mock container for testing - implements the same interface as real container."""

    def __init__(self):
        self.mock_database_service = Mock()
        self.mock_database_service.get_all_settings.return_value = {}  # Default empty settings
        self.mock_database_service.get_setting.return_value = None
        self.mock_job_orchestrator = Mock()
        self.mock_job_orchestrator.queued_job_ids.return_value = []
        self.mock_library_service = Mock()
        self.mock_transcriber = Mock()
        self.mock_alignment_service = Mock()
        self.mock_backend_selector = Mock()

        # The web server overrides this provider with the initialized database
        self.database_service = Mock(return_value=self.mock_database_service)

    def job_orchestrator(self):
        return self.mock_job_orchestrator

    def library_service(self):
        return self.mock_library_service

    def transcriber(self):
        return self.mock_transcriber

    def alignment_service(self):
        return self.mock_alignment_service

    def backend_selector(self):
        return self.mock_backend_selector

    def data_dir(self):
        return Path(tempfile.gettempdir()) / 'test_data'


def _job(job_id=1, job_type='transcription', subject_id='book-1', status='pending'):
    job = TranscriptionJob(subject_id=subject_id, book_id='book-1', job_type=job_type, status=status)
    job.id = job_id
    return job


class TranscriptionRoutesTest(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        # Engine settings written through the API land in os.environ; restore it afterwards
        self.env = patch.dict(os.environ, {'DATA_DIR': self.temp_dir, 'TRANSCRIPTION_BACKEND': 'auto'})
        self.env.start()

        self.mock_container = MockContainer()

        def mock_initialize_database(data_dir):
            return self.mock_container.mock_database_service

        # Patch the initialize_database import BEFORE building the app
        import src.db.migration_utils
        self.original_init_db = src.db.migration_utils.initialize_database
        src.db.migration_utils.initialize_database = mock_initialize_database

        from src.web_server import create_app
        self.app, _ = create_app(test_container=self.mock_container)
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()

        self.db = self.mock_container.mock_database_service
        self.orchestrator = self.mock_container.mock_job_orchestrator
        self.library = self.mock_container.mock_library_service

    def tearDown(self):
        import src.db.migration_utils
        src.db.migration_utils.initialize_database = self.original_init_db
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_dependency_injection_works(self):
        from src.web_server import orchestrator, database_service, container

        self.assertIs(container, self.mock_container)
        self.assertIs(orchestrator, self.mock_container.mock_job_orchestrator)
        self.assertIs(database_service, self.db)
        self.mock_container.database_service.override.assert_called_once()

    def test_settings_are_bootstrapped_on_first_start(self):
        keys = [c[0][0] for c in self.db.set_setting.call_args_list]
        self.assertIn('TRANSCRIPTION_BACKEND', keys)
        self.assertIn('ALIGNMENT_MATCH_THRESHOLD', keys)

    def test_healthcheck(self):
        response = self.client.get('/healthcheck')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['status'], 'ok')

    def test_logs_live(self):
        logging.getLogger('src.test').warning("route test marker")

        response = self.client.get('/api/logs/live?level=WARNING&search=marker')

        self.assertEqual(response.status_code, 200)
        messages = [entry['message'] for entry in response.get_json()['logs']]
        self.assertIn("route test marker", messages)

    # Library
    def test_register_chapters(self):
        self.library.register_chapters.return_value = [Mock(), Mock()]

        response = self.client.post('/api/books/book-1/chapters', json={
            'chapters': [{'file_path': '/audio/1.mp3'}, {'file_path': '/audio/2.mp3'}]
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['chapterCount'], 2)
        self.library.register_chapters.assert_called_once()

    def test_register_chapters_rejects_bad_payload(self):
        response = self.client.post('/api/books/book-1/chapters', json={'chapters': []})
        self.assertEqual(response.status_code, 400)

        self.library.register_chapters.side_effect = ValueError("Chapter 0 has no file_path")
        response = self.client.post('/api/books/book-1/chapters', json={'chapters': [{}]})
        self.assertEqual(response.status_code, 400)

    def test_get_chapters(self):
        self.library.get_chapters.return_value = [Chapter('book-1', 0, '/audio/1.mp3', title='One', duration_seconds=12.5)]

        data = self.client.get('/api/books/book-1/chapters').get_json()

        self.assertEqual(data['chapters'][0]['durationSeconds'], 12.5)

    def test_register_document_conflict_while_job_active(self):
        self.library.register_document.side_effect = ValueError("Document doc-1 has an active job")

        response = self.client.post('/api/documents', json={
            'document_id': 'doc-1', 'book_id': 'book-1', 'file_path': '/docs/book.pdf'
        })

        self.assertEqual(response.status_code, 409)

    def test_register_document_requires_fields(self):
        response = self.client.post('/api/documents', json={'document_id': 'doc-1'})
        self.assertEqual(response.status_code, 400)

    # Transcription
    def test_start_transcription(self):
        self.library.get_chapters.return_value = [Mock()]
        job = _job()
        self.orchestrator.start_job.return_value = job
        self.orchestrator.get_status.return_value = job.to_dict()

        response = self.client.post('/api/books/book-1/transcription')

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json()['id'], 1)
        self.orchestrator.start_job.assert_called_once_with('book-1')

    def test_start_transcription_without_chapters(self):
        self.library.get_chapters.return_value = []

        response = self.client.post('/api/books/book-1/transcription')

        self.assertEqual(response.status_code, 404)
        self.orchestrator.start_job.assert_not_called()

    def test_transcription_status(self):
        self.library.get_chapters.return_value = [Mock(), Mock(), Mock()]
        self.db.count_chapter_transcripts.return_value = 2
        self.orchestrator.get_subject_status.return_value = {'id': 4, 'status': 'transcribing'}

        data = self.client.get('/api/books/book-1/transcription').get_json()

        self.assertEqual(data['chapterCount'], 3)
        self.assertEqual(data['transcribedCount'], 2)
        self.assertEqual(data['job']['status'], 'transcribing')

    def test_transcription_data(self):
        self.mock_container.mock_transcriber.get_book_sentences.return_value = []
        self.assertEqual(self.client.get('/api/books/book-1/transcription/data').status_code, 404)

        self.mock_container.mock_transcriber.get_book_sentences.return_value = [{'text': 'Hello.', 'globalStart': 0.0}]
        data = self.client.get('/api/books/book-1/transcription/data').get_json()
        self.assertEqual(len(data['sentences']), 1)

    def test_cancel_transcription(self):
        self.orchestrator.cancel_subject.return_value = None
        self.assertEqual(self.client.post('/api/books/book-1/transcription/cancel').status_code, 404)

        self.orchestrator.cancel_subject.return_value = 7
        response = self.client.post('/api/books/book-1/transcription/cancel')
        self.assertEqual(response.get_json()['jobId'], 7)

    def test_delete_transcription(self):
        self.orchestrator.invalidate_transcripts.return_value = 3
        response = self.client.delete('/api/books/book-1/transcription')
        self.assertEqual(response.get_json()['removed'], 3)

        self.orchestrator.invalidate_transcripts.side_effect = ValueError("busy")
        self.assertEqual(self.client.delete('/api/books/book-1/transcription').status_code, 409)

    # Alignment
    def test_start_alignment(self):
        self.library.get_document.return_value = Document('doc-1', 'book-1', '/docs/book.pdf')
        job = _job(job_id=2, job_type=JOB_TYPE_ALIGNMENT, subject_id='doc-1')
        self.orchestrator.start_job.return_value = job
        self.orchestrator.get_status.return_value = job.to_dict()

        response = self.client.post('/api/documents/doc-1/alignment')

        self.assertEqual(response.status_code, 202)
        self.orchestrator.start_job.assert_called_once_with('book-1', document_id='doc-1')

    def test_start_alignment_unknown_document(self):
        self.library.get_document.return_value = None
        self.assertEqual(self.client.post('/api/documents/doc-x/alignment').status_code, 404)

    def test_start_alignment_failure_is_reported(self):
        self.library.get_document.return_value = Document('doc-1', 'book-1', '/docs/book.pdf')
        self.orchestrator.start_job.side_effect = RuntimeError("database is locked")

        response = self.client.post('/api/documents/doc-1/alignment')

        self.assertEqual(response.status_code, 500)
        self.assertIn('error', response.get_json())

    def test_get_alignment(self):
        self.mock_container.mock_alignment_service.get_alignment.return_value = None
        self.assertEqual(self.client.get('/api/documents/doc-1/alignment').status_code, 404)

        self.mock_container.mock_alignment_service.get_alignment.return_value = {'quality': 80, 'pages': []}
        self.assertEqual(self.client.get('/api/documents/doc-1/alignment').get_json()['quality'], 80)

    def test_alignment_at_time(self):
        self.assertEqual(self.client.get('/api/documents/doc-1/alignment/at').status_code, 400)

        self.mock_container.mock_alignment_service.find_sentence_at_time.return_value = {'id': 'p1s1'}
        data = self.client.get('/api/documents/doc-1/alignment/at?t=1.5').get_json()
        self.assertEqual(data['sentence']['id'], 'p1s1')
        self.mock_container.mock_alignment_service.find_sentence_at_time.assert_called_with('doc-1', 1.5)

    def test_document_status(self):
        self.library.get_document.return_value = Document('doc-1', 'book-1', '/docs/book.pdf', page_count=12)
        self.db.get_alignment.return_value = DocumentAlignment('doc-1', '{}', quality=75)
        self.orchestrator.get_subject_status.return_value = {'status': 'completed'}

        data = self.client.get('/api/documents/doc-1/status').get_json()

        self.assertTrue(data['hasAlignment'])
        self.assertEqual(data['quality'], 75)
        self.assertEqual(data['pageCount'], 12)
        self.orchestrator.get_subject_status.assert_called_with(JOB_TYPE_ALIGNMENT, 'doc-1')

    def test_cancel_document(self):
        self.orchestrator.cancel_subject.return_value = 9
        response = self.client.post('/api/documents/doc-1/cancel')
        self.assertEqual(response.status_code, 200)
        self.orchestrator.cancel_subject.assert_called_with(JOB_TYPE_ALIGNMENT, 'doc-1')

    # Jobs
    def test_job_status_and_cancel(self):
        self.orchestrator.get_status.return_value = None
        self.assertEqual(self.client.get('/api/jobs/5').status_code, 404)

        self.orchestrator.cancel.return_value = False
        self.assertEqual(self.client.post('/api/jobs/5/cancel').status_code, 409)

        self.orchestrator.cancel.return_value = True
        self.assertEqual(self.client.post('/api/jobs/5/cancel').status_code, 200)
        self.orchestrator.cancel.assert_called_with(5)

    # Engine
    def test_backend_status(self):
        self.mock_container.mock_backend_selector.get_status.return_value = {'backend': 'cpu', 'gpu': False}

        data = self.client.get('/api/transcription/backend').get_json()

        self.assertEqual(data['backend'], 'cpu')

    def test_update_settings_resets_detection(self):
        selector = self.mock_container.mock_backend_selector
        selector.get_status.return_value = {'backend': 'cuda'}

        response = self.client.post('/api/transcription/settings', json={'backend': 'cuda'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['changed'], {'TRANSCRIPTION_BACKEND': 'cuda'})
        self.db.set_setting.assert_called_with('TRANSCRIPTION_BACKEND', 'cuda')
        selector.reset_backend_detection.assert_called_once()

    def test_update_settings_rejects_unknown_backend(self):
        response = self.client.post('/api/transcription/settings', json={'backend': 'tpu'})

        self.assertEqual(response.status_code, 400)
        self.mock_container.mock_backend_selector.reset_backend_detection.assert_not_called()

    def test_update_settings_requires_a_field(self):
        response = self.client.post('/api/transcription/settings', json={})
        self.assertEqual(response.status_code, 400)


if __name__ == '__main__':
    unittest.main(verbosity=2)
