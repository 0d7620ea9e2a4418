# Transcription Routes - Flask Blueprint for the transcription and alignment API
import logging

from flask import Blueprint, jsonify, request

from src.db.models import JOB_TYPE_ALIGNMENT, JOB_TYPE_TRANSCRIPTION
from src.utils.config_loader import ConfigLoader

logger = logging.getLogger(__name__)

# Create Blueprint for pipeline endpoints
transcription_bp = Blueprint('transcription', __name__, url_prefix='/api')

# Module-level references - set via init_transcription_routes()
_database_service = None
_container = None


def init_transcription_routes(database_service, container):
    """Initialize transcription routes with required dependencies."""
    global _database_service, _container
    _database_service = database_service
    _container = container


def _job_response(job, code=202):
    return jsonify(_container.job_orchestrator().get_status(job.id) or job.to_dict()), code


# ---------------- LIBRARY ----------------

@transcription_bp.route('/books/<book_id>/chapters', methods=['GET'])
def api_get_chapters(book_id):
    chapters = _container.library_service().get_chapters(book_id)
    return jsonify({
        'bookId': book_id,
        'chapters': [{
            'orderIndex': c.order_index,
            'title': c.title,
            'filePath': c.file_path,
            'durationSeconds': c.duration_seconds,
        } for c in chapters]
    })


@transcription_bp.route('/books/<book_id>/chapters', methods=['POST'])
def api_register_chapters(book_id):
    """
    Register a book's ordered audio chapters.

    POST /api/books/{book_id}/chapters
    {"chapters": [{"file_path": "...", "duration_seconds": 1234.5, "title": "..."}]}
    """
    data = request.get_json(silent=True) or {}
    chapters = data.get('chapters')
    if not isinstance(chapters, list) or not chapters:
        return jsonify({'success': False, 'error': 'chapters must be a non-empty list'}), 400

    try:
        saved = _container.library_service().register_chapters(book_id, chapters)
    except (ValueError, TypeError) as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    return jsonify({'success': True, 'bookId': book_id, 'chapterCount': len(saved)})


@transcription_bp.route('/documents', methods=['POST'])
def api_register_document():
    """
    Register (or replace) a document for a book.

    POST /api/documents
    {"document_id": "...", "book_id": "...", "file_path": "...", "filename": "optional"}
    """
    data = request.get_json(silent=True) or {}
    document_id = str(data.get('document_id', '')).strip()
    book_id = str(data.get('book_id', '')).strip()
    file_path = str(data.get('file_path', '')).strip()

    if not document_id or not book_id or not file_path:
        return jsonify({'success': False, 'error': 'document_id, book_id and file_path are required'}), 400

    try:
        document = _container.library_service().register_document(
            document_id, book_id, file_path, filename=data.get('filename')
        )
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 409

    return jsonify({'success': True, 'documentId': document.id, 'bookId': document.book_id})


# ---------------- TRANSCRIPTION ----------------

@transcription_bp.route('/books/<book_id>/transcription', methods=['POST'])
def api_start_transcription(book_id):
    if not _container.library_service().get_chapters(book_id):
        return jsonify({'success': False, 'error': f'No chapters registered for book {book_id}'}), 404

    try:
        job = _container.job_orchestrator().start_job(book_id)
    except Exception as e:
        logger.error(f"Failed to start transcription for {book_id}: {e}")
        return jsonify({'success': False, 'error': 'Failed to start transcription job'}), 500
    return _job_response(job)


@transcription_bp.route('/books/<book_id>/transcription', methods=['GET'])
def api_transcription_status(book_id):
    status = _container.job_orchestrator().get_subject_status(JOB_TYPE_TRANSCRIPTION, book_id)
    return jsonify({
        'bookId': book_id,
        'chapterCount': len(_container.library_service().get_chapters(book_id)),
        'transcribedCount': _database_service.count_chapter_transcripts(book_id),
        'job': status,
    })


@transcription_bp.route('/books/<book_id>/transcription/data', methods=['GET'])
def api_transcription_data(book_id):
    sentences = _container.transcriber().get_book_sentences(book_id)
    if not sentences:
        return jsonify({'error': 'No transcript available'}), 404
    return jsonify({'bookId': book_id, 'sentences': sentences})


@transcription_bp.route('/books/<book_id>/transcription/cancel', methods=['POST'])
def api_cancel_transcription(book_id):
    job_id = _container.job_orchestrator().cancel_subject(JOB_TYPE_TRANSCRIPTION, book_id)
    if job_id is None:
        return jsonify({'success': False, 'error': 'No active transcription job'}), 404
    return jsonify({'success': True, 'jobId': job_id})


@transcription_bp.route('/books/<book_id>/transcription', methods=['DELETE'])
def api_delete_transcription(book_id):
    """Drop cached chapter transcripts so the next run re-transcribes."""
    try:
        removed = _container.job_orchestrator().invalidate_transcripts(book_id)
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 409
    return jsonify({'success': True, 'removed': removed})


# ---------------- ALIGNMENT ----------------

@transcription_bp.route('/documents/<document_id>/alignment', methods=['POST'])
def api_start_alignment(document_id):
    document = _container.library_service().get_document(document_id)
    if not document:
        return jsonify({'success': False, 'error': f'Document {document_id} not found'}), 404

    try:
        job = _container.job_orchestrator().start_job(document.book_id, document_id=document_id)
    except Exception as e:
        logger.error(f"Failed to start alignment for {document_id}: {e}")
        return jsonify({'success': False, 'error': 'Failed to start alignment job'}), 500
    return _job_response(job)


@transcription_bp.route('/documents/<document_id>/alignment', methods=['GET'])
def api_get_alignment(document_id):
    alignment = _container.alignment_service().get_alignment(document_id)
    if not alignment:
        return jsonify({'error': 'No alignment available'}), 404
    return jsonify(alignment)


@transcription_bp.route('/documents/<document_id>/alignment/at', methods=['GET'])
def api_alignment_at_time(document_id):
    """
    Sentence being read at a playback position.

    GET /api/documents/{document_id}/alignment/at?t={seconds}
    """
    timestamp = request.args.get('t', type=float)
    if timestamp is None:
        return jsonify({'error': 'Missing or invalid t parameter'}), 400

    sentence = _container.alignment_service().find_sentence_at_time(document_id, timestamp)
    if not sentence:
        return jsonify({'found': False}), 404
    return jsonify({'found': True, 'sentence': sentence})


@transcription_bp.route('/documents/<document_id>/status', methods=['GET'])
def api_document_status(document_id):
    document = _container.library_service().get_document(document_id)
    if not document:
        return jsonify({'error': f'Document {document_id} not found'}), 404

    alignment = _database_service.get_alignment(document_id)
    return jsonify({
        'documentId': document_id,
        'bookId': document.book_id,
        'pageCount': document.page_count,
        'isScanned': bool(document.is_scanned),
        'hasAlignment': alignment is not None,
        'quality': alignment.quality if alignment else None,
        'job': _container.job_orchestrator().get_subject_status(JOB_TYPE_ALIGNMENT, document_id),
    })


@transcription_bp.route('/documents/<document_id>/cancel', methods=['POST'])
def api_cancel_alignment(document_id):
    job_id = _container.job_orchestrator().cancel_subject(JOB_TYPE_ALIGNMENT, document_id)
    if job_id is None:
        return jsonify({'success': False, 'error': 'No active alignment job'}), 404
    return jsonify({'success': True, 'jobId': job_id})


# ---------------- JOBS ----------------

@transcription_bp.route('/jobs/<int:job_id>', methods=['GET'])
def api_job_status(job_id):
    status = _container.job_orchestrator().get_status(job_id)
    if not status:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(status)


@transcription_bp.route('/jobs/<int:job_id>/cancel', methods=['POST'])
def api_cancel_job(job_id):
    if not _container.job_orchestrator().cancel(job_id):
        return jsonify({'success': False, 'error': 'Job not found or already finished'}), 409
    return jsonify({'success': True, 'jobId': job_id})


# ---------------- ENGINE ----------------

@transcription_bp.route('/transcription/backend', methods=['GET'])
def api_backend_status():
    try:
        return jsonify(_container.backend_selector().get_status())
    except Exception as e:
        logger.error(f"Error reading backend status: {e}")
        return jsonify({'error': 'Failed to read backend status'}), 500


@transcription_bp.route('/transcription/settings', methods=['POST'])
def api_update_engine_settings():
    """
    Change the engine backend, model or language. Takes effect on the next
    chapter transcribed; backend changes force re-detection.

    POST /api/transcription/settings
    {"backend": "cuda", "model": "small.en", "language": "en"}
    """
    data = request.get_json(silent=True) or {}
    field_map = {
        'backend': 'TRANSCRIPTION_BACKEND',
        'model': 'TRANSCRIPTION_MODEL',
        'language': 'TRANSCRIPTION_LANGUAGE',
    }
    updates = {setting: data[field] for field, setting in field_map.items() if data.get(field) is not None}
    if not updates:
        return jsonify({'success': False, 'error': 'Provide at least one of backend, model, language'}), 400

    try:
        changed = ConfigLoader.update_engine_settings(_database_service, updates)
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    selector = _container.backend_selector()
    if changed:
        selector.reset_backend_detection()
    return jsonify({'success': True, 'changed': changed, 'backend': selector.get_status()})
