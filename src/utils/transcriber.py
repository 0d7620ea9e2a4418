"""
Audio Transcriber for the follow-along pipeline.

Turns a book's ordered audio chapters into time-coded sentences on one
book-wide timeline:
- per-chapter transcripts cached in the database and reused on re-runs
- cumulative chapter offsets for global timestamps
- synthetic placeholder transcripts when the engine cannot be used, so a
  book still gets a (time-based) alignment instead of a failed job
"""

import json
import logging
import math
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from src.db.models import ChapterTranscript
from src.utils.config_loader import get_env_float
from src.utils.errors import EngineUnavailableError, TranscriptionError
from src.utils.logging_utils import time_execution
from src.utils.polisher import Polisher
from src.utils.transcript_types import BookTranscription, ChapterTranscription, Sentence

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class AudioTranscriber:
    def __init__(self, database_service, backend_selector, polisher: Polisher, library_service,
                 synthetic_sentence_seconds: float = None, synthetic_default_duration: float = None):
        self.database_service = database_service
        self.backend_selector = backend_selector
        self.polisher = polisher
        self.library_service = library_service
        self.synthetic_sentence_seconds = synthetic_sentence_seconds or get_env_float("SYNTHETIC_SENTENCE_SECONDS", 3.0)
        self.synthetic_default_duration = synthetic_default_duration or get_env_float("SYNTHETIC_DEFAULT_DURATION", 300.0)

    def get_audio_duration(self, file_path) -> float:
        """Get duration of audio file using ffprobe; 0.0 when it cannot be determined."""
        cmd = [
            'ffprobe', '-v', 'error', '-show_entries', 'format=duration',
            '-of', 'default=noprint_wrappers=1:nokey=1', str(file_path)
        ]
        try:
            result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=60)
            return float(result.stdout.strip())
        except (ValueError, OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Could not determine duration for {file_path}: {e}")
            return 0.0

    @time_execution
    def transcribe_chapter(self, audio_path, duration: float = None) -> ChapterTranscription:
        """
        Transcribe one chapter file into sentences.

        Falls back to a synthetic transcript when the engine is not installed
        or the transcription call itself fails. Engine load failures on both
        the GPU and CPU, and model download failures, propagate.
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        try:
            engine = self.backend_selector.get_engine_context()
        except EngineUnavailableError as e:
            logger.warning(f"⚠️ {e}. Using synthetic transcript for {audio_path.name}")
            return self.create_synthetic_transcript(audio_path, duration)

        try:
            fragments = engine.transcribe(audio_path, language=self.backend_selector.get_language())
        except Exception as e:
            logger.error(f"❌ Transcription failed for {audio_path.name}: {e}. Using synthetic transcript")
            return self.create_synthetic_transcript(audio_path, duration)

        sentences = self.polisher.segment_fragments(fragments)
        transcript_duration = sentences[-1].end if sentences else 0.0
        logger.info(f"📝 {audio_path.name}: {len(fragments)} segments -> {len(sentences)} sentences")
        return ChapterTranscription(sentences=sentences, duration=transcript_duration, is_synthetic=False)

    def create_synthetic_transcript(self, audio_path: Path, duration: float = None) -> ChapterTranscription:
        """
        Placeholder transcript: the chapter's duration split into fixed-length
        pseudo-sentences, flagged synthetic.
        """
        if not duration or duration <= 0:
            duration = self.get_audio_duration(audio_path) or self.synthetic_default_duration

        step = self.synthetic_sentence_seconds
        count = max(1, math.ceil(duration / step))
        sentences = []
        for i in range(count):
            start = i * step
            end = min(duration, start + step)
            sentences.append(Sentence(text=f"[Sentence {i + 1} - transcription pending]", start=start, end=end))

        return ChapterTranscription(sentences=sentences, duration=duration, is_synthetic=True)

    @time_execution
    def transcribe_book(self, book_id: str, progress_callback: Optional[ProgressCallback] = None) -> BookTranscription:
        """
        Transcribe every chapter of a book in order, reusing cached chapter
        transcripts, and place all sentences on the book-wide timeline.

        progress_callback(percent, message) receives 0-100.
        """
        chapters = self.library_service.get_chapters(book_id)
        if not chapters:
            raise TranscriptionError(f"No chapters found for book {book_id}")

        total = len(chapters)
        all_sentences: List[Sentence] = []
        synthetic_chapters = []
        cumulative = 0.0

        for position, chapter in enumerate(chapters):
            if progress_callback:
                progress_callback(round(position / total * 100), f"Transcribing chapter {position + 1} of {total}")

            transcript = self._get_or_create_chapter_transcript(book_id, chapter)
            if transcript.is_synthetic:
                synthetic_chapters.append(chapter.order_index)

            for sentence in transcript.sentences:
                sentence.chapter_index = chapter.order_index
                sentence.global_start = cumulative + sentence.start
                sentence.global_end = cumulative + sentence.end
                all_sentences.append(sentence)

            cumulative += chapter.duration_seconds if chapter.duration_seconds else transcript.duration

        if progress_callback:
            progress_callback(100, f"Transcribed {total} chapters")

        is_synthetic = len(synthetic_chapters) == total
        if synthetic_chapters and not is_synthetic:
            logger.warning(f"⚠️ Book {book_id}: chapters {synthetic_chapters} have synthetic transcripts")

        return BookTranscription(
            book_id=book_id,
            sentences=all_sentences,
            total_duration=cumulative,
            is_synthetic=is_synthetic,
            chapter_count=total,
            synthetic_chapters=synthetic_chapters,
        )

    def _get_or_create_chapter_transcript(self, book_id: str, chapter) -> ChapterTranscription:
        cached = self.database_service.get_chapter_transcript(book_id, chapter.order_index)
        if cached:
            logger.debug(f"⚡ Using cached transcript for book {book_id} chapter {chapter.order_index}")
            sentences = [Sentence.from_cache_dict(s) for s in cached.sentences]
            return ChapterTranscription(sentences=sentences, duration=cached.duration or 0.0,
                                        is_synthetic=bool(cached.is_synthetic))

        transcript = self.transcribe_chapter(chapter.file_path, chapter.duration_seconds)
        self.database_service.save_chapter_transcript(ChapterTranscript(
            book_id=book_id,
            chapter_index=chapter.order_index,
            sentences_json=json.dumps([s.to_cache_dict() for s in transcript.sentences]),
            is_synthetic=transcript.is_synthetic,
            duration=transcript.duration,
        ))
        return transcript

    def get_book_sentences(self, book_id: str) -> List[dict]:
        """
        Cached sentences of a book on the global timeline, without running the
        engine. Chapters not yet transcribed are skipped but still advance the
        timeline by their known duration.
        """
        cached = {t.chapter_index: t for t in self.database_service.get_chapter_transcripts(book_id)}
        sentences = []
        cumulative = 0.0
        for chapter in self.library_service.get_chapters(book_id):
            transcript = cached.get(chapter.order_index)
            if transcript:
                for data in transcript.sentences:
                    sentence = Sentence.from_cache_dict(data)
                    sentence.chapter_index = chapter.order_index
                    sentence.global_start = cumulative + sentence.start
                    sentence.global_end = cumulative + sentence.end
                    payload = sentence.to_dict()
                    payload['isSynthetic'] = bool(transcript.is_synthetic)
                    sentences.append(payload)
            chapter_duration = chapter.duration_seconds or (transcript.duration if transcript else 0.0)
            cumulative += chapter_duration or 0.0
        return sentences
