"""
Alignment Service.
Maps document sentences onto the audio timeline of a transcribed book and
stores the result in the database.
"""

import json
import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from rapidfuzz.distance import JaroWinkler

from src.db.models import DocumentAlignment
from src.utils.config_loader import get_env_float
from src.utils.logging_utils import time_execution
from src.utils.polisher import Polisher
from src.utils.transcript_types import BookTranscription, DocumentPage, DocumentSentence, DocumentText

logger = logging.getLogger(__name__)

ALIGNMENT_TYPE_TIME_BASED = 'time-based'


@dataclass
class PageLayout:
    """US Letter in points, used when a page does not report its own size."""
    width: float = 612.0
    height: float = 792.0
    margin: float = 72.0
    line_height: float = 14.0


class AlignmentService:
    def __init__(self, database_service, polisher: Polisher, match_threshold: float = None,
                 synthetic_confidence: float = None, interpolated_confidence: float = None,
                 layout: PageLayout = None):
        self.database_service = database_service
        self.polisher = polisher
        self.match_threshold = match_threshold if match_threshold is not None else get_env_float("ALIGNMENT_MATCH_THRESHOLD", 0.7)
        self.synthetic_confidence = synthetic_confidence if synthetic_confidence is not None else get_env_float("ALIGNMENT_SYNTHETIC_CONFIDENCE", 0.3)
        self.interpolated_confidence = interpolated_confidence if interpolated_confidence is not None else get_env_float("ALIGNMENT_INTERPOLATED_CONFIDENCE", 0.5)
        self.layout = layout or PageLayout()

    @time_execution
    def align(self, document: DocumentText, transcription: BookTranscription) -> dict:
        """
        Align every document sentence to the book timeline.

        Real transcripts go through indexed fuzzy matching followed by
        interpolation of bracketed gaps. Synthetic transcripts carry no real
        words, so sentences are spread uniformly over the audio instead.
        """
        total = len(document.sentences)
        logger.info(f"AlignmentService: aligning {total} document sentences against "
                    f"{len(transcription.sentences)} transcript sentences"
                    f"{' (synthetic transcript)' if transcription.is_synthetic else ''}")

        if transcription.is_synthetic:
            pages = self._create_time_based_alignment(document, transcription)
            interpolated = 0
        else:
            pages = self._create_matched_alignment(document, transcription)
            interpolated = self.interpolate_timestamps(pages)

        records = [record for page in pages for record in page['sentences']]
        estimated = [r for r in records if r['audio'] is not None and not r['audio'].get('interpolated')]
        matched_count = 0 if transcription.is_synthetic else len(estimated)
        average_confidence = sum(r['confidence'] for r in estimated) / len(estimated) if estimated else 0.0
        quality = self.calculate_quality(matched_count, total)

        metadata = {
            'documentSentenceCount': total,
            'audioSentenceCount': len(transcription.sentences),
            'matchedCount': matched_count,
            'interpolatedCount': interpolated,
            'unmatchedCount': sum(1 for r in records if r['audio'] is None),
            'totalCount': total,
            'averageConfidence': round(average_confidence, 3),
            'totalDuration': transcription.total_duration,
        }
        if transcription.is_synthetic:
            metadata['alignmentType'] = ALIGNMENT_TYPE_TIME_BASED

        logger.info(f"   ✅ Alignment: {matched_count}/{total} matched, {interpolated} interpolated, quality {quality}%")
        return {'pages': pages, 'metadata': metadata, 'quality': quality}

    @staticmethod
    def calculate_quality(matched_count: int, total: int) -> int:
        if total <= 0:
            return 0
        return max(0, min(100, round(matched_count / total * 100)))

    def _create_matched_alignment(self, document: DocumentText, transcription: BookTranscription) -> List[dict]:
        normalized = [self.polisher.normalize(s.text) for s in transcription.sentences]
        index = self._build_index(normalized)
        consumed: Set[int] = set()

        pages = []
        for page in document.pages:
            records = []
            for sentence in page.sentences:
                record = self._new_record(sentence, page)
                text = self.polisher.normalize(sentence.text)
                if len(text) >= 3:
                    match = self._find_best_match(text, index, normalized, consumed)
                    if match:
                        tx_index, score = match
                        consumed.add(tx_index)
                        tx = transcription.sentences[tx_index]
                        record['audio'] = {
                            'chapterIndex': tx.chapter_index,
                            'globalStart': tx.global_start,
                            'globalEnd': tx.global_end,
                            'transcriptIndex': tx_index,
                        }
                        record['confidence'] = round(score, 3)
                records.append(record)
            pages.append({'pageNumber': page.page_number, 'sentences': records})
        return pages

    def _build_index(self, normalized: List[str]) -> Dict[str, List[int]]:
        """First three normalized words -> transcript sentence indices, in order."""
        index: Dict[str, List[int]] = {}
        for i, text in enumerate(normalized):
            key = " ".join(text.split()[:3])
            if key:
                index.setdefault(key, []).append(i)
        return index

    def _find_best_match(self, text: str, index: Dict[str, List[int]], normalized: List[str],
                         consumed: Set[int]) -> Optional[Tuple[int, float]]:
        # A key miss leaves the sentence for interpolation; there is no full scan
        candidates = index.get(" ".join(text.split()[:3]))
        if not candidates:
            return None

        best_index, best_score = None, 0.0
        for candidate in candidates:
            if candidate in consumed:
                continue
            score = JaroWinkler.similarity(text, normalized[candidate])
            if score > best_score:
                best_index, best_score = candidate, score

        if best_index is not None and best_score >= self.match_threshold:
            return best_index, best_score
        return None

    def interpolate_timestamps(self, pages: List[dict]) -> int:
        """
        Give each run of unmatched sentences that sits between two matched
        sentences on the same page an equal share of the gap between them.
        Runs at a page's start or end are left unmatched. Returns the number
        of sentences filled.
        """
        filled = 0
        for page in pages:
            records = page['sentences']
            anchors = [i for i, r in enumerate(records) if r['audio'] is not None]
            for prev_i, next_i in zip(anchors, anchors[1:]):
                gap = next_i - prev_i - 1
                if gap <= 0:
                    continue
                prev_audio = records[prev_i]['audio']
                next_audio = records[next_i]['audio']
                start_time = prev_audio['globalEnd']
                end_time = max(start_time, next_audio['globalStart'])
                step = (end_time - start_time) / gap
                for offset in range(gap):
                    record = records[prev_i + 1 + offset]
                    record['audio'] = {
                        'chapterIndex': prev_audio['chapterIndex'],
                        'globalStart': start_time + offset * step,
                        'globalEnd': start_time + (offset + 1) * step,
                        'interpolated': True,
                    }
                    record['confidence'] = self.interpolated_confidence
                    filled += 1
        return filled

    def _create_time_based_alignment(self, document: DocumentText, transcription: BookTranscription) -> List[dict]:
        total = len(document.sentences)
        slot = transcription.total_duration / total if total else 0.0
        starts = [s.global_start or 0.0 for s in transcription.sentences]

        pages = []
        position = 0
        for page in document.pages:
            records = []
            for sentence in page.sentences:
                start = position * slot
                record = self._new_record(sentence, page)
                record['audio'] = {
                    'chapterIndex': self._chapter_at(transcription, starts, start),
                    'globalStart': start,
                    'globalEnd': start + slot,
                }
                record['confidence'] = self.synthetic_confidence
                records.append(record)
                position += 1
            pages.append({'pageNumber': page.page_number, 'sentences': records})
        return pages

    @staticmethod
    def _chapter_at(transcription: BookTranscription, starts: List[float], timestamp: float) -> Optional[int]:
        """Chapter of the last transcript sentence starting at or before timestamp."""
        if not transcription.sentences:
            return None
        i = bisect_right(starts, timestamp) - 1
        return transcription.sentences[max(i, 0)].chapter_index

    def _new_record(self, sentence: DocumentSentence, page: DocumentPage) -> dict:
        return {
            'id': sentence.id,
            'text': sentence.text,
            'position': self.estimate_position(sentence.index_in_page, len(page.sentences), page),
            'audio': None,
            'confidence': 0.0,
        }

    def estimate_position(self, index: int, total: int, page: DocumentPage = None) -> dict:
        """
        Estimated bounding box of the index-th of total sentences on a page:
        sentences spread evenly down the printable area, y measured from the
        bottom as PDF coordinates are.
        """
        width = (page.width if page and page.width else None) or self.layout.width
        height = (page.height if page and page.height else None) or self.layout.height
        margin = self.layout.margin
        content_height = height - 2 * margin
        fraction = index / total if total else 0.0
        return {
            'x': margin,
            'y': round(height - (margin + fraction * content_height)),
            'width': width - 2 * margin,
            'height': self.layout.line_height,
        }

    def align_and_store(self, subject_id: str, document: DocumentText, transcription: BookTranscription,
                        complete_job_id: int = None) -> dict:
        """Align and replace the stored alignment for subject_id."""
        result = self.align(document, transcription)
        self.store_alignment(subject_id, result, complete_job_id=complete_job_id)
        return result

    def store_alignment(self, subject_id: str, result: dict, complete_job_id: int = None):
        payload = dict(result, subjectId=subject_id)
        self.database_service.save_alignment(
            DocumentAlignment(subject_id=subject_id, alignment_json=json.dumps(payload), quality=result['quality']),
            complete_job_id=complete_job_id,
        )
        logger.info(f"   💾 Saved alignment for {subject_id} to DB.")

    def get_alignment(self, subject_id: str) -> Optional[dict]:
        entry = self.database_service.get_alignment(subject_id)
        if entry:
            return entry.alignment
        return None

    def delete_alignment(self, subject_id: str) -> bool:
        return self.database_service.delete_alignment(subject_id)

    def find_sentence_at_time(self, subject_id: str, timestamp: float) -> Optional[dict]:
        """The aligned sentence whose audio span covers timestamp, with its page number."""
        alignment = self.get_alignment(subject_id)
        if not alignment:
            return None
        for page in alignment['pages']:
            for record in page['sentences']:
                audio = record.get('audio')
                if audio and audio['globalStart'] <= timestamp < audio['globalEnd']:
                    return dict(record, pageNumber=page['pageNumber'])
        return None
