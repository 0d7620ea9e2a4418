import pytest
from unittest.mock import MagicMock

from src.db.database_service import DatabaseService
from src.db.models import TranscriptionJob, JOB_TYPE_ALIGNMENT, JOB_STATUS_COMPLETED
from src.services.alignment_service import AlignmentService
from src.utils.polisher import Polisher
from src.utils.text_extractor import TextExtractor, abbreviation_tokenizer
from src.utils.transcript_types import (
    BookTranscription, DocumentPage, DocumentSentence, DocumentText, Sentence,
)

MATCHED = {
    0: "Alice sat by the river bank.",
    1: "Her sister read a quiet book.",
    2: "A white rabbit ran close by.",
    3: "It carried a pocket watch.",
    6: "Down the hole she fell slowly.",
    7: "The shelves held jars of marmalade.",
    8: "She wondered about the latitude.",
    9: "Soon she landed on dry leaves.",
}
UNMATCHED = {
    4: "Nobody expects this odd line.",
    5: "Completely unrelated words appear here.",
}
EXTRAS = [
    "Extra words were spoken aloud.",
    "Narrator pauses for a breath.",
    "Music plays between the chapters.",
    "Credits roll at the very end.",
]


def make_document(*page_texts):
    pages = []
    for number, texts in enumerate(page_texts, start=1):
        page = DocumentPage(page_number=number, raw_text=" ".join(texts))
        page.sentences = [
            DocumentSentence(id=f"p{number}s{i + 1}", page_number=number, index_in_page=i, text=text)
            for i, text in enumerate(texts)
        ]
        pages.append(page)
    return DocumentText(pages=pages, has_text=True, page_count=len(pages))


def make_transcription(texts, chapter_starts=None, is_synthetic=False, spacing=2.0):
    sentences = []
    for i, text in enumerate(texts):
        start = i * spacing
        chapter = 0
        for idx, chapter_start in enumerate(chapter_starts or [0.0]):
            if start >= chapter_start:
                chapter = idx
        sentences.append(Sentence(text=text, start=start, end=start + spacing * 0.75,
                                  chapter_index=chapter, global_start=start, global_end=start + spacing * 0.75))
    total = len(texts) * spacing
    return BookTranscription(book_id='book-1', sentences=sentences, total_duration=total,
                             is_synthetic=is_synthetic, chapter_count=len(chapter_starts or [0.0]))


@pytest.fixture
def service():
    return AlignmentService(MagicMock(), Polisher())


@pytest.fixture
def scenario_a():
    doc_texts = [MATCHED.get(i) or UNMATCHED[i] for i in range(10)]
    transcript = [MATCHED[0], MATCHED[1], MATCHED[2], MATCHED[3], EXTRAS[0], EXTRAS[1],
                  MATCHED[6], MATCHED[7], MATCHED[8], MATCHED[9], EXTRAS[2], EXTRAS[3]]
    return make_document(doc_texts), make_transcription(transcript)


def _records(result):
    return [r for page in result['pages'] for r in page['sentences']]


def test_scenario_matched_with_interpolated_gap(service, scenario_a):
    document, transcription = scenario_a

    result = service.align(document, transcription)

    meta = result['metadata']
    assert meta['matchedCount'] == 8
    assert meta['interpolatedCount'] == 2
    assert meta['unmatchedCount'] == 0
    assert meta['totalCount'] == 10
    assert meta['audioSentenceCount'] == 12
    assert result['quality'] == 80
    assert 'alignmentType' not in meta

    records = _records(result)
    assert all(r['audio'] is not None for r in records)

    gap = records[4:6]
    assert all(r['audio']['interpolated'] for r in gap)
    assert all(r['confidence'] == 0.5 for r in gap)
    # Bracketed by transcript sentence 3 (ends 7.5) and 6 (starts 12.0)
    assert gap[0]['audio']['globalStart'] == pytest.approx(7.5)
    assert gap[0]['audio']['globalEnd'] == pytest.approx(9.75)
    assert gap[1]['audio']['globalEnd'] == pytest.approx(12.0)


def test_each_transcript_sentence_matched_at_most_once(service):
    line = "The same sentence appears twice on the page."
    document = make_document([line, line])
    transcription = make_transcription([line])

    result = service.align(document, transcription)

    records = _records(result)
    matched = [r['audio']['transcriptIndex'] for r in records if r['audio'] and 'transcriptIndex' in r['audio']]
    assert matched == [0]
    assert records[1]['audio'] is None
    assert result['metadata']['matchedCount'] == 1


def test_unbracketed_gaps_stay_unmatched(service):
    document = make_document(
        [UNMATCHED[4], MATCHED[0], UNMATCHED[5]],
        [MATCHED[1], MATCHED[2]],
    )
    transcription = make_transcription([MATCHED[0], MATCHED[1], MATCHED[2]])

    result = service.align(document, transcription)

    first_page = result['pages'][0]['sentences']
    assert first_page[0]['audio'] is None
    assert first_page[1]['audio'] is not None
    assert first_page[2]['audio'] is None
    assert result['metadata']['interpolatedCount'] == 0
    assert result['metadata']['unmatchedCount'] == 2


def test_short_sentences_are_not_matched(service):
    document = make_document(["Hi.", MATCHED[0]])
    transcription = make_transcription(["Hi.", MATCHED[0]])

    result = service.align(document, transcription)

    records = _records(result)
    assert records[0]['audio'] is None
    assert records[1]['audio']['transcriptIndex'] == 1


def test_below_threshold_is_rejected(service):
    document = make_document(["Alice sat by a completely different stream entirely today."])
    transcription = make_transcription(["Alice sat by the river bank."])

    strict = AlignmentService(MagicMock(), Polisher(), match_threshold=0.99)
    result = strict.align(document, transcription)

    assert _records(result)[0]['audio'] is None
    assert result['quality'] == 0


def test_scenario_synthetic_is_time_based(service):
    document = make_document(
        [f"Sentence number {i} on page one." for i in range(3)],
        [f"Sentence number {i} on page two." for i in range(2)],
    )
    # 50 placeholder sentences of 2s, chapter 1 starts at 50s
    transcription = make_transcription(
        [f"[Sentence {i + 1} - transcription pending]" for i in range(50)],
        chapter_starts=[0.0, 50.0], is_synthetic=True
    )

    result = service.align(document, transcription)

    records = _records(result)
    assert all(r['confidence'] == 0.3 for r in records)
    assert result['metadata']['alignmentType'] == 'time-based'
    starts = [r['audio']['globalStart'] for r in records]
    assert starts == sorted(set(starts))
    assert starts == pytest.approx([0.0, 20.0, 40.0, 60.0, 80.0])
    assert records[2]['audio']['chapterIndex'] == 0
    assert records[3]['audio']['chapterIndex'] == 1
    assert result['metadata']['matchedCount'] == 0


@pytest.mark.parametrize("matched,total,expected", [
    (8, 10, 80), (0, 10, 0), (10, 10, 100), (12, 10, 100), (1, 3, 33), (5, 0, 0),
])
def test_calculate_quality(matched, total, expected):
    assert AlignmentService.calculate_quality(matched, total) == expected


def test_estimate_position_spreads_down_page(service):
    top = service.estimate_position(0, 10)
    middle = service.estimate_position(5, 10)

    assert top == {'x': 72.0, 'y': 720, 'width': 468.0, 'height': 14.0}
    assert middle['y'] == 396
    sized = service.estimate_position(0, 1, DocumentPage(page_number=1, raw_text="", width=595.0, height=842.0))
    assert sized['y'] == 770
    assert sized['width'] == 451.0


def test_store_replaces_previous_alignment_and_completes_job(tmp_path, scenario_a):
    db = DatabaseService(str(tmp_path / "database.db"))
    try:
        service = AlignmentService(db, Polisher())
        document, transcription = scenario_a
        job = db.create_job(TranscriptionJob(subject_id='doc-1', book_id='book-1',
                                             job_type=JOB_TYPE_ALIGNMENT, document_id='doc-1'))

        service.align_and_store('doc-1', make_document(["Nothing matches here at all."]), transcription)
        assert service.get_alignment('doc-1')['quality'] == 0

        service.align_and_store('doc-1', document, transcription, complete_job_id=job.id)

        stored = service.get_alignment('doc-1')
        assert stored['subjectId'] == 'doc-1'
        assert stored['quality'] == 80
        assert db.get_alignment('doc-1').quality == 80
        completed = db.get_job(job.id)
        assert completed.status == JOB_STATUS_COMPLETED
        assert completed.progress == 100

        hit = service.find_sentence_at_time('doc-1', 1.0)
        assert hit['id'] == 'p1s1'
        assert hit['pageNumber'] == 1
        assert service.find_sentence_at_time('doc-1', 10_000) is None

        assert service.delete_alignment('doc-1') is True
        assert service.get_alignment('doc-1') is None
    finally:
        db.db_manager.close()


def test_abbreviated_titles_align_against_spoken_sentences(service, tmp_path):
    spoken = ["Mr. Smith walked slowly to the station.", "Dr. Watson waited by the old clock."] * 3
    doc = tmp_path / "chapter.txt"
    doc.write_text(" ".join(spoken), encoding="utf-8")
    extractor = TextExtractor(Polisher(), min_text_chars=20, sentence_tokenizer=abbreviation_tokenizer())

    document = extractor.extract(doc)
    result = service.align(document, make_transcription(spoken))

    assert [s.text for s in document.sentences] == spoken
    assert result['metadata']['matchedCount'] == 6
    assert result['metadata']['unmatchedCount'] == 0
    assert result['quality'] == 100
    assert [r['audio']['transcriptIndex'] for r in _records(result)] == list(range(6))
