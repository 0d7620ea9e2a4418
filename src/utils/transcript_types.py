from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Sentence:
    # start/end are chapter-relative seconds; global_* add the preceding chapters' durations
    text: str
    start: float
    end: float
    chapter_index: Optional[int] = None
    global_start: Optional[float] = None
    global_end: Optional[float] = None

    def to_cache_dict(self) -> dict:
        return {'text': self.text, 'start': self.start, 'end': self.end}

    def to_dict(self) -> dict:
        return {
            'text': self.text,
            'start': self.start,
            'end': self.end,
            'chapterIndex': self.chapter_index,
            'globalStart': self.global_start,
            'globalEnd': self.global_end,
        }

    @classmethod
    def from_cache_dict(cls, data: dict) -> 'Sentence':
        start = float(data.get('start', 0.0))
        return cls(text=data.get('text', ''), start=start, end=max(start, float(data.get('end', start))))


@dataclass
class ChapterTranscription:
    sentences: List[Sentence]
    duration: float
    is_synthetic: bool = False


@dataclass
class BookTranscription:
    book_id: str
    sentences: List[Sentence]
    total_duration: float
    is_synthetic: bool = False
    chapter_count: int = 0
    synthetic_chapters: List[int] = field(default_factory=list)


@dataclass
class DocumentSentence:
    id: str
    page_number: int
    index_in_page: int
    text: str


@dataclass
class DocumentPage:
    page_number: int
    raw_text: str
    sentences: List[DocumentSentence] = field(default_factory=list)
    # Media box size in points when the reader reports one
    width: Optional[float] = None
    height: Optional[float] = None


@dataclass
class DocumentText:
    pages: List[DocumentPage]
    has_text: bool
    page_count: int
    text_chars: int = 0

    @property
    def sentences(self) -> List[DocumentSentence]:
        return [sentence for page in self.pages for sentence in page.sentences]
