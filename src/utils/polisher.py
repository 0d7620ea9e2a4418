"""
Polisher Utility for Text Normalization and Sentence Rebuilding.
Handles cleanup of document text and reconstruction of sentences from
fragmented recognizer output.
"""

import logging
import re
from typing import Dict, Iterable, List

from src.utils.transcript_types import Sentence

logger = logging.getLogger(__name__)

# Terminal punctuation, optionally followed by a closing quote, paren or bracket
SENTENCE_END_RE = re.compile(r'[.!?]["\'”’)\]]?$')


class Polisher:
    """
    Polishes text for alignment and rebuilds fragmented sentences.
    """

    def clean_punctuation(self, text: str) -> str:
        """
        Removes punctuation to standardize text for comparison.
        Keeps alphanumerics and spaces.
        """
        # Replace dashes/underscores with spaces to avoid merging words
        text = re.sub(r'[-_–—]', ' ', text)
        text = re.sub(r'[^\w\s]', '', text)
        return text

    def collapse_whitespace(self, text: str) -> str:
        """Reduces multiple spaces to a single space and strips ends."""
        return re.sub(r'\s+', ' ', text).strip()

    def normalize(self, text: str) -> str:
        """Lowercase, punctuation-free, single-spaced form used for matching."""
        if not text:
            return ""
        cleaned = self.clean_punctuation(self.collapse_whitespace(text))
        return self.collapse_whitespace(cleaned.lower())

    def index_key(self, text: str, word_count: int = 3) -> str:
        """The first word_count normalized words of text, used to bucket match candidates."""
        return " ".join(self.normalize(text).split()[:word_count])

    def is_sentence_end(self, text: str) -> bool:
        return bool(SENTENCE_END_RE.search(text.rstrip()))

    def segment_fragments(self, fragments: Iterable[Dict]) -> List[Sentence]:
        """
        Rejoins recognizer fragments into sentences.

        Fragments are accumulated until one ends in terminal punctuation; any
        text left over when the stream ends becomes a final sentence.

        Args:
            fragments: Ordered dicts {'text': str, 'start_ms': int, 'end_ms': int}

        Returns:
            Sentences with chapter-relative start/end in seconds.
        """
        sentences = []
        parts = []
        start_ms = None
        end_ms = None

        for fragment in fragments:
            text = (fragment.get('text') or '').strip()
            if not text:
                continue
            if start_ms is None:
                start_ms = fragment.get('start_ms', 0)
            parts.append(text)
            end_ms = fragment.get('end_ms', start_ms)

            if self.is_sentence_end(text):
                sentences.append(self._make_sentence(parts, start_ms, end_ms))
                parts = []
                start_ms = None

        if parts:
            sentences.append(self._make_sentence(parts, start_ms, end_ms))

        return sentences

    def _make_sentence(self, parts: List[str], start_ms, end_ms) -> Sentence:
        start = max(0.0, start_ms / 1000.0)
        end = max(start, end_ms / 1000.0)
        return Sentence(text=self.collapse_whitespace(" ".join(parts)), start=start, end=end)
