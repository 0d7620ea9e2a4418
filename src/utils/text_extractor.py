"""
Document text extraction for alignment.

Reads a document page by page, decides whether it carries real text (as
opposed to scanned page images), and splits each page into ordered
sentences tied to their page.
"""

import logging
import os
import threading
from pathlib import Path
from typing import List

import nltk
from nltk.tokenize.punkt import PunktParameters, PunktSentenceTokenizer, PunktTokenizer
from pypdf import PdfReader

from src.utils.config_loader import get_env_int
from src.utils.polisher import Polisher
from src.utils.transcript_types import DocumentPage, DocumentSentence, DocumentText

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = ('.txt', '.text')

PUNKT_RESOURCE = 'punkt_tab'

# Lowercase, without the trailing period, as Punkt stores them
COMMON_ABBREVIATIONS = {
    'mr', 'mrs', 'ms', 'mx', 'dr', 'prof', 'rev', 'fr', 'sr', 'jr', 'st', 'mt', 'ft', 'gen', 'col',
    'capt', 'lt', 'sgt', 'gov', 'sen', 'rep', 'hon', 'messrs', 'mme', 'mlle',
    'e.g', 'i.e', 'etc', 'vs', 'cf', 'al', 'approx', 'a.m', 'p.m', 'no', 'vol', 'ch', 'fig', 'pp', 'ed',
    'jan', 'feb', 'mar', 'apr', 'jun', 'jul', 'aug', 'sep', 'sept', 'oct', 'nov', 'dec',
    'u.s', 'u.k', 'inc', 'ltd', 'co', 'corp', 'dept', 'est', 'ave', 'rd', 'blvd',
}


def abbreviation_tokenizer() -> PunktSentenceTokenizer:
    """Punkt seeded with common abbreviations, for when the pretrained model is unavailable."""
    params = PunktParameters()
    params.abbrev_types = set(COMMON_ABBREVIATIONS)
    return PunktSentenceTokenizer(params)


def load_sentence_tokenizer(data_dir=None, language: str = 'english'):
    """
    Pretrained Punkt for language. The punkt_tab data is downloaded once into
    DATA_DIR/nltk_data when nltk cannot find it; if that fails the seeded
    abbreviation tokenizer is used instead.
    """
    nltk_dir = Path(data_dir or os.environ.get("DATA_DIR", "/data")) / "nltk_data"
    if str(nltk_dir) not in nltk.data.path:
        nltk.data.path.append(str(nltk_dir))

    try:
        nltk.data.find(f"tokenizers/{PUNKT_RESOURCE}/{language}/")
    except LookupError:
        logger.info(f"⬇️ Downloading sentence tokenizer data '{PUNKT_RESOURCE}' to {nltk_dir}")
        try:
            nltk_dir.mkdir(parents=True, exist_ok=True)
            downloaded = nltk.download(PUNKT_RESOURCE, download_dir=str(nltk_dir), quiet=True)
        except OSError as e:
            logger.warning(f"⚠️ Could not download '{PUNKT_RESOURCE}': {e}")
            downloaded = False
        if not downloaded:
            logger.warning("⚠️ Pretrained sentence tokenizer unavailable, using built-in abbreviation list")
            return abbreviation_tokenizer()

    try:
        return PunktTokenizer(language)
    except LookupError as e:
        logger.warning(f"⚠️ Failed to load pretrained sentence tokenizer: {e}. Using built-in abbreviation list")
        return abbreviation_tokenizer()


class TextExtractor:
    def __init__(self, polisher: Polisher, min_text_chars: int = None, sentence_tokenizer=None, data_dir=None):
        self.polisher = polisher
        self.min_text_chars = min_text_chars if min_text_chars is not None else get_env_int("DOCUMENT_MIN_TEXT_CHARS", 100)
        self.data_dir = data_dir
        # Loaded on first use; may download data
        self._sentence_tokenizer = sentence_tokenizer
        self._tokenizer_lock = threading.Lock()

    @property
    def sentence_tokenizer(self):
        with self._tokenizer_lock:
            if self._sentence_tokenizer is None:
                self._sentence_tokenizer = load_sentence_tokenizer(self.data_dir)
            return self._sentence_tokenizer

    def extract(self, path) -> DocumentText:
        """
        Extract per-page text and sentences from a PDF or plain-text file.

        has_text is False when the whole document holds fewer than
        min_text_chars alphanumeric characters.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Document not found: {path}")

        if path.suffix.lower() in TEXT_SUFFIXES:
            pages = self._read_text_pages(path)
        else:
            pages = self._read_pdf_pages(path)

        text_chars = 0
        for page in pages:
            text_chars += sum(1 for ch in page.raw_text if ch.isalnum())
            page.sentences = self._page_sentences(page)

        has_text = text_chars >= self.min_text_chars
        sentence_count = sum(len(page.sentences) for page in pages)
        logger.info(f"📄 Extracted {path.name}: {len(pages)} pages, {sentence_count} sentences, "
                    f"{text_chars} text characters{'' if has_text else ' (no usable text)'}")

        return DocumentText(pages=pages, has_text=has_text, page_count=len(pages), text_chars=text_chars)

    def _read_pdf_pages(self, path: Path) -> List[DocumentPage]:
        reader = PdfReader(str(path))
        pages = []
        for page_number, page in enumerate(reader.pages, start=1):
            try:
                text = page.extract_text() or ""
            except Exception as e:
                logger.warning(f"⚠️ Failed to extract text for page {page_number} of {path.name}: {e}")
                text = ""

            width = height = None
            try:
                box = page.mediabox
                width, height = float(box.width), float(box.height)
            except (AttributeError, TypeError, ValueError):
                pass

            pages.append(DocumentPage(page_number=page_number, raw_text=text, width=width, height=height))
        return pages

    def _read_text_pages(self, path: Path) -> List[DocumentPage]:
        # Form feeds separate pages in plain-text exports
        content = path.read_text(encoding='utf-8', errors='replace')
        return [DocumentPage(page_number=number, raw_text=text)
                for number, text in enumerate(content.split('\f'), start=1)]

    def split_sentences(self, text: str) -> List[str]:
        """Whitespace-normalized sentences of a block of text, in order."""
        normalized = self.polisher.collapse_whitespace(text.replace('\r', ' ').replace('\n', ' '))
        if not normalized:
            return []
        return [s.strip() for s in self.sentence_tokenizer.tokenize(normalized) if s.strip()]

    def _page_sentences(self, page: DocumentPage) -> List[DocumentSentence]:
        return [
            DocumentSentence(
                id=f"p{page.page_number}s{index + 1}",
                page_number=page.page_number,
                index_in_page=index,
                text=text,
            )
            for index, text in enumerate(self.split_sentences(page.raw_text))
        ]
