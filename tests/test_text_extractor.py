import pytest
from unittest.mock import MagicMock, patch

from nltk.tokenize.punkt import PunktSentenceTokenizer

from src.utils.polisher import Polisher
from src.utils.text_extractor import TextExtractor, abbreviation_tokenizer, load_sentence_tokenizer


@pytest.fixture
def extractor():
    return TextExtractor(Polisher(), min_text_chars=20, sentence_tokenizer=abbreviation_tokenizer())


def _pdf_page(text, width=595.0, height=842.0):
    page = MagicMock()
    page.extract_text.return_value = text
    page.mediabox.width = width
    page.mediabox.height = height
    return page


def test_missing_file_raises(extractor, tmp_path):
    with pytest.raises(FileNotFoundError):
        extractor.extract(tmp_path / "missing.pdf")


def test_plain_text_pages_split_on_form_feed(extractor, tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("The first page has text. It has two sentences.\fPage two\nwraps a line. Done!", encoding="utf-8")

    result = extractor.extract(doc)

    assert result.has_text is True
    assert result.page_count == 2
    first, second = result.pages
    assert [s.text for s in first.sentences] == ["The first page has text.", "It has two sentences."]
    assert [s.text for s in second.sentences] == ["Page two wraps a line.", "Done!"]
    assert [s.id for s in second.sentences] == ["p2s1", "p2s2"]
    assert [s.index_in_page for s in second.sentences] == [0, 1]
    assert len(result.sentences) == 4


def test_pdf_pages_carry_size(extractor, tmp_path):
    doc = tmp_path / "book.pdf"
    doc.write_bytes(b"%PDF-1.4")
    reader = MagicMock()
    reader.pages = [_pdf_page("Alice was beginning to get very tired. She had nothing to do.")]

    with patch("src.utils.text_extractor.PdfReader", return_value=reader):
        result = extractor.extract(doc)

    page = result.pages[0]
    assert page.page_number == 1
    assert page.width == 595.0
    assert page.height == 842.0
    assert [s.id for s in page.sentences] == ["p1s1", "p1s2"]


def test_image_only_pdf_has_no_text(extractor, tmp_path):
    doc = tmp_path / "scan.pdf"
    doc.write_bytes(b"%PDF-1.4")
    reader = MagicMock()
    reader.pages = [_pdf_page(""), _pdf_page(None), _pdf_page("  12  ")]

    with patch("src.utils.text_extractor.PdfReader", return_value=reader):
        result = extractor.extract(doc)

    assert result.has_text is False
    assert result.page_count == 3
    assert result.text_chars == 2


def test_page_extraction_error_is_treated_as_empty(extractor, tmp_path):
    doc = tmp_path / "broken.pdf"
    doc.write_bytes(b"%PDF-1.4")
    bad_page = _pdf_page("")
    bad_page.extract_text.side_effect = ValueError("bad content stream")
    reader = MagicMock()
    reader.pages = [bad_page, _pdf_page("Enough readable text lives on this page.")]

    with patch("src.utils.text_extractor.PdfReader", return_value=reader):
        result = extractor.extract(doc)

    assert result.pages[0].sentences == []
    assert result.has_text is True


def test_split_sentences_normalizes_whitespace(extractor):
    assert extractor.split_sentences("  One\r\nline.   Two   lines. ") == ["One line.", "Two lines."]
    assert extractor.split_sentences("   ") == []


def test_abbreviations_do_not_end_sentences(extractor, tmp_path):
    doc = tmp_path / "story.txt"
    doc.write_text("Mr. Smith walked slowly to the station. Dr. Watson waited by the old clock. "
                   "They met at 6 p.m. on a Sunday, e.g. after lunch.", encoding="utf-8")

    result = extractor.extract(doc)

    assert [s.text for s in result.sentences] == [
        "Mr. Smith walked slowly to the station.",
        "Dr. Watson waited by the old clock.",
        "They met at 6 p.m. on a Sunday, e.g. after lunch.",
    ]


@patch("src.utils.text_extractor.PunktTokenizer")
@patch("src.utils.text_extractor.nltk.download")
@patch("src.utils.text_extractor.nltk.data.find")
def test_pretrained_tokenizer_used_when_present(mock_find, mock_download, mock_punkt, tmp_path):
    tokenizer = load_sentence_tokenizer(tmp_path)

    assert tokenizer is mock_punkt.return_value
    mock_punkt.assert_called_once_with('english')
    mock_download.assert_not_called()


@patch("src.utils.text_extractor.PunktTokenizer")
@patch("src.utils.text_extractor.nltk.download", return_value=True)
@patch("src.utils.text_extractor.nltk.data.find", side_effect=LookupError("punkt_tab not found"))
def test_pretrained_tokenizer_downloaded_into_data_dir(mock_find, mock_download, mock_punkt, tmp_path):
    tokenizer = load_sentence_tokenizer(tmp_path)

    assert tokenizer is mock_punkt.return_value
    mock_download.assert_called_once_with('punkt_tab', download_dir=str(tmp_path / "nltk_data"), quiet=True)
    assert (tmp_path / "nltk_data").is_dir()


@patch("src.utils.text_extractor.PunktTokenizer")
@patch("src.utils.text_extractor.nltk.download", return_value=False)
@patch("src.utils.text_extractor.nltk.data.find", side_effect=LookupError("punkt_tab not found"))
def test_failed_download_falls_back_to_abbreviation_list(mock_find, mock_download, mock_punkt, tmp_path):
    tokenizer = load_sentence_tokenizer(tmp_path)

    mock_punkt.assert_not_called()
    assert isinstance(tokenizer, PunktSentenceTokenizer)
    assert tokenizer.tokenize("Mrs. Hudson knocked. Nobody answered.") == ["Mrs. Hudson knocked.", "Nobody answered."]


def test_tokenizer_is_loaded_on_first_use():
    tokenizer = MagicMock()
    tokenizer.tokenize.return_value = ["One.", "Two."]

    with patch("src.utils.text_extractor.load_sentence_tokenizer", return_value=tokenizer) as mock_load:
        lazy = TextExtractor(Polisher(), min_text_chars=20, data_dir="/tmp/followalong")
        mock_load.assert_not_called()

        assert lazy.split_sentences("One. Two.") == ["One.", "Two."]
        assert lazy.split_sentences("One. Two.") == ["One.", "Two."]

    mock_load.assert_called_once_with("/tmp/followalong")
