"""Document fetching and text extraction against a mocked HTTP transport."""
import io
import itertools

import httpx
import pytest
from pypdf import PdfWriter

from estimator import documents
from estimator.documents import TRUNCATION_MARKER, DocumentIngestor, clamp_text
from estimator.errors import FetchError
from estimator.models import DocumentRef


def _blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _ingestor(handler, **kwargs) -> DocumentIngestor:
    return DocumentIngestor(client=httpx.Client(transport=httpx.MockTransport(handler)), **kwargs)


def test_clamp_text_marks_truncation():
    assert clamp_text("abc", 5) == "abc"
    assert clamp_text("abcdefgh", 5) == "abcde" + TRUNCATION_MARKER
    assert clamp_text("", 5) == ""


def test_blank_pdf_extracts_to_empty_text():
    pdf = _blank_pdf()
    ingestor = _ingestor(lambda request: httpx.Response(200, content=pdf))

    assert ingestor.extract_text("https://files.example.com/blank.pdf") == ""


def test_non_success_status_is_fetch_error():
    ingestor = _ingestor(lambda request: httpx.Response(404, content=b"gone"))

    with pytest.raises(FetchError) as exc:
        ingestor.fetch_bytes("https://files.example.com/missing.pdf")

    assert exc.value.status == 404
    assert "404" in str(exc.value)


def test_timeout_is_fetch_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(FetchError, match="Timed out"):
        _ingestor(handler).fetch_bytes("https://files.example.com/slow.pdf")


def test_oversized_document_is_rejected():
    ingestor = _ingestor(lambda request: httpx.Response(200, content=b"x" * 2048), max_bytes=1024)

    with pytest.raises(FetchError, match="byte limit"):
        ingestor.fetch_bytes("https://files.example.com/huge.pdf")


def test_declared_length_over_limit_is_rejected_before_reading():
    read = []

    def body():
        read.append(True)
        yield b"x" * 10

    ingestor = _ingestor(
        lambda request: httpx.Response(200, headers={"Content-Length": "999999"}, content=body()),
        max_bytes=1024,
    )

    with pytest.raises(FetchError, match="999999 bytes, over the 1024 byte limit"):
        ingestor.fetch_bytes("https://files.example.com/huge.pdf")
    assert read == []


def test_undeclared_body_stops_at_the_byte_limit():
    sent = []

    def body():
        for _ in range(100):
            sent.append(1)
            yield b"x" * 256

    ingestor = _ingestor(lambda request: httpx.Response(200, content=body()), max_bytes=1024)

    with pytest.raises(FetchError, match="byte limit"):
        ingestor.fetch_bytes("https://files.example.com/chunked.pdf")
    assert len(sent) == 5


def test_slow_drip_download_hits_the_overall_deadline():
    # Each clock reading is 0.4s later; every chunk arrives well inside a per-read timeout.
    ticks = itertools.count(0.0, 0.4)
    chunks = []

    def body():
        for i in range(10):
            chunks.append(i)
            yield b"%PDF"[i % 4 : i % 4 + 1]

    ingestor = _ingestor(
        lambda request: httpx.Response(200, content=body()),
        timeout_seconds=1.0,
        clock=lambda: next(ticks),
    )

    with pytest.raises(FetchError, match="Timed out fetching PDF from https://files.example.com/drip.pdf"):
        ingestor.fetch_bytes("https://files.example.com/drip.pdf")
    assert len(chunks) < 10


def test_unreadable_pdf_is_fetch_error():
    ingestor = _ingestor(lambda request: httpx.Response(200, content=b"not a pdf at all"))

    with pytest.raises(FetchError, match="Could not read PDF"):
        ingestor.extract_text("https://files.example.com/bad.pdf")


def test_combined_text_is_labelled_in_order_and_clamped(monkeypatch):
    monkeypatch.setattr(documents, "pdf_bytes_to_text", lambda data: data.decode())
    pages = {
        "/binsr.pdf": b"Replace cracked outlet cover.",
        "/report.pdf": b"Smoke detector missing. " * 20,
    }
    ingestor = _ingestor(lambda request: httpx.Response(200, content=pages[request.url.path]), max_chars=200)

    text = ingestor.combined_text([
        DocumentRef(label="BINSR", url="https://files.example.com/binsr.pdf"),
        DocumentRef(label="INSPECTION", url="https://files.example.com/report.pdf"),
    ])

    assert text.index("===== BINSR TEXT START =====") < text.index("===== INSPECTION TEXT START =====")
    assert "Replace cracked outlet cover." in text
    assert text.endswith(TRUNCATION_MARKER)
    assert len(text) == 200 + len(TRUNCATION_MARKER)


def test_job_without_documents_fails():
    ingestor = _ingestor(lambda request: httpx.Response(200))

    with pytest.raises(FetchError, match="no document URLs"):
        ingestor.combined_text([])


def test_ocr_fallback_only_when_enabled(monkeypatch):
    pdf = _blank_pdf()
    monkeypatch.setattr(documents, "ocr_pdf_bytes", lambda data: "scanned text")
    handler = lambda request: httpx.Response(200, content=pdf)

    assert _ingestor(handler).extract_text("https://files.example.com/scan.pdf") == ""
    assert _ingestor(handler, ocr_fallback=True).extract_text("https://files.example.com/scan.pdf") == "scanned text"
