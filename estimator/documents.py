import io
import logging
import time
from typing import Callable, List, Optional, Sequence

import httpx
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from estimator.errors import FetchError
from estimator.models import DocumentRef

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[TRUNCATED]"


def clamp_text(text: str, max_chars: int) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def delimit(label: str, text: str) -> str:
    return f"\n\n===== {label} TEXT START =====\n{text}\n===== {label} TEXT END =====\n"


# ---------------- PDF text ----------------
def pdf_bytes_to_text(file_bytes: bytes) -> str:
    reader = PdfReader(io.BytesIO(file_bytes))
    pages_text: List[str] = []
    for page in reader.pages:
        pages_text.append((page.extract_text() or "").strip())
    return "\n\n".join(p for p in pages_text if p).strip()


def ocr_pdf_bytes(file_bytes: bytes) -> str:
    # Imported lazily: needs poppler and tesseract binaries on the host.
    import pytesseract
    from pdf2image import convert_from_bytes

    images = convert_from_bytes(file_bytes, fmt="png", dpi=300)
    return "\n\n".join(pytesseract.image_to_string(img).strip() for img in images).strip()


class DocumentIngestor:
    """Fetches job documents over HTTP and turns them into prompt text."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
        max_chars: int = 35000,
        max_bytes: int = 25 * 1024 * 1024,
        ocr_fallback: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client or httpx.Client(follow_redirects=True)
        self.timeout_seconds = timeout_seconds
        self.timeout = httpx.Timeout(timeout_seconds)
        self.max_chars = max_chars
        self.max_bytes = max_bytes
        self.ocr_fallback = ocr_fallback
        self.clock = clock

    def _too_large(self, url: str, size: str, status: int) -> FetchError:
        return FetchError(
            f"PDF from {url} is {size} bytes, over the {self.max_bytes} byte limit",
            url=url,
            status=status,
        )

    def fetch_bytes(self, url: str) -> bytes:
        """
        Streams the body so neither a slow server nor a huge file can hold
        the invocation: the whole download shares one deadline, and reading
        stops as soon as the byte limit is passed.
        """
        deadline = self.clock() + self.timeout_seconds
        data = bytearray()
        try:
            with self.client.stream("GET", url, timeout=self.timeout) as resp:
                if not resp.is_success:
                    raise FetchError(f"Failed to fetch PDF ({resp.status_code}) from {url}", url=url, status=resp.status_code)

                declared = resp.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise self._too_large(url, declared, resp.status_code)

                for chunk in resp.iter_bytes():
                    if self.clock() > deadline:
                        raise FetchError(f"Timed out fetching PDF from {url}", url=url)
                    data.extend(chunk)
                    if len(data) > self.max_bytes:
                        raise self._too_large(url, f"at least {len(data)}", resp.status_code)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching PDF from {url}", url=url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch PDF from {url}: {e}", url=url) from e
        return bytes(data)

    def extract_text(self, url: str) -> str:
        data = self.fetch_bytes(url)
        try:
            text = pdf_bytes_to_text(data)
        except PyPdfError as e:
            raise FetchError(f"Could not read PDF from {url}: {e}", url=url) from e

        if not text and self.ocr_fallback:
            logger.info("documents: no native text in %s, falling back to OCR", url)
            text = ocr_pdf_bytes(data)

        logger.debug("documents: extracted %s chars from %s", len(text), url)
        return text

    def combined_text(self, documents: Sequence[DocumentRef]) -> str:
        """
        Text of every document, each wrapped in labelled start/end markers,
        then clamped to the prompt budget.
        """
        if not documents:
            raise FetchError("Job has no document URLs")

        combined = ""
        for doc in documents:
            logger.info("documents: fetching %s %s", doc.label, doc.url)
            combined += delimit(doc.label, self.extract_text(doc.url))
        clamped = clamp_text(combined, self.max_chars)
        if len(clamped) < len(combined):
            logger.info("documents: combined text %s chars, truncated to %s", len(combined), self.max_chars)
        return clamped

    def close(self) -> None:
        self.client.close()
