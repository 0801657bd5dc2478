"""PDF text extraction and scanned-document detection."""

import asyncio
import io
import re
from dataclasses import dataclass, field

import pdfplumber

from app.core.errors import ExtractionFailure
from app.core.utils import get_logger

logger = get_logger("statement-importer.pdf")

SCANNED_QUALITY = 0.1
BASE_QUALITY = 0.5
_DATE_RE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}")
_AMOUNT_RE = re.compile(r"\$?\d+[,.]?\d*\.\d{2}")
_BANK_WORDS_RE = re.compile(r"statement|account|balance|transaction|deposit|withdrawal", re.IGNORECASE)


@dataclass
class PdfText:
    """Text pulled out of a PDF, page by page."""

    pages: list[str] = field(default_factory=list)
    low_text_threshold: int = 100

    @property
    def text(self) -> str:
        return "\n\n".join(self.pages)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def avg_chars_per_page(self) -> float:
        return len(self.text) / max(1, self.page_count)

    @property
    def is_scanned(self) -> bool:
        """Too little text per page means the pages are images."""
        return self.avg_chars_per_page < self.low_text_threshold


def _extract_pages(data: bytes) -> list[str]:
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return [(page.extract_text() or "").strip() for page in pdf.pages]


async def extract_text(data: bytes, low_text_threshold: int = 100) -> PdfText:
    """Extract page text off the event loop."""
    try:
        pages = await asyncio.to_thread(_extract_pages, data)
    except Exception as exc:
        msg = f"Failed to extract text from PDF: {exc}"
        logger.exception(msg)
        raise ExtractionFailure(msg, user_message="The PDF could not be read.") from exc
    result = PdfText(pages=pages, low_text_threshold=low_text_threshold)
    logger.info(
        f"PDF text extracted: pages={result.page_count}, chars={len(result.text)}, "
        f"avg_per_page={round(result.avg_chars_per_page)}, scanned={result.is_scanned}"
    )
    return result


def assess_quality(result: PdfText) -> float:
    """Score 0-1 for how likely the extracted text is a usable statement."""
    if result.is_scanned:
        return SCANNED_QUALITY
    text = result.text.lower()
    score = BASE_QUALITY
    if _DATE_RE.search(text):
        score += 0.2
    if _AMOUNT_RE.search(text):
        score += 0.2
    if _BANK_WORDS_RE.search(text):
        score += 0.1
    return min(round(score, 2), 1.0)
