"""PDF text extraction (pdfminer) and OCR (Tesseract over pypdfium2).

pdfminer output is scored for quality before it is trusted. Text with
``(cid:NN)`` tokens (broken font maps), too few alphabetic characters or
too many non-ASCII characters gets a low confidence so the parse stage
falls back to OCR.

OCR needs the optional ``ocr`` extra (pytesseract, pypdfium2 and a
``tesseract`` binary); the modules are loaded on first use. All blocking
work runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass, field

from pdfminer.high_level import extract_text
from pdfminer.pdfpage import PDFPage
from pdfminer.pdfparser import PDFSyntaxError

from fibra.core.errors import ParseError
from fibra.core.logging import get_logger
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents.models import TextExtraction
from fibra.execution.context import JobContext

logger = get_logger(__name__)


def _require_pdfium():
    try:
        import pypdfium2 as pdfium
    except ModuleNotFoundError as e:
        raise RuntimeError("pypdfium2 is required for PDF OCR but is not installed") from e
    return pdfium


def _require_tesseract():
    try:
        import pytesseract
    except ModuleNotFoundError as e:
        raise RuntimeError("pytesseract is required for OCR but is not installed") from e
    return pytesseract


@dataclass(frozen=True)
class TextQuality:
    length: int
    alpha_ratio: float
    non_ascii_ratio: float
    has_cid_tokens: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def acceptable(self) -> bool:
        return not self.reasons


def assess_text(text: str, min_alpha: float = 0.20, max_non_ascii: float = 0.70) -> TextQuality:
    """Heuristic quality of a pdfminer text layer."""
    stripped = text.strip()
    n = len(stripped)
    if n == 0:
        return TextQuality(0, 0.0, 0.0, False, ["empty"])

    has_cid = "(cid:" in stripped
    alpha = sum(ch.isalpha() for ch in stripped) / n
    non_ascii = sum(ord(ch) > 126 for ch in stripped) / n
    reasons = []
    if has_cid:
        reasons.append("cid_tokens")
    if alpha < min_alpha:
        reasons.append(f"alpha<{min_alpha}")
    if non_ascii > max_non_ascii:
        reasons.append(f"non_ascii>{max_non_ascii}")
    return TextQuality(n, round(alpha, 4), round(non_ascii, 4), has_cid, reasons)


class PdfMinerTextExtractor:
    def __init__(self, settings: FibraSettings | None = None):
        self.settings = settings or get_settings()

    def _extract_sync(self, content: bytes) -> TextExtraction:
        try:
            pages = sum(1 for _ in PDFPage.get_pages(io.BytesIO(content)))
            text = extract_text(io.BytesIO(content))
        except PDFSyntaxError as e:
            raise ParseError(f"Malformed PDF: {e}", cause=e) from e

        quality = assess_text(
            text,
            min_alpha=self.settings.pdf_min_alpha_ratio,
            max_non_ascii=self.settings.pdf_max_non_ascii_ratio,
        )
        logger.debug(
            "pdf.text_quality",
            chars=quality.length,
            alpha=quality.alpha_ratio,
            non_ascii=quality.non_ascii_ratio,
            cid=quality.has_cid_tokens,
            reasons=",".join(quality.reasons) or "none",
        )
        if quality.acceptable:
            confidence = 1.0
        else:
            # Below the OCR threshold so the parser retries with OCR.
            confidence = min(quality.alpha_ratio, self.settings.ocr_confidence_threshold / 2)
        return TextExtraction(
            text=text.strip(),
            pages=pages,
            confidence=round(confidence, 4),
            is_image_based=pages > 0 and quality.length == 0,
        )

    async def extract(self, content: bytes, ctx: JobContext) -> TextExtraction:
        ctx.check_cancelled()
        return await asyncio.to_thread(self._extract_sync, content)


class TesseractOcrProvider:
    def __init__(self, settings: FibraSettings | None = None):
        self.settings = settings or get_settings()

    def _ocr_page(self, pytesseract, image) -> tuple[str, list[float]]:
        data = pytesseract.image_to_data(
            image,
            lang=self.settings.ocr_language,
            config=f"--psm {self.settings.ocr_psm}",
            output_type=pytesseract.Output.DICT,
        )
        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences = []
        for i, word in enumerate(data["text"]):
            conf = float(data["conf"][i])
            if not word.strip() or conf < 0:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            confidences.append(conf)
        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        return text, confidences

    def _recognize_sync(self, content: bytes) -> TextExtraction:
        pdfium = _require_pdfium()
        pytesseract = _require_tesseract()

        pdf = pdfium.PdfDocument(content)
        try:
            texts = []
            confidences: list[float] = []
            for i in range(len(pdf)):
                image = pdf[i].render(scale=self.settings.ocr_render_scale).to_pil()
                page_text, page_conf = self._ocr_page(pytesseract, image)
                confidences.extend(page_conf)
                if page_text.strip():
                    texts.append(page_text.strip())
            pages = len(pdf)
        finally:
            pdf.close()

        text = "\n\n".join(texts)
        confidence = sum(confidences) / len(confidences) / 100 if confidences else 0.0
        logger.info("ocr.completed", pages=pages, chars=len(text), confidence=round(confidence, 3))
        return TextExtraction(text=text, pages=pages, confidence=round(confidence, 4), is_image_based=True)

    async def recognize(self, content: bytes, ctx: JobContext) -> TextExtraction:
        ctx.check_cancelled()
        return await asyncio.to_thread(self._recognize_sync, content)


__all__ = ["PdfMinerTextExtractor", "TesseractOcrProvider", "TextQuality", "assess_text"]
