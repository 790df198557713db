"""PDF-to-Markdown OCR: Docling for digital PDFs, a vision model for scanned ones."""

import base64
import hashlib
import logging
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
import ollama
from docling.document_converter import DocumentConverter

from ecoextract.agents.models import OCRPayload, StageResult
from ecoextract.core.config import PipelineConfig

logger = logging.getLogger(__name__)

_SCANNED_THRESHOLD = 100  # chars per page; below this, assume scanned

PAGE_MARKER = "--- PAGE {n} ---"


# ── Helpers ──────────────────────────────────────────────────────────


def compute_file_hash(path: str | Path) -> str:
    """SHA-256 hash of the file contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def is_scanned_pdf(pdf_path: str | Path) -> bool:
    """Heuristic: if extractable text is sparse relative to page count, it's scanned."""
    doc = fitz.open(str(pdf_path))
    try:
        num_pages = len(doc)
        if num_pages == 0:
            return True
        total_chars = sum(len(page.get_text()) for page in doc)
        return total_chars / num_pages < _SCANNED_THRESHOLD
    finally:
        doc.close()


def join_pages(pages: list[str]) -> str:
    """Concatenate page texts behind `--- PAGE N ---` markers."""
    return "\n\n".join(
        f"{PAGE_MARKER.format(n=i)}\n{text.strip()}" for i, text in enumerate(pages, 1)
    )


# ── Executor ─────────────────────────────────────────────────────────


class OCRExecutor:
    """Routes a PDF between Docling and the vision model, page by page."""

    def __init__(self, config: PipelineConfig, client: Optional[ollama.Client] = None):
        self.model = config.ocr_model
        self.client = client or ollama.Client(host=config.ollama_host)

    def __call__(self, pdf_path: str | Path) -> StageResult:
        try:
            payload = self.run(pdf_path)
        except Exception as exc:
            logger.error("OCR failed for %s: %s", Path(pdf_path).name, exc)
            return StageResult.failed(f"OCR failed: {exc}")
        return StageResult.completed(payload)

    def run(self, pdf_path: str | Path) -> OCRPayload:
        pdf_path = Path(pdf_path)
        if is_scanned_pdf(pdf_path):
            logger.info("%s: scanned PDF detected, using %s", pdf_path.name, self.model)
            return OCRPayload(content=self.parse_with_vision(pdf_path), provider=self.model)

        logger.info("%s: digital PDF, using Docling", pdf_path.name)
        content = self.parse_with_docling(pdf_path)
        if len(content.strip()) < _SCANNED_THRESHOLD:
            logger.warning(
                "%s: Docling output sparse (%d chars), falling back to %s",
                pdf_path.name,
                len(content.strip()),
                self.model,
            )
            return OCRPayload(
                content=self.parse_with_vision(pdf_path),
                provider=self.model,
                log=f"docling output sparse ({len(content.strip())} chars)",
            )
        return OCRPayload(content=content, provider="docling")

    def parse_with_docling(self, pdf_path: Path) -> str:
        """Parse a digital PDF to Markdown using Docling, one block per page."""
        converter = DocumentConverter()
        document = converter.convert(str(pdf_path)).document
        num_pages = document.num_pages()
        if not num_pages:
            return document.export_to_markdown()
        return join_pages(
            [document.export_to_markdown(page_no=n) for n in range(1, num_pages + 1)]
        )

    def parse_with_vision(self, pdf_path: Path) -> str:
        """Send page images to the vision model via Ollama."""
        doc = fitz.open(str(pdf_path))
        pages: list[str] = []
        try:
            for page_num in range(len(doc)):
                # Render page to PNG at 200 DPI
                pix = doc[page_num].get_pixmap(dpi=200)
                img_b64 = base64.b64encode(pix.tobytes("png")).decode()

                response = self.client.chat(
                    model=self.model,
                    messages=[
                        {
                            "role": "user",
                            "content": (
                                "Extract all text from this page. Preserve tables, "
                                "headings, and formatting. Output as Markdown."
                            ),
                            "images": [img_b64],
                        }
                    ],
                    options={"temperature": 0},
                )
                pages.append(response.message.content or "")
                logger.info("%s parsed page %d/%d", self.model, page_num + 1, len(doc))
        finally:
            doc.close()
        return join_pages(pages)
