import io
import logging
import os
from collections import Counter
from typing import List, Dict, Any, Optional
from urllib.parse import urlparse

import fitz  # PyMuPDF
import httpx
import pdfplumber
import pandas as pd

from taxkb.config.settings import settings
from taxkb.core.errors import ExtractionError

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"

class PDFTextExtractor:
    """
    Pulls plain text out of a PDF, page by page, in page order.
    Pass 1 (PyMuPDF): text blocks per page, with running headers/footers suppressed.
    Pass 2 (pdfplumber): tables rendered as markdown in place of the blocks they cover.
    """

    def __init__(self,
                 min_text_chars: Optional[int] = None,
                 header_footer_threshold: Optional[int] = None,
                 extract_tables: Optional[bool] = None,
                 fetch_timeout: Optional[float] = None):
        config = settings.ingestion
        self.min_text_chars = min_text_chars if min_text_chars is not None else config.min_text_chars
        self.header_footer_threshold = header_footer_threshold or config.header_footer_threshold
        self.extract_tables = config.extract_tables if extract_tables is None else extract_tables
        self.fetch_timeout = fetch_timeout or config.fetch_timeout_seconds

    def extract(self, location: str) -> str:
        """
        Main entry point: fetches the resource and returns its full text.
        Raises ExtractionError when the text is too short to be searchable.
        """
        pdf_bytes = self._fetch(location)
        logger.info(f"PDF downloaded, size: {len(pdf_bytes)} bytes")

        pages = self.extract_pages(pdf_bytes)
        text = PAGE_SEPARATOR.join(p for p in pages if p)

        if len(text.strip()) < self.min_text_chars:
            raise ExtractionError(
                f"PDF appears to be empty or unreadable ({len(text.strip())} characters extracted). "
                "Ensure the PDF contains searchable text, not just images."
            )

        logger.info(f"Extracted {len(text)} characters from {len(pages)} pages")
        return text

    def extract_pages(self, pdf_bytes: bytes) -> List[str]:
        try:
            raw_blocks, page_count = self._extract_raw_blocks(pdf_bytes)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"PDF extraction failed: {e}") from e

        suppress_hashes = self._identify_repetitive_blocks(raw_blocks, page_count)
        tables_per_page = self._extract_tables(pdf_bytes) if self.extract_tables else {}

        return [
            self._merge_page(page_num,
                             [b for b in raw_blocks if b["page_number"] == page_num],
                             tables_per_page.get(page_num, []),
                             suppress_hashes)
            for page_num in range(1, page_count + 1)
        ]

    def _fetch(self, location: str) -> bytes:
        parsed = urlparse(location)

        if parsed.scheme in ("http", "https"):
            logger.info(f"Fetching PDF from: {location}")
            try:
                with httpx.Client(timeout=self.fetch_timeout, follow_redirects=True) as client:
                    response = client.get(location)
                    response.raise_for_status()
                    return response.content
            except httpx.HTTPStatusError as e:
                raise ExtractionError(f"Failed to fetch PDF: {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise ExtractionError(f"Failed to fetch PDF: {e}") from e

        path = parsed.path if parsed.scheme == "file" else location
        if not os.path.exists(path):
            raise ExtractionError(f"Failed to fetch PDF: {location} does not exist")
        with open(path, "rb") as f:
            return f.read()

    def _extract_raw_blocks(self, pdf_bytes: bytes):
        """Extracts all text blocks with their page number and bounding box."""
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Unsupported or corrupt PDF: {e}") from e

        blocks = []
        try:
            page_count = doc.page_count
            for page_num, page in enumerate(doc):
                page_dict = page.get_text("dict")
                for b in page_dict["blocks"]:
                    if b["type"] != 0:  # Image block
                        continue
                    lines = []
                    for line in b["lines"]:
                        lines.append("".join(span["text"] for span in line["spans"]))
                    block_text = "\n".join(lines).strip()
                    if block_text:
                        blocks.append({
                            "text": block_text,
                            "page_number": page_num + 1,
                            "bbox": list(b["bbox"]),  # [x0, y0, x1, y1]
                        })
        finally:
            doc.close()

        return blocks, page_count

    def _identify_repetitive_blocks(self, blocks: List[Dict[str, Any]], page_count: int) -> set:
        """
        Detects text that appears at the same Y-position on multiple pages.
        Used to filter out running headers and footers.
        """
        if page_count < self.header_footer_threshold:
            return set()

        pos_text_counts = Counter()
        for b in blocks:
            pos_text_counts[self._pos_hash(b)] += 1

        return {pos_hash for pos_hash, count in pos_text_counts.items()
                if count >= self.header_footer_threshold}

    def _extract_tables(self, pdf_bytes: bytes) -> Dict[int, List[Dict[str, Any]]]:
        """
        Uses pdfplumber to detect tables and render them as markdown.
        Returns a dict mapping page_number -> list of table dicts.
        """
        tables_per_page = {}
        try:
            with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
                for i, page in enumerate(pdf.pages):
                    page_tables = []
                    for table in page.find_tables():
                        table_data = table.extract()
                        if not table_data or len(table_data) < 2:
                            continue
                        rows = [[cell or "" for cell in row] for row in table_data]
                        df = pd.DataFrame(rows[1:], columns=rows[0])
                        page_tables.append({
                            "text": df.to_markdown(index=False),
                            "bbox": list(table.bbox),  # [x0, top, x1, bottom]
                        })
                    tables_per_page[i + 1] = page_tables
        except Exception as e:
            # Tables are an enrichment; the PyMuPDF text is still usable
            logger.warning(f"Table extraction failed, continuing with plain text: {e}")
            return {}
        return tables_per_page

    def _merge_page(self,
                    page_num: int,
                    page_blocks: List[Dict[str, Any]],
                    page_tables: List[Dict[str, Any]],
                    suppress_hashes: set) -> str:
        items = [(t["bbox"][1], t["text"]) for t in page_tables]

        for b in page_blocks:
            if self._pos_hash(b) in suppress_hashes:
                continue
            if any(self._is_overlap(b["bbox"], t["bbox"]) for t in page_tables):
                continue
            items.append((b["bbox"][1], b["text"]))

        # Stable sort keeps PyMuPDF reading order for blocks on the same line
        items.sort(key=lambda x: x[0])
        return "\n".join(text for _, text in items)

    @staticmethod
    def _pos_hash(block: Dict[str, Any]):
        return (round(block["bbox"][1], 0), block["text"].strip())

    @staticmethod
    def _is_overlap(bbox1: List[float], bbox2: List[float]) -> bool:
        """bbox format: [x0, y0, x1, y1] for both PyMuPDF and pdfplumber."""
        return not (bbox1[2] < bbox2[0] or
                    bbox1[0] > bbox2[2] or
                    bbox1[3] < bbox2[1] or
                    bbox1[1] > bbox2[3])
