"""Extraction of inline [Title §N] citation markers from generated answers.

Matching is best-effort: models occasionally vary whitespace or casing in the
title, so a marker is first matched exactly and then with a normalised title.
Markers that match no retrieved chunk are kept, flagged unresolved.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from taxkb.models.chunk import ScoredChunk
from taxkb.models.query import Citation

logger = logging.getLogger(__name__)

CITATION_PATTERN = re.compile(r"\[([^\[\]\n]+?) §(\d+)\]")


def _normalise(title: str) -> str:
    return " ".join(title.split()).casefold()


def find_markers(text: str) -> List[Tuple[str, int]]:
    """Returns distinct (title, chunk_index) pairs in first-occurrence order."""
    seen = set()
    markers = []
    for match in CITATION_PATTERN.finditer(text or ""):
        key = (match.group(1).strip(), int(match.group(2)))
        if key not in seen:
            seen.add(key)
            markers.append(key)
    return markers


def extract_citations(text: str, chunks: List[ScoredChunk]) -> List[Citation]:
    exact: Dict[Tuple[str, int], ScoredChunk] = {}
    loose: Dict[Tuple[str, int], ScoredChunk] = {}
    for chunk in chunks:
        exact.setdefault((chunk.doc_title, chunk.chunk_index), chunk)
        loose.setdefault((_normalise(chunk.doc_title), chunk.chunk_index), chunk)

    citations = []
    for title, index in find_markers(text):
        source: Optional[ScoredChunk] = exact.get((title, index)) or loose.get((_normalise(title), index))
        if source is None:
            logger.warning(f"Citation [{title} §{index}] does not match any retrieved chunk")
            citations.append(Citation(title=title, ref=f"§{index}", chunk_index=index))
            continue

        citations.append(Citation(
            title=title,
            ref=f"§{index}",
            chunk_index=index,
            resolved=True,
            document_id=source.document_id,
            text=source.text,
            score=source.score
        ))

    return citations
