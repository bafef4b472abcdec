from typing import List, Tuple
import tiktoken
from taxkb.models.chunk import TextChunk
from taxkb.config.settings import settings


def get_window_ranges(total_length: int, size: int, overlap: int) -> List[Tuple[int, int]]:
    """Computes (start, end) ranges of a sliding window stepping by size - overlap."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    if overlap < 0 or overlap >= size:
        raise ValueError(f"chunk overlap must satisfy 0 <= overlap < size, got overlap={overlap}, size={size}")

    ranges = []
    s = 0
    while s < total_length:
        e = min(s + size, total_length)
        ranges.append((s, e))
        if e >= total_length:
            break
        s = e - overlap
    return ranges


def chunk_text(text: str, size: int, overlap: int) -> List[str]:
    """
    Splits text into overlapping character windows.
    Window i+1 starts `overlap` characters before window i ends; the window that
    reaches the end of the text is always the last one.
    """
    return [text[s:e] for s, e in get_window_ranges(len(text), size, overlap)]


class Chunker:
    """
    Fixed-size character chunker used by ingestion.
    The chunk index assigned here is the citation ordinal shown to users,
    so it must match insertion order exactly.
    """

    def __init__(self, size: int | None = None, overlap: int | None = None, encoder=None):
        self.config = settings.chunking
        self.size = size if size is not None else self.config.chunk_size
        self.overlap = overlap if overlap is not None else self.config.chunk_overlap
        get_window_ranges(0, self.size, self.overlap)
        self._encoder = encoder

    def chunk(self, text: str) -> List[TextChunk]:
        return [
            TextChunk(index=i, text=piece, token_count=self.count_tokens(piece))
            for i, piece in enumerate(chunk_text(text, self.size, self.overlap))
        ]

    @property
    def encoder(self):
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.config.token_encoding)
        return self._encoder

    def count_tokens(self, text: str) -> int:
        # Regulation text can legitimately contain strings like "<|endoftext|>"
        return len(self.encoder.encode(text, disallowed_special=()))
