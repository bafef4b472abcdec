from concurrent.futures import Future
from unittest.mock import MagicMock

import fitz
import pytest

from taxkb.core.chunk.chunker import Chunker
from taxkb.storage.database import Database
from taxkb.storage.sql_store import SQLChunkStore, SQLDocumentStore, SQLJobStore, SQLSessionLog


class WhitespaceEncoder:
    """Stands in for a tiktoken encoding so tests never download BPE files."""

    def encode(self, text, disallowed_special=()):
        return text.split()


class InlineWorkerPool:
    """Runs submitted ingest jobs synchronously on the calling thread."""

    def submit(self, fn, *args):
        future = Future()
        future.set_result(fn(*args))
        return future

    def shutdown(self, wait=True):
        pass


class QueuedWorkerPool:
    """Holds submitted jobs until `drain`, then runs them one after another like a single worker."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args):
        future = Future()
        self.pending.append((future, fn, args))
        return future

    def drain(self):
        while self.pending:
            future, fn, args = self.pending.pop(0)
            future.set_result(fn(*args))

    def shutdown(self, wait=True):
        self.drain()


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.engine.dispose()


@pytest.fixture
def stores(db):
    return {
        "documents": SQLDocumentStore(db),
        "jobs": SQLJobStore(db),
        "chunks": SQLChunkStore(db),
        "sessions": SQLSessionLog(db),
    }


@pytest.fixture
def chunker():
    return Chunker(encoder=WhitespaceEncoder())


@pytest.fixture
def inline_pool():
    return InlineWorkerPool()


@pytest.fixture
def queued_pool():
    return QueuedWorkerPool()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_embedder():
    """Embeds every text as the same unit vector, one call per batch."""
    embedder = MagicMock()
    embedder.embed_batch.side_effect = lambda texts: [[1.0, 0.0, 0.0] for _ in texts]
    embedder.embed_query.return_value = [1.0, 0.0, 0.0]
    return embedder


@pytest.fixture
def make_pdf(tmp_path):
    """Writes a PDF with one page per list entry; each entry is a list of (y, text) lines."""

    def _make(pages, name="sample.pdf"):
        doc = fitz.open()
        for lines in pages:
            page = doc.new_page()
            for y, text in lines:
                page.insert_text((50, y), text, fontsize=11)
        path = tmp_path / name
        doc.save(str(path))
        doc.close()
        return str(path)

    return _make
