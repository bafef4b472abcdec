import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from taxkb.config.settings import settings
from taxkb.core.chunk.chunker import Chunker
from taxkb.core.embed.embedder import EmbeddingClient
from taxkb.core.generate.llm_client import LLMClient
from taxkb.core.generate.synthesizer import AnswerSynthesizer
from taxkb.core.parse.pdf_extractor import PDFTextExtractor
from taxkb.core.pipeline.ingestion import IngestJobController, IngestWorkerPool
from taxkb.core.pipeline.retrieval import AdvisoryChat, QuestionAnswerer
from taxkb.core.retrieve.retriever import build_retriever
from taxkb.storage.database import Database
from taxkb.storage.file_store import LocalFileStore
from taxkb.storage.sql_store import SQLChunkStore, SQLDocumentStore, SQLJobStore, SQLSessionLog

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_vector_index():
    """Returns the Qdrant index, or None when disabled or unreachable (brute force takes over)."""
    if not settings.qdrant.enabled:
        logger.info("Qdrant disabled in config; using brute-force retrieval only")
        return None
    from taxkb.storage.qdrant_store import QdrantVectorIndex
    try:
        return QdrantVectorIndex()
    except Exception:
        logger.exception("Could not initialise Qdrant index; continuing without it")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup: Initialize singletons ---
    logger.info("Initializing knowledge base storage and pipelines...")

    # 1. Storage
    db = Database()
    db.init_db()
    document_store = SQLDocumentStore(db)
    job_store = SQLJobStore(db)
    chunk_store = SQLChunkStore(db)
    session_log = SQLSessionLog(db)
    file_store = LocalFileStore()
    vector_index = build_vector_index()

    # Runs from a previous process cannot finish; free their documents for re-ingestion
    interrupted = job_store.fail_interrupted("Ingestion interrupted by a restart. Start a new ingestion to retry.")
    if interrupted:
        logger.warning(f"Marked {interrupted} interrupted ingest jobs as failed")

    # 2. Shared clients
    embedder = EmbeddingClient()
    llm_client = LLMClient()

    # 3. Pipelines
    worker_pool = IngestWorkerPool()
    ingest_controller = IngestJobController(
        documents=document_store,
        jobs=job_store,
        chunks=chunk_store,
        index=vector_index,
        extractor=PDFTextExtractor(),
        chunker=Chunker(),
        embedder=embedder,
        worker_pool=worker_pool
    )
    question_answerer = QuestionAnswerer(
        embedder=embedder,
        retriever=build_retriever(vector_index, chunk_store),
        synthesizer=AnswerSynthesizer(llm_client),
        session_log=session_log
    )

    # 4. Store in app.state for dependency injection
    app.state.document_store = document_store
    app.state.job_store = job_store
    app.state.session_log = session_log
    app.state.file_store = file_store
    app.state.vector_index = vector_index
    app.state.ingest_controller = ingest_controller
    app.state.question_answerer = question_answerer
    app.state.advisory_chat = AdvisoryChat(llm_client)

    logger.info("Initialization complete. All systems ready.")

    yield

    # --- Shutdown: let running ingest jobs reach a terminal state ---
    logger.info("Shutting down knowledge base backend...")
    worker_pool.shutdown(wait=True)
    db.engine.dispose()

# Create FastAPI instance
app = FastAPI(
    title="TaxKB API",
    description="Tax regulation knowledge base with citation-grounded answers",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/health", tags=["System"])
def health_check(request: Request):
    index = getattr(request.app.state, "vector_index", None)
    return {"status": "ok", "vector_index": bool(index is not None and index.is_available())}

from taxkb.api.routes import advisor, documents, ingest, query

app.include_router(documents.router, prefix="/api", tags=["Documents"])
app.include_router(ingest.router, prefix="/api", tags=["Ingestion"])
app.include_router(query.router, prefix="/api", tags=["Retrieval"])
app.include_router(advisor.router, prefix="/api", tags=["Advisor"])
