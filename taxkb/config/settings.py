from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel
import yaml
import os

class ChunkingConfig(BaseModel):
    chunk_size: int = 900
    chunk_overlap: int = 150
    token_encoding: str = "cl100k_base"

class EmbeddingConfig(BaseModel):
    base_url: str = "https://ai.gateway.lovable.dev/v1"
    model_name: str = "text-embedding-3-small"
    vector_dim: int = 1536
    timeout_seconds: float = 60.0

class LLMConfig(BaseModel):
    base_url: str = "https://ai.gateway.lovable.dev/v1"
    model: str = "google/gemini-2.5-flash"
    fallback_model: str = ""
    max_tokens: int = 1024
    temperature: float = 0.1
    timeout_seconds: float = 60.0
    max_retries: int = 3

class RetrievalConfig(BaseModel):
    match_threshold: float = 0.5
    match_count: int = 8
    fallback_candidate_limit: int | None = 100

class IngestionConfig(BaseModel):
    batch_size: int = 10
    timeout_seconds: float = 240.0
    min_text_chars: int = 50
    fetch_timeout_seconds: float = 30.0
    header_footer_threshold: int = 3
    extract_tables: bool = True
    max_workers: int = 2

class QdrantConfig(BaseModel):
    enabled: bool = True
    mode: str = "local"              # "local" | "memory" | "cloud"
    local_path: str = "./data/qdrant_store"
    cloud_url: str = ""
    collection_name: str = "kb_chunks"
    hnsw_m: int = 16
    hnsw_ef_construct: int = 100
    hnsw_ef: int = 64

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///./data/taxkb.db"
    echo: bool = False

class StorageConfig(BaseModel):
    uploads_path: str = "./data/uploads"

class AppSettings(BaseSettings):
    chunking: ChunkingConfig = ChunkingConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    llm: LLMConfig = LLMConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    ingestion: IngestionConfig = IngestionConfig()
    qdrant: QdrantConfig = QdrantConfig()
    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    llm_api_key: str = ""
    embedding_api_key: str = ""
    qdrant_api_key: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

def load_settings(config_path: str = "taxkb/config/config.yaml") -> AppSettings:
    """Loads settings from config.yaml and applies env overrides."""

    # Try multiple paths for convenience during testing vs running
    paths_to_try = [
        os.environ.get("TAXKB_CONFIG", ""),
        config_path,
        "config.yaml",
        os.path.join(os.path.dirname(__file__), "config.yaml")
    ]

    yaml_data = {}
    for path in paths_to_try:
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
            break

    # Manually map yaml sections to our sub-models
    return AppSettings(
        chunking=ChunkingConfig(**yaml_data.get("chunking", {})),
        embedding=EmbeddingConfig(**yaml_data.get("embedding", {})),
        llm=LLMConfig(**yaml_data.get("llm", {})),
        retrieval=RetrievalConfig(**yaml_data.get("retrieval", {})),
        ingestion=IngestionConfig(**yaml_data.get("ingestion", {})),
        qdrant=QdrantConfig(**yaml_data.get("qdrant", {})),
        database=DatabaseConfig(**yaml_data.get("database", {})),
        storage=StorageConfig(**yaml_data.get("storage", {}))
    )

# Global settings instance
settings = load_settings()
