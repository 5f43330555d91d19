from pathlib import Path
from typing import List, Literal, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are a senior developer assistant embedded in the user's editor. "
    "Answer strictly from the provided project context when it is relevant, "
    "cite the source path of any context you rely on, and say so plainly "
    "when the context does not contain the answer."
)


class Settings(BaseSettings):
    # Index
    index_path: str = str(Path.home() / ".workspace_rag" / "index.db")
    scorer: Literal["lexical", "embedding"] = "lexical"

    # Sources
    source_roots: List[str] = []
    include_patterns: List[str] = []
    excluded_dirs: List[str] = [
        "target",
        "build",
        ".github",
        ".git",
        ".idea",
        ".gradle",
        "node_modules",
        "__pycache__",
        ".venv",
    ]
    max_file_size_bytes: int = 1024 * 1024
    max_indexed_files: int = 5000

    # Chunking (characters)
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Ingestion pipeline
    worker_count: int = 2
    queue_capacity: int = 1000
    debounce_seconds: float = 0.5

    # Retrieval
    search_top_k: int = 50
    min_relevance: float = 0.0
    context_budget_chars: int = 6000

    # Prompt assembly
    prompt_budget_chars: int = 16000
    history_turns: int = 10
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # LLM service (Ollama)
    llm_base_url: str = "http://localhost:11434"
    chat_model: str = "llama3.1"
    temperature: float = 0.3
    top_k: int = 40
    top_p: float = 0.9
    max_output_tokens: int = 1024
    idle_timeout_seconds: float = 60.0
    retry_backoff_seconds: float = 1.0

    # Dense embeddings (only used when scorer == "embedding")
    embedding_base_url: str = "http://localhost:11434"
    embedding_protocol: Literal["ollama", "openai"] = "ollama"
    embedding_model: str = "nomic-embed-text"
    embedding_api_key: Optional[SecretStr] = None

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RAG_",
        extra="ignore",
    )

settings = Settings()
