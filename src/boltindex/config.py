from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "boltindex"

    # Generic environment (debug/prod)
    APP_ENV: str = "local"  # or "production"
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Chunking (sizes in UTF-8 bytes)
    chunk_min_size: int = 512
    chunk_max_size: int = 4096
    chunk_overlap: int = 128

    # Memory limits (bytes)
    memory_target_bytes: int = 512 * 1024 * 1024
    memory_ceiling_bytes: int = 1024 * 1024 * 1024
    memory_sample_interval: float = 0.1

    # Embeddings
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dimension: int = 384
    structural_weight: float = 0.4
    semantic_weight: float = 0.6

    # Generative collaborator
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0
    semantic_max_attempts: int = 3
    semantic_timeout_seconds: float = 30.0
    semantic_backoff_seconds: float = 0.5
    max_concurrent_generations: int = 4
    max_prompt_chars: int = 6000

    # Pipeline
    batch_size: int = 16
    max_batch_size: int = 128
    enable_combined_index: bool = True
    enable_combined_graph: bool = True
    checkpoint_path: str = ".boltindex/checkpoints.jsonl"
    # Re-hash completed inputs on resume and re-index the ones that changed
    reindex_changed: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
