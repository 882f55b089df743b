from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # LLM routing
    routing_strategy: str = "local_with_cloud_fallback"  # local_only | local_with_cloud_fallback | cloud_primary | cloud_only
    ollama_base_url: str = "http://localhost:11434"
    local_model: str = "llama3.1:8b"
    local_context_size: int = 16384
    local_max_attempts: int = 3

    # Cloud provider
    cloud_provider: str = "none"  # none | openai | openrouter | mistral | github_models | azure_openai | anthropic | gemini
    cloud_api_key: str = ""
    cloud_base_url: str = ""  # optional override of the provider's default endpoint
    cloud_model: str = ""
    cloud_max_output_tokens: int = 4096
    cloud_max_attempts: int = 2
    max_truncation_tokens: int = 8192
    llm_timeout_seconds: float = 300.0

    # LLM resilience
    llm_circuit_threshold: int = 5
    llm_circuit_cooldown_seconds: float = 60.0
    llm_backoff_base_seconds: float = 1.0
    llm_backoff_cap_seconds: float = 8.0

    # Tool calling
    enable_tool_calling: bool = True
    max_tool_calls_per_phase: int = 10

    # Browsing courtesy
    max_concurrent_fetches: int = 6
    max_concurrent_per_domain: int = 2
    min_domain_delay_seconds: float = 1.5
    max_domain_delay_seconds: float = 3.0
    circuit_breaker_threshold: int = 5
    circuit_reset_seconds: float = 300.0
    max_retries: int = 3
    backoff_base_seconds: float = 2.0
    fetch_timeout_seconds: float = 30.0
    user_agent: str = "deepcite/0.1 (research assistant; polite crawler)"

    # Search
    search_engines: str = "duckduckgo,bing,brave,yahoo,scholar"
    max_results_per_engine: int = 10

    # Retrieval / indexing
    semantic_weight: float = 0.5
    keyword_weight: float = 0.5
    default_top_k: int = 10
    chunk_size: int = 500
    chunk_overlap: int = 50
    embedding_backend: str = "hashed"  # hashed | sentence_transformers
    local_embed_model: str = "BAAI/bge-small-en-v1.5"
    local_embed_batch_size: int = 32
    embedding_dim: int = 384

    # Jobs
    max_iterations: int = 3
    target_source_count: int = 5
    max_parallel_acquire: int = 4
    sectional_reports: bool = False

    # Storage
    store_backend: str = "memory"  # memory | json
    data_dir: str = ".cache/deepcite"

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def search_engine_list(self) -> list[str]:
        return [e.strip().lower() for e in self.search_engines.split(",") if e.strip()]


settings = Settings()
