"""Settings. .env overrides some of these values."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./shelfmatch.db"

    # Catalog (FoodGraph-compatible search API)
    catalog_base_url: str = "https://api.foodgraph.com"
    catalog_email: str = ""
    catalog_password: str = ""
    catalog_updated_from: str = "2025-07-01T00:00:00Z"
    catalog_max_results: int = 100
    catalog_token_ttl_seconds: int = 23 * 60 * 60
    search_timeout_seconds: float = 30.0
    search_max_attempts: int = 2
    search_retry_delay_seconds: float = 0.5

    # Vision LLM via OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "google/gemini-2.5-flash"
    classify_timeout_seconds: float = 45.0
    classify_concurrency: int = 4

    # Pre-filter
    prefilter_threshold: float = 0.85
    prefilter_brand_weight: float = 0.35
    prefilter_size_weight: float = 0.35
    prefilter_retailer_weight: float = 0.30

    # AI filter / consolidation
    ai_filter_confidence_threshold: float = 0.70
    promote_lone_almost_same: bool = True

    # Batch
    default_concurrency: int = 3
    image_timeout_seconds: float = 30.0

    log_level: str = "INFO"

    # Paths
    data_dir: str = "data"
    output_dir: str = "outputs"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
