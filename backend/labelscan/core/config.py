from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central settings object.
    Environment variables win; locally you can use backend/.env.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # API keys
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = ""
    SERPAPI_API_KEY: str = ""

    # Gemini transport
    GEMINI_MAX_RETRIES: int = 5
    GEMINI_MAX_BACKOFF_SECONDS: float = 20.0
    GEMINI_TIMEOUT_SECONDS: float = 60.0

    # Acquisition loop
    MAX_CYCLES: int = 5
    TARGET_SOURCES: int = 5
    CANDIDATE_BUFFER: int = 2
    QUERIES_PER_CYCLE: int = 3
    VERIFY_BATCH_SIZE: int = 10

    # Outbound HTTP
    MAX_CONCURRENT_REQUESTS: int = 8
    SCRAPE_TIMEOUT_SECONDS: float = 10.0
    SEARCH_TIMEOUT_SECONDS: float = 10.0
    MAX_BODY_CHARS: int = 15000
    MAX_DISCOVERED_URLS: int = 60

    LOG_LEVEL: str = "INFO"

    # Versioning
    APP_VERSION: str = "0.1.0"
    BUILD_ID: str = "dev"


# ✅ MUST EXIST: other modules import this
settings = Settings()
