from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # System
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    DATA_DIR: Path = Path("./data")
    DATABASE_FILE: str = "feeds.db"

    # Scheduler
    SCHEDULER_TICK_MINUTES: int = 5
    SCHEDULER_STARTUP_DELAY_SECONDS: float = 5.0
    BACKOFF_BASE_MINUTES: int = 5
    BACKOFF_MAX_MINUTES: int = 240  # 4 hours
    FAILURES_BEFORE_ERROR: int = 3

    # Fetcher
    DEFAULT_FETCH_INTERVAL_MINUTES: int = 60
    FETCH_TIMEOUT_SECONDS: float = 10.0
    FETCH_MAX_ATTEMPTS: int = 3
    FETCH_RETRY_BASE_SECONDS: float = 1.0
    FETCH_USER_AGENT: str = "FeedPulse/1.0 (+https://github.com/feedpulse)"
    EXCERPT_LENGTH: int = 200
    SEED_DEFAULT_FEEDS: bool = False

    # Analysis (LLM)
    ANALYSIS_ENABLED: bool = True
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.1"
    LLM_REQUEST_TIMEOUT_SECONDS: float = 10.0
    LLM_BUDGET_SECONDS: float = 20.0  # Retries included; must stay below ANALYSIS_TIMEOUT_SECONDS
    ANALYSIS_TIMEOUT_SECONDS: float = 30.0

    # Embeddings
    EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"
    EMBEDDING_TIMEOUT_SECONDS: float = 10.0
    EMBEDDING_MAX_CHARS: int = 8000

    # Enrichment
    ENRICHMENT_MAX_CONCURRENT: int = 4  # Limit concurrent AI calls

    # Connections
    SIMILARITY_THRESHOLD: float = 0.7
    MIN_CONNECTION_STRENGTH: float = 0.3  # Non-semantic connections only

    # Notifications
    NOTIFICATION_WINDOW_MINUTES: int = 5

    @model_validator(mode="after")
    def check_analysis_budget(self) -> "Settings":
        if self.LLM_BUDGET_SECONDS >= self.ANALYSIS_TIMEOUT_SECONDS:
            raise ValueError("LLM_BUDGET_SECONDS must be lower than ANALYSIS_TIMEOUT_SECONDS")
        return self

    @property
    def database_path(self) -> Path:
        return self.DATA_DIR / self.DATABASE_FILE

    def ensure_dirs(self):
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)

settings = Settings()
