import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    db_file: Optional[str] = os.getenv("LENDING_DB_FILE")
    db_busy_timeout_seconds: float = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"))

    # Lending policy
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "21"))
    renewal_days: int = int(os.getenv("RENEWAL_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "1.0"))
    default_max_books: int = int(os.getenv("DEFAULT_MAX_BOOKS", "5"))
    default_session_seconds: int = int(os.getenv("DEFAULT_SESSION_SECONDS", "300"))

    # Concurrency
    lock_timeout_seconds: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Engine")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")


settings = Settings()
