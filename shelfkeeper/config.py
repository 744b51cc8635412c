import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    # The file itself is resolved per call in database.default_database_file()
    db_timeout: float = float(os.getenv("SHELFKEEPER_DB_TIMEOUT", "5"))

    # Circulation defaults
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Shelfkeeper")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "100"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "500"))


settings = Settings()
