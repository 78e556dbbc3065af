import logging
import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Book Rental API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Rental rules
    late_fee_per_day: float = float(os.getenv("LATE_FEE_PER_DAY", "1"))
    # Conditional copy-count writes; off reproduces the plain read-check-write behavior
    optimistic_copy_updates: bool = _env_flag("OPTIMISTIC_COPY_UPDATES")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API server and the CLI."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
