import logging
import os
from dataclasses import dataclass, field
from typing import Optional


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


@dataclass
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("LIBRARY_DB", "sqlite:///./church_library.db"))
    log_level: str = field(default_factory=lambda: os.getenv("LIBRARY_LOG", "INFO"))

    # lending rules
    loan_days: int = field(default_factory=lambda: int(os.getenv("LIBRARY_LOAN_DAYS", "14")))
    renewal_days: int = field(default_factory=lambda: int(os.getenv("LIBRARY_RENEWAL_DAYS", "15")))
    max_renewals: Optional[int] = field(default_factory=lambda: _optional_int("LIBRARY_MAX_RENEWALS"))
    reservation_days: int = field(default_factory=lambda: int(os.getenv("LIBRARY_RESERVATION_DAYS", "7")))

    # ISBN lookup
    google_books_url: str = field(default_factory=lambda: os.getenv("GOOGLE_BOOKS_URL", "https://www.googleapis.com/books/v1"))
    google_books_api_key: Optional[str] = field(default_factory=lambda: os.getenv("GOOGLE_BOOKS_API_KEY") or None)
    google_books_timeout: float = field(default_factory=lambda: float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10")))


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=level or settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s - %(message)s")
