"""ISBN lookup against the Google Books volumes API.

Used only to pre-fill new book records; nothing in the lending flow
depends on it.
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import httpx

from church_library.core.config import settings
from church_library.core.errors import UpstreamFailure, ValidationFailure

logger = logging.getLogger(__name__)


@dataclass
class CatalogEntry:
    isbn: str
    title: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    page_count: Optional[int] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_isbn(raw: Optional[str]) -> str:
    if raw is None:
        return ""
    return re.sub(r"[^0-9Xx]", "", raw).upper()


def _publication_year(published_date: Optional[str]) -> Optional[int]:
    # Google returns "2004", "2004-05" or "2004-05-01"
    if not published_date:
        return None
    head = published_date.split("-")[0]
    return int(head) if head.isdigit() else None


class GoogleBooksCatalog:
    def __init__(self, client: Optional[httpx.Client] = None, base_url: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.google_books_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.google_books_api_key
        self._client = client or httpx.Client(timeout=timeout or settings.google_books_timeout)

    def close(self) -> None:
        self._client.close()

    def _parse_volume(self, volume: Dict[str, Any], isbn: str) -> CatalogEntry:
        info = volume.get("volumeInfo") or {}
        images = info.get("imageLinks") or {}
        return CatalogEntry(
            isbn=isbn,
            title=info.get("title"),
            authors=info.get("authors") or [],
            publisher=info.get("publisher"),
            publication_year=_publication_year(info.get("publishedDate")),
            page_count=info.get("pageCount"),
            description=info.get("description"),
            cover_image_url=images.get("thumbnail") or images.get("smallThumbnail"),
        )

    def lookup(self, isbn: str) -> Optional[CatalogEntry]:
        """Fetch metadata for ``isbn``; ``None`` when Google has no match."""
        clean_isbn = normalize_isbn(isbn)
        if not clean_isbn:
            raise ValidationFailure("ISBN is required for lookup")

        params = {"q": f"isbn:{clean_isbn}", "maxResults": 1}
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = self._client.get(f"{self.base_url}/volumes", params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            logger.warning(f"ISBN lookup timed out for {clean_isbn}: {exc}")
            raise UpstreamFailure("Catalog lookup timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(f"ISBN lookup failed for {clean_isbn}: HTTP {exc.response.status_code}")
            raise UpstreamFailure(f"Catalog lookup failed with status {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"ISBN lookup failed for {clean_isbn}: {exc}")
            raise UpstreamFailure("Catalog lookup failed") from exc

        if not isinstance(payload, dict):
            logger.warning(f"ISBN lookup for {clean_isbn} returned an unexpected body")
            raise UpstreamFailure("Catalog lookup returned an unexpected response")
        items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
        if not items:
            logger.info(f"No catalog entry for ISBN {clean_isbn}")
            return None
        return self._parse_volume(items[0], clean_isbn)
