"""Read-only access to the product catalog.

The catalog is a JSON array of ``{title, price, image?, category?}``
records published next to the storefront. It is fetched fresh on every
call: no caching, since the file is small and edited by hand.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

import httpx
from django.conf import settings
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from .domain import CatalogError, Product, slugify
from .schemas import ProductRecord

logger = logging.getLogger("storefront.catalog")

DEFAULT_CATEGORY = "Overig"

_records = TypeAdapter(List[ProductRecord])


class CatalogAccessor:
    """Fetch and query the product catalog.

    Args:
        source: ``http(s)://`` URL or filesystem path of the catalog JSON.
            Defaults to ``settings.CATALOG_SOURCE``.
        timeout: Timeout in seconds for URL sources.
    """

    def __init__(self, source: str | None = None, timeout: float | None = None):
        self.source = source or settings.CATALOG_SOURCE
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _read(self) -> str:
        if self.source.startswith(("http://", "https://")):
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(self.source, headers={"Cache-Control": "no-store"})
            resp.raise_for_status()
            return resp.text
        return Path(self.source).read_text(encoding="utf-8")

    def list(self) -> List[Product]:
        """Return every product in catalog order.

        Raises:
            CatalogError: If the catalog cannot be fetched or parsed. Without
                a catalog nothing else is meaningful, so this is not masked.
        """
        try:
            records = _records.validate_python(json.loads(self._read()))
        except (httpx.HTTPError, OSError) as e:
            logger.error("catalog fetch failed", extra={"source": self.source, "error": str(e)})
            raise CatalogError("CATALOG_UNAVAILABLE") from e
        except (ValueError, PydanticValidationError) as e:
            logger.error("catalog parse failed", extra={"source": self.source, "error": str(e)})
            raise CatalogError("CATALOG_INVALID") from e
        return [
            Product(title=r.title, price=r.price, image=r.image, category=r.category)
            for r in records
        ]

    def find_by_slug(self, slug: str) -> Optional[Product]:
        """Return the product whose title slugifies to ``slug``, or None."""
        for product in self.list():
            if slugify(product.title) == slug:
                return product
        return None

    def filter(self, query: str = "", category: str = "") -> List[Product]:
        """Case-insensitive title substring AND exact category match.

        An empty ``query`` or ``category`` matches everything.
        """
        q = (query or "").strip().lower()
        return [
            p
            for p in self.list()
            if (not q or q in p.title.lower()) and (not category or p.category == category)
        ]

    def categories(self) -> List[str]:
        """Sorted distinct categories; uncategorized products count as ``Overig``."""
        return sorted({p.category or DEFAULT_CATEGORY for p in self.list()})
