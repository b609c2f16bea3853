"""Catalog search: keeps an Elasticsearch product index in sync with the catalog and serves search."""

from .mapper import DocumentMapper, compute_discount_percent
from .models import CanonicalProduct, SearchDocument, SearchRequest, SearchResponse
from .query import compile_search
from .service import CatalogSearch

__version__ = "1.0.0"

__all__ = [
    "CanonicalProduct",
    "CatalogSearch",
    "DocumentMapper",
    "SearchDocument",
    "SearchRequest",
    "SearchResponse",
    "compile_search",
    "compute_discount_percent",
]
