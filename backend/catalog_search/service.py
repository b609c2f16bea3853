from pathlib import Path
from typing import Dict, Optional

from elasticsearch import Elasticsearch

from .aggregations import AggregationService
from .catalog import CatalogSnapshot, category_names, read_frame
from .config import CATEGORY_EXPORT_PATH, PRODUCTS_INDEX
from .elasticsearch_service import ping
from .exceptions import CatalogSearchError
from .index_manager import IndexManager
from .mapper import DocumentMapper
from .models import BulkReport, IndexStatus
from .search import SearchService
from .sync import SyncPipeline
from .utils import log_with_timestamp


class CatalogSearch:
    """Wires the mapper, sync pipeline, index manager, query and aggregation services around one client"""

    def __init__(self, client: Elasticsearch, index: str = PRODUCTS_INDEX,
                 categories: Optional[Dict[str, str]] = None, refresh: Optional[str] = None):
        self.client = client
        self.index = index
        self.pipeline = SyncPipeline(client, DocumentMapper(dict(categories or {})), index=index, refresh=refresh)
        self.index_manager = IndexManager(client, self.pipeline, index=index)
        self.search_service = SearchService(client, index=index)
        self.aggregations = AggregationService(client, index=index)

    @property
    def mapper(self) -> DocumentMapper:
        """Live write mapper; a rebuild replaces it once the alias has moved"""
        return self.pipeline.mapper

    @property
    def categories(self) -> Dict[str, str]:
        return self.mapper.categories

    def startup(self) -> Optional[IndexStatus]:
        """Make sure the alias exists; an unreachable cluster only degrades search and drops live writes"""
        try:
            return self.index_manager.ensure_index()
        except CatalogSearchError as e:
            log_with_timestamp(f"Elasticsearch initialization failed: {e}", "WARN")
            return None

    def load_categories(self, path=CATEGORY_EXPORT_PATH) -> int:
        if not path or not Path(path).exists():
            log_with_timestamp(f"No category export at {path}", "WARN")
            return 0
        self.categories.update(category_names(read_frame(path)))
        log_with_timestamp(f"Category names loaded: {len(self.categories)}")
        return len(self.categories)

    def rebuild(self, snapshot: CatalogSnapshot) -> BulkReport:
        """Full rebuild from a catalog snapshot, mapped with the snapshot's own category names"""
        mapper = DocumentMapper(dict(snapshot.categories))
        return self.index_manager.rebuild_index(snapshot.records(), mapper=mapper)

    def health(self) -> Dict:
        reachable = ping(self.client)
        return {
            "status": "ok" if reachable else "degraded",
            "elasticsearch": reachable,
            "index": self.index,
            "categories": len(self.categories),
        }
