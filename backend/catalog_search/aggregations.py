import math
from typing import List

from elasticsearch import Elasticsearch

from .config import CATEGORY_STATS_SIZE, DEFAULT_PRICE_RANGE, PRODUCTS_INDEX, SUGGEST_LIMIT_DEFAULT
from .elasticsearch_service import index_call, response_body
from .exceptions import IndexUnavailableError
from .mapping import SUGGEST_FIELD
from .models import CategoryStat, FacetSnapshot, PopularTerm, PriceRange, Suggestion
from .utils import fold_text, log_with_timestamp

MIN_SUGGEST_PREFIX = 2
# Completions cannot be filtered on isActive, so ask for more and drop inactive ones
SUGGEST_OVERFETCH = 2


class AggregationService:
    """Facets, popular terms and autocomplete. Read-only and stateless."""

    def __init__(self, client: Elasticsearch, index: str = PRODUCTS_INDEX):
        self.client = client
        self.index = index

    def _aggregate(self, operation: str, aggs: dict) -> dict:
        with index_call(operation):
            resp = response_body(self.client.search(index=self.index, size=0, aggs=aggs))
        return resp.get("aggregations", {})

    def suggest(self, prefix: str, limit: int = SUGGEST_LIMIT_DEFAULT) -> List[Suggestion]:
        """Completions for names of active products; prefixes shorter than 2 chars never reach the index"""
        prefix = (prefix or "").strip()
        if len(prefix) < MIN_SUGGEST_PREFIX or limit < 1:
            return []

        with index_call("suggest"):
            resp = response_body(self.client.search(
                index=self.index,
                source=["isActive"],
                suggest={
                    "product_suggest": {
                        "prefix": prefix,
                        "completion": {
                            "field": SUGGEST_FIELD,
                            "size": limit * SUGGEST_OVERFETCH,
                            "skip_duplicates": True,
                        },
                    }
                },
            ))

        suggestions = []
        seen = set()
        for entry in resp.get("suggest", {}).get("product_suggest", []):
            for option in entry.get("options", []):
                if not option.get("_source", {}).get("isActive", True):
                    continue
                text = (option.get("text") or "").strip()
                key = fold_text(text)
                if text and key not in seen:
                    suggestions.append(Suggestion(text=text, score=option.get("_score")))
                    seen.add(key)
        return suggestions[:limit]

    def popular_tags(self, limit: int = 10) -> List[PopularTerm]:
        """Tags ranked by how many products carry them"""
        if limit < 1:
            return []
        aggs = self._aggregate("popular_tags", {"popular_tags": {"terms": {"field": "tags", "size": limit}}})
        buckets = aggs.get("popular_tags", {}).get("buckets", [])
        return [PopularTerm(term=b["key"], count=b["doc_count"]) for b in buckets]

    def category_stats(self) -> List[CategoryStat]:
        aggs = self._aggregate("category_stats", {
            "categories": {
                "terms": {"field": "category", "size": CATEGORY_STATS_SIZE},
                "aggs": {
                    "avg_price": {"avg": {"field": "price"}},
                    "min_price": {"min": {"field": "price"}},
                    "max_price": {"max": {"field": "price"}},
                },
            }
        })
        return [
            CategoryStat(
                category_id=str(b["key"]),
                count=b["doc_count"],
                avg_price=b.get("avg_price", {}).get("value"),
                min_price=b.get("min_price", {}).get("value"),
                max_price=b.get("max_price", {}).get("value"),
            )
            for b in aggs.get("categories", {}).get("buckets", [])
        ]

    def price_range(self) -> PriceRange:
        """Global price stats for the price slider; falls back to a fixed range when the index can't answer"""
        try:
            aggs = self._aggregate("price_range", {"price_stats": {"stats": {"field": "price"}}})
        except IndexUnavailableError as e:
            log_with_timestamp(f"Price range unavailable, using default: {e}", "WARN")
            return PriceRange(**DEFAULT_PRICE_RANGE)

        stats = aggs.get("price_stats", {})
        if not stats.get("count"):
            return PriceRange(**DEFAULT_PRICE_RANGE)
        return PriceRange(
            min=math.floor(stats["min"]),
            max=math.ceil(stats["max"]),
            avg=round(stats["avg"]),
        )

    def facets(self, tag_limit: int = 10) -> FacetSnapshot:
        return FacetSnapshot(
            categories=self.category_stats(),
            price_range=self.price_range(),
            tags=self.popular_tags(tag_limit),
        )
