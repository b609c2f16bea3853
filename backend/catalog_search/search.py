import math

from elasticsearch import Elasticsearch

from .config import PRODUCTS_INDEX
from .elasticsearch_service import hits_total, index_call, response_body
from .models import ProductHit, SearchRequest, SearchResponse
from .query import compile_search
from .utils import log_with_timestamp


def format_hit(hit: dict) -> ProductHit:
    """Index hit -> ProductHit annotated with score and highlighted spans"""
    source = dict(hit.get("_source") or {})
    source["id"] = hit.get("_id", source.get("id"))
    source["_score"] = hit.get("_score")
    source["highlight"] = hit.get("highlight") or {}
    return ProductHit.model_validate(source)


class SearchService:
    """Query path: compile, execute, shape the page"""

    def __init__(self, client: Elasticsearch, index: str = PRODUCTS_INDEX):
        self.client = client
        self.index = index

    def search(self, request: SearchRequest) -> SearchResponse:
        # ValidationError propagates before any index call
        compiled = compile_search(request)

        log_with_timestamp(
            f"Search q='{request.q}' sort={request.sort_by} page={request.page} limit={request.limit}", "DEBUG"
        )
        with index_call("search"):
            resp = response_body(self.client.search(index=self.index, **compiled.to_search_kwargs()))

        total = hits_total(resp)
        products = [format_hit(hit) for hit in resp["hits"]["hits"]]
        log_with_timestamp(f"Search completed: {total} matches, {len(products)} returned", "DEBUG")

        return SearchResponse(
            products=products,
            total=total,
            page=request.page,
            limit=request.limit,
            total_pages=math.ceil(total / request.limit),
        )
