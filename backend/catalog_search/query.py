"""
Search request -> Elasticsearch query compilation.

Pure and deterministic: no I/O happens here. Free text goes into a scored
multi_match clause; every filter goes into bool.filter so it narrows the
candidate set without touching relevance.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import MAX_PAGE_SIZE, MAX_RESULT_WINDOW
from .exceptions import ValidationError
from .mapping import HIGHLIGHT_FIELDS, TEXT_FIELDS
from .models import SearchRequest, SortOption

SORT_ORDERS = ("asc", "desc")


@dataclass
class IndexQuery:
    query: Dict[str, Any]
    sort: List[Dict[str, Any]]
    from_: int
    size: int
    highlight: Optional[Dict[str, Any]] = None
    track_total_hits: bool = True

    def to_search_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for Elasticsearch.search()"""
        kwargs = {
            "query": self.query,
            "sort": self.sort,
            "from_": self.from_,
            "size": self.size,
            "track_total_hits": self.track_total_hits,
        }
        if self.highlight:
            kwargs["highlight"] = self.highlight
        return kwargs


def _range(field_name: str, gte=None, lte=None) -> Optional[Dict]:
    bounds = {}
    if gte is not None:
        bounds["gte"] = gte
    if lte is not None:
        bounds["lte"] = lte
    return {"range": {field_name: bounds}} if bounds else None


def _check_bounds(name: str, low, high):
    if low is not None and high is not None and low > high:
        raise ValidationError(name, {"min": low, "max": high}, "minimum is greater than maximum")


def validate_request(req: SearchRequest) -> SortOption:
    if req.page < 1:
        raise ValidationError("page", req.page, "must be >= 1")
    if req.limit < 1:
        raise ValidationError("limit", req.limit, "must be >= 1")
    if req.limit > MAX_PAGE_SIZE:
        raise ValidationError("limit", req.limit, f"must be <= {MAX_PAGE_SIZE}")
    if (req.page - 1) * req.limit + req.limit > MAX_RESULT_WINDOW:
        raise ValidationError("page", req.page, f"results beyond {MAX_RESULT_WINDOW} are not reachable")

    try:
        sort = SortOption(req.sort_by)
    except ValueError:
        allowed = ", ".join(o.value for o in SortOption)
        raise ValidationError("sortBy", req.sort_by, f"unknown sort key, expected one of: {allowed}")
    if req.sort_order not in SORT_ORDERS:
        raise ValidationError("sortOrder", req.sort_order, "expected 'asc' or 'desc'")

    _check_bounds("price", req.min_price, req.max_price)
    _check_bounds("discount", req.min_discount, req.max_discount)
    return sort


def build_filters(req: SearchRequest) -> List[Dict]:
    filters = []
    if req.category:
        filters.append({"term": {"category": req.category}})

    for clause in (
        _range("price", req.min_price, req.max_price),
        _range("discountPercent", req.min_discount, req.max_discount),
        _range("rating", gte=req.min_rating),
        _range("viewCount", gte=req.min_views),
    ):
        if clause:
            filters.append(clause)

    tags = [t for t in (req.tags or []) if t]
    if tags:
        filters.append({"terms": {"tags": tags}})

    # Inactive products are never searchable, whatever the caller sent
    filters.append({"term": {"isActive": True}})
    return filters


def build_sort(sort: SortOption, order: str, has_text: bool) -> List[Dict]:
    if sort == SortOption.PRICE_ASC:
        return [{"price": {"order": "asc"}}]
    if sort == SortOption.PRICE_DESC:
        return [{"price": {"order": "desc"}}]
    if sort == SortOption.RATING:
        return [{"rating": {"order": order}}]
    if sort == SortOption.VIEWS:
        return [{"viewCount": {"order": order}}]
    if sort == SortOption.DISCOUNT:
        return [{"discountPercent": {"order": order}}]
    if sort == SortOption.NEWEST:
        return [{"createdAt": {"order": "desc"}}]
    if sort == SortOption.OLDEST:
        return [{"createdAt": {"order": "asc"}}]
    # relevance: browse mode has no score, fall back to newest first
    if has_text:
        return [{"_score": {"order": "desc"}}]
    return [{"createdAt": {"order": "desc"}}]


def compile_search(req: SearchRequest) -> IndexQuery:
    sort = validate_request(req)
    text = (req.q or "").strip()

    if text:
        must = {
            "multi_match": {
                "query": text,
                "fields": TEXT_FIELDS,
                "type": "best_fields",
                "fuzziness": "AUTO",
                "prefix_length": 1,
                "max_expansions": 50,
            }
        }
        highlight = {"fields": {name: {} for name in HIGHLIGHT_FIELDS}}
    else:
        must = {"match_all": {}}
        highlight = None

    filters = build_filters(req)
    return IndexQuery(
        query={"bool": {"must": [must], "filter": filters}},
        sort=build_sort(sort, req.sort_order, bool(text)),
        from_=(req.page - 1) * req.limit,
        size=req.limit,
        highlight=highlight,
    )
