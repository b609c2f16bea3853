from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from .catalog import CatalogSnapshot
from .config import CATALOG_EXPORT_PATH, CATEGORY_EXPORT_PATH, DEFAULT_PAGE_SIZE, PRODUCTS_INDEX, create_client
from .exceptions import (
    ExportNotFoundError, IndexMissingError, IndexUnavailableError, MappingConflictError, RebuildInProgressError,
    SearchIndexError, ValidationError,
)
from .mapping import COUNTER_FIELDS
from .models import (
    BulkReport, CategoryStat, FacetSnapshot, PopularTerm, PriceRange, SearchRequest,
    SearchResponse, Suggestion, SYNC_EVENT_ADAPTER,
)
from .service import CatalogSearch
from .utils import log_with_timestamp


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the Elasticsearch client for the lifetime of the process"""
    log_with_timestamp("STARTING CATALOG SEARCH API")
    client = create_client()
    engine = CatalogSearch(client, index=PRODUCTS_INDEX)
    try:
        engine.load_categories(CATEGORY_EXPORT_PATH)
        status = engine.startup()
        log_with_timestamp(f"Index '{PRODUCTS_INDEX}': {status.value if status else 'UNAVAILABLE'}")
        app.state.engine = engine
        log_with_timestamp("APPLICATION READY FOR REQUESTS")
        yield
    finally:
        client.close()
        log_with_timestamp("Elasticsearch client closed")


def create_app(engine: Optional[CatalogSearch] = None) -> FastAPI:
    """Build the app; pass an engine to skip the managed client lifecycle (tests, embedding)"""
    app = FastAPI(
        title="Catalog Search API",
        version="1.0.0",
        lifespan=None if engine is not None else lifespan,
    )
    if engine is not None:
        app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ===== ERROR MAPPING =====
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(IndexUnavailableError)
    async def unavailable_handler(request: Request, exc: IndexUnavailableError):
        # Distinguishable from an empty result set
        return JSONResponse(
            status_code=503,
            content={"error": "search temporarily unavailable", "operation": exc.operation},
        )

    @app.exception_handler(ExportNotFoundError)
    async def export_missing_handler(request: Request, exc: ExportNotFoundError):
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(SearchIndexError)
    async def index_error_handler(request: Request, exc: SearchIndexError):
        if isinstance(exc, (MappingConflictError, RebuildInProgressError)):
            status = 409
        elif isinstance(exc, IndexMissingError):
            status = 404
        else:
            status = 500
        return JSONResponse(status_code=status, content=exc.to_dict())

    def get_engine(request: Request) -> CatalogSearch:
        return request.app.state.engine

    # ===== QUERY PATH =====
    @app.get("/products/search", response_model=SearchResponse)
    def search_products(
        request: Request,
        q: str = Query("", description="Free-text query; empty browses everything"),
        category: Optional[str] = Query(None),
        min_price: Optional[float] = Query(None, alias="minPrice"),
        max_price: Optional[float] = Query(None, alias="maxPrice"),
        min_discount: Optional[float] = Query(None, alias="minDiscount"),
        max_discount: Optional[float] = Query(None, alias="maxDiscount"),
        min_rating: Optional[float] = Query(None, alias="minRating"),
        min_views: Optional[int] = Query(None, alias="minViews"),
        tags: Optional[str] = Query(None, description="Comma-separated tags"),
        sort_by: str = Query("relevance", alias="sortBy"),
        sort_order: str = Query("desc", alias="sortOrder"),
        page: int = Query(1),
        limit: int = Query(DEFAULT_PAGE_SIZE),
    ):
        search_request = SearchRequest(
            q=q,
            category=category,
            min_price=min_price,
            max_price=max_price,
            min_discount=min_discount,
            max_discount=max_discount,
            min_rating=min_rating,
            min_views=min_views,
            tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else None,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
        return get_engine(request).search_service.search(search_request)

    @app.get("/products/suggestions", response_model=List[Suggestion])
    def suggestions(request: Request, q: str = Query(""), limit: int = Query(10, ge=1, le=50)):
        return get_engine(request).aggregations.suggest(q, limit)

    @app.get("/products/popular-searches", response_model=List[PopularTerm])
    def popular_searches(request: Request, limit: int = Query(10, ge=1, le=100)):
        return get_engine(request).aggregations.popular_tags(limit)

    @app.get("/products/category-stats", response_model=List[CategoryStat])
    def category_stats(request: Request):
        return get_engine(request).aggregations.category_stats()

    @app.get("/products/price-range", response_model=PriceRange)
    def price_range(request: Request):
        return get_engine(request).aggregations.price_range()

    @app.get("/products/filter-options", response_model=FacetSnapshot)
    def filter_options(request: Request):
        return get_engine(request).aggregations.facets()

    # ===== WRITE-PATH SIGNAL =====
    @app.post("/sync/events", status_code=202)
    def sync_event(request: Request, background_tasks: BackgroundTasks, payload: Dict[str, Any] = Body(...)):
        """Accept a catalog change signal; the index write happens after the response, best-effort"""
        try:
            event = SYNC_EVENT_ADAPTER.validate_python(payload)
        except PydanticValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
        background_tasks.add_task(get_engine(request).pipeline.handle, event)
        return {"accepted": True, "type": event.type}

    # ===== MAINTENANCE =====
    @app.post("/admin/rebuild", response_model=BulkReport)
    def rebuild(request: Request):
        """Reload the index from the catalog export; the alias moves to the new index when the load finishes"""
        snapshot = CatalogSnapshot.load(CATALOG_EXPORT_PATH, CATEGORY_EXPORT_PATH)
        return get_engine(request).rebuild(snapshot)

    @app.post("/admin/mapping")
    def evolve_mapping(request: Request, fields: Optional[Dict[str, Any]] = Body(None)):
        status = get_engine(request).index_manager.evolve_mapping(fields or COUNTER_FIELDS)
        return {"status": status.value, "fields": sorted(fields or COUNTER_FIELDS)}

    @app.get("/healthz")
    def healthz(request: Request):
        return get_engine(request).health()

    @app.get("/")
    async def root():
        return {"message": "Catalog Search API", "status": "active"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
