from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, field_validator
from pydantic.alias_generators import to_camel

from .config import DEFAULT_PAGE_SIZE
from .utils import unique_tags


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire and in the index"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===== CATALOG =====
class CanonicalProduct(CamelModel):
    id: str
    name: str
    description: Optional[str] = ""
    price: float = Field(ge=0)
    original_price: Optional[float] = Field(default=None, ge=0)
    category: str
    stock: int = 0
    is_active: bool = True
    is_featured: bool = False
    is_on_sale: bool = False
    tags: List[str] = []
    rating: float = Field(default=0.0, ge=0, le=5)
    review_count: int = 0
    view_count: int = 0
    purchase_count: int = 0
    comment_count: int = 0
    favorite_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    images: List[str] = []

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, v):
        return unique_tags(v) if v is not None else []


class SearchDocument(CamelModel):
    id: str
    name: str
    description: str = ""
    price: float
    original_price: Optional[float] = None
    discount_percent: float = 0.0
    category: str
    category_name: str = ""
    stock: int = 0
    is_active: bool = True
    is_featured: bool = False
    is_on_sale: bool = False
    tags: List[str] = []
    rating: float = 0.0
    review_count: int = 0
    view_count: int = 0
    purchase_count: int = 0
    comment_count: int = 0
    favorite_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    images: List[str] = []

    def to_source(self) -> Dict:
        """Index-ready body (camelCase, JSON-safe)"""
        return self.model_dump(mode="json", by_alias=True)


# ===== WRITE PATH =====
class ProductCreated(CamelModel):
    type: Literal["ProductCreated"] = "ProductCreated"
    product: CanonicalProduct


class ProductUpdated(CamelModel):
    type: Literal["ProductUpdated"] = "ProductUpdated"
    id: str
    product: CanonicalProduct


class ProductViewed(CamelModel):
    type: Literal["ProductViewed"] = "ProductViewed"
    id: str
    product: CanonicalProduct


class ProductDeleted(CamelModel):
    type: Literal["ProductDeleted"] = "ProductDeleted"
    id: str


class BulkLoad(CamelModel):
    type: Literal["BulkLoad"] = "BulkLoad"
    products: List[CanonicalProduct]


SyncEvent = Annotated[
    Union[ProductCreated, ProductUpdated, ProductViewed, ProductDeleted, BulkLoad],
    Field(discriminator="type"),
]


class Ack(BaseModel):
    id: str
    result: str  # "created", "updated", "deleted", "not_found", ...


class BulkFailure(BaseModel):
    id: str
    reason: str


class BulkReport(CamelModel):
    total: int = 0
    succeeded: List[str] = []
    failed: List[BulkFailure] = []

    @computed_field
    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    def merge(self, other: "BulkReport") -> "BulkReport":
        return BulkReport(
            total=self.total + other.total,
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
        )


class IndexStatus(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    UPDATED = "updated"


# ===== QUERY PATH =====
class SortOption(str, Enum):
    RELEVANCE = "relevance"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    RATING = "rating"
    VIEWS = "views"
    DISCOUNT = "discount"
    NEWEST = "newest"
    OLDEST = "oldest"


class SearchRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    q: str = ""
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_discount: Optional[float] = None
    max_discount: Optional[float] = None
    min_rating: Optional[float] = None
    min_views: Optional[int] = None
    tags: Optional[List[str]] = None
    # Checked by the query compiler so unknown keys fail with a ValidationError
    sort_by: str = SortOption.RELEVANCE.value
    sort_order: str = "desc"
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


class ProductHit(SearchDocument):
    score: Optional[float] = Field(default=None, alias="_score")
    highlight: Dict[str, List[str]] = {}


class SearchResponse(CamelModel):
    products: List[ProductHit]
    total: int
    page: int
    limit: int
    total_pages: int


# ===== AGGREGATIONS =====
class Suggestion(BaseModel):
    text: str
    score: Optional[float] = None


class PopularTerm(BaseModel):
    term: str
    count: int


class CategoryStat(CamelModel):
    category_id: str
    count: int
    avg_price: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None


class PriceRange(BaseModel):
    min: float
    max: float
    avg: float


class FacetSnapshot(CamelModel):
    categories: List[CategoryStat]
    price_range: PriceRange
    tags: List[PopularTerm]


SYNC_EVENT_ADAPTER = TypeAdapter(SyncEvent)
