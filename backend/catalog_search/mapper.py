from typing import Callable, Mapping, Optional, Union

from .models import CanonicalProduct, SearchDocument
from .utils import log_with_timestamp

# Anything that resolves a category id to its display name
CategoryLookup = Union[Mapping[str, str], Callable[[str], Optional[str]]]


def compute_discount_percent(price: float, original_price: Optional[float]) -> float:
    """(originalPrice - price) / originalPrice * 100, or 0 when there is no markdown"""
    if original_price is None or original_price <= price or original_price <= 0:
        return 0.0
    return (original_price - price) / original_price * 100


class DocumentMapper:
    """Flattens catalog products into index documents"""

    def __init__(self, categories: Optional[CategoryLookup] = None):
        self.categories = categories

    def category_name(self, category_id: str) -> str:
        if self.categories is None:
            return ""
        try:
            if callable(self.categories):
                name = self.categories(category_id)
            else:
                name = self.categories.get(category_id)
        except Exception as e:
            # Search availability wins over category-name completeness
            log_with_timestamp(f"Category lookup failed for {category_id}: {e}", "WARN")
            return ""
        return name or ""

    def to_search_document(self, product: CanonicalProduct) -> SearchDocument:
        return SearchDocument(
            id=product.id,
            name=product.name,
            description=product.description or "",
            price=product.price,
            original_price=product.original_price,
            discount_percent=compute_discount_percent(product.price, product.original_price),
            category=product.category,
            category_name=self.category_name(product.category),
            stock=product.stock,
            is_active=product.is_active,
            is_featured=product.is_featured,
            is_on_sale=product.is_on_sale,
            tags=list(product.tags),
            rating=product.rating,
            review_count=product.review_count,
            view_count=product.view_count,
            purchase_count=product.purchase_count,
            comment_count=product.comment_count,
            favorite_count=product.favorite_count,
            created_at=product.created_at,
            updated_at=product.updated_at,
            images=list(product.images),
        )
