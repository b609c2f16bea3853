"""Catalog export loading (products + categories) for full index rebuilds."""

from pathlib import Path
from typing import Dict, Iterator, Optional

import polars as pl

from .config import CATALOG_EXPORT_PATH, CATEGORY_EXPORT_PATH
from .exceptions import ExportNotFoundError
from .utils import log_with_timestamp


def read_frame(path) -> pl.DataFrame:
    """Read a parquet, ndjson, json or csv export into a DataFrame"""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return pl.read_parquet(path)
    if suffix in (".ndjson", ".jsonl"):
        return pl.read_ndjson(path)
    if suffix == ".json":
        return pl.read_json(path)
    if suffix == ".csv":
        return pl.read_csv(path, try_parse_dates=True)
    raise ValueError(f"Unsupported catalog export format: {path}")


def _normalize_record(row: Dict) -> Dict:
    # Database exports key documents by "_id" and may embed the populated category
    record = {k: v for k, v in row.items() if v is not None}
    if "_id" in record and "id" not in record:
        record["id"] = record.pop("_id")
    if "id" in record:
        record["id"] = str(record["id"])
    category = record.get("category")
    if isinstance(category, dict):
        record["category"] = str(category.get("_id") or category.get("id") or "")
    elif category is not None:
        record["category"] = str(category)
    return record


class CatalogSnapshot:
    """Point-in-time copy of the catalog store, read from its export files"""

    def __init__(self, products: pl.DataFrame, categories: Optional[Dict[str, str]] = None):
        self.products = products
        self.categories = categories or {}

    @classmethod
    def load(cls, products_path=CATALOG_EXPORT_PATH, categories_path=CATEGORY_EXPORT_PATH) -> "CatalogSnapshot":
        if not products_path or not Path(products_path).exists():
            raise ExportNotFoundError(str(products_path))
        log_with_timestamp(f"Loading catalog export from {products_path}...")
        products = read_frame(products_path)
        log_with_timestamp(f"Catalog loaded: {len(products)} products, {len(products.columns)} columns")

        categories = {}
        if categories_path and Path(categories_path).exists():
            categories = category_names(read_frame(categories_path))
            log_with_timestamp(f"Categories loaded: {len(categories)}")
        else:
            log_with_timestamp(f"No category export at {categories_path}, category names will be empty", "WARN")

        # Names embedded in populated category structs fill gaps in the category export
        if "category" in products.columns and isinstance(products.schema["category"], pl.Struct):
            embedded = products.select(pl.col("category")).unnest("category")
            id_col = "_id" if "_id" in embedded.columns else "id"
            if id_col in embedded.columns and "name" in embedded.columns:
                for row in embedded.unique().iter_rows(named=True):
                    if row[id_col] is not None and row["name"]:
                        categories.setdefault(str(row[id_col]), row["name"])
        return cls(products, categories)

    def records(self) -> Iterator[Dict]:
        for row in self.products.iter_rows(named=True):
            yield _normalize_record(row)

    def __len__(self) -> int:
        return len(self.products)


def category_names(df: pl.DataFrame) -> Dict[str, str]:
    """id -> display name from a category export"""
    id_col = "_id" if "_id" in df.columns else "id"
    pairs = df.select(
        pl.col(id_col).cast(pl.Utf8).alias("id"),
        pl.col("name").cast(pl.Utf8),
    ).drop_nulls()
    return dict(zip(pairs.get_column("id").to_list(), pairs.get_column("name").to_list()))
