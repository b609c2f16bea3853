"""Offline maintenance: rebuild the products index or apply additive mapping changes."""

import argparse
import sys

from .catalog import CatalogSnapshot
from .config import CATALOG_EXPORT_PATH, CATEGORY_EXPORT_PATH, PRODUCTS_INDEX, create_client
from .exceptions import CatalogSearchError
from .mapping import COUNTER_FIELDS
from .service import CatalogSearch
from .utils import log_with_timestamp


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Catalog search index maintenance")
    parser.add_argument("--index", default=PRODUCTS_INDEX)
    sub = parser.add_subparsers(dest="command", required=True)

    rebuild = sub.add_parser("rebuild", help="reload the index from a catalog export into a fresh index and swap the alias")
    rebuild.add_argument("--products", default=CATALOG_EXPORT_PATH)
    rebuild.add_argument("--categories", default=CATEGORY_EXPORT_PATH)

    sub.add_parser("update-mapping", help="add the engagement counter fields to the live mapping")

    args = parser.parse_args(argv)

    client = create_client()
    try:
        engine = CatalogSearch(client, index=args.index)
        if args.command == "rebuild":
            report = engine.rebuild(CatalogSnapshot.load(args.products, args.categories))
            log_with_timestamp(f"Rebuilt {report.count}/{report.total} products")
            for failure in report.failed:
                log_with_timestamp(f"   {failure.id}: {failure.reason}", "WARN")
            return 1 if report.has_failures else 0

        status = engine.index_manager.evolve_mapping(COUNTER_FIELDS)
        log_with_timestamp(f"Mapping {status.value}: {', '.join(COUNTER_FIELDS)}")
        return 0
    except CatalogSearchError as e:
        log_with_timestamp(str(e), "ERROR")
        return 2
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
