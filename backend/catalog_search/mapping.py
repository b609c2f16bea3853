"""Elasticsearch settings and mappings for the products index."""

FOLDING_ANALYZER = "folding"

INDEX_SETTINGS = {
    "analysis": {
        "analyzer": {
            # Case and diacritic insensitive matching ("Điện thoại" == "dien thoai")
            FOLDING_ANALYZER: {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding"],
            }
        }
    }
}

INDEX_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "name": {
            "type": "text",
            "analyzer": FOLDING_ANALYZER,
            "fields": {
                "keyword": {"type": "keyword"},
                "suggest": {"type": "completion", "analyzer": FOLDING_ANALYZER},
            },
        },
        "description": {"type": "text", "analyzer": FOLDING_ANALYZER},
        "price": {"type": "float"},
        "originalPrice": {"type": "float"},
        "discountPercent": {"type": "float"},
        "rating": {"type": "float"},
        "category": {"type": "keyword"},
        "categoryName": {"type": "text", "analyzer": FOLDING_ANALYZER},
        "stock": {"type": "integer"},
        "reviewCount": {"type": "integer"},
        "viewCount": {"type": "integer"},
        "purchaseCount": {"type": "integer"},
        "commentCount": {"type": "integer"},
        "favoriteCount": {"type": "integer"},
        "isActive": {"type": "boolean"},
        "isFeatured": {"type": "boolean"},
        "isOnSale": {"type": "boolean"},
        "tags": {"type": "keyword"},
        "images": {"type": "keyword", "index": False},
        "createdAt": {"type": "date"},
        "updatedAt": {"type": "date"},
    }
}

# Engagement counters added after the first release; applied to live indices via evolve_mapping
COUNTER_FIELDS = {
    "purchaseCount": {"type": "integer"},
    "commentCount": {"type": "integer"},
    "favoriteCount": {"type": "integer"},
}

# Fields the query compiler searches, with their boosts
TEXT_FIELDS = ["name^3", "description^2", "categoryName^2", "tags^1.5"]
HIGHLIGHT_FIELDS = ["name", "description", "categoryName"]
SUGGEST_FIELD = "name.suggest"
