"""Database models"""

from publiccode_crawler.models.index_document import IndexAlias, IndexDocument, SearchIndex

__all__ = [
    "IndexAlias",
    "IndexDocument",
    "SearchIndex",
]
