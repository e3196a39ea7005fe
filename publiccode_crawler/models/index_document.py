"""Index store tables: index generations, staged documents and aliases."""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from publiccode_crawler.config.database import Base

# SQLite has no BIGINT autoincrement.
_PK_TYPE = BigInteger().with_variant(Integer(), "sqlite")
_DOCUMENT_TYPE = JSON().with_variant(JSONB(), "postgresql")


class SearchIndex(Base):
    """One index generation (software or publishers)."""

    __tablename__ = "search_indices"

    name = Column(String(200), primary_key=True)
    kind = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<SearchIndex {self.name} ({self.kind})>"


class IndexDocument(Base):
    """A document staged into an index generation under a stable key."""

    __tablename__ = "index_documents"

    id = Column(_PK_TYPE, primary_key=True, autoincrement=True)
    index_name = Column(String(200), nullable=False)
    doc_key = Column(String(100), nullable=False)
    document = Column(_DOCUMENT_TYPE, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("index_name", "doc_key", name="uq_index_documents_index_key"),
        Index("idx_index_documents_index_name", "index_name"),
    )

    def __repr__(self):
        return f"<IndexDocument {self.index_name}/{self.doc_key}>"


class IndexAlias(Base):
    """Stable name readers query; one row per index the alias points at."""

    __tablename__ = "index_aliases"

    alias = Column(String(200), primary_key=True)
    index_name = Column(String(200), primary_key=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<IndexAlias {self.alias} -> {self.index_name}>"
