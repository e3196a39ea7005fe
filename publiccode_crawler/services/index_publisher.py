"""Index publication: buffered document staging, flush and alias swap."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy.dialects.postgresql import insert as pg_insert

from publiccode_crawler.config.database import Base, SessionLocal
from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.contracts import Repository
from publiccode_crawler.models.index_document import IndexAlias, IndexDocument, SearchIndex
from publiccode_crawler.services.manifest import ParsedManifest
from publiccode_crawler.services.publishers import Publisher

logger = logging.getLogger(__name__)

KIND_SOFTWARE = "software"
KIND_PUBLISHERS = "publishers"


def normalize_clone_url(url: str) -> str:
    """Canonical form used for blacklist matching and document keys."""
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))


def document_key(git_clone_url: str) -> str:
    """Stable document id: re-crawling a repository overwrites its entry."""
    return hashlib.sha1(normalize_clone_url(git_clone_url).encode("utf-8")).hexdigest()


class SQLIndexStore:
    """Relational index store; each method runs in its own session and transaction."""

    def __init__(self, session_factory: Callable[[], Any] = SessionLocal) -> None:
        self._session_factory = session_factory

    def ensure_schema(self) -> None:
        db = self._session_factory()
        try:
            Base.metadata.create_all(bind=db.get_bind())
        finally:
            db.close()

    def ensure_index(self, name: str, kind: str) -> None:
        db = self._session_factory()
        try:
            if db.get(SearchIndex, name) is None:
                db.add(SearchIndex(name=name, kind=kind))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def bulk_upsert(self, index_name: str, documents: Mapping[str, dict[str, Any]]) -> int:
        if not documents:
            return 0

        db = self._session_factory()
        try:
            if db.get_bind().dialect.name == "postgresql":
                statement = pg_insert(IndexDocument).values(
                    [
                        {"index_name": index_name, "doc_key": key, "document": document}
                        for key, document in documents.items()
                    ]
                )
                statement = statement.on_conflict_do_update(
                    index_elements=[IndexDocument.index_name, IndexDocument.doc_key],
                    set_={
                        "document": statement.excluded.document,
                        "updated_at": datetime.utcnow(),
                    },
                )
                db.execute(statement)
            else:
                for key, document in documents.items():
                    existing = db.query(IndexDocument).filter_by(index_name=index_name, doc_key=key).first()
                    if existing is None:
                        db.add(IndexDocument(index_name=index_name, doc_key=key, document=document))
                    else:
                        existing.document = document
            db.commit()
            return len(documents)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, index_names: Sequence[str], keys: Sequence[str]) -> int:
        if not index_names or not keys:
            return 0

        db = self._session_factory()
        try:
            deleted = (
                db.query(IndexDocument)
                .filter(IndexDocument.index_name.in_(list(index_names)), IndexDocument.doc_key.in_(list(keys)))
                .delete(synchronize_session=False)
            )
            db.commit()
            return int(deleted or 0)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def alias_targets(self, alias: str, kind: Optional[str] = None) -> list[str]:
        db = self._session_factory()
        try:
            query = db.query(IndexAlias.index_name).filter(IndexAlias.alias == alias)
            if kind is not None:
                query = query.join(SearchIndex, SearchIndex.name == IndexAlias.index_name).filter(SearchIndex.kind == kind)
            return sorted(row[0] for row in query.all())
        finally:
            db.close()

    def swap_alias(self, alias: str, targets: Sequence[str]) -> None:
        """Point `alias` at `targets`, replacing previous targets of the same kinds, atomically."""
        db = self._session_factory()
        try:
            indices = {row.name: row for row in db.query(SearchIndex).filter(SearchIndex.name.in_(list(targets))).all()}
            unknown = [target for target in targets if target not in indices]
            if unknown:
                raise ValueError(f"cannot alias unknown indices: {', '.join(unknown)}")

            kinds = {indices[target].kind for target in targets}
            replaced = (
                db.query(IndexAlias)
                .join(SearchIndex, SearchIndex.name == IndexAlias.index_name)
                .filter(IndexAlias.alias == alias, SearchIndex.kind.in_(list(kinds)))
                .all()
            )
            for row in replaced:
                db.delete(row)
            db.flush()
            for target in targets:
                db.add(IndexAlias(alias=alias, index_name=target))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def read_documents(self, index_name: str) -> dict[str, dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = db.query(IndexDocument).filter_by(index_name=index_name).all()
            return {row.doc_key: row.document for row in rows}
        finally:
            db.close()

    def read_alias(self, alias: str, kind: str = KIND_SOFTWARE) -> dict[str, dict[str, Any]]:
        """What readers see: the documents of the generation(s) `alias` points to."""
        documents: dict[str, dict[str, Any]] = {}
        for target in self.alias_targets(alias, kind):
            documents.update(self.read_documents(target))
        return documents


class IndexPublisher:
    """Stages documents into one index generation and publishes it through the alias.

    Staging is serialized with an `asyncio.Lock`; documents are buffered per index
    and written in bulk once `bulk_size` accumulate. Nothing is visible through the
    alias until `swap_alias()` runs after `flush()`.
    """

    def __init__(
        self,
        store: Any,
        *,
        index_base: Optional[str] = None,
        publishers_index: Optional[str] = None,
        alias: Optional[str] = None,
        bulk_size: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._index_base = index_base or settings.PUBLICCODE_INDEX
        self._publishers_index = publishers_index or settings.PUBLISHERS_INDEX
        self._alias = alias or settings.INDEX_ALIAS
        self._bulk_size = max(int(bulk_size or settings.INDEX_BULK_SIZE), 1)
        self._clock = clock
        self._generation: Optional[str] = None
        self._buffers: dict[str, dict[str, dict[str, Any]]] = {}
        self._published_publishers: set[str] = set()
        self._staged = 0
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> str:
        if self._generation is None:
            raise RuntimeError("open_generation() must be called before publishing")
        return self._generation

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def staged_count(self) -> int:
        return self._staged

    def open_generation(self, *, rotate: bool) -> str:
        """Pick the index generation this run writes into.

        Full crawls rotate into a fresh timestamped generation; single-repository
        crawls write into whatever the alias currently serves.
        """

        if rotate:
            name = f"{self._index_base}-{self._clock().strftime('%Y%m%d%H%M%S%f')}"
        else:
            current = self._store.alias_targets(self._alias, KIND_SOFTWARE)
            name = current[-1] if current else self._index_base

        self._store.ensure_index(name, KIND_SOFTWARE)
        self._store.ensure_index(self._publishers_index, KIND_PUBLISHERS)
        self._generation = name
        logger.info(f"Publishing into index generation {name}")
        return name

    async def publish(
        self,
        repository: Repository,
        activity_index: float,
        vitality: Sequence[int],
        manifest_content: bytes,
        manifest: Optional[ParsedManifest] = None,
    ) -> str:
        key = document_key(repository.git_clone_url)
        document = build_software_document(repository, activity_index, vitality, manifest_content, manifest, self._clock())

        async with self._lock:
            self._stage_locked(self.generation, key, document)
            publisher = repository.publisher
            if publisher.whitelisted and publisher.id not in self._published_publishers:
                self._published_publishers.add(publisher.id)
                self._stage_locked(self._publishers_index, publisher.id, build_publisher_document(publisher))
            self._staged += 1
            self._write_full_buffers_locked()
        return key

    async def flush(self) -> None:
        """Write every buffered document; raises if any write fails."""
        async with self._lock:
            for index_name in list(self._buffers):
                self._write_buffer_locked(index_name)

    async def swap_alias(self) -> None:
        async with self._lock:
            self._store.swap_alias(self._alias, [self._publishers_index, self.generation])
        logger.info(f"Alias {self._alias} now serves {self.generation} and {self._publishers_index}")

    async def remove(self, keys: Iterable[str]) -> int:
        """Delete documents from every software generation the alias serves."""
        unique_keys = sorted(set(keys))
        if not unique_keys:
            return 0
        async with self._lock:
            targets = self._store.alias_targets(self._alias, KIND_SOFTWARE)
            return self._store.delete(targets, unique_keys)

    def _stage_locked(self, index_name: str, key: str, document: dict[str, Any]) -> None:
        self._buffers.setdefault(index_name, {})[key] = document

    def _write_full_buffers_locked(self) -> None:
        for index_name, buffer in list(self._buffers.items()):
            if len(buffer) < self._bulk_size:
                continue
            try:
                self._write_buffer_locked(index_name)
            except Exception as exc:
                # Documents stay buffered for the next bulk write or the final flush.
                logger.warning(f"Bulk write to {index_name} failed ({len(buffer)} documents kept): {exc}")

    def _write_buffer_locked(self, index_name: str) -> None:
        buffer = self._buffers.get(index_name) or {}
        if not buffer:
            return
        written = self._store.bulk_upsert(index_name, buffer)
        self._buffers[index_name] = {}
        logger.debug(f"Wrote {written} documents to {index_name}")


def build_software_document(
    repository: Repository,
    activity_index: float,
    vitality: Sequence[int],
    manifest_content: bytes,
    manifest: Optional[ParsedManifest],
    crawled_at: datetime,
) -> dict[str, Any]:
    return {
        "name": repository.name,
        "hostname": repository.hostname,
        "fileRawURL": repository.file_raw_url,
        "gitCloneURL": repository.git_clone_url,
        "gitBranch": repository.git_branch,
        "publisher": {
            "id": repository.publisher.id,
            "name": repository.publisher.name,
            "codiceIPA": repository.publisher.codice_ipa,
        },
        "publiccode": _json_safe(manifest.data) if manifest is not None else None,
        "publiccodeRaw": manifest_content.decode("utf-8", errors="replace"),
        "metadata": _decode_metadata(repository.metadata),
        "vitalityScore": float(activity_index),
        "vitalityDataChart": [int(value) for value in vitality],
        "crawledAt": crawled_at.isoformat(),
    }


def build_publisher_document(publisher: Publisher) -> dict[str, Any]:
    return {
        "id": publisher.id,
        "name": publisher.name,
        "codiceIPA": publisher.codice_ipa,
        "organizations": list(publisher.organizations),
        "repositories": list(publisher.repositories),
    }


def _json_safe(value: Any) -> Any:
    # YAML dates and timestamps are not JSON serializable.
    return json.loads(json.dumps(value, default=str))


def _decode_metadata(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")
