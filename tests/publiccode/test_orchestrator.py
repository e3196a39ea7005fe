from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from publiccode_crawler.crawlers.contracts import ConfigurationError, CrawlError, FetchResult, FetchState
from publiccode_crawler.crawlers.domains import Domain, DomainRegistry, UnknownHostError
from publiccode_crawler.orchestrator import CrawlerOrchestrator
from publiccode_crawler.services.index_publisher import SQLIndexStore, document_key
from publiccode_crawler.services.metrics import REPOSITORY_FILE_INDEXED, REPOSITORY_PROCESSED
from publiccode_crawler.services.publishers import Publisher

ALIAS = "publiccode-alias"
PAGE_1 = "https://api.github.com/orgs/acme/repos?per_page=100"
PAGE_2 = "https://api.github.com/orgs/acme/repos?per_page=100&page=2"


def manifest(codice_ipa: str = "c_a123") -> bytes:
    return (
        'publiccodeYmlVersion: "0.2"\n'
        "name: Tool\n"
        "url: https://github.com/acme/tool\n"
        f"it:\n  riuso:\n    codiceIPA: {codice_ipa}\n"
    ).encode("utf-8")


def raw_url(name: str) -> str:
    return f"https://raw.githubusercontent.com/acme/{name}/main/publiccode.yml"


def repo_item(name: str) -> dict[str, Any]:
    return {"full_name": f"acme/{name}", "default_branch": "main", "clone_url": f"https://github.com/acme/{name}.git"}


class FakeHttpClient:
    def __init__(self, json_pages: dict[str, FetchResult[Any]], raw_files: dict[str, bytes]) -> None:
        self.json_pages = json_pages
        self.raw_files = raw_files

    async def __aenter__(self) -> "FakeHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def get_json(self, url: str, headers: Optional[dict[str, str]] = None) -> FetchResult[Any]:
        return self.json_pages.get(url, FetchResult(state=FetchState.FAILED, status_code=404, error="HTTP 404"))

    async def get_url(self, url: str, headers: Optional[dict[str, str]] = None) -> FetchResult[bytes]:
        if url in self.raw_files:
            return FetchResult(state=FetchState.OK, data=self.raw_files[url], status_code=200)
        return FetchResult(state=FetchState.FAILED, status_code=404, error="HTTP 404")


class FakeGit:
    def clone_path(self, hostname: str, name: str) -> Path:
        return Path("/tmp/repos") / hostname / name / "gitClone"

    async def clone_or_update(self, *, hostname: str, name: str, clone_url: str, branch: str) -> Path:
        return self.clone_path(hostname, name)

    async def read_commit_history(self, path: Path, since_days: int) -> list[datetime]:
        return []


def make_store() -> SQLIndexStore:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return SQLIndexStore(sessionmaker(bind=engine, autocommit=False, autoflush=False))


def make_orchestrator(tmp_path: Path, http_client: FakeHttpClient, *, store: Any = None, **kwargs: Any) -> CrawlerOrchestrator:
    return CrawlerOrchestrator(
        data_dir=tmp_path,
        domains=DomainRegistry([Domain(host="github.com", provider="github")]),
        store=store or make_store(),
        http_client_factory=lambda: http_client,
        git_client=FakeGit(),
        blacklist_loader=lambda: {},
        workers=3,
        work_buffer=2,
        **kwargs,
    )


def org_client() -> FakeHttpClient:
    return FakeHttpClient(
        json_pages={
            PAGE_1: FetchResult(
                state=FetchState.OK,
                data=[repo_item("r1"), repo_item("r2")],
                headers={"Link": f'<{PAGE_2}>; rel="next"'},
            ),
            PAGE_2: FetchResult(state=FetchState.OK, data=[repo_item("r3"), repo_item("r4")]),
            "https://api.github.com/repos/acme/r5": FetchResult(state=FetchState.OK, data=repo_item("r5")),
        },
        raw_files={
            raw_url("r1"): manifest(),
            raw_url("r3"): manifest(),
            raw_url("r4"): manifest("c_other"),
            raw_url("r5"): manifest(),
        },
    )


PUBLISHER = Publisher(id="pa1", name="Comune", codice_ipa="c_a123", organizations=("https://github.com/acme",))


@pytest.mark.asyncio
async def test_crawl_publishers_publishes_filters_and_swaps_alias(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)

    removed = await orchestrator.crawl_publishers(
        [PUBLISHER], blacklist={"https://github.com/acme/r3": "doc-42"}
    )

    assert removed == ["doc-42"]
    visible = store.read_alias(ALIAS)
    assert sorted(document["name"] for document in visible.values()) == ["acme/r1"]
    assert document_key("https://github.com/acme/r1.git") in visible
    stats = orchestrator.last_stats
    assert stats["outcomes"] == {"published": 1, "skipped": 1, "rejected": 1}
    assert stats["producer"]["candidates"] == 4
    assert stats["forwarded"] == 3
    assert orchestrator.counters.value(REPOSITORY_PROCESSED) == 3
    assert orchestrator.counters.value(REPOSITORY_FILE_INDEXED) == 1
    assert len(orchestrator._dead_letter.read()) == 1


@pytest.mark.asyncio
async def test_crawl_publishers_uses_loaded_blacklist_by_default(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)
    orchestrator._blacklist_loader = lambda: {"https://github.com/acme/r1.git": "r1-id"}

    removed = await orchestrator.crawl_publishers([PUBLISHER])

    assert removed == ["r1-id"]
    assert sorted(document["name"] for document in store.read_alias(ALIAS).values()) == ["acme/r3"]


@pytest.mark.asyncio
async def test_crawl_single_repository_updates_served_generation(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)
    await orchestrator.crawl_publishers([PUBLISHER], blacklist={})
    served = store.alias_targets(ALIAS, "software")

    stats = await orchestrator.crawl_single_repository("https://github.com/acme/r5", PUBLISHER)

    assert stats["outcomes"] == {"published": 1}
    assert store.alias_targets(ALIAS, "software") == served
    names = sorted(document["name"] for document in store.read_alias(ALIAS).values())
    assert names == ["acme/r1", "acme/r3", "acme/r5"]


@pytest.mark.asyncio
async def test_crawl_single_repository_raises_for_unknown_host(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)

    with pytest.raises(UnknownHostError):
        await orchestrator.crawl_single_repository("https://code.unknown.example/acme/r1", PUBLISHER)

    assert store.read_alias(ALIAS) == {}


class SwapFailingStore:
    def __init__(self, store: SQLIndexStore) -> None:
        self._store = store

    def __getattr__(self, name: str) -> Any:
        return getattr(self._store, name)

    def swap_alias(self, alias, targets):
        raise RuntimeError("alias update rejected")


@pytest.mark.asyncio
async def test_finalization_failure_raises_crawl_error(tmp_path) -> None:
    backing = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=SwapFailingStore(backing))

    with pytest.raises(CrawlError):
        await orchestrator.crawl_publishers([PUBLISHER], blacklist={})

    assert backing.read_alias(ALIAS) == {}


@pytest.mark.asyncio
async def test_remove_from_index_deletes_blacklisted_documents(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)
    await orchestrator.crawl_publishers([PUBLISHER], blacklist={})

    deleted = await orchestrator.remove_from_index([document_key("https://github.com/acme/r1.git")])

    assert deleted == 1
    assert sorted(document["name"] for document in store.read_alias(ALIAS).values()) == ["acme/r3"]


def test_missing_data_directory_is_fatal(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        make_orchestrator(tmp_path / "missing", org_client())


def test_unreachable_index_store_is_fatal(tmp_path) -> None:
    class BrokenStore:
        def ensure_schema(self) -> None:
            raise RuntimeError("connection refused")

    with pytest.raises(ConfigurationError):
        make_orchestrator(tmp_path, org_client(), store=BrokenStore())


def test_unreadable_domain_list_is_fatal(tmp_path, monkeypatch) -> None:
    from publiccode_crawler.config.settings import settings

    monkeypatch.setattr(settings, "DOMAINS_FILE", str(tmp_path / "missing.yml"))

    with pytest.raises(ConfigurationError):
        CrawlerOrchestrator(data_dir=tmp_path, store=make_store())


@pytest.mark.asyncio
async def test_partial_crawl_updates_served_generation_in_place(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)
    await orchestrator.crawl_publishers([PUBLISHER], blacklist={})
    served = store.alias_targets(ALIAS, "software")

    other = Publisher(id="pa2", name="Comune Due", codice_ipa="c_a002", organizations=())
    await orchestrator.crawl_publishers([other], blacklist={}, rotate=False)

    assert store.alias_targets(ALIAS, "software") == served
    assert sorted(document["name"] for document in store.read_alias(ALIAS).values()) == ["acme/r1", "acme/r3"]


@pytest.mark.asyncio
async def test_empty_publisher_list_leaves_served_index_untouched(tmp_path) -> None:
    store = make_store()
    orchestrator = make_orchestrator(tmp_path, org_client(), store=store)
    await orchestrator.crawl_publishers([PUBLISHER], blacklist={})
    served = store.alias_targets(ALIAS, "software")

    with pytest.raises(ConfigurationError):
        await orchestrator.crawl_publishers([], blacklist={})

    assert store.alias_targets(ALIAS, "software") == served
    assert sorted(document["name"] for document in store.read_alias(ALIAS).values()) == ["acme/r1", "acme/r3"]


@pytest.mark.asyncio
async def test_concurrent_runs_keep_one_document_per_repository(tmp_path) -> None:
    store = make_store()
    first = make_orchestrator(tmp_path, org_client(), store=store)
    second = make_orchestrator(tmp_path, org_client(), store=store)

    await asyncio.gather(
        first.crawl_publishers([PUBLISHER], blacklist={}),
        second.crawl_publishers([PUBLISHER], blacklist={}),
    )

    visible = store.read_alias(ALIAS)
    assert sorted(visible) == sorted(
        [document_key("https://github.com/acme/r1.git"), document_key("https://github.com/acme/r3.git")]
    )
    assert sorted(document["name"] for document in visible.values()) == ["acme/r1", "acme/r3"]
    assert len(store.alias_targets(ALIAS, "software")) == 1
