from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from publiccode_crawler.crawlers.contracts import END_OF_STREAM, FetchResult, FetchState, PaginationError
from publiccode_crawler.crawlers.domains import Domain, DomainRegistry, UnknownHostError
from publiccode_crawler.crawlers.producer_stage import ProducerStage
from publiccode_crawler.services.publishers import Publisher

ORGS_PAGE_1 = "https://api.github.com/orgs/acme/repos?per_page=100"
ORGS_PAGE_2 = "https://api.github.com/orgs/acme/repos?per_page=100&page=2"
USERS_PAGE_1 = "https://api.github.com/users/acme/repos?per_page=100"


class FakeClient:
    def __init__(self, pages: dict[str, FetchResult[Any]]) -> None:
        self.pages = pages
        self.requested: list[str] = []

    async def get_json(self, url: str, headers: dict[str, str] | None = None) -> FetchResult[Any]:
        self.requested.append(url)
        return self.pages.get(url, FetchResult(state=FetchState.FAILED, status_code=404, error="HTTP 404"))


def repo_item(name: str) -> dict[str, Any]:
    return {
        "full_name": f"acme/{name}",
        "default_branch": "main",
        "clone_url": f"https://github.com/acme/{name}.git",
    }


def make_context(client: FakeClient) -> SimpleNamespace:
    domains = DomainRegistry([Domain(host="github.com", provider="github")])
    return SimpleNamespace(client=client, domains=domains, random_source=None)


def drain(queue: asyncio.Queue) -> list[Any]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def names(items: list[Any]) -> list[str]:
    return [item.name for item in items if item is not END_OF_STREAM]


@pytest.mark.asyncio
async def test_producer_pushes_all_pages_then_closes_intake_once() -> None:
    client = FakeClient(
        {
            ORGS_PAGE_1: FetchResult(
                state=FetchState.OK,
                data=[repo_item("r1"), repo_item("r2")],
                headers={"link": f'<{ORGS_PAGE_2}>; rel="next"'},
            ),
            ORGS_PAGE_2: FetchResult(state=FetchState.OK, data=[repo_item("r3")]),
        }
    )
    publisher = Publisher(id="pa1", name="Comune", codice_ipa="c_a123", organizations=("https://github.com/acme",))
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    stats = await stage.produce_publishers([publisher], intake)

    items = drain(intake)
    assert names(items) == ["acme/r1", "acme/r2", "acme/r3"]
    assert items[-1] is END_OF_STREAM
    assert items.count(END_OF_STREAM) == 1
    assert stats.pages == 2
    assert stats.candidates == 3
    assert stats.failed_organizations == 0


@pytest.mark.asyncio
async def test_producer_falls_back_to_next_seed_when_listing_fails() -> None:
    client = FakeClient({USERS_PAGE_1: FetchResult(state=FetchState.OK, data=[repo_item("personal")])})
    publisher = Publisher(id="pa1", name="Comune", organizations=("https://github.com/acme",))
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    await stage.produce_publishers([publisher], intake)

    assert client.requested == [ORGS_PAGE_1, USERS_PAGE_1]
    assert names(drain(intake)) == ["acme/personal"]
    assert stage.stats.failed_organizations == 0


@pytest.mark.asyncio
async def test_producer_abandons_organization_when_every_seed_fails() -> None:
    publisher = Publisher(id="pa1", name="Comune", organizations=("https://github.com/acme",))
    stage = ProducerStage(make_context(FakeClient({})))
    intake: asyncio.Queue = asyncio.Queue()

    stats = await stage.produce_publishers([publisher], intake)

    assert drain(intake) == [END_OF_STREAM]
    assert stats.failed_organizations == 1


@pytest.mark.asyncio
async def test_producer_skips_unknown_hosts_and_keeps_other_organizations() -> None:
    client = FakeClient({ORGS_PAGE_1: FetchResult(state=FetchState.OK, data=[repo_item("r1")])})
    publisher = Publisher(
        id="pa1",
        name="Comune",
        organizations=("https://code.unknown.example/acme", "https://github.com/acme"),
    )
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    stats = await stage.produce_publishers([publisher], intake)

    assert names(drain(intake)) == ["acme/r1"]
    assert stats.failed_organizations == 1


@pytest.mark.asyncio
async def test_producer_drops_repeated_candidates_within_an_organization() -> None:
    client = FakeClient(
        {
            ORGS_PAGE_1: FetchResult(
                state=FetchState.OK,
                data=[repo_item("r1")],
                headers={"link": f'<{ORGS_PAGE_2}>; rel="next"'},
            ),
            ORGS_PAGE_2: FetchResult(state=FetchState.OK, data=[repo_item("r1"), repo_item("r2")]),
        }
    )
    publisher = Publisher(id="pa1", name="Comune", organizations=("https://github.com/acme",))
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    await stage.produce_publishers([publisher], intake)

    assert names(drain(intake)) == ["acme/r1", "acme/r2"]


@pytest.mark.asyncio
async def test_producer_closes_intake_once_for_many_publishers() -> None:
    client = FakeClient({ORGS_PAGE_1: FetchResult(state=FetchState.OK, data=[repo_item("r1")])})
    publishers = [
        Publisher(id=f"pa{i}", name=f"Ente {i}", organizations=("https://github.com/acme",)) for i in range(4)
    ]
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    stats = await stage.produce_publishers(publishers, intake)

    items = drain(intake)
    assert items.count(END_OF_STREAM) == 1
    assert items[-1] is END_OF_STREAM
    assert len(names(items)) == 4
    assert stats.publishers == 4


@pytest.mark.asyncio
async def test_producer_crawls_explicit_repositories_of_a_publisher() -> None:
    client = FakeClient(
        {"https://api.github.com/repos/acme/tool": FetchResult(state=FetchState.OK, data=repo_item("tool"))}
    )
    publisher = Publisher(
        id="pa1",
        name="Comune",
        repositories=("https://github.com/acme/tool", "https://github.com/acme/gone"),
    )
    stage = ProducerStage(make_context(client))
    intake: asyncio.Queue = asyncio.Queue()

    stats = await stage.produce_publishers([publisher], intake)

    assert names(drain(intake)) == ["acme/tool"]
    assert stats.failed_repositories == 1


@pytest.mark.asyncio
async def test_produce_single_propagates_unknown_host_without_closing_intake() -> None:
    stage = ProducerStage(make_context(FakeClient({})))
    intake: asyncio.Queue = asyncio.Queue()

    with pytest.raises(UnknownHostError):
        await stage.produce_single("https://code.unknown.example/acme/r1", Publisher(id="x", name="x"), intake)

    assert intake.empty()


@pytest.mark.asyncio
async def test_produce_single_propagates_repository_api_errors() -> None:
    stage = ProducerStage(make_context(FakeClient({})))

    with pytest.raises(PaginationError):
        await stage.produce_single("https://github.com/acme/r1", Publisher(id="x", name="x"), asyncio.Queue())
