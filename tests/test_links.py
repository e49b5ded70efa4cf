import pytest

from debrid_namespace.inventory import InventoryFetcher
from debrid_namespace.links import BrokenJobs, JobRecovery, LinkResolver
from debrid_namespace.namespace import file_item
from debrid_namespace.rule_file import RuleFile
from debrid_namespace.utils import BrokenLinkError, DebridError
from tests.mocks.mock_realdebrid import LINK_PREFIX, MockRealDebrid


@pytest.fixture
def client():
    return MockRealDebrid()


@pytest.fixture
def fetcher(client, tmp_path):
    rule_file = RuleFile(tmp_path / "sorting.txt")
    rule_file.ensure_exists()
    return InventoryFetcher(client, rule_file)


@pytest.fixture
def broken():
    return BrokenJobs()


@pytest.fixture
def recovery(client, fetcher, broken):
    return JobRecovery(client, fetcher, broken, poll_attempts=5, poll_delay=0)


@pytest.fixture
def resolver(client, fetcher, broken, recovery):
    return LinkResolver(client, fetcher, broken, recovery, lambda: fetcher.torrents)


def test_broken_jobs_set():
    broken = BrokenJobs()
    assert broken.add("A")
    assert not broken.add("A")
    assert "A" in broken
    assert len(broken) == 1
    broken.discard("A")
    assert broken.snapshot() == set()


def test_dead_job_is_recreated_with_same_hash_and_selection(client, fetcher, broken, recovery):
    dead = client.add_job("Dead.Film.2019", ["AAA", "BBB"], status="dead", unselected=1)
    stale = client.add_download("AAA", "film.mkv")
    fetcher.refresh(force=True)
    broken.add(dead.id)

    recovered = recovery.recover(dead)

    assert recovered.id != dead.id
    assert recovered.status == "downloaded"
    assert recovered.hash == dead.hash
    assert recovered.name == dead.name
    assert recovered.selected_file_ids == [1, 2]
    assert recovered.links == dead.links
    assert client.job(dead.id) is None
    assert dead.id not in broken
    assert ("select_files", recovered.id, [1, 2]) in client.calls
    assert ("delete_download", stale.id) in client.calls
    assert fetcher.lookup_link(stale.original_link) is None
    assert fetcher.is_stale()


def test_recovery_polls_until_files_can_be_selected(client, fetcher, recovery):
    client.polls_until_ready = 3
    dead = client.add_job("Dead.Film.2019", ["AAA"], status="dead")
    recovered = recovery.recover(dead)
    new_id = recovered.id
    assert client.calls.count(("torrent_info", new_id)) == 5
    assert recovered.status == "downloaded"


def test_recovery_failure_returns_original_entry(client, recovery, broken):
    ghost = client.add_job("Ghost", ["AAA"], status="dead")
    client.torrents.remove(ghost)
    broken.add(ghost.id)
    assert recovery.recover(ghost) is ghost
    assert ghost.id in broken
    assert "add_magnet" not in client.call_names()


def test_resolve_uses_cache_then_creates_link(client, fetcher, resolver):
    job = client.add_job("Some.Film.2019", ["AAA", "BBB"])
    client.add_download("AAA", "film.mkv")
    fetcher.refresh(force=True)

    cached = resolver.resolve(file_item(job, job.links[0], None))
    assert cached.name == "film.mkv"
    assert "unrestrict_link" not in client.call_names()

    fresh = resolver.resolve(file_item(job, job.links[1], None))
    assert fresh.name == "BBB.mkv"
    assert fresh.link == "https://download.real-debrid.com/BBB/BBB.mkv"
    assert fetcher.lookup_link(LINK_PREFIX + "BBB").name == "BBB.mkv"
    resolver.resolve(file_item(job, job.links[1], None))
    assert client.call_names().count("unrestrict_link") == 1


def test_resolve_keeps_chosen_name(client, fetcher, resolver):
    job = client.add_job("Some.Film.2019", ["AAA"])
    client.add_download("AAA", "film.mkv")
    fetcher.refresh(force=True)
    item = file_item(job, job.links[0], None)
    item.name = "my film.mkv"
    assert resolver.resolve(item).name == "my film.mkv"


def test_broken_link_recovers_job_immediately(client, fetcher, broken, resolver):
    job = client.add_job("Some.Film.2019", ["AAA"])
    client.broken_links.add(LINK_PREFIX + "AAA")
    fetcher.refresh(force=True)

    item = file_item(job, job.links[0], None)
    assert resolver.resolve(item) == item
    assert fetcher.torrents[0].id != job.id
    assert fetcher.torrents[0].status == "downloaded"
    assert job.id not in broken
    assert client.job(job.id) is None


def test_broken_link_of_queued_job_is_not_recovered_twice(client, fetcher, broken, resolver):
    job = client.add_job("Some.Film.2019", ["AAA"])
    client.broken_links.add(LINK_PREFIX + "AAA")
    fetcher.refresh(force=True)
    broken.add(job.id)

    resolver.resolve(file_item(job, job.links[0], None))
    assert "add_magnet" not in client.call_names()
    assert job.id in broken


def test_open_broken_link_queues_job_then_surfaces_error(client, fetcher, broken, resolver):
    job = client.add_job("Some.Film.2019", ["AAA"])
    download = client.add_download("AAA", "film.mkv")
    fetcher.refresh(force=True)
    item = resolver.resolve(file_item(job, job.links[0], None))
    client.broken_urls.add(download.url)

    with pytest.raises(BrokenLinkError, match="re-downloaded"):
        resolver.open(item)
    assert job.id in broken
    assert fetcher.is_stale()

    with pytest.raises(BrokenLinkError, match="file_unavailable"):
        resolver.open(item)


def test_open_passes_headers_and_requires_url(client, fetcher, resolver):
    job = client.add_job("Some.Film.2019", ["AAA"])
    client.add_download("AAA", "film.mkv")
    fetcher.refresh(force=True)
    item = resolver.resolve(file_item(job, job.links[0], None))
    response = resolver.open(item, {"Range": "bytes=0-99"})
    assert response.request_headers == {"Range": "bytes=0-99"}

    with pytest.raises(DebridError, match="no URL"):
        resolver.open(file_item(job, job.links[0], None))
