import os
import unittest
from unittest.mock import MagicMock, patch

import pytest

from debrid_namespace.inventory import InventoryFetcher
from debrid_namespace.rule_file import RuleFile
from debrid_namespace.utils import APIError
from tests.mocks.mock_realdebrid import MockRealDebrid


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def inventory(tmp_path):
    client = MockRealDebrid()
    client.add_job("Some.Film.2019", ["F1"])
    client.add_job("Show.S01", ["E1", "E2"])
    client.add_job("Holiday Video", ["H1"])
    client.add_download("F1", "film.mkv")
    rule_file = RuleFile(tmp_path / "sorting.txt")
    rule_file.ensure_exists()
    clock = FakeClock()
    fetcher = InventoryFetcher(client, rule_file, interval=900, debounce=5, clock=clock)
    return client, rule_file, clock, fetcher


def test_first_refresh_pages_through_everything(inventory):
    client, _, _, fetcher = inventory
    snapshot = fetcher.refresh()
    assert snapshot.changed
    assert [t.name for t in snapshot.torrents] == ["Some.Film.2019", "Show.S01", "Holiday Video"]
    assert ("list_torrents", 0, 1) in client.calls
    assert ("list_torrents", 1, 2500) in client.calls
    assert ("list_downloads", 0, 1) in client.calls
    assert fetcher.lookup_link("https://real-debrid.com/d/F1").name == "film.mkv"


def test_fresh_snapshot_is_reused_without_remote_calls(inventory):
    client, _, clock, fetcher = inventory
    fetcher.refresh()
    client.calls.clear()
    clock.now += 60
    snapshot = fetcher.refresh()
    assert not snapshot.changed
    assert not snapshot.rules_changed
    assert client.calls == []


def test_rule_change_checks_counts_only(inventory):
    client, rule_file, clock, fetcher = inventory
    fetcher.refresh()
    client.calls.clear()
    clock.now += 60
    mtime = rule_file.mtime()
    os.utime(rule_file.path, (mtime + 10, mtime + 10))
    snapshot = fetcher.refresh()
    assert snapshot.rules_changed
    assert not snapshot.changed
    assert client.calls == [("list_downloads", 0, 1), ("list_torrents", 0, 1)]
    assert fetcher.last_rule_mtime == mtime + 10


def test_rule_check_is_debounced(inventory):
    client, rule_file, clock, fetcher = inventory
    fetcher.refresh()
    clock.now += 1
    mtime = rule_file.mtime()
    os.utime(rule_file.path, (mtime + 10, mtime + 10))
    assert fetcher.rules_changed() == (False, mtime)


def test_interval_and_invalidate_force_a_full_fetch(inventory):
    client, _, clock, fetcher = inventory
    fetcher.refresh()
    clock.now += 60
    fetcher.invalidate()
    assert fetcher.is_stale()
    client.add_job("New.Job", ["N1"])
    snapshot = fetcher.refresh()
    assert snapshot.changed
    assert len(snapshot.torrents) == 4
    clock.now += 901
    assert fetcher.is_stale()


def test_remember_and_forget_links(inventory):
    client, _, _, fetcher = inventory
    fetcher.refresh()
    download = client.add_download("E1", "episode.mkv")
    fetcher.remember_link(download)
    assert fetcher.lookup_link(download.original_link) is download
    fetcher.forget_links([download.original_link, "https://real-debrid.com/d/F1"])
    assert fetcher.lookup_link(download.original_link) is None
    assert fetcher.lookup_link("https://real-debrid.com/d/F1") is None


class TestInventoryFailures(unittest.TestCase):
    def setUp(self):
        self.client = MockRealDebrid()
        self.client.add_job("Some.Film.2019", ["F1"])
        self.clock = FakeClock()
        self.rule_file = MagicMock(spec=RuleFile)
        self.rule_file.mtime.return_value = 100.0
        self.fetcher = InventoryFetcher(self.client, self.rule_file, clock=self.clock)

    def test_failed_fetch_keeps_previous_snapshot(self):
        self.fetcher.refresh()
        checked = self.fetcher.last_checked
        self.clock.now += 1000
        with patch.object(self.client, 'list_torrents', side_effect=APIError("boom", "Bad Gateway (502)", 502)):
            with self.assertRaises(APIError):
                self.fetcher.refresh()
        self.assertEqual(self.fetcher.last_checked, checked)
        self.assertEqual([t.name for t in self.fetcher.torrents], ["Some.Film.2019"])

    def test_missing_rule_file_counts_as_changed(self):
        self.rule_file.mtime.return_value = None
        self.assertEqual(self.fetcher.rules_changed(), (True, None))

    def test_short_page_stops_listing(self):
        with patch.object(self.client, 'list_torrents', side_effect=[
            (list(self.client.torrents), 5),
            ([], 5),
        ]):
            snapshot = self.fetcher.refresh(force=True)
        self.assertEqual(len(snapshot.torrents), 1)
