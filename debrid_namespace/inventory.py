"""Pulls the flat job and download inventory from the remote service.

The fetcher owns the remote refresh cadence. It keeps the last successful
snapshot together with two watermarks (when the remote was last checked and
the rule file modification time that was last absorbed) and only talks to the
remote when one of them says the snapshot may be out of date.

Known gap: between full refreshes, a list is only refetched when its total
count changes. Replacing one item by another within the interval keeps the
count identical and goes unnoticed until the interval elapses.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .clients.base import DebridClient, Download, Torrent
from .rule_file import RuleFile

PAGE_LIMIT = 2500
DEFAULT_INTERVAL = 15 * 60
DEFAULT_DEBOUNCE = 5

T = TypeVar('T')


@dataclass
class InventorySnapshot:
    """The result of a refresh."""
    downloads: List[Download]
    torrents: List[Torrent]
    changed: bool
    rules_changed: bool


class InventoryFetcher:
    """Fetches and caches the remote inventory.

    Attributes:
        downloads (List[Download]): Last fetched resolved links.
        torrents (List[Torrent]): Last fetched jobs.
        last_checked (float): Time of the last successful fetch.
        last_rule_mtime (float): Rule file modification time absorbed by that fetch.
    """

    def __init__(
        self,
        client: DebridClient,
        rule_file: RuleFile,
        interval: float = DEFAULT_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.rule_file = rule_file
        self.interval = interval
        self.debounce = debounce
        self.clock = clock
        self.downloads: List[Download] = []
        self.torrents: List[Torrent] = []
        self.last_checked = 0.0
        self.last_rule_mtime = 0.0
        self._last_stat = 0.0
        self._links: Dict[str, Download] = {}
        self._lock = threading.Lock()

    def is_stale(self) -> bool:
        return self.clock() - self.last_checked > self.interval

    def rules_changed(self) -> Tuple[bool, Optional[float]]:
        """Checks whether the rule file changed since it was last absorbed.

        The file is stat'ed at most once per debounce window. A missing file
        counts as changed so that it gets recreated.

        Returns:
            A tuple of (changed, current modification time or None).
        """
        now = self.clock()
        if self.last_rule_mtime and now - self._last_stat < self.debounce:
            return False, self.last_rule_mtime
        self._last_stat = now
        mtime = self.rule_file.mtime()
        if mtime is None:
            return True, None
        return mtime > self.last_rule_mtime, mtime

    def invalidate(self) -> None:
        """Makes the next refresh fetch the remote inventory."""
        self.last_checked = self.clock() - self.interval - 1

    def lookup_link(self, original_link: str) -> Optional[Download]:
        """Returns the cached resolved link for a restricted reference, if any."""
        return self._links.get(original_link)

    def remember_link(self, download: Download) -> None:
        """Caches a fresh resolution until the next downloads refetch replaces it."""
        if download.original_link:
            self._links[download.original_link] = download

    def forget_links(self, links: Iterable[str]) -> None:
        """Drops cached resolutions so they are not reused."""
        for link in links:
            self._links.pop(link, None)

    def refresh(self, force: bool = False) -> InventorySnapshot:
        """Returns the current inventory, fetching it when it may be outdated.

        Nothing is requested from the remote when the staleness interval has
        not elapsed, the rule file is unchanged and `force` is not set.

        Raises:
            APIError: If a page could not be fetched. The previous snapshot and
                watermarks are kept.
        """
        with self._lock:
            rules_changed, mtime = self.rules_changed()
            stale = force or self.is_stale()
            if not stale and not rules_changed:
                return InventorySnapshot(self.downloads, self.torrents, False, False)

            if stale:
                logging.debug("STATE: Refreshing all links and jobs from the remote.")
            downloads, downloads_changed = self._collect(self.client.list_downloads, self.downloads, stale, "downloads")
            torrents, torrents_changed = self._collect(self.client.list_torrents, self.torrents, stale, "jobs")

            self.downloads = downloads
            self.torrents = torrents
            if downloads_changed:
                self._links = {d.original_link: d for d in downloads if d.original_link}
            self.last_checked = self.clock()
            if mtime is not None:
                self.last_rule_mtime = mtime
            return InventorySnapshot(downloads, torrents, downloads_changed or torrents_changed, rules_changed)

    def _collect(
        self,
        fetch_page: Callable[[int, int], Tuple[List[T], int]],
        cached: List[T],
        stale: bool,
        label: str,
    ) -> Tuple[List[T], bool]:
        """Pages through one remote list.

        A one-item request reports the total. If the total matches the cache and
        the data is not stale, the cache is reused.
        """
        first, total = fetch_page(0, 1)
        if not stale and total == len(cached):
            return cached, False
        items = list(first)
        while len(items) < total:
            page, total = fetch_page(len(items), PAGE_LIMIT)
            if not page:
                logging.warning(f"REMOTE: Listing {label} stopped early at {len(items)} of {total} item(s).")
                break
            items.extend(page)
        logging.debug(f"REMOTE: Fetched {len(items)} {label}.")
        return items, True
