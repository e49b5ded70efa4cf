"""Turns expiring file references into live URLs and revives dead jobs.

Direct-download URLs handed out by the remote expire, and whole jobs can die
on the remote side. `LinkResolver` resolves a file reference when it is first
needed, and `JobRecovery` re-submits a dead job by its content hash with the
same file selection, so that the virtual tree keeps pointing at working data
without any user action.
"""
import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set

from .clients.base import DebridClient, Torrent
from .inventory import InventoryFetcher
from .namespace import Item
from .utils import APIError, BrokenLinkError, DebridError, sleep_or_cancel

WAITING_FILES_SELECTION = 'waiting_files_selection'
DOWNLOADED = 'downloaded'


class BrokenJobs:
    """The set of job IDs known to be dead or erroring, safe for concurrent use."""

    def __init__(self) -> None:
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def add(self, job_id: str) -> bool:
        """Adds `job_id`; returns False if it was already known."""
        with self._lock:
            if job_id in self._ids:
                return False
            self._ids.add(job_id)
            return True

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._ids.discard(job_id)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._ids)


class JobRecovery:
    """Re-creates dead jobs.

    Recovery steps: read the job's metadata and file selection, delete its
    stale resolved links, re-submit it by content hash, wait for it to reach
    the file-selection state, re-apply the selection, delete the old job, and
    force the next refresh to fetch.
    """

    def __init__(
        self,
        client: DebridClient,
        fetcher: InventoryFetcher,
        broken: BrokenJobs,
        poll_attempts: int = 5,
        poll_delay: float = 1,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.fetcher = fetcher
        self.broken = broken
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self.cancel_event = cancel_event
        self._in_progress: Set[str] = set()
        self._lock = threading.Lock()

    def recover(self, torrent: Torrent) -> Torrent:
        """Recovers `torrent` and returns its replacement.

        A recovery already running for the same job is not started again; the
        caller gets the unchanged entry back. If the remote rejects a step, the
        failure is logged and the unchanged entry is returned so that the job
        is retried on a later refresh.
        """
        with self._lock:
            if torrent.id in self._in_progress:
                logging.debug(f"STATE: Recovery of job {torrent.id} already in progress.")
                return torrent
            self._in_progress.add(torrent.id)
        try:
            return self._recover(torrent)
        except APIError as e:
            logging.error(f"STATE: Could not re-download job '{torrent.name}' ({torrent.id}): {e}")
            return torrent
        finally:
            with self._lock:
                self._in_progress.discard(torrent.id)

    def _recover(self, torrent: Torrent) -> Torrent:
        logging.warning(f"STATE: Re-downloading dead job '{torrent.name}' ({torrent.id}).")
        dead_id = torrent.id
        info = self.client.torrent_info(dead_id)
        selected = info.selected_file_ids

        stale_links = info.file_links or torrent.file_links
        for link in stale_links:
            download = self.fetcher.lookup_link(link)
            if download is None:
                continue
            try:
                self.client.delete_download(download.id)
            except APIError as e:
                logging.warning(f"REMOTE: Could not delete stale link {download.id} of job {dead_id}: {e}")
        self.fetcher.forget_links(stale_links)

        new_id = self.client.add_magnet(info.hash or torrent.hash)
        new = self.client.torrent_info(new_id)
        tries = 0
        while new.status != WAITING_FILES_SELECTION and tries < self.poll_attempts:
            sleep_or_cancel(self.poll_delay, self.cancel_event)
            new = self.client.torrent_info(new_id)
            tries += 1

        self.client.select_files(new_id, selected)
        self.client.delete_torrent(dead_id)
        try:
            new = self.client.torrent_info(new_id)
        except APIError as e:
            logging.debug(f"REMOTE: Could not re-read job {new_id} after file selection: {e}")

        recovered = replace(
            new,
            id=new_id,
            name=new.name or torrent.name,
            hash=new.hash or info.hash or torrent.hash,
            status=DOWNLOADED,
        )
        self.fetcher.invalidate()
        self.broken.discard(dead_id)
        logging.info(f"STATE: Job '{recovered.name}' re-created as {new_id} with {len(selected)} selected file(s).")
        return recovered


class LinkResolver:
    """Resolves file references on access and handles broken links."""

    def __init__(
        self,
        client: DebridClient,
        fetcher: InventoryFetcher,
        broken: BrokenJobs,
        recovery: JobRecovery,
        torrents: Callable[[], List[Torrent]],
    ):
        self.client = client
        self.fetcher = fetcher
        self.broken = broken
        self.recovery = recovery
        self._torrents = torrents

    def resolve(self, item: Item) -> Item:
        """Returns `item` with a live URL, name and size filled in when possible.

        The cached resolution from the latest inventory is reused; otherwise a
        fresh one is requested. A chosen display name is never overwritten.
        A broken reference queues the parent job and recovers it right away,
        unless the job is already known to be broken.
        """
        if not item.is_file or not item.original_link:
            return item
        download = self.fetcher.lookup_link(item.original_link)
        if download is None:
            logging.debug(f"REMOTE: Creating new link for file {item.name} from job hash {item.torrent_hash}.")
            try:
                download = self.client.unrestrict_link(item.original_link)
            except BrokenLinkError as e:
                self._handle_broken(item, e)
                return item
            if not download.url or not download.name:
                return item
            self.fetcher.remember_link(replace(download, original_link=download.original_link or item.original_link))
        return replace(
            item,
            name=download.name if item.name == item.id else item.name,
            link=download.url,
            size=download.size or item.size,
            mime_type=download.mime_type or item.mime_type,
        )

    def _handle_broken(self, item: Item, error: BrokenLinkError) -> None:
        if not self.broken.add(item.parent_id):
            logging.warning(f"REMOTE: Link for '{item.name}' is still broken and its job {item.parent_id} "
                            f"is already queued for recovery: {error}")
            return
        logging.warning(f"REMOTE: Link for '{item.name}' is broken ({error}). Recovering job {item.parent_id}.")
        torrents = self._torrents()
        for i, torrent in enumerate(torrents):
            if torrent.id == item.parent_id:
                torrents[i] = self.recovery.recover(torrent)
                break

    def open(self, item: Item, headers: Optional[Dict[str, str]] = None):
        """Opens the file's live URL for streaming.

        Raises:
            DebridError: If the file has no URL.
            BrokenLinkError: If the URL answers 503/404. The first time, the
                parent job is queued for recovery on the next refresh; if it was
                already queued the remote error is surfaced unchanged.
        """
        if not item.link:
            raise DebridError("can't download - no URL")
        try:
            return self.client.open_url(item.link, headers)
        except BrokenLinkError as e:
            if not self.broken.add(item.parent_id):
                raise
            self.fetcher.invalidate()
            raise BrokenLinkError(
                f"error opening file '{item.link}': this link seems to be broken - job will be re-downloaded",
                e.status, e.status_code,
            ) from e
