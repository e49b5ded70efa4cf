"""The namespace engine: the filesystem-like surface over the remote inventory.

`NamespaceEngine` owns every piece of process state (inventory snapshot,
broken-job set, mapping and folder tables, locks) and exposes the operations a
storage host calls: list, new_object, mkdir, rmdir, purge, move, dir_move,
public_link and the directory-cache hooks find_leaf and create_dir.

Remote paths passed to the engine are host-side and root-relative
(``"movies/some.film/film.mkv"``); folder IDs are canonical `DirPath` strings.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from .clients import get_client
from .clients.base import DebridClient
from .config_manager import EngineSettings
from .dircache import DirCache
from .inventory import InventoryFetcher
from .links import BrokenJobs, JobRecovery, LinkResolver
from .locks import MoveGuard, ReadWriteLock
from .mover import MoveEngine
from .namespace import Item, NamespaceTables, build_namespace, files_below
from .paths import DirPath, join_remote, normalize_dir, split_remote
from .refresher import BackgroundRefresher
from .rule_file import RuleFile
from .utils import (
    CancelScope,
    CantShareDirectoriesError,
    DebridError,
    DirExistsError,
    DirNotFoundError,
    ObjectNotFoundError,
    OperationCancelled,
)


@dataclass
class DirEntry:
    """A folder as returned by `NamespaceEngine.list`."""
    remote: str
    id: str
    mod_time: datetime


class DebridObject:
    """A file of the namespace, bound to the engine that listed it."""

    def __init__(self, engine: "NamespaceEngine", remote: str, item: Item):
        self.engine = engine
        self.remote = remote
        self.item = item

    def __str__(self) -> str:
        return self.remote

    def __repr__(self) -> str:
        return f"DebridObject({self.remote!r}, id={self.id!r})"

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def size(self) -> int:
        return self.item.size

    @property
    def mod_time(self) -> datetime:
        return datetime.fromtimestamp(self.item.created_at, tz=timezone.utc)

    @property
    def mime_type(self) -> str:
        return self.item.mime_type

    @property
    def url(self) -> str:
        return self.item.link

    @property
    def mapping_id(self) -> str:
        return self.item.mapping_id

    def open(self, headers: Optional[Dict[str, str]] = None):
        """Opens the file for streaming; returns a `requests.Response`."""
        return self.engine.resolver.open(self.item, headers)

    def remove(self) -> bool:
        return self.engine.remove(self)


class NamespaceEngine:
    """Serves the virtual folder tree and applies structural changes.

    The engine is constructed once at startup and torn down with `shutdown`
    (or by using it as a context manager). Tables are rebuilt lazily: every
    listing first checks whether the inventory or the rule file changed.
    """

    def __init__(
        self,
        settings: EngineSettings,
        client: Optional[DebridClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.cancel_event = threading.Event()
        self.client = client or get_client(settings, self.cancel_event)
        self.rule_file = RuleFile(settings.sort_file, strict=settings.strict_regex)
        self.fetcher = InventoryFetcher(
            self.client, self.rule_file,
            interval=settings.refresh_interval,
            debounce=settings.rule_check_debounce,
            clock=clock,
        )
        self.broken = BrokenJobs()
        self.tables = NamespaceTables()
        self.rules_lock = ReadWriteLock()
        self.move_guard = MoveGuard()
        self._rebuild_lock = threading.Lock()
        self._built = False
        self._stale_tables = False
        self.clock = clock
        self.started_at = clock()

        self.recovery = JobRecovery(
            self.client, self.fetcher, self.broken,
            poll_attempts=settings.recovery_poll_attempts,
            poll_delay=settings.recovery_poll_delay,
            cancel_event=self.cancel_event,
        )
        self.resolver = LinkResolver(self.client, self.fetcher, self.broken, self.recovery, self._torrents)
        self.mover = MoveEngine(
            self.client, self.rule_file, self.tables, self.fetcher,
            self.rules_lock, self.move_guard, self._torrents,
        )
        self.dir_cache = DirCache(self)
        self.refresher: Optional[BackgroundRefresher] = None
        if settings.background_refresh:
            self.refresher = BackgroundRefresher(settings.refresh_interval)

    def _torrents(self):
        return self.fetcher.torrents

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> "NamespaceEngine":
        """Creates the rule file if needed, builds the tables and starts the refresher."""
        self.started_at = self.clock()
        with self.rules_lock.write_locked():
            self.rule_file.ensure_exists()
        self.ensure_fresh(force=True)
        if self.refresher and not self.refresher.running:
            self.refresher.start(self)
        return self

    def shutdown(self) -> None:
        """Stops background work and aborts in-flight remote calls."""
        self.cancel_event.set()
        if self.refresher:
            self.refresher.stop()
        logging.info("STATE: Namespace engine shut down.")

    @staticmethod
    def cancellable(event: Optional[threading.Event] = None, timeout: Optional[float] = None) -> CancelScope:
        """Bounds the engine calls made inside the ``with`` block.

        Remote requests, retry pauses and recovery polls on the calling
        thread stop with `OperationCancelled` once `event` is set or
        `timeout` seconds have passed.
        """
        return CancelScope(event, timeout)

    def __enter__(self) -> "NamespaceEngine":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # -- rebuild -----------------------------------------------------------

    def ensure_fresh(self, force: bool = False) -> bool:
        """Rebuilds the tables if the inventory or the rule file changed.

        Only one thread rebuilds at a time; once tables exist, other threads
        keep serving them instead of waiting. No rebuild starts while a
        structural operation is in progress. If the remote cannot be reached
        and tables already exist, they keep being served.

        Returns:
            `True` if the tables were rebuilt.
        """
        if self._built and self.move_guard.moving:
            return False
        if not self._rebuild_lock.acquire(blocking=not self._built):
            return False
        try:
            try:
                snapshot = self.fetcher.refresh(force=force)
            except OperationCancelled:
                raise
            except DebridError as e:
                if not self._built:
                    raise
                logging.warning(f"REMOTE: Inventory refresh failed, serving the current tree: {e}")
                return False
            if self._built and not (force or snapshot.changed or snapshot.rules_changed or self._stale_tables):
                return False
            if self._built and self.move_guard.moving:
                logging.debug("STATE: Skipping rebuild while a move is in progress.")
                return False
            return self._rebuild()
        finally:
            self._rebuild_lock.release()

    def _rebuild(self) -> bool:
        """Parses the rule file, builds fresh tables and publishes them.

        Building may recover dead jobs, which takes several remote round
        trips, so it runs without the rules lock. If the rule file was
        written in the meantime the result is dropped; the writer already
        patched the live tables and the next call rebuilds from the new file.
        """
        with self.rules_lock.read_locked():
            parsed = self.rule_file.load()
            generation = self.rule_file.generation
        fresh = build_namespace(
            parsed,
            self.fetcher.torrents,
            self.fetcher.lookup_link,
            self.recovery.recover,
            self.broken.__contains__,
        )
        with self.rules_lock.write_locked():
            written_meanwhile = generation != self.rule_file.generation
            if written_meanwhile:
                logging.debug("STATE: Sorting file changed during the rebuild; rebuilding again on next access.")
                if self._built:
                    self._stale_tables = True
                    return False
            self.tables.publish(fresh)
            self._stale_tables = written_meanwhile
        self._built = True
        self.dir_cache.reset_root()
        logging.debug(f"STATE: Namespace rebuilt: {len(self.tables.folders)} folder(s), "
                      f"{len(self.tables.mapping)} mapping(s).")
        return True

    # -- listing -----------------------------------------------------------

    def list_all(self, dir_id: str, directories_only: bool = False, files_only: bool = False) -> List[Item]:
        """Returns the children of a folder, resolving file links on the way.

        A folder missing from the table yields no children.
        """
        self.ensure_fresh()
        result = []
        for item in self.tables.folders.children(normalize_dir(dir_id)):
            if item.is_folder:
                if files_only:
                    continue
            else:
                if directories_only:
                    continue
                item = self.resolver.resolve(item)
            result.append(item)
        return result

    def list(self, directory: str = '') -> List[Union[DirEntry, DebridObject]]:
        """Lists a folder by its remote path.

        Raises:
            DirNotFoundError: If the folder does not exist.
        """
        dir_id = self.dir_cache.find_dir(directory)
        entries: List[Union[DirEntry, DebridObject]] = []
        for item in self.list_all(dir_id):
            remote = join_remote(directory, item.name)
            if item.is_folder:
                self.dir_cache.put(remote, item.id)
                entries.append(DirEntry(remote, item.id, self._folder_mod_time(item)))
            else:
                entries.append(DebridObject(self, remote, item))
        return entries

    def _folder_mod_time(self, folder: Item) -> datetime:
        """Newest time among the folder's files, else when the engine started."""
        times = [child.created_at for child in self.tables.folders.children(DirPath(folder.id)) if child.created_at]
        return datetime.fromtimestamp(max(times, default=self.started_at), tz=timezone.utc)

    def find_leaf(self, dir_id: str, leaf: str) -> Tuple[str, bool]:
        """Looks up a sub-folder by name (case-insensitive)."""
        lc_leaf = leaf.lower()
        for item in self.list_all(dir_id, directories_only=True):
            if item.name.lower() == lc_leaf:
                return item.id, True
        return '', False

    def create_dir(self, dir_id: str, leaf: str) -> str:
        return str(self.mover.create_dir(dir_id, leaf))

    def dir_cache_flush(self) -> None:
        self.dir_cache.reset_root()

    def _find_item(self, remote: str) -> Tuple[Item, str]:
        try:
            leaf, dir_id = self.dir_cache.find_path(remote)
        except DirNotFoundError as e:
            raise ObjectNotFoundError(f"object not found: '{remote}'") from e
        lc_leaf = leaf.lower()
        for item in self.list_all(dir_id, files_only=True):
            if item.name.lower() == lc_leaf:
                return item, dir_id
        raise ObjectNotFoundError(f"object not found: '{remote}'")

    def new_object(self, remote: str) -> DebridObject:
        """Finds the file at `remote`.

        Raises:
            ObjectNotFoundError: If no such file exists.
        """
        item, _ = self._find_item(remote)
        return DebridObject(self, remote, item)

    # -- structural operations ----------------------------------------------

    def mkdir(self, directory: str) -> str:
        return self.dir_cache.find_dir(directory, create=True)

    def rmdir(self, directory: str) -> None:
        """Removes an empty folder.

        Raises:
            DirNotFoundError: If the folder does not exist.
            DirectoryNotEmptyError: If it still has children.
        """
        dir_id = self.dir_cache.find_dir(directory)
        self.mover.remove_dir(dir_id)
        self.dir_cache.flush_dir(directory)

    def purge(self, directory: str) -> None:
        """Trashes every file below a folder, then removes the folder."""
        if not directory.strip('/'):
            raise DebridError("can't purge root directory")
        dir_id = DirPath(self.dir_cache.find_dir(directory))
        self.ensure_fresh()
        for item in list(files_below(self.tables.folders, dir_id)):
            self.mover.remove(item)
        self.mover.remove_dir(dir_id, recursive=True)
        self.dir_cache.flush_dir(directory)

    def remove(self, obj: DebridObject) -> bool:
        """Trashes a file; returns `True` if this deleted its whole job."""
        return self.mover.remove(obj.item)

    def move(self, obj: DebridObject, remote: str) -> DebridObject:
        """Moves and/or renames a file. Missing destination folders are created."""
        leaf, dir_id = self.dir_cache.find_path(remote, create=True)
        moved = self.mover.move_file(obj.item, dir_id, leaf)
        return DebridObject(self, remote, moved)

    def dir_move(self, src_remote: str, dst_remote: str) -> None:
        """Moves a folder and everything below it.

        Raises:
            DirNotFoundError: If the source does not exist.
            DirExistsError: If the destination already exists.
        """
        src_id = self.dir_cache.find_dir(src_remote)
        try:
            self.dir_cache.find_dir(dst_remote)
        except DirNotFoundError:
            pass
        else:
            raise DirExistsError(f"directory already exists: '{dst_remote}'")
        dst_parent, dst_leaf = split_remote(dst_remote)
        dst_parent_id = self.dir_cache.find_dir(dst_parent, create=True)
        self.mover.move_dir(src_id, normalize_dir(dst_parent_id).join(dst_leaf))
        self.dir_cache.flush_dir(src_remote)

    def public_link(self, remote: str) -> str:
        """Returns the direct-download URL of a file.

        Raises:
            CantShareDirectoriesError: If `remote` is a folder.
            ObjectNotFoundError: If no such file exists.
        """
        try:
            self.dir_cache.find_dir(remote)
        except DirNotFoundError:
            pass
        else:
            raise CantShareDirectoriesError(f"can't share directories: '{remote}'")
        return self.new_object(remote).url
