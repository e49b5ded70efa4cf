"""Maps host-side remote paths to folder IDs.

Folder IDs in the namespace are the canonical folder paths themselves, but the
cache still only learns about a folder by asking its parent for the leaf. That
keeps "does this path exist" answers consistent with what a listing would show.
"""
import logging
import threading
from typing import Dict, Optional, Protocol, Tuple

from .paths import ROOT, join_remote, split_remote
from .utils import DirNotFoundError


class DirFinder(Protocol):
    def find_leaf(self, dir_id: str, leaf: str) -> Tuple[str, bool]:
        ...

    def create_dir(self, dir_id: str, leaf: str) -> str:
        ...


class DirCache:
    """Caches remote path -> folder ID lookups.

    Remote paths are host-side and root-relative (``"movies/x"``); the root is
    the empty string.
    """

    def __init__(self, finder: DirFinder, root_id: str = str(ROOT)):
        self.finder = finder
        self.root_id = root_id
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(path.strip('/'))

    def put(self, path: str, dir_id: str) -> None:
        with self._lock:
            self._cache[path.strip('/')] = dir_id

    def find_root(self, create: bool = False) -> str:
        self.put('', self.root_id)
        return self.root_id

    def find_dir(self, path: str, create: bool = False) -> str:
        """Returns the folder ID of `path`, walking up to the first cached parent.

        Raises:
            DirNotFoundError: If a segment is missing and `create` is not set.
        """
        path = path.strip('/')
        if not path:
            return self.find_root(create)
        cached = self.get(path)
        if cached is not None:
            return cached
        # The finder may trigger a rebuild that resets this cache, so it is
        # never called with the lock held.
        parent, leaf = split_remote(path)
        parent_id = self.find_dir(parent, create)
        dir_id, found = self.finder.find_leaf(parent_id, leaf)
        if not found:
            if not create:
                raise DirNotFoundError(f"directory not found: '{path}'")
            logging.debug(f"STATE: Creating missing folder '{leaf}' in '{parent_id}'.")
            dir_id = self.finder.create_dir(parent_id, leaf)
        self.put(path, dir_id)
        return dir_id

    def find_path(self, remote: str, create: bool = False) -> Tuple[str, str]:
        """Returns ``(leaf, folder ID of its parent)`` for a file or folder path."""
        directory, leaf = split_remote(remote)
        return leaf, self.find_dir(directory, create)

    def flush_dir(self, path: str) -> None:
        """Forgets `path` and everything cached below it."""
        path = path.strip('/')
        if not path:
            self.reset_root()
            return
        with self._lock:
            prefix = join_remote(path, '')
            for cached in [p for p in self._cache if p == path or p.startswith(prefix)]:
                del self._cache[cached]

    def reset_root(self) -> None:
        with self._lock:
            self._cache.clear()
