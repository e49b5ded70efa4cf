"""Applies structural changes to the virtual tree.

Moves, renames, trashing, folder creation and folder removal are all recorded
in the rule file, which is the only durable state of the namespace. Each
change rewrites the rule file under the write side of the rules lock and then
patches the in-memory tables inside the same critical section, so listings
reflect the change before the next rebuild picks it up from disk.

Structural operations run one at a time under the `MoveGuard`; while one is in
progress the engine does not start a rebuild.
"""
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from .clients.base import DebridClient, Torrent, link_leaf
from .inventory import InventoryFetcher
from .locks import MoveGuard, ReadWriteLock
from .namespace import Item, NamespaceTables, is_trashed, mapping_key
from .paths import DirPath, ROOT, normalize_dir, split_leaf
from .rule_file import (
    RuleFile,
    TRASH_MARKER,
    relocate_regex_folders,
    rewrite_mappings,
    strip_governing_lines,
    strip_mappings,
)
from .utils import (
    APIError,
    DebridError,
    DirectoryNotEmptyError,
    DirNotFoundError,
    ObjectNotFoundError,
    ReservedRootError,
)


def job_key_of(key: str) -> str:
    """``/<job>/<leaf>`` -> ``/<job>/``."""
    return key[:key.rindex('/') + 1]


def is_folder_key(key: str, value: str) -> bool:
    """True for keys that name folders: job-level keys, created folders and bare leaves."""
    return key.endswith('/') or value == str(normalize_dir(key))


class MoveEngine:
    """Records structural changes in the rule file and the live tables.

    Attributes:
        client: Used to delete jobs once all their files are trashed.
        rule_file: The durable mapping.
        tables: The engine's live `NamespaceTables`, patched in place.
        fetcher: Invalidated when a change requires fresh remote data.
    """

    def __init__(
        self,
        client: DebridClient,
        rule_file: RuleFile,
        tables: NamespaceTables,
        fetcher: InventoryFetcher,
        rules_lock: ReadWriteLock,
        move_guard: MoveGuard,
        torrents: Callable[[], List[Torrent]],
    ):
        self.client = client
        self.rule_file = rule_file
        self.tables = tables
        self.fetcher = fetcher
        self.rules_lock = rules_lock
        self.move_guard = move_guard
        self._torrents = torrents

    def _job_by_id(self, job_id: str) -> Optional[Torrent]:
        for torrent in self._torrents():
            if torrent.id == job_id:
                return torrent
        return None

    def _is_job_name(self, name: str) -> bool:
        return any(torrent.name == name for torrent in self._torrents())

    def move(self, is_file: bool, item_key: str, old_leaf: str, new_leaf: str,
             old_dir: str, new_dir: str) -> Dict[str, str]:
        """Moves or renames a file or folder.

        The affected mappings are computed from the live tables inside the
        write side of the rules lock, so a rebuild publishing new tables can
        not interleave with the computation.

        Args:
            is_file: Whether a single file is moved.
            item_key: The file's mapping key; ignored for folders.
            old_leaf: Current name of the file or folder.
            new_leaf: New name of the file or folder.
            old_dir: Folder the item is currently in.
            new_dir: Folder the item moves to.

        Returns:
            The mapping key -> new destination updates that were recorded.
        """
        old_dir, new_dir = normalize_dir(old_dir), normalize_dir(new_dir)
        with self.move_guard.guard():
            with self.rules_lock.write_locked():
                return self._apply_move(is_file, item_key, old_leaf, new_leaf, old_dir, new_dir)

    def _apply_move(self, is_file: bool, item_key: str, old_leaf: str, new_leaf: str,
                    old_dir: DirPath, new_dir: DirPath) -> Dict[str, str]:
        # Caller holds the write lock.
        if is_file:
            old_path = new_path = None
            updates = {item_key: new_dir + new_leaf}
            regex_move = False
            logging.info(f"STATE: Moving file '{old_dir}{old_leaf}' to '{new_dir}{new_leaf}'.")
        else:
            old_path, new_path = old_dir.join(old_leaf), new_dir.join(new_leaf)
            updates, regex_move = self._folder_updates(old_leaf, old_path, new_path)
            logging.info(f"STATE: Moving folder '{old_path}' to '{new_path}' ({len(updates)} mapping(s) affected).")

        def transform(lines: List[str]) -> List[str]:
            if regex_move:
                lines = relocate_regex_folders(lines, old_path, new_path)
            return rewrite_mappings(lines, updates)

        self.rule_file.rewrite(transform)
        if is_file:
            self._patch_file(item_key, updates[item_key])
        else:
            self._patch_folder(old_path, new_path, updates, regex_move)
        return updates

    def _folder_updates(self, old_leaf: str, old_path: DirPath, new_path: DirPath) -> Tuple[Dict[str, str], bool]:
        """Computes the recorded destinations affected by moving `old_path`.

        Every recorded value at or below the old folder is re-pointed by
        replacing the moved prefix. The folder itself is recorded under its
        job-level key when its name is a job name, otherwise under the key of
        the line that declared it. Jobs that only sit below the folder by
        default get a job-level entry so that they follow the move.
        """
        updates: Dict[str, str] = {}
        for key, value in self.tables.overrides.items():
            if old_path.contains(value):
                updates[key] = new_path + value[len(old_path):]
            elif normalize_dir(value) == old_path:
                updates[key] = str(new_path)

        regex_move = any(old_path.contains(rule.destination) for rule in self.tables.regex_rules)

        is_job = self._is_job_name(old_leaf)
        if is_job:
            folder_key = mapping_key(old_leaf)
        else:
            folder_key = next(
                (k for k, v in self.tables.overrides.items() if is_folder_key(k, v) and normalize_dir(k) == old_path),
                str(old_path),
            )
        if folder_key not in updates and (is_job or not regex_move):
            updates[folder_key] = str(new_path)

        if not regex_move:
            for key, value in self.tables.mapping.items():
                if key in self.tables.overrides or key.endswith('/') or not old_path.contains(value):
                    continue
                job_key = job_key_of(key)
                if job_key not in self.tables.overrides and job_key not in updates:
                    folder = split_leaf(value)[0]
                    updates[job_key] = new_path + folder[len(old_path):]
        return updates, regex_move

    def _patch_file(self, key: str, value: str) -> None:
        tables = self.tables
        old_folder = tables.folder_of(key)
        removed: List[Item] = []
        if old_folder is not None:
            removed = tables.folders.remove(old_folder, lambda i: i.is_file and i.mapping_id == key)
        tables.overrides[key] = value
        tables.mapping[key] = value
        if is_trashed(value) or not removed:
            return
        folder, leaf = split_leaf(value)
        tables.folders.ensure_path(folder)
        if not tables.folders.add(folder, replace(removed[0], name=leaf or removed[0].name)):
            logging.warning(f"STATE: '{folder}' already holds an entry named '{leaf}'. "
                            f"The moved file is hidden until the names differ.")

    def _patch_folder(self, old_path: DirPath, new_path: DirPath, updates: Dict[str, str], regex_move: bool) -> None:
        tables = self.tables
        for key, value in updates.items():
            tables.overrides[key] = value
            tables.mapping[key] = value
        for key, value in list(tables.mapping.items()):
            if key not in updates and old_path.contains(value):
                tables.mapping[key] = new_path + value[len(old_path):]
        if regex_move:
            tables.regex_rules = [
                replace(rule, folder=str(DirPath(rule.destination).relocate(old_path, new_path)))
                for rule in tables.regex_rules
            ]
        tables.folders.relocate(old_path, new_path)

    def move_file(self, item: Item, new_dir: str, new_leaf: str) -> Item:
        """Moves and/or renames a file. Returns the updated entry."""
        old_dir = self.tables.folder_of(item.mapping_id) or ROOT
        self.move(True, item.mapping_id, item.name, new_leaf, old_dir, new_dir)
        return replace(item, name=new_leaf)

    def move_dir(self, src: str, dst: str) -> Dict[str, str]:
        src, dst = normalize_dir(src), normalize_dir(dst)
        if src.is_root or dst.is_root:
            raise DebridError("can't move the root directory")
        return self.move(False, str(src), src.leaf, dst.leaf, src.parent, dst.parent)

    def _job_for(self, item: Item) -> Torrent:
        job = self._job_by_id(item.parent_id)
        if job is not None:
            return job
        try:
            return self.client.torrent_info(item.parent_id)
        except APIError as e:
            self.fetcher.invalidate()
            raise ObjectNotFoundError(f"job {item.parent_id} of '{item.name}' no longer exists: {e}") from e

    def remove(self, item: Item) -> bool:
        """Trashes a file.

        The file is moved to a trash-marked name and disappears from the
        tree. Once every file of its job is trashed the job is deleted from
        the remote and all of its rule file lines are stripped. Only the keys
        of the job's current files count towards that; trash lines left over
        from files the job no longer has are ignored.

        Returns:
            `True` if the whole job was deleted.

        Raises:
            ObjectNotFoundError: If the file's job is gone from the remote.
        """
        with self.move_guard.guard():
            key = item.mapping_id
            job_key = job_key_of(key)
            job = self._job_for(item)
            current = {mapping_key(job.name, link_leaf(link)) for link in job.file_links}

            with self.rules_lock.write_locked():
                overrides = self.tables.overrides
                trashed = {k for k in current if k == key or is_trashed(overrides.get(k))}
                if key not in current or trashed != current:
                    folder = self.tables.folder_of(key) or ROOT
                    logging.debug(f"STATE: Moving '{key}' to the internal trash "
                                  f"({len(trashed)}/{len(current)} of its job).")
                    self._apply_move(True, key, item.name, item.name + TRASH_MARKER, folder, folder)
                    return False

            logging.info(f"STATE: All files of job {item.parent_id} are in the trash. Deleting it from the remote.")
            self.client.delete_torrent(item.parent_id)
            with self.rules_lock.write_locked():
                self.rule_file.rewrite(lambda lines: strip_mappings(lines, lambda k: k.startswith(job_key)))
                for table in (self.tables.overrides, self.tables.mapping):
                    for k in [k for k in table if k.startswith(job_key)]:
                        del table[k]
                for path in self.tables.folders.paths():
                    self.tables.folders.remove(path, lambda i: i.is_file and i.parent_id == item.parent_id)
            self.fetcher.invalidate()
            return True

    def create_dir(self, parent: str, leaf: str) -> DirPath:
        """Declares a new folder by appending it to the rule file.

        Raises:
            ReservedRootError: If `parent` is the root, which only holds
                rule-derived folders.
        """
        parent = normalize_dir(parent)
        if parent.is_root:
            raise ReservedRootError("can't create directories in the root directory, it is reserved for regex folders")
        path = parent.join(leaf)
        with self.rules_lock.write_locked():
            self.rule_file.append_line(str(path))
            self.tables.overrides[str(path)] = str(path)
            self.tables.mapping[str(path)] = str(path)
            self.tables.folders.ensure_path(path)
        logging.info(f"STATE: Created folder '{path}'.")
        return path

    def remove_dir(self, path: str, recursive: bool = False) -> List[str]:
        """Removes a folder and the rule file lines declaring it.

        Args:
            path: The folder to remove.
            recursive: Also drop sub-folders. Files must already be gone.

        Returns:
            The mapping keys whose lines were removed.

        Raises:
            DirNotFoundError: If the folder does not exist.
            DirectoryNotEmptyError: If `recursive` is not set and the folder has children.
        """
        path = normalize_dir(path)
        if path.is_root:
            raise DebridError("can't remove the root directory")
        with self.move_guard.guard():
            with self.rules_lock.write_locked():
                folders = self.tables.folders
                if path not in folders:
                    raise DirNotFoundError(f"directory not found: '{path}'")
                if not recursive and folders.children(path):
                    raise DirectoryNotEmptyError(f"directory not empty: '{path}'")

                keys = [k for k, v in self.tables.overrides.items()
                        if is_folder_key(k, v) and not is_trashed(v) and path.contains(normalize_dir(v))]
                if keys:
                    self.rule_file.rewrite(lambda lines: strip_governing_lines(lines, keys))
                for key in keys:
                    self.tables.overrides.pop(key, None)
                    self.tables.mapping.pop(key, None)
                for p in folders.paths():
                    if path.contains(p):
                        folders.drop(p)
                folders.remove(path.parent, lambda i: i.is_folder and i.id == str(path))
            logging.info(f"STATE: Removed folder '{path}' ({len(keys)} rule line(s)).")
            return keys
