"""Derives the virtual folder tree from the inventory and the parsed rules.

The remote only knows a flat list of jobs, each with a list of restricted
file references. This module combines that list with the rule file into two
tables:

- the mapping table: mapping key (``/<job name>/<file leaf id>``) -> destination
  value, either a folder (``/movies/x/``) or a folder plus chosen file name
  (``/movies/x/film.mkv``), optionally carrying the trash marker;
- the folder table: folder path -> ordered children (files and sub-folders).

`build_namespace` recomputes both from scratch. Given the same rules and the
same inventory it always produces the same tables.
"""
import mimetypes
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional

from .clients.base import Download, Torrent, link_leaf, parse_timestamp
from .paths import DirPath, ROOT, normalize_dir, split_leaf
from .rule_file import ParsedRules, ParseWarning, RegexRule, TRASH_MARKER

ITEM_FILE = 'file'
ITEM_FOLDER = 'folder'
BROKEN_STATUSES = ('dead', 'error')


@dataclass
class Item:
    """A file or folder entry of the virtual tree."""
    name: str
    id: str
    type: str
    size: int = 0
    link: str = ''
    original_link: str = ''
    parent_id: str = ''
    torrent_hash: str = ''
    mapping_id: str = ''
    created_at: int = 0
    mime_type: str = ''

    @property
    def is_file(self) -> bool:
        return self.type == ITEM_FILE

    @property
    def is_folder(self) -> bool:
        return self.type == ITEM_FOLDER


def folder_item(name: str, path: DirPath) -> Item:
    return Item(name=name, id=str(path), type=ITEM_FOLDER)


def mapping_key(job_name: str, leaf_id: str = '') -> str:
    """``"/" + job name + "/" + file leaf id``; without a leaf id it is the job-level key."""
    return f"/{job_name}/{leaf_id}"


def is_trashed(value: Optional[str]) -> bool:
    return bool(value) and value.endswith(TRASH_MARKER)


def destination_folder(key: str, value: str) -> DirPath:
    """The folder a mapping value places its key in.

    Keys ending in ``/`` (job-level keys, folder keys, bare leaves) always map
    to folders; file keys may carry a chosen file name as the last segment.
    """
    if key.endswith('/'):
        return normalize_dir(value)
    return split_leaf(value)[0]


class FolderTable:
    """Folder path -> ordered children, de-duplicated by name (first write wins).

    Child lists are never mutated in place; every change stores a new list so
    a reader iterating a list it obtained earlier is never disturbed.
    """

    def __init__(self) -> None:
        self._folders: Dict[DirPath, List[Item]] = {}

    def __contains__(self, path: str) -> bool:
        return normalize_dir(path) in self._folders

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FolderTable) and self._folders == other._folders

    def __len__(self) -> int:
        return len(self._folders)

    def paths(self) -> List[DirPath]:
        return list(self._folders)

    def children(self, path: str) -> List[Item]:
        return list(self._folders.get(normalize_dir(path), ()))

    def find(self, path: str, name: str) -> Optional[Item]:
        for item in self._folders.get(normalize_dir(path), ()):
            if item.name == name:
                return item
        return None

    def add(self, path: str, item: Item) -> bool:
        """Adds `item` under `path` unless a child with the same name exists."""
        path = normalize_dir(path)
        existing = self._folders.get(path, [])
        if any(child.name == item.name for child in existing):
            return False
        self._folders[path] = existing + [item]
        return True

    def remove(self, path: str, predicate: Callable[[Item], bool]) -> List[Item]:
        """Removes the children of `path` matching `predicate` and returns them."""
        path = normalize_dir(path)
        existing = self._folders.get(path, [])
        removed = [item for item in existing if predicate(item)]
        if removed:
            self._folders[path] = [item for item in existing if not predicate(item)]
        return removed

    def drop(self, path: str) -> None:
        self._folders.pop(normalize_dir(path), None)

    def ensure_path(self, path: str) -> None:
        """Makes `path` and every missing ancestor exist, linking each to its parent."""
        path = normalize_dir(path)
        location = ROOT
        self._folders.setdefault(location, [])
        for segment in path.segments:
            child = location.join(segment)
            self.add(location, folder_item(segment, child))
            self._folders.setdefault(child, [])
            location = child

    def relocate(self, old: DirPath, new: DirPath) -> None:
        """Moves the subtree rooted at `old` to `new`."""
        moved = {p: items for p, items in self._folders.items() if old.contains(p)}
        for p in moved:
            del self._folders[p]
        self.remove(old.parent, lambda item: item.is_folder and item.name == old.leaf)
        self.ensure_path(new)
        for p, items in moved.items():
            target = p.relocate(old, new)
            self._folders.setdefault(target, [])
            for item in items:
                if item.is_folder:
                    item = replace(item, id=str(DirPath(item.id).relocate(old, new)))
                self.add(target, item)

    def sync_from(self, other: "FolderTable") -> None:
        """Makes this table equal to `other`, only touching folders that differ."""
        for path, items in other._folders.items():
            if self._folders.get(path) != items:
                self._folders[path] = list(items)
        for path in [p for p in self._folders if p not in other._folders]:
            del self._folders[path]


def sync_dict(target: Dict[str, str], source: Dict[str, str]) -> None:
    """Updates `target` to equal `source`, writing only keys whose value changed."""
    for key, value in source.items():
        if target.get(key) != value:
            target[key] = value
    for key in [k for k in target if k not in source]:
        del target[key]


@dataclass
class NamespaceTables:
    """The derived state of one engine instance.

    Attributes:
        mapping: Mapping key -> effective destination value.
        overrides: The raw key -> value entries read from the rule file.
        folders: The folder table.
        regex_rules: Parsed classification rules, in file order.
        warnings: Lines dropped while parsing the rule file.
    """
    mapping: Dict[str, str] = field(default_factory=dict)
    overrides: Dict[str, str] = field(default_factory=dict)
    folders: FolderTable = field(default_factory=FolderTable)
    regex_rules: List[RegexRule] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)

    def publish(self, other: "NamespaceTables") -> None:
        """Adopts freshly built tables while keeping unchanged entries untouched."""
        sync_dict(self.overrides, other.overrides)
        sync_dict(self.mapping, other.mapping)
        self.folders.sync_from(other.folders)
        self.regex_rules = list(other.regex_rules)
        self.warnings = list(other.warnings)

    def folder_of(self, key: str) -> Optional[DirPath]:
        value = self.mapping.get(key)
        if value is None:
            return None
        return destination_folder(key, value)


def file_item(torrent: Torrent, link: str, download: Optional[Download]) -> Item:
    """Builds the tree entry for one file reference of `torrent`."""
    leaf_id = link_leaf(link)
    item = Item(
        name=leaf_id,
        id=leaf_id,
        type=ITEM_FILE,
        original_link=link,
        parent_id=torrent.id,
        torrent_hash=torrent.hash,
        mapping_id=mapping_key(torrent.name, leaf_id),
        created_at=torrent.created_at,
    )
    if download is not None:
        item.name = download.name or leaf_id
        item.size = download.size
        item.link = download.url
        item.mime_type = download.mime_type
        item.created_at = parse_timestamp(download.generated) or item.created_at
    if not item.mime_type:
        item.mime_type = mimetypes.guess_type(item.name)[0] or ''
    return item


def build_namespace(
    parsed: ParsedRules,
    torrents: List[Torrent],
    lookup_link: Callable[[str], Optional[Download]],
    recover: Callable[[Torrent], Torrent],
    is_broken: Callable[[str], bool],
) -> NamespaceTables:
    """Builds the mapping and folder tables.

    Dead, erroring or known-broken jobs are recovered first; the recovered job
    replaces the old one in `torrents` in place.

    Args:
        parsed: The parsed rule file.
        torrents: The job list. Modified in place for recovered jobs.
        lookup_link: Returns the cached resolution of a restricted link.
        recover: Re-creates a dead job and returns its replacement.
        is_broken: Tells whether a job ID is in the broken-job set.

    Returns:
        The freshly built `NamespaceTables`.
    """
    tables = NamespaceTables(
        overrides=dict(parsed.mappings),
        regex_rules=list(parsed.regex_rules),
        warnings=list(parsed.warnings),
    )
    mapping = tables.mapping
    mapping.update(parsed.mappings)

    for i in range(len(torrents)):
        torrent = torrents[i]
        if torrent.status in BROKEN_STATUSES or is_broken(torrent.id):
            torrent = torrents[i] = recover(torrent)
        default_location = parsed.default_location(torrent.name)
        job_value = parsed.mappings.get(mapping_key(torrent.name))

        for link in torrent.file_links:
            item = file_item(torrent, link, lookup_link(link))
            key = item.mapping_id
            value = parsed.mappings.get(key)
            if value is None:
                value = job_value if job_value is not None else default_location + torrent.name + '/'
                mapping[key] = str(normalize_dir(value))
            elif is_trashed(value):
                continue
            folder, leaf = split_leaf(mapping[key])
            if leaf:
                item.name = leaf
            tables.folders.add(folder, item)

    for key, value in list(mapping.items()):
        if is_trashed(value):
            continue
        tables.folders.ensure_path(destination_folder(key, value))
    return tables


def files_below(folders: FolderTable, path: DirPath) -> Iterable[Item]:
    """Yields every file in `path` and its sub-folders."""
    for folder in folders.paths():
        if path.contains(folder):
            for item in folders.children(folder):
                if item.is_file:
                    yield item
