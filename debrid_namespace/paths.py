"""Canonical path handling for the virtual namespace.

Every folder path inside the engine is a `DirPath`: it starts and ends with a
slash, never contains empty segments, and the root is ``"/"``. Paths coming
from callers, the rule file or the directory cache are converted with
`normalize_dir` as soon as they cross into the engine.
"""
from typing import List, Tuple


class DirPath(str):
    """A folder path in canonical ``/a/b/`` form."""

    def __new__(cls, value: str = "/") -> "DirPath":
        if isinstance(value, DirPath):
            return value
        segments = [part for part in str(value).split('/') if part]
        canonical = '/' + '/'.join(segments) + '/' if segments else '/'
        return super().__new__(cls, canonical)

    @property
    def is_root(self) -> bool:
        return self == '/'

    @property
    def segments(self) -> List[str]:
        return [part for part in self.split('/') if part]

    @property
    def leaf(self) -> str:
        """The last segment, or an empty string for the root."""
        segments = self.segments
        return segments[-1] if segments else ''

    @property
    def parent(self) -> "DirPath":
        return DirPath('/'.join(self.segments[:-1]))

    def join(self, leaf: str) -> "DirPath":
        return DirPath(self + leaf)

    def contains(self, other: str) -> bool:
        """True if `other` is this folder or lies anywhere below it."""
        return str(other).startswith(self)

    def relocate(self, old_prefix: "DirPath", new_prefix: "DirPath") -> "DirPath":
        """Rewrites this path after `old_prefix` was moved to `new_prefix`."""
        if not old_prefix.contains(self):
            return self
        return DirPath(new_prefix + self[len(old_prefix):])

    def __repr__(self) -> str:
        return f"DirPath({str.__repr__(self)})"


ROOT = DirPath('/')


def normalize_dir(path: str) -> DirPath:
    """Returns the canonical folder form of `path` (``"a/b"`` -> ``"/a/b/"``)."""
    return DirPath(path or '/')


def split_leaf(value: str) -> Tuple[DirPath, str]:
    """Splits a mapping value into its folder and optional file leaf.

    A value ending with ``/`` names a folder only and yields an empty leaf;
    otherwise the final segment is the file's chosen display name.

    Example:
        ``"/movies/x/film.mkv"`` -> ``(DirPath('/movies/x/'), 'film.mkv')``
    """
    if not value or value.endswith('/'):
        return normalize_dir(value), ''
    head, _, leaf = value.rpartition('/')
    return normalize_dir(head), leaf


def join_remote(directory: str, leaf: str) -> str:
    """Joins host-side (root-relative, slash-free at the ends) remote paths."""
    directory = directory.strip('/')
    return f"{directory}/{leaf}" if directory else leaf


def split_remote(remote: str) -> Tuple[str, str]:
    """Splits a host-side remote path into ``(directory, leaf)``."""
    remote = remote.strip('/')
    directory, _, leaf = remote.rpartition('/')
    return directory, leaf
