"""Reads, parses and rewrites the sorting rule file.

The rule file is a plain UTF-8 text file edited by users and by the move
engine. One directive per line:

- ``# ...``                      comment
- ``/folder == <regex>``         classify jobs whose name matches into /folder
- ``<key> -> <destination>``     explicit move of a mapping key
- ``/folder``                    bare leaf, declares a standalone folder

Key features include:
- Creating the file from a documented template when it is missing.
- Parsing it into typed `RegexRule` objects and a key -> value mapping.
- Recording malformed regex lines as `ParseWarning` instead of failing the whole
  load (or raising, in strict mode).
- Pure line-rewriting helpers used by the move engine, and an all-or-nothing
  `rewrite` that swaps in fully buffered content.
"""
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

from .paths import normalize_dir
from .utils import RuleFileError

MOVE_SEP = " -> "
REGEX_SEP = " == "
TRASH_MARKER = ".trashed"
DEFAULT_FOLDER = "/default/"

DEFAULT_TEMPLATE = """# ==================================================
# debrid-namespace sorting file
# ==================================================
#
# Lines starting with "#" are comments.
#
# Regex folders: "/foldername" + " == " + regular expression.
#   Jobs are tested against the rules from top to bottom and land in the
#   first folder whose expression matches their name. Jobs matching no rule
#   are placed in "/default". Avoid trailing spaces.
#   Example: /movies == (?i)(19|20)([0-9]{2} ?\\.?)
#
# Standalone folders: "/foldername" on its own line.
#   Example: /archive
#
# Moves and renames: "/" + job name + "/" + file id + " -> " + destination.
#   Destination folders are created automatically. A whole job can be moved
#   by leaving out the file id.
#   Example: /some.show.S01/ -> /shows/some.show/season 1/
#   Example: /some.show.S01/ABCDEFGHIJKLM -> /shows/some.show/season 1/episode 1.mkv

# ==================================================
# top level and regex folders
# ==================================================

/shows == (?i)(S[0-9]{2}|SEASONS?.[0-9]|COMPLETE|[^457a-z\\W\\s]-[0-9]+)
/movies == (?i)(19|20)([0-9]{2} ?\\.?)
/default

# ==================================================
# recorded changes to the structure
# ==================================================

"""


@dataclass(frozen=True)
class RegexRule:
    """An ordered (pattern, destination folder) classification rule."""
    folder: str
    pattern: Pattern
    line_no: int = 0

    def matches(self, name: str) -> bool:
        return self.pattern.search(name) is not None

    @property
    def destination(self) -> str:
        return str(normalize_dir(self.folder))


@dataclass(frozen=True)
class ParseWarning:
    """A rule file line that was dropped during parsing."""
    line_no: int
    line: str
    message: str


@dataclass
class ParsedRules:
    """The typed content of a rule file."""
    regex_rules: List[RegexRule] = field(default_factory=list)
    mappings: Dict[str, str] = field(default_factory=dict)
    warnings: List[ParseWarning] = field(default_factory=list)

    def default_location(self, job_name: str) -> str:
        """Returns the folder of the first rule matching `job_name`, else ``/default/``."""
        for rule in self.regex_rules:
            if rule.matches(job_name):
                return rule.destination
        return DEFAULT_FOLDER


def split_move_line(line: str) -> Optional[Tuple[str, str]]:
    """Returns ``(key, destination)`` for a move line, otherwise None."""
    if MOVE_SEP not in line:
        return None
    key, _, value = line.partition(MOVE_SEP)
    return key, value


def line_key(line: str) -> Optional[str]:
    """Returns the mapping key a line governs (move lines and bare leaves)."""
    if not line.strip() or line.startswith('#'):
        return None
    move = split_move_line(line)
    if move:
        return move[0]
    if REGEX_SEP in line:
        return None
    return line


def parse_rules(lines: Iterable[str], strict: bool = False) -> ParsedRules:
    """Parses rule file lines into regex rules and mapping entries.

    Args:
        lines: The raw lines of the rule file.
        strict: If `True`, a malformed regular expression aborts the load with a
            `RuleFileError`. Otherwise the line is dropped and recorded as a
            `ParseWarning`.

    Returns:
        A `ParsedRules` object. Later lines for the same key overwrite earlier ones.
    """
    parsed = ParsedRules()
    for line_no, raw in enumerate(lines, start=1):
        line = raw.rstrip('\r\n')
        if line.startswith('#') or not line.strip():
            continue
        move = split_move_line(line)
        if move:
            key, value = move
            parsed.mappings[key] = value
            continue
        if REGEX_SEP in line:
            folder, _, expression = line.partition(REGEX_SEP)
            try:
                pattern = re.compile(expression)
            except re.error as e:
                if strict:
                    raise RuleFileError(f"Invalid regular expression on line {line_no}: '{expression}' ({e})") from e
                parsed.warnings.append(ParseWarning(line_no, line, f"invalid regular expression: {e}"))
                continue
            parsed.regex_rules.append(RegexRule(folder, pattern, line_no))
            continue
        # Bare leaf: a standalone folder, key and value are the line itself.
        parsed.mappings[line] = str(normalize_dir(line))
    return parsed


def rewrite_mappings(lines: List[str], updates: Dict[str, str]) -> List[str]:
    """Makes each key in `updates` governed by exactly one line.

    The first move line or bare leaf governing a key is replaced with the new
    destination (a bare leaf stays a bare leaf), further lines for the same key
    are dropped, and keys without any line get a new move line appended.

    Args:
        lines: The current rule file lines (without line endings).
        updates: Mapping key -> new destination.

    Returns:
        The new list of lines.
    """
    result: List[str] = []
    handled = set()
    for line in lines:
        key = line_key(line)
        if key is None or key not in updates:
            result.append(line)
            continue
        if key in handled:
            continue
        handled.add(key)
        if split_move_line(line):
            result.append(key + MOVE_SEP + updates[key])
        else:
            result.append(updates[key])
    for key, value in updates.items():
        if key not in handled:
            result.append(key + MOVE_SEP + value)
    return result


def relocate_regex_folders(lines: List[str], old: str, new: str) -> List[str]:
    """Points regex rules whose folder is `old` (or lies below it) at `new`."""
    old, new = normalize_dir(old), normalize_dir(new)
    result = []
    for line in lines:
        if not line.startswith('#') and not split_move_line(line) and REGEX_SEP in line:
            folder, _, expression = line.partition(REGEX_SEP)
            if old.contains(normalize_dir(folder)):
                moved = new + normalize_dir(folder)[len(old):]
                line = moved.rstrip('/') + REGEX_SEP + expression
        result.append(line)
    return result


def strip_mappings(lines: List[str], predicate: Callable[[str], bool]) -> List[str]:
    """Removes every move line whose key satisfies `predicate`."""
    result = []
    for line in lines:
        move = split_move_line(line) if not line.startswith('#') else None
        if move and predicate(move[0]):
            continue
        result.append(line)
    return result


def strip_governing_lines(lines: List[str], keys: Iterable[str]) -> List[str]:
    """Removes move lines and bare leaves governing any of `keys`."""
    keys = set(keys)
    return [line for line in lines if line_key(line) not in keys]


class RuleFile:
    """The on-disk rule file.

    The class performs no locking of its own; callers hold the engine's rule
    file lock around every method that touches the disk.

    Attributes:
        path (Path): Location of the rule file.
        strict (bool): Whether malformed regex lines abort the load.
        generation (int): Bumped by every write made through this object.
    """

    def __init__(self, path: Path, strict: bool = False):
        self.path = Path(path).expanduser()
        self.strict = strict
        self.generation = 0

    def ensure_exists(self) -> bool:
        """Creates the rule file from the default template if it is missing.

        Returns:
            `True` if a new file was created.
        """
        if self.path.is_file():
            return False
        logging.warning(f"RULES: No sorting file found at '{self.path}'. Creating one from the default template.")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                f.write(DEFAULT_TEMPLATE)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logging.error(f"RULES: Could not create sorting file '{self.path}': {e}")
            raise RuleFileError(f"could not create sorting file '{self.path}': {e}") from e
        return True

    def mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            logging.warning(f"RULES: Could not stat sorting file '{self.path}': {e}")
            return None

    def read_lines(self) -> List[str]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return f.read().splitlines()
        except OSError as e:
            logging.error(f"RULES: Could not read sorting file '{self.path}': {e}")
            raise RuleFileError(f"could not read sorting file '{self.path}': {e}") from e

    def load(self) -> ParsedRules:
        """Reads and parses the rule file, creating it first if needed."""
        self.ensure_exists()
        parsed = parse_rules(self.read_lines(), strict=self.strict)
        for warning in parsed.warnings:
            logging.warning(f"RULES: Skipping line {warning.line_no} ('{warning.line}'): {warning.message}")
        logging.debug(f"RULES: Loaded {len(parsed.regex_rules)} regex rule(s) and {len(parsed.mappings)} mapping(s).")
        return parsed

    def append_line(self, line: str) -> None:
        """Appends a single directive, creating the file if needed."""
        self.ensure_exists()
        try:
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
            self.generation += 1
        except OSError as e:
            logging.error(f"RULES: Could not append to sorting file '{self.path}': {e}")
            raise RuleFileError(f"could not append to sorting file '{self.path}': {e}") from e

    def rewrite(self, transform: Callable[[List[str]], List[str]]) -> List[str]:
        """Rewrites the whole file through `transform`, all or nothing.

        The new content is fully built in memory and written to a temporary
        file next to the rule file, which then atomically replaces it.

        Args:
            transform: Receives the current lines and returns the new lines.

        Returns:
            The lines that were written.
        """
        self.ensure_exists()
        new_lines = transform(self.read_lines())
        content = ''.join(line + '\n' for line in new_lines)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            self.generation += 1
        except OSError as e:
            logging.error(f"RULES: Could not rewrite sorting file '{self.path}': {e}")
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise RuleFileError(f"could not rewrite sorting file '{self.path}': {e}") from e
        logging.debug(f"RULES: Rewrote sorting file '{self.path}' ({len(new_lines)} lines).")
        return new_lines
