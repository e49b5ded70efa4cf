"""Rich renderers for the command-line interface."""
import logging
from typing import List, Optional, Union

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .engine import DebridObject, DirEntry, NamespaceEngine
from .namespace import NamespaceTables, is_trashed
from .paths import DirPath, ROOT, normalize_dir


def format_size(size: int) -> str:
    """Formats a byte count for display (``1536`` -> ``"1.5 KiB"``)."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def display_listing(entries: List[Union[DirEntry, DebridObject]], title: str,
                    console: Optional[Console] = None) -> None:
    """Displays the entries of one folder in a table, folders first."""
    console = console or Console()
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Modified", style="dim")
    table.add_column("ID", style="dim")
    folders = sorted((e for e in entries if isinstance(e, DirEntry)), key=lambda e: e.remote.lower())
    files = sorted((e for e in entries if isinstance(e, DebridObject)), key=lambda e: e.remote.lower())
    for entry in folders:
        name = entry.remote.rsplit('/', 1)[-1]
        table.add_row(f"[cyan]{escape(name)}/[/cyan]", "", "", escape(entry.id))
    for obj in files:
        name = obj.remote.rsplit('/', 1)[-1]
        table.add_row(escape(name), format_size(obj.size), obj.mod_time.strftime("%Y-%m-%d %H:%M"), obj.id)
    console.print(table)


def build_tree(tables: NamespaceTables, path: DirPath = ROOT, max_depth: int = 8) -> Tree:
    """Builds a rich `Tree` of the folder table below `path`."""
    path = normalize_dir(path)
    root = Tree(f"[bold]{escape(path)}[/bold]")

    def add_children(node: Tree, folder: DirPath, depth: int) -> None:
        children = sorted(tables.folders.children(folder), key=lambda i: (i.is_file, i.name.lower()))
        for item in children:
            if item.is_folder:
                branch = node.add(f"[cyan]{escape(item.name)}/[/cyan]")
                if depth < max_depth:
                    add_children(branch, DirPath(item.id), depth + 1)
            else:
                node.add(f"{escape(item.name)} [dim]({format_size(item.size)})[/dim]")

    add_children(root, path, 1)
    return root


def display_tree(engine: NamespaceEngine, path: str = '', console: Optional[Console] = None) -> None:
    console = console or Console()
    engine.ensure_fresh()
    console.print(build_tree(engine.tables, normalize_dir(path)))


def display_rules(tables: NamespaceTables, console: Optional[Console] = None) -> None:
    """Displays the regex rules, recorded moves and dropped lines of the rule file."""
    console = console or Console()
    if not tables.regex_rules and not tables.overrides:
        logging.info("No sorting rules are currently defined.")
        return

    rules = Table(title="Regex Folders", show_header=True, header_style="bold magenta")
    rules.add_column("#", justify="right", style="dim")
    rules.add_column("Folder", style="cyan")
    rules.add_column("Expression")
    for rule in tables.regex_rules:
        rules.add_row(str(rule.line_no), escape(rule.destination), escape(rule.pattern.pattern))
    console.print(rules)

    moves = Table(title="Recorded Structure", show_header=True, header_style="bold magenta")
    moves.add_column("Key", style="dim", overflow="fold")
    moves.add_column("Destination", overflow="fold")
    for key, value in sorted(tables.overrides.items()):
        style = "yellow" if is_trashed(value) else "cyan"
        moves.add_row(escape(key), f"[{style}]{escape(value)}[/{style}]")
    console.print(moves)

    if tables.warnings:
        dropped = Table(title="Skipped Lines", show_header=True, header_style="bold red")
        dropped.add_column("Line", justify="right")
        dropped.add_column("Content", overflow="fold")
        dropped.add_column("Problem")
        for warning in tables.warnings:
            dropped.add_row(str(warning.line_no), escape(warning.line), escape(warning.message))
        console.print(dropped)
