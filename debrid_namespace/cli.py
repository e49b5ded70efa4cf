#!/usr/bin/env python3
# debrid-namespace
#
# Browse and reorganize a real-debrid account as a folder tree whose layout is
# stored in a plain-text sorting file.
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config_manager import ConfigValidator, EngineSettings, load_config, update_config
from .engine import NamespaceEngine
from .system_manager import LockFile, setup_logging
from .ui import display_listing, display_rules, display_tree
from .utils import DebridError

COMMANDS = ('ls', 'tree', 'mv', 'mvdir', 'rm', 'mkdir', 'rmdir', 'purge', 'link', 'refresh', 'show_rules')


def build_parser(default_config_path: Path) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Browse and reorganize a real-debrid account as a virtual folder tree.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--config', default=str(default_config_path), help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--ls', nargs='?', const='', metavar='PATH', help='List a folder.')
    parser.add_argument('--tree', nargs='?', const='', metavar='PATH', help='Show the folder tree below PATH.')
    parser.add_argument('--mv', nargs=2, metavar=('SRC', 'DST'), help='Move or rename a file.')
    parser.add_argument('--mvdir', nargs=2, metavar=('SRC', 'DST'), help='Move or rename a folder.')
    parser.add_argument('--rm', metavar='PATH', help='Move a file to the trash. The job is deleted once all its files are trashed.')
    parser.add_argument('--mkdir', metavar='PATH', help='Create a folder (not directly under the root).')
    parser.add_argument('--rmdir', metavar='PATH', help='Remove an empty folder.')
    parser.add_argument('--purge', metavar='PATH', help='Trash every file below a folder and remove it.')
    parser.add_argument('--link', metavar='PATH', help='Print the direct-download URL of a file.')
    parser.add_argument('--refresh', action='store_true', help='Force a refresh of the remote inventory.')
    parser.add_argument('--show-rules', action='store_true', help='Show the parsed sorting file.')
    parser.add_argument('--timeout', type=float, metavar='SECONDS',
                        help='Abort remote work still running after SECONDS.')
    return parser


def run_command(engine: NamespaceEngine, args: argparse.Namespace, console: Console) -> int:
    """Executes the requested command against a started engine."""
    if args.refresh:
        engine.ensure_fresh(force=True)
        logging.info("[bold green]SUCCESS:[/] Inventory refreshed.")
    if args.show_rules:
        engine.ensure_fresh()
        display_rules(engine.tables, console)
    if args.mkdir is not None:
        dir_id = engine.mkdir(args.mkdir)
        console.print(f"Created [cyan]{dir_id}[/cyan]")
    if args.mv:
        src, dst = args.mv
        moved = engine.move(engine.new_object(src), dst)
        console.print(f"Moved [cyan]{src}[/cyan] -> [cyan]{moved.remote}[/cyan]")
    if args.mvdir:
        src, dst = args.mvdir
        engine.dir_move(src, dst)
        console.print(f"Moved folder [cyan]{src}[/cyan] -> [cyan]{dst}[/cyan]")
    if args.rm is not None:
        deleted = engine.new_object(args.rm).remove()
        console.print(f"Deleted job of [cyan]{args.rm}[/cyan]" if deleted else f"Trashed [cyan]{args.rm}[/cyan]")
    if args.rmdir is not None:
        engine.rmdir(args.rmdir)
        console.print(f"Removed folder [cyan]{args.rmdir}[/cyan]")
    if args.purge is not None:
        engine.purge(args.purge)
        console.print(f"Purged folder [cyan]{args.purge}[/cyan]")
    if args.link is not None:
        console.print(engine.public_link(args.link), soft_wrap=True)
    if args.ls is not None:
        display_listing(engine.list(args.ls), title=f"/{args.ls.strip('/')}", console=console)
    if args.tree is not None:
        display_tree(engine, args.tree, console)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the command-line tool.

    Loads and validates the configuration, sets up file and console logging,
    locks the sorting file, and runs the requested commands against a
    namespace engine.

    Returns:
        0 on success, 1 on error.
    """
    script_dir = Path(__file__).resolve().parent.parent
    parser = build_parser(script_dir / 'config.ini')
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"debrid-namespace {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    config_template_path = script_dir / 'config.ini.template'
    if config_template_path.is_file():
        update_config(args.config, str(config_template_path))
    config = load_config(args.config)
    if not ConfigValidator(config).validate():
        print("FAILURE: Configuration file has errors.", file=sys.stderr)
        return 1
    if args.check_config:
        print("SUCCESS: Configuration file appears to be valid.")
        return 0
    if not any(getattr(args, name) not in (None, False) for name in COMMANDS):
        parser.print_help()
        return 0

    settings = EngineSettings.from_config(config)
    setup_logging(settings.log_dir, args.debug)
    logger = logging.getLogger()
    rich_handler = RichHandler(level=logging.DEBUG if args.debug else logging.INFO, show_path=False,
                               rich_tracebacks=True, markup=True, console=Console(stderr=True))
    rich_handler.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(rich_handler)
    logging.info(f"Using configuration file: {args.config}")

    lock = LockFile.for_rule_file(settings.sort_file)
    try:
        lock.acquire()
    except RuntimeError as e:
        logging.error(f"{e}")
        return 1

    engine = NamespaceEngine(settings)
    try:
        with engine.cancellable(timeout=args.timeout):
            engine.start()
            return run_command(engine, args, Console())
    except KeyboardInterrupt:
        logging.warning("Interrupted by user. Shutting down.")
        return 1
    except DebridError as e:
        logging.error(f"[bold red]FAILURE:[/] {e}")
        return 1
    finally:
        engine.shutdown()
        lock.release()
        logging.debug("Sorting file lock released.")


if __name__ == "__main__":
    sys.exit(main())
