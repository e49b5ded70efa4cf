"""Reading, upgrading and checking `config.ini`.

`update_config` merges options introduced by a newer `config.ini.template`
into the user's file without touching existing values. `load_config` reads
the file, `ConfigValidator` reports problems, and `EngineSettings` is the
typed view of a valid configuration that the engine consumes.
"""
import configparser
import logging
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import configupdater

from .clients.realdebrid import ROOT_URL


def _merge_template(updater: configupdater.ConfigUpdater,
                    template: configupdater.ConfigUpdater) -> List[Tuple[str, str]]:
    """Copies sections and options missing from `updater` out of `template`.

    Returns the ``(section, option)`` pairs that were added; an option of
    ``None`` stands for a whole new section.
    """
    added = []
    for name in template.sections():
        source = template[name]
        if updater.has_section(name):
            target = updater[name]
            for key, opt in source.items():
                if not target.has_option(key):
                    target[key] = opt.value
                    added.append((name, key))
            continue
        updater.add_section(name)
        for key, opt in source.items():
            updater[name][key] = opt.value
        added.append((name, None))
    return added


def update_config(config_path: str, template_path: str) -> None:
    """Brings `config_path` up to date with `template_path`.

    A missing config file is created as a copy of the template. Otherwise new
    sections and options are merged in with `configupdater`, so comments and
    user values survive, and the previous file is copied to
    ``backup/<name>.bak_<timestamp>`` first. Nothing is written when the file
    already has every option.

    Raises:
        SystemExit: The template is missing or the config cannot be written.
    """
    target = Path(config_path)
    source = Path(template_path)
    logging.debug(f"CONFIG: Comparing '{target}' against template '{source}'")

    if not source.is_file():
        logging.error(f"FATAL: Config template '{source}' does not exist.")
        sys.exit(1)

    if not target.is_file():
        logging.warning(f"CONFIG: No configuration at '{target}'; writing one from the template. "
                        "Add your API key before running any command.")
        try:
            shutil.copy2(source, target)
        except OSError as e:
            logging.error(f"FATAL: Cannot write '{target}': {e}")
            sys.exit(1)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(target, encoding='utf-8')
        template = configupdater.ConfigUpdater()
        template.read(source, encoding='utf-8')

        added = _merge_template(updater, template)
        if not added:
            logging.debug("CONFIG: No new options in the template.")
            return
        for section, option in added:
            if option is None:
                logging.info(f"CONFIG: New section {section}")
            else:
                logging.info(f"CONFIG: New option {section}.{option}")

        backups = target.parent / 'backup'
        backups.mkdir(exist_ok=True)
        saved = backups / f"{target.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
        shutil.copy2(target, saved)
        logging.info(f"CONFIG: Previous configuration saved as '{saved}'")
        with target.open('w', encoding='utf-8') as fh:
            updater.write(fh)
    except (OSError, configparser.Error) as e:
        logging.error(f"FATAL: Updating '{target}' failed: {e}", exc_info=True)
        sys.exit(1)


def load_config(config_path: str = "config.ini") -> configparser.ConfigParser:
    """Parses `config_path` without interpolation; exits if it is missing."""
    path = Path(config_path)
    if not path.is_file():
        logging.error(f"FATAL: No configuration file at '{path}'. "
                      "Start from 'config.ini.template' and set your API key.")
        sys.exit(1)
    config = configparser.ConfigParser(interpolation=None)
    config.read(path, encoding='utf-8')
    return config


class ConfigValidator:
    """Checks a parsed configuration before the engine is built.

    Problems that make the configuration unusable land in `errors`; values
    outside the recommended range only produce `warnings`.
    """

    REQUIRED = {
        'REMOTE': ['type', 'api_key'],
        'SORTING': ['sort_file'],
    }

    VALID_REMOTE_TYPES = ['realdebrid']

    INT_OPTIONS = {
        ('REMOTE', 'request_timeout'): (5, 300),
        ('SETTINGS', 'refresh_interval'): (60, 86400),
        ('SETTINGS', 'rule_check_debounce'): (1, 300),
        ('SETTINGS', 'max_retries'): (1, 20),
        ('SETTINGS', 'recovery_poll_attempts'): (1, 60),
    }

    FLOAT_OPTIONS = {
        ('SETTINGS', 'retry_delay'): (0.5, 60),
        ('SETTINGS', 'retry_backoff'): (1, 10),
        ('SETTINGS', 'recovery_poll_delay'): (0.1, 60),
    }

    BOOL_OPTIONS = [('SORTING', 'strict_regex'), ('SETTINGS', 'background_refresh')]

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs every check, reports findings on stderr, and returns `not errors`."""
        for check in (self._check_required, self._check_remote_type,
                      self._check_numbers, self._check_booleans):
            check()

        for title, marker, entries in (("Configuration errors:", "❌", self.errors),
                                       ("Configuration warnings:", "⚠️", self.warnings)):
            if entries:
                print(title, file=sys.stderr)
                for entry in entries:
                    print(f" {marker} {entry}", file=sys.stderr)
        return not self.errors

    def _check_required(self) -> None:
        for section, options in self.REQUIRED.items():
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")
                continue
            for option in options:
                value = self.config.get(section, option, fallback=None)
                if value is None:
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not value.strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")

    def _check_remote_type(self) -> None:
        remote_type = self.config.get('REMOTE', 'type', fallback='').strip().lower()
        if remote_type and remote_type not in self.VALID_REMOTE_TYPES:
            self.errors.append(f"Invalid remote type '{remote_type}'. Must be one of: {', '.join(self.VALID_REMOTE_TYPES)}")

    def _check_numbers(self) -> None:
        for (section, option), bounds in self.INT_OPTIONS.items():
            self._check_number(section, option, bounds, self.config.getint, "an integer")
        for (section, option), bounds in self.FLOAT_OPTIONS.items():
            self._check_number(section, option, bounds, self.config.getfloat, "a number")

    def _check_number(self, section, option, bounds, getter, kind) -> None:
        if not self.config.has_option(section, option):
            return
        try:
            value = getter(section, option)
        except ValueError:
            self.errors.append(f"Option '{option}' in [{section}] must be {kind}")
            return
        low, high = bounds
        if value < low or value > high:
            self.warnings.append(f"{option}={value} is outside recommended range [{low}-{high}]")

    def _check_booleans(self) -> None:
        for section, option in self.BOOL_OPTIONS:
            if not self.config.has_option(section, option):
                continue
            try:
                self.config.getboolean(section, option)
            except ValueError:
                self.errors.append(f"Option '{option}' in [{section}] must be true or false")


@dataclass
class EngineSettings:
    """Typed settings for one namespace engine instance."""
    api_key: str
    sort_file: Path
    remote_type: str = 'realdebrid'
    api_url: str = ROOT_URL
    request_timeout: int = 30
    strict_regex: bool = False
    refresh_interval: int = 900
    rule_check_debounce: int = 5
    max_retries: int = 5
    retry_delay: float = 2
    retry_backoff: float = 1
    recovery_poll_attempts: int = 5
    recovery_poll_delay: float = 1
    background_refresh: bool = False
    log_dir: Path = Path('logs')

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> "EngineSettings":
        """Builds the settings from a validated configuration, applying defaults."""
        defaults = cls(api_key='', sort_file=Path())
        return cls(
            api_key=config.get('REMOTE', 'api_key', fallback='').strip(),
            remote_type=config.get('REMOTE', 'type', fallback=defaults.remote_type).strip().lower(),
            api_url=config.get('REMOTE', 'api_url', fallback=defaults.api_url).strip() or defaults.api_url,
            request_timeout=config.getint('REMOTE', 'request_timeout', fallback=defaults.request_timeout),
            sort_file=Path(config.get('SORTING', 'sort_file', fallback='sorting.txt')).expanduser(),
            strict_regex=config.getboolean('SORTING', 'strict_regex', fallback=defaults.strict_regex),
            refresh_interval=config.getint('SETTINGS', 'refresh_interval', fallback=defaults.refresh_interval),
            rule_check_debounce=config.getint('SETTINGS', 'rule_check_debounce', fallback=defaults.rule_check_debounce),
            max_retries=config.getint('SETTINGS', 'max_retries', fallback=defaults.max_retries),
            retry_delay=config.getfloat('SETTINGS', 'retry_delay', fallback=defaults.retry_delay),
            retry_backoff=config.getfloat('SETTINGS', 'retry_backoff', fallback=defaults.retry_backoff),
            recovery_poll_attempts=config.getint('SETTINGS', 'recovery_poll_attempts',
                                                 fallback=defaults.recovery_poll_attempts),
            recovery_poll_delay=config.getfloat('SETTINGS', 'recovery_poll_delay',
                                                fallback=defaults.recovery_poll_delay),
            background_refresh=config.getboolean('SETTINGS', 'background_refresh',
                                                 fallback=defaults.background_refresh),
            log_dir=Path(config.get('LOGGING', 'log_dir', fallback='logs')).expanduser(),
        )
