"""Process-level plumbing for the namespace tools.

`LockFile` keeps two engine instances from rewriting the same rule file and
`setup_logging` points the root logger at a per-run log file.
"""
import atexit
import errno
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional, TextIO


class LockFile:
    """Advisory `fcntl` lock stored beside a rule file.

    The lock file holds the PID of its owner. A lock left behind by a process
    that no longer runs (or one whose content is not a PID) is discarded on
    the next `acquire`.

    Attributes:
        lock_path (Path): Location of the lock file.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._handle: Optional[TextIO] = None
        self._held = False

    @classmethod
    def for_rule_file(cls, rule_path: Path) -> "LockFile":
        """Returns the lock guarding `rule_path` (``<rule file>.lock``)."""
        rule_path = Path(rule_path).expanduser()
        return cls(rule_path.with_name(rule_path.name + '.lock'))

    def _in_use_error(self, pid) -> RuntimeError:
        return RuntimeError(f"Rule file is already in use by PID {pid} (lock file: {self.lock_path})")

    def _discard_stale(self) -> None:
        owner = self.get_locking_pid()
        if owner is None:
            return
        if not owner.isdigit():
            logging.warning(f"LOCK: Discarding unreadable lock file {self.lock_path} (content: '{owner}').")
        elif pid_exists(int(owner)):
            raise self._in_use_error(owner)
        else:
            logging.warning(f"LOCK: Discarding lock left by PID {owner}, which is no longer running.")
        self.lock_path.unlink(missing_ok=True)

    def acquire(self) -> None:
        """Takes the lock without blocking.

        Raises:
            RuntimeError: Another live process owns the lock.
        """
        self._discard_stale()
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, 'w')
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            raise self._in_use_error(self.get_locking_pid())
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        self._held = True
        atexit.register(self.release)
        logging.debug(f"LOCK: Acquired {self.lock_path}")

    def release(self) -> None:
        """Drops the lock and removes the lock file. Safe to call twice."""
        if not self._held or self._handle is None:
            return
        handle, self._handle = self._handle, None
        self._held = False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            logging.error(f"LOCK: Could not release {self.lock_path}: {e}")

    def get_locking_pid(self) -> Optional[str]:
        """PID text stored in the lock file, or `None` when there is none."""
        try:
            return self.lock_path.read_text().strip()
        except OSError:
            return None

    def __enter__(self) -> "LockFile":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def setup_logging(log_dir: Path, debug: bool) -> Path:
    """Sends root-logger records to a fresh log file under `log_dir`.

    Handlers already installed on the root logger are replaced; the console
    handler is added afterwards by the command-line entry point.

    Args:
        log_dir: Folder for log files, created on demand.
        debug: Log at `DEBUG` instead of `INFO`.

    Returns:
        Path of the file that receives this run's log.
    """
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"debrid_namespace_{time.strftime('%Y-%m-%d_%H-%M-%S')}.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.handlers.clear()

    handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(threadName)s - %(message)s'))
    root.addHandler(handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.info("--- debrid-namespace file logging started ---")
    return log_file


def pid_exists(pid: int) -> bool:
    """True when a process with `pid` is running (signal 0 check)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as err:
        # EPERM: the process exists but belongs to someone else.
        return err.errno == errno.EPERM
    return True
