"""Keeps the namespace warm in the background.

This module provides a `BackgroundRefresher` class that runs in a background
thread. It periodically asks the engine to bring its tables up to date so that
listings served to callers rarely have to wait for the remote inventory.
"""
import logging
import threading
from typing import TYPE_CHECKING, Optional

from .utils import DebridError

if TYPE_CHECKING:
    from .engine import NamespaceEngine


class BackgroundRefresher:
    """Refreshes the engine's inventory and tables at a fixed interval.

    Failures are logged and retried at the next tick; the thread only ends
    when `stop` is called.
    """

    def __init__(self, interval_seconds: float):
        """Initializes the BackgroundRefresher.

        Args:
            interval_seconds: Seconds between two refresh attempts.
        """
        self._interval_seconds = interval_seconds
        self._engine: Optional["NamespaceEngine"] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, engine: "NamespaceEngine") -> None:
        """Starts refreshing `engine` in a daemon thread."""
        self._engine = engine
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._refresh_loop, name="namespace-refresher", daemon=True)
        self._thread.start()
        logging.info(f"Background refresher started with a {self._interval_seconds}s interval.")

    def _refresh_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            if self._engine is None:
                continue
            try:
                self._engine.ensure_fresh()
            except DebridError as e:
                logging.warning(f"STATE: Background refresh failed, retrying in {self._interval_seconds}s: {e}")

    def stop(self) -> None:
        """Signals the refresher thread to stop and waits for it to terminate."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logging.info("Background refresher stopped.")
