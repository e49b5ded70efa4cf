import threading
import unittest
from unittest.mock import MagicMock

from debrid_namespace.refresher import BackgroundRefresher
from debrid_namespace.utils import DebridError


class TestBackgroundRefresher(unittest.TestCase):
    def test_refresh_failures_do_not_stop_the_loop(self):
        calls = []
        second = threading.Event()

        def ensure_fresh():
            calls.append(1)
            if len(calls) == 1:
                raise DebridError("remote down")
            second.set()

        engine = MagicMock()
        engine.ensure_fresh.side_effect = ensure_fresh
        refresher = BackgroundRefresher(0.01)
        refresher.start(engine)
        try:
            self.assertTrue(second.wait(2))
            self.assertTrue(refresher.running)
        finally:
            refresher.stop()
        self.assertFalse(refresher.running)
        self.assertGreaterEqual(len(calls), 2)
