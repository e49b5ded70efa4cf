import sys
from unittest.mock import MagicMock
import pytest

# Mock fcntl for Windows
if sys.platform.startswith("win"):
    if "fcntl" not in sys.modules:
        mock_fcntl = MagicMock()
        mock_fcntl.LOCK_EX = 1
        mock_fcntl.LOCK_NB = 2
        mock_fcntl.LOCK_UN = 8
        sys.modules["fcntl"] = mock_fcntl

from debrid_namespace.config_manager import EngineSettings
from debrid_namespace.engine import NamespaceEngine
from tests.mocks.mock_realdebrid import MockRealDebrid


@pytest.fixture
def mock_client():
    """A remote holding one movie, one two-episode season and one unclassified job."""
    client = MockRealDebrid()
    client.add_job("Film.2019.1080p", ["AAA"], job_id="JOBFILM")
    client.add_job("Show.S01.1080p", ["S1E1", "S1E2"], job_id="JOBSHOW")
    client.add_job("Holiday Video", ["HV1"], job_id="JOBHOLIDAY")
    client.add_download("AAA", "film.2019.mkv", size=2048)
    return client


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        api_key="test-token",
        sort_file=tmp_path / "sorting.txt",
        recovery_poll_delay=0,
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def engine(settings, mock_client):
    engine = NamespaceEngine(settings, client=mock_client)
    engine.start()
    yield engine
    engine.shutdown()
