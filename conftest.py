import pytest

from artifacts_bot import config

from tests.fakes import FakeClock, RecordingSink


@pytest.fixture(autouse=True)
def data_dir(tmp_path):
    """Fresh data dir (spill files, config.json) for every test."""
    path = tmp_path / "data"
    config.init_data_dir(path)
    yield path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
