"""
Shared fixtures. Nothing here touches the network or a database: stores are
LocalFileStore instances under tmp_path and remote sessions are mocks.
"""

import os
import sys

import pytest

# Add app root to path so `utils` and the function packages import as on the host
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT_DIR)

from utils.aggregation import AggregationStore  # noqa: E402
from utils.config import ScoreConfig  # noqa: E402
from utils.object_store import LocalFileStore  # noqa: E402

FIXED_NOW = "2024-06-30T12:00:00+00:00"


@pytest.fixture
def store(tmp_path):
    return LocalFileStore(tmp_path / "data-root")


@pytest.fixture
def config(tmp_path):
    return ScoreConfig(
        api_base_url="https://scores.example.test",
        person_id="P001",
        cookie="SESSION=abc",
        delay_ms=0,
        page_size=2,
        max_page=3,
        max_retries=3,
        discover_page_size=2,
        max_discover_pages=10,
        target_date="2024-06-01",
        user_list_file=str(tmp_path / "user-list.txt"),
        store_backend="local",
        data_root=str(tmp_path / "data-root"),
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def aggregation(store, clock):
    return AggregationStore(store, daily_limit=45, max_write_retries=3, clock=clock)
