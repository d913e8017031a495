"""Pytest fixtures shared across the test suite."""

import pytest

from catalog_sync.store import SqlCatalogStore
from db import utils as db_utils
from tests.sync_helpers import FakeClock


@pytest.fixture(autouse=True)
def reset_database_state():
    """Reset the cached fallback engine between tests."""

    db_utils.set_fallback_connection(None)
    yield
    db_utils.set_fallback_connection(None)


@pytest.fixture
def database():
    engine_wrapper = db_utils.build_engine_from_dsn('sqlite://')
    yield engine_wrapper
    engine_wrapper.dispose()


@pytest.fixture
def catalog_store(database):
    store = SqlCatalogStore(database)
    store.ensure_tables()
    return store


@pytest.fixture
def fake_clock():
    return FakeClock()
