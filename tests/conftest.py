import os

import pytest

from sqlrepo.config import refresh_default_config
from sqlrepo.database import build_engine
from tests.models import Base

_ENV_VARS = (
    "SQLREPO_DEFAULT_LIST_LIMIT",
    "SQLREPO_DEFAULT_LIST_OFFSET",
    "SQLREPO_ALLOW_FULL_TABLE_DELETE",
)


@pytest.fixture(autouse=True)
def reset_repository_defaults(monkeypatch):
    """Keep env-derived defaults from leaking between tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    refresh_default_config()
    yield
    refresh_default_config()


@pytest.fixture(scope="module")
def engine():
    eng = build_engine(os.getenv("SQLREPO_TEST_DB", "sqlite://"))
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def clean(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
