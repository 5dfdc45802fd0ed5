import pytest

from sqlrepo import ModelHandlers, Repository
from tests.models import Account, Document


@pytest.fixture(autouse=True)
def _clean_tables(clean):
    yield


@pytest.fixture
def accounts(engine):
    return Repository(Account, engine, ModelHandlers.for_model(Account, identifier="email"))


@pytest.fixture
def documents(engine):
    return Repository(Document, engine)
