import pytest

from fake_mongo import FakeMongoClient
from services import build_services


@pytest.fixture
def mongo_client():
    return FakeMongoClient()


@pytest.fixture
def db(mongo_client):
    return mongo_client["ledger_test"]


@pytest.fixture
def services(mongo_client, db):
    return build_services(mongo_client, db)
