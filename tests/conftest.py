"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio

from instancestore import InstanceStore

CLASSES = [
    {"name": "Account", "indexes": ["accountNumber", "country"]},
    {
        "name": "Person",
        "indexes": ["accountNumber", "country", ["lastName", "firstName"]],
    },
    {"name": "Company", "indexes": ["accountNumber", "country", "name"]},
]

SAMPLE_INSTANCES = [
    (["Account"], "aaa", {"accountNumber": 45329, "country": "France"}),
    (
        ["Account", "Person"],
        "bbb",
        {
            "accountNumber": 3246,
            "firstName": "Jack",
            "lastName": "Daniel",
            "country": "USA",
        },
    ),
    (
        ["Account", "Company"],
        "ccc",
        {"accountNumber": 7002, "name": "Kinda Ltd", "country": "China"},
    ),
    (
        ["Account", "Person"],
        "ddd",
        {
            "accountNumber": 55498,
            "firstName": "Vincent",
            "lastName": "Vila",
            "country": "USA",
        },
    ),
    (
        ["Account", "Person"],
        "eee",
        {
            "accountNumber": 888,
            "firstName": "Pierre",
            "lastName": "Dupont",
            "country": "France",
        },
    ),
    (
        ["Account", "Company"],
        "fff",
        {"accountNumber": 8775, "name": "Fleur SARL", "country": "France"},
    ),
]


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Isolate environment variables for each test.

    This prevents test pollution where one test's environment
    changes affect other tests.
    """
    original_env = os.environ.copy()
    monkeypatch.delenv("INSTANCESTORE_NAME", raising=False)
    monkeypatch.delenv("INSTANCESTORE_URL", raising=False)

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(params=["memory", "sqlite"])
def store_url(request, tmp_path):
    """Engine URL, once for each shipped engine."""
    if request.param == "memory":
        return "memory://"
    return f"sqlite://{tmp_path / 'store.db'}"


@pytest_asyncio.fixture
async def store(store_url):
    """An instance store declaring the Account, Person and Company classes."""
    store = InstanceStore(name="Test", url=store_url, classes=CLASSES)
    yield store
    await store.destroy_all()
    await store.close()


@pytest_asyncio.fixture
async def populated_store(store):
    """Store holding six instances tagged with various classes."""
    for classes, key, instance in SAMPLE_INSTANCES:
        await store.put(classes, key, instance)
    return store
