import pytest

from scrapeflow.channel import MemoryChannel
from scrapeflow.store import MemoryTaskStore


@pytest.fixture
def channel():
    return MemoryChannel(partitions=4)


@pytest.fixture
def store():
    return MemoryTaskStore()


@pytest.fixture
def product_config():
    return {
        "itemContainerSelector": ".item",
        "fields": {
            "title": "h2",
            "price": {"selector": ".price", "transform": "number"},
        },
        "paginationType": "queryParam",
    }
