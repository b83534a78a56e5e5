import pytest

from review_engine.notifications import RecordingNotificationHook
from review_engine.storage import InMemoryStorageBackend

from tests.fixtures import make_engine


@pytest.fixture
def storage():
    return InMemoryStorageBackend()


@pytest.fixture
def hook():
    return RecordingNotificationHook()


@pytest.fixture
def engine(storage, hook):
    return make_engine(storage=storage, hook=hook)
