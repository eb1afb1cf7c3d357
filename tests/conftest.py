import pytest

from tests.fakes import NOW, FakeDirectoryStore, FakeRemoteAuthority


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    return FakeDirectoryStore()


@pytest.fixture
def remote():
    return FakeRemoteAuthority()
