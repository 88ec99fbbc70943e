import pytest

from fakes import FakePlatform


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()
