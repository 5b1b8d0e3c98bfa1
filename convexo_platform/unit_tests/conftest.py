import pytest

from convexo_platform.unit_tests.fakes import FakeGateway, FakeIdentity


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def gateway(identity):
    return FakeGateway(identity)
