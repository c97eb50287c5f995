import pytest
from fastapi.testclient import TestClient

from kinde_app.tests.support import FakeKinde, build_test_app, make_settings


@pytest.fixture
def mock_settings():
    return make_settings()


@pytest.fixture
def fake_kinde():
    return FakeKinde()


@pytest.fixture
def app(mock_settings, fake_kinde):
    return build_test_app(mock_settings, fake_kinde)


@pytest.fixture
def client(app):
    """Test client that does not follow redirects"""
    return TestClient(app, follow_redirects=False)
