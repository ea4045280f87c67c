import pytest

from poflow.middleware.rate_limit import _local
from tests.factories import (
    ADMIN_ID,
    MANAGER_ID,
    VIEWER_ID,
    make_current_user,
    mock_session,
)


@pytest.fixture
def session():
    return mock_session()


@pytest.fixture
def admin_user():
    return make_current_user("ADMIN", ADMIN_ID)


@pytest.fixture
def manager_user():
    return make_current_user("MANAGER", MANAGER_ID)


@pytest.fixture
def viewer_user():
    return make_current_user("VIEWER", VIEWER_ID)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    _local.clear()
    yield
    _local.clear()
