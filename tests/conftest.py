import pytest

from analytics_engine.schemas import AccessScope


@pytest.fixture
def scope() -> AccessScope:
    return AccessScope(partition_ids=[100, 200], principal_id="user-1")
