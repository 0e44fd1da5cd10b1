import pytest

from helpers import FakeRPC
from token_storage import Storage


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "hunter.db"))
    yield s
    s.close()


@pytest.fixture
def rpc():
    return FakeRPC(latest=1000)
