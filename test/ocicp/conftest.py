import pytest

from test._test_utils import MemoryTarget


@pytest.fixture
def src():
    return MemoryTarget('registry.example.org/repo-a:v1')


@pytest.fixture
def dst():
    return MemoryTarget('registry.example.org/repo-b:v1')
