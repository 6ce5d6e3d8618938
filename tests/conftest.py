import os
import sys

import pytest

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _ensure_paths():
    if REPO_ROOT not in sys.path:
        sys.path.insert(0, REPO_ROOT)


_ensure_paths()

import cl_devices
from cl_config import DeviceSelector, QueueOptions
from cl_session import ComputeSession


def _first_usable_platform():
    for index, platform in enumerate(cl_devices.list_platforms()):
        if cl_devices.list_devices(platform):
            return index
    return None


@pytest.fixture(scope='session')
def platform_index():
    index = _first_usable_platform()
    if index is None:
        pytest.skip('no OpenCL platform')
    return index


@pytest.fixture
def selector(platform_index):
    return DeviceSelector(platform_index, 'all', 0)


@pytest.fixture
def session(selector):
    with ComputeSession(selector, name='test') as s:
        yield s


@pytest.fixture
def profiling_session(selector):
    with ComputeSession(selector, QueueOptions(profiling=True), name='test-profiling') as s:
        yield s


@pytest.fixture
def svm_session(selector):
    for _, device in cl_devices.discover_all(selector):
        if cl_devices.supports_svm(device):
            break
    else:
        pytest.skip('no device with shared virtual memory')
    session = ComputeSession(selector, name='test-svm')
    try:
        session.acquire(device)
        yield session
    finally:
        session.close()
