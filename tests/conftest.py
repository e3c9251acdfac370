import pathlib
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from tests.fakes import MemoryStorageProvider
from tfbucket.plugins.local_storage_provider.local_storage_provider import LocalStorageProvider
from tfbucket.server.app import app, get_controller
from tfbucket.server.base_state_lock_provider import StorageError
from tfbucket.server.path_locks import PathLocks
from tfbucket.server.tf_state_lock_controller import TFStateLockController


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def memory_storage() -> MemoryStorageProvider:
    return MemoryStorageProvider()


@pytest.fixture
def local_storage(tmp_path: pathlib.Path) -> LocalStorageProvider:
    return LocalStorageProvider(folder=tmp_path / "states", folder_mode=0o700, file_mode=0o600)


@pytest.fixture
def controller(local_storage: LocalStorageProvider) -> TFStateLockController:
    return TFStateLockController(storage_driver=local_storage, path_locks=PathLocks())


@pytest.fixture
def app_controller(controller: TFStateLockController) -> Iterator[TFStateLockController]:
    app.dependency_overrides[get_controller] = lambda: controller
    try:
        yield controller
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def client(app_controller: TFStateLockController) -> TestClient:
    return TestClient(app)


@pytest.fixture
def failing_client(memory_storage: MemoryStorageProvider) -> Iterator[TestClient]:
    memory_storage.fail_retrieve = StorageError("backend unavailable")
    memory_storage.fail_store = StorageError("backend unavailable")
    controller = TFStateLockController(storage_driver=memory_storage, path_locks=PathLocks())
    app.dependency_overrides[get_controller] = lambda: controller
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
