import pytest

from tests.fakes import ConditionalMemoryStorageProvider, LockableMemoryStorageProvider, MemoryStorageProvider
from tfbucket.server.base_state_lock_provider import (
    ClientRequestError,
    LockBody,
    LockingError,
    StateObject,
    StorageError,
)
from tfbucket.server.path_locks import PathLocks
from tfbucket.server.tf_state_lock_controller import TFStateLockController

pytestmark = pytest.mark.anyio


def lock_body(lock_id: str) -> LockBody:
    return LockBody(
        ID=lock_id,
        Operation="OperationTypeApply",
        Who="user@host",
        Version="1.9.0",
        Created="2024-01-01T00:00:00Z",
    )


async def current_holder(storage, key: str) -> str:
    return (await storage.retrieve(key)).lock_id


@pytest.fixture
def memory_controller(memory_storage: MemoryStorageProvider) -> TFStateLockController:
    return TFStateLockController(storage_driver=memory_storage, path_locks=PathLocks())


async def test_get_missing_state_returns_none(controller):
    assert await controller.get("project/terraform.tfstate") is None


async def test_put_then_get_round_trips(controller):
    payload = b'{"version": 4, "serial": 1}\x00\xff'
    await controller.put("project/terraform.tfstate", "", payload)

    assert await controller.get("project/terraform.tfstate") == payload


async def test_lock_creates_missing_state(controller, local_storage):
    await controller.lock("new.tfstate", lock_body("A"))

    stored = await local_storage.retrieve("new.tfstate")
    assert stored.lock_id == "A"
    assert stored.payload is None
    assert await controller.get("new.tfstate") == b""


async def test_lock_is_exclusive_and_reentrant(controller, local_storage):
    await controller.lock("x", lock_body("A"))

    with pytest.raises(LockingError) as exc_info:
        await controller.lock("x", lock_body("B"))

    assert exc_info.value.lock_id == "A"
    assert "A" in str(exc_info.value)

    await controller.lock("x", lock_body("A"))
    assert await current_holder(local_storage, "x") == "A"


async def test_relock_by_holder_does_not_write(memory_controller, memory_storage):
    await memory_controller.lock("x", lock_body("A"))
    await memory_controller.lock("x", lock_body("A"))

    assert memory_storage.stores == 1


async def test_lock_preserves_payload(controller):
    await controller.put("x", "", b"state")
    await controller.lock("x", lock_body("A"))

    assert await controller.get("x") == b"state"


async def test_unlock_requires_holder(controller, local_storage):
    await controller.lock("x", lock_body("A"))

    with pytest.raises(LockingError) as exc_info:
        await controller.unlock("x", lock_body("B"))

    assert exc_info.value.lock_id == "A"

    await controller.unlock("x", lock_body("A"))
    assert await current_holder(local_storage, "x") == ""

    await controller.lock("x", lock_body("B"))
    assert await current_holder(local_storage, "x") == "B"


async def test_unlock_missing_state_is_a_conflict(controller):
    with pytest.raises(LockingError) as exc_info:
        await controller.unlock("never-locked", lock_body("A"))

    assert exc_info.value.lock_id == ""


async def test_unlock_preserves_payload(controller):
    await controller.lock("x", lock_body("A"))
    await controller.put("x", "A", b"state")
    await controller.unlock("x", lock_body("A"))

    assert await controller.get("x") == b"state"


async def test_empty_lock_id_is_rejected(memory_controller, memory_storage):
    with pytest.raises(ClientRequestError):
        await memory_controller.lock("x", lock_body(""))

    with pytest.raises(ClientRequestError):
        await memory_controller.unlock("x", lock_body(""))

    assert memory_storage.objects == {}


async def test_conditional_write_requires_lock(controller, local_storage):
    await controller.lock("x", lock_body("A"))
    await controller.put("x", "A", b"first")

    with pytest.raises(LockingError) as exc_info:
        await controller.put("x", "C", b"second")

    assert exc_info.value.lock_id == "A"
    assert await controller.get("x") == b"first"
    assert await current_holder(local_storage, "x") == "A"


async def test_conditional_write_on_missing_state_is_a_conflict(controller):
    with pytest.raises(LockingError):
        await controller.put("x", "A", b"state")

    assert await controller.get("x") is None


async def test_conditional_write_after_unlock_is_a_conflict(controller):
    await controller.lock("x", lock_body("A"))
    await controller.unlock("x", lock_body("A"))

    with pytest.raises(LockingError):
        await controller.put("x", "A", b"state")


async def test_unlocked_write_keeps_existing_lock(controller, local_storage):
    await controller.lock("x", lock_body("A"))
    await controller.put("x", "", b"state")

    assert await controller.get("x") == b"state"
    assert await current_holder(local_storage, "x") == "A"


async def test_retrieve_failure_is_not_a_conflict(memory_controller, memory_storage):
    memory_storage.fail_retrieve = StorageError("backend unavailable")

    for operation in (
        memory_controller.lock("x", lock_body("A")),
        memory_controller.unlock("x", lock_body("A")),
        memory_controller.put("x", "A", b"state"),
        memory_controller.get("x"),
    ):
        with pytest.raises(StorageError):
            await operation


async def test_store_failure_is_not_a_conflict(memory_controller, memory_storage):
    memory_storage.fail_store = StorageError("backend unavailable")

    with pytest.raises(StorageError):
        await memory_controller.lock("x", lock_body("A"))

    assert memory_storage.objects == {}


async def test_concurrent_acquire_is_retried_from_fresh_read():
    storage = ConditionalMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks())

    async def other_server_locks(s: ConditionalMemoryStorageProvider) -> None:
        await s.store("x", StateObject(lock_id="B"))

    storage.interfere = other_server_locks

    with pytest.raises(LockingError) as exc_info:
        await controller.lock("x", lock_body("A"))

    assert exc_info.value.lock_id == "B"
    assert storage.preconditions_failed == 1
    assert storage.objects["x"].lock_id == "B"


async def test_concurrent_payload_write_is_retried():
    storage = ConditionalMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks())
    await controller.lock("x", lock_body("A"))

    async def other_server_writes(s: ConditionalMemoryStorageProvider) -> None:
        await s.store("x", StateObject(lock_id="A", payload=b"other"))

    storage.interfere = other_server_writes
    await controller.put("x", "A", b"mine")

    assert storage.preconditions_failed == 1
    assert await controller.get("x") == b"mine"


async def test_cas_gives_up_after_attempts():
    storage = ConditionalMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks(), cas_attempts=2)

    async def keep_interfering(s: ConditionalMemoryStorageProvider) -> None:
        await s.store("x", StateObject())
        s.interfere = keep_interfering

    storage.interfere = keep_interfering

    with pytest.raises(StorageError):
        await controller.lock("x", lock_body("A"))

    assert storage.preconditions_failed == 2


def test_cas_attempts_must_be_positive(memory_storage):
    with pytest.raises(ValueError):
        TFStateLockController(storage_driver=memory_storage, path_locks=PathLocks(), cas_attempts=0)


async def test_native_lock_follows_lock_state():
    storage = LockableMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks(), native_locking=True)

    await controller.lock("x", lock_body("A"))
    assert storage.held == {"x"}

    await controller.unlock("x", lock_body("A"))
    assert storage.held == set()


async def test_native_lock_failure_does_not_fail_lock():
    storage = LockableMemoryStorageProvider()
    storage.fail_native = StorageError("object lock not enabled")
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks(), native_locking=True)

    await controller.lock("x", lock_body("A"))

    assert await current_holder(storage, "x") == "A"


async def test_native_lock_disabled_by_default():
    storage = LockableMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks())

    await controller.lock("x", lock_body("A"))

    assert storage.held == set()


async def test_conditional_writes_can_be_disabled():
    storage = ConditionalMemoryStorageProvider(conditional_writes=False)
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks())

    async def never_called(s: ConditionalMemoryStorageProvider) -> None:
        raise AssertionError("conditional write attempted")

    storage.interfere = never_called
    await controller.lock("x", lock_body("A"))

    assert not controller.supports_conditional_writes
    assert storage.preconditions_failed == 0
    assert storage.objects["x"].lock_id == "A"


async def test_aclose_closes_storage(memory_controller, memory_storage):
    await memory_controller.aclose()

    assert memory_storage.closed
