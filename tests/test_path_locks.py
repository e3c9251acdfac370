import anyio
import pytest

from tests.fakes import MemoryStorageProvider
from tfbucket.server.base_state_lock_provider import LockBody, LockingError, StateObject
from tfbucket.server.path_locks import PathLocks
from tfbucket.server.tf_state_lock_controller import TFStateLockController

pytestmark = pytest.mark.anyio


class SlowMemoryStorageProvider(MemoryStorageProvider):
    """Yields to the event loop between read and write - lets concurrent requests interleave."""

    async def retrieve(self, key: str) -> StateObject:
        obj = await super().retrieve(key)
        await anyio.sleep(0.01)
        return obj

    async def store(self, key: str, obj: StateObject) -> None:
        await anyio.sleep(0.01)
        await super().store(key, obj)


async def test_hold_serializes_same_key():
    path_locks = PathLocks()
    events = []

    async def worker(name: str) -> None:
        async with path_locks.hold("x"):
            events.append(f"{name}-start")
            await anyio.sleep(0.01)
            events.append(f"{name}-end")

    async with anyio.create_task_group() as tg:
        tg.start_soon(worker, "a")
        tg.start_soon(worker, "b")

    assert events in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


async def test_hold_does_not_block_other_keys():
    path_locks = PathLocks()

    async with path_locks.hold("x"):
        with anyio.fail_after(1):
            async with path_locks.hold("y"):
                pass


async def test_concurrent_acquire_grants_a_single_holder():
    storage = SlowMemoryStorageProvider()
    controller = TFStateLockController(storage_driver=storage, path_locks=PathLocks())
    results: dict[str, str] = {}

    async def acquire(lock_id: str) -> None:
        try:
            await controller.lock("x", LockBody(ID=lock_id))
            results[lock_id] = "locked"
        except LockingError as e:
            results[lock_id] = f"conflict:{e.lock_id}"

    async with anyio.create_task_group() as tg:
        for lock_id in ("A", "B", "C"):
            tg.start_soon(acquire, lock_id)

    holders = [lock_id for lock_id, result in results.items() if result == "locked"]
    assert len(holders) == 1
    assert storage.objects["x"].lock_id == holders[0]
    assert all(result == f"conflict:{holders[0]}" for lock_id, result in results.items() if lock_id not in holders)
