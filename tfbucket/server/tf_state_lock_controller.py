import logging
from typing import Callable, Optional

from tfbucket.server.base_state_lock_provider import (
    ClientRequestError,
    LockBody,
    LockingError,
    StateLockProviderProtocol,
    StateObject,
    StorageError,
)
from tfbucket.server.path_locks import PathLocks
from tfbucket.server.storage_provider_base import (
    ConditionalStorageProviderProtocol,
    LockableStorageProviderProtocol,
    PreconditionFailedError,
    StorageProviderProtocol,
)

logger = logging.getLogger(__name__)

DEFAULT_CAS_ATTEMPTS = 3

# returns the object to write, or None when nothing has to be written
Decision = Callable[[Optional[StateObject]], Optional[StateObject]]


class TFStateLockController(StateLockProviderProtocol):
    """Arbitrates terraform state locking on top of a storage provider.

    The storage object is the single source of truth for both the state and its lock holder.
    Every mutation is a read-check-write of that object:

    * serialized per key through `PathLocks` - protects against races inside this process.
    * stored with the version observed on read when the provider supports conditional writes -
      a concurrent modification restarts the decision from a fresh read, up to `cas_attempts` times.

    Without conditional writes, two server instances sharing a bucket may both observe an unlocked
    object and both grant the lock.
    """

    def __init__(
        self,
        storage_driver: StorageProviderProtocol,
        path_locks: PathLocks,
        *,
        native_locking: bool = False,
        cas_attempts: int = DEFAULT_CAS_ATTEMPTS,
    ):
        if cas_attempts < 1:
            raise ValueError("cas_attempts must be at least 1")

        self.storage_driver = storage_driver
        self.path_locks = path_locks
        self.native_locking = native_locking and isinstance(storage_driver, LockableStorageProviderProtocol)
        self.cas_attempts = cas_attempts

    @property
    def supports_conditional_writes(self) -> bool:
        return (
            isinstance(self.storage_driver, ConditionalStorageProviderProtocol)
            and self.storage_driver.conditional_writes
        )

    async def aclose(self) -> None:
        await self.storage_driver.aclose()

    async def _retrieve(self, key: str) -> StateObject | None:
        try:
            return await self.storage_driver.retrieve(key)

        except FileNotFoundError:
            return None

    async def _store(self, key: str, obj: StateObject, current: StateObject | None) -> None:
        if self.supports_conditional_writes:
            assert isinstance(self.storage_driver, ConditionalStorageProviderProtocol)
            expected_version = current.version if current is not None else None
            await self.storage_driver.store_conditionally(key, obj, expected_version)
            return

        await self.storage_driver.store(key, obj)

    async def _read_check_write(self, key: str, decide: Decision) -> bool:
        """Run `decide` against the current object and persist its result.

        Returns:
            Whether an object was written.
        """
        async with self.path_locks.hold(key):
            for attempt in range(1, self.cas_attempts + 1):
                current = await self._retrieve(key)
                new = decide(current)
                if new is None:
                    return False

                try:
                    await self._store(key, new, current)

                except PreconditionFailedError:
                    logger.warning("State %s changed while being updated (attempt %d/%d)", key, attempt, self.cas_attempts)
                    continue

                return True

        raise StorageError(f"Gave up updating {key} after {self.cas_attempts} concurrent modifications")

    async def get(self, key: str) -> bytes | None:
        obj = await self._retrieve(key)
        if obj is None:
            return None

        return obj.payload or b""

    async def put(self, key: str, lock_id: str, payload: bytes) -> None:
        def decide(current: StateObject | None) -> StateObject:
            if lock_id:
                # writing under a lock token requires holding the lock
                if current is None:
                    raise LockingError(f"Failed to update state {key} - no lock is present", lock_id="")

                if current.lock_id != lock_id:
                    raise LockingError(
                        f"Failed to update state {key} - lock {lock_id} is not held, current holder is {current.lock_id!r}",
                        lock_id=current.lock_id,
                    )

            if current is None:
                return StateObject(payload=payload)

            # lock_id is preserved - an unlocked write never clears somebody else's lock
            return current.model_copy(update={"payload": payload})

        await self._read_check_write(key, decide)
        logger.info("Stored state %s (%d bytes, lock %r)", key, len(payload), lock_id)

    async def lock(self, key: str, data: LockBody) -> None:
        lock_id = data.ID
        if not lock_id:
            raise ClientRequestError("Lock ID must not be empty")

        def decide(current: StateObject | None) -> StateObject | None:
            if current is None:
                return StateObject(lock_id=lock_id, payload=None)

            if not current.is_locked:
                return current.model_copy(update={"lock_id": lock_id})

            if current.lock_id == lock_id:
                # re-entrant lock by the same holder
                return None

            raise LockingError(
                f"Failed to lock state {key} with lock {lock_id} - already locked by {current.lock_id}",
                lock_id=current.lock_id,
            )

        written = await self._read_check_write(key, decide)
        logger.info(
            "Locked state %s with lock %s (operation=%r, who=%r)%s",
            key,
            lock_id,
            data.Operation,
            data.Who,
            "" if written else " - already held",
        )

        if self.native_locking:
            await self._apply_native_lock(key, lock=True)

    async def unlock(self, key: str, data: LockBody) -> None:
        lock_id = data.ID
        if not lock_id:
            raise ClientRequestError("Lock ID must not be empty")

        def decide(current: StateObject | None) -> StateObject:
            if current is None:
                raise LockingError(f"Failed to unlock state {key} - no lock is present", lock_id="")

            if current.lock_id != lock_id:
                raise LockingError(
                    f"Failed to unlock state {key} with lock {lock_id} - current holder is {current.lock_id!r}",
                    lock_id=current.lock_id,
                )

            return current.model_copy(update={"lock_id": ""})

        await self._read_check_write(key, decide)
        logger.info("Unlocked state %s (lock %s)", key, lock_id)

        if self.native_locking:
            await self._apply_native_lock(key, lock=False)

    async def _apply_native_lock(self, key: str, lock: bool) -> None:
        assert isinstance(self.storage_driver, LockableStorageProviderProtocol)
        try:
            if lock:
                await self.storage_driver.native_lock(key)
            else:
                await self.storage_driver.native_unlock(key)

        except StorageError as e:
            logger.warning("Native %s of %s failed: %s", "lock" if lock else "unlock", key, e)
