import pathlib
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol, Self, runtime_checkable

from pydantic import ValidationError

from tfbucket.server.base_state_lock_provider import StateObject, StorageError

STORAGE_PROVIDERS_ENTRYPOINT = "tfbucket.plugins.storage_provider"


class PreconditionFailedError(Exception):
    """Raised by a conditional store when the object changed since it was read."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object {key} was modified concurrently")
        self.key = key


def dump_state_object(obj: StateObject) -> bytes:
    return obj.model_dump_json(by_alias=True).encode()


def load_state_object(data: bytes, version: Optional[str] = None) -> StateObject:
    obj = StateObject.model_validate_json(data)
    obj.version = version
    return obj


@contextmanager
def translate_storage_errors(action: str, key: str, *errors: type[BaseException]) -> Iterator[None]:
    """Re-raise backend specific failures as `StorageError`.

    `FileNotFoundError` and `PreconditionFailedError` pass through untouched - they carry meaning for
    the lock controller.

    Args:
        action: Short description of the operation, used in the error message.
        key: The key of the object the operation was performed on.
        *errors: Backend specific exception types to translate, on top of `OSError` and
            pydantic `ValidationError` (a stored document that can't be decoded).
    """
    try:
        yield
    except (FileNotFoundError, PreconditionFailedError):
        raise
    except (OSError, ValidationError, *errors) as e:
        raise StorageError(f"Failed to {action} {key}: {e}") from e


@runtime_checkable
class StorageProviderProtocol(Protocol):
    """Protocol for storage providers.

    A storage provider owns the physical read and write of state objects - one object per key.

    Every storage provider must implement `StorageProviderProtocol` methods -
    and register to the `tfbucket.plugins.storage_provider` entrypoint.

    Example:
        Register the local storage provider - if your project is based on poetry:
        ```toml
        [tool.poetry.plugins."tfbucket.plugins.storage_provider"]
        local = "tfbucket.plugins.local_storage_provider.local_storage_provider:LocalStorageProvider"
        ```
    """

    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        """Create an instance of the storage provider from the configuration.

        Args:
            raw_config: The raw configuration propagated from the storage config.
            workdir: The data directory of tfbucket - located at `~/.local/share/tfbucket` -
                can be used to manage state of the provider
        """
        ...

    async def retrieve(self, key: str) -> StateObject:
        """Read the state object stored under `key`.

        Args:
            key: The key of the object.

        Raises:
            FileNotFoundError: No object is stored under `key`.
            StorageError: The backend failed to read or decode the object.
        """
        ...

    async def store(self, key: str, obj: StateObject) -> None:
        """Write the state object under `key`, replacing any existing object.

        Args:
            key: The key of the object.
            obj: The object to persist - lock id and payload are written together.

        Raises:
            StorageError: The backend failed to write the object.
        """
        ...

    async def aclose(self) -> None:
        """Release the connections held by the provider - called on server shutdown."""
        ...


@runtime_checkable
class ConditionalStorageProviderProtocol(StorageProviderProtocol, Protocol):
    """Protocol for storage providers - Conditional writes.

    Conditional storage providers report a version token on `retrieve()` (set on `StateObject.version`)
    and are able to write an object only if its version was not changed in the meantime -
    which turns the lock controller read-check-write into a real compare-and-swap.

    `conditional_writes` reports whether the preconditions are actually sent -
    a provider configured without them is treated like a plain storage provider.
    """

    conditional_writes: bool = True

    async def store_conditionally(self, key: str, obj: StateObject, expected_version: Optional[str]) -> None:
        """Write the state object only if the stored version still matches.

        Args:
            key: The key of the object.
            obj: The object to persist.
            expected_version: Version observed on the last read - `None` means the object must not exist yet.

        Raises:
            PreconditionFailedError: The object was modified (or created) since it was read.
            StorageError: The backend failed to write the object.
        """
        ...


@runtime_checkable
class LockableStorageProviderProtocol(StorageProviderProtocol, Protocol):
    """Protocol for storage providers - Native locking.

    Some backends offer a native flag that blocks mutation of an object (e.g. S3 object lock legal hold).
    It is applied on top of the lock id kept inside the state object - as a best effort enhancement only.
    """

    async def native_lock(self, key: str) -> None:
        """Set the native lock flag on the object stored under `key`."""
        ...

    async def native_unlock(self, key: str) -> None:
        """Clear the native lock flag from the object stored under `key`."""
        ...
