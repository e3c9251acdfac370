import base64
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class LockBody(BaseModel):
    """Data struct that contains the lock information.

    This is the same data struct that is sent by terraform on `LOCK` and `UNLOCK` requests.
    It follows the same fields names as the terraform lock info.

    See offical [source](https://github.com/hashicorp/terraform/blob/aea5c0cc180e0e6915454b3bf61f471c230c111b/internal/states/statemgr/locker.go#L129).

    Only `ID` takes part in lock arbitration - the rest is informational.

    Attributes:
        ID: The ID of the lock.
        Operation: The operation that is being performed.
        Info: Extra information to store with the lock.
        Who: The entity that is performing the operation.
        Version: The terraform version of the lock holder.
        Created: The time when the lock was created.
        Path: The path of the state file, as seen by terraform.
    """

    model_config = ConfigDict(from_attributes=True)

    ID: str
    Operation: str = ""
    Info: str = ""
    Who: str = ""
    Version: str = ""
    Created: str = ""
    Path: str = ""


class StateObject(BaseModel):
    """The unit of durable storage for a single state path.

    The lock id and the payload are always read and written together as one document.

    Attributes:
        lock_id: ID of the current lock holder - empty string means unlocked.
        payload: The serialized terraform state - `None` for an object that was never written.
        version: Version token reported by the storage provider on read - never persisted.
    """

    model_config = ConfigDict(populate_by_name=True)

    lock_id: str = ""
    payload: Optional[bytes] = Field(default=None, alias="state")
    version: Optional[str] = Field(default=None, exclude=True)

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, value: Any) -> Any:
        # stored documents carry the payload base64 encoded
        if isinstance(value, str):
            return base64.b64decode(value, validate=True)

        return value

    @field_serializer("payload", when_used="json")
    def encode_payload(self, value: Optional[bytes]) -> Optional[str]:
        if value is None:
            return None

        return base64.b64encode(value).decode()

    @property
    def is_locked(self) -> bool:
        return self.lock_id != ""


class LockingError(Exception):
    """Raised when the caller does not hold (or cannot take) the lock.

    Attributes:
        lock_id: ID of the current lock holder - empty when nobody holds the lock.
    """

    def __init__(self, msg: str, lock_id: str) -> None:
        super().__init__(msg)
        self.lock_id = lock_id


class StorageError(Exception):
    """Raised when the storage backend fails to read or write a state object."""


class ClientRequestError(Exception):
    """Raised when a request is malformed and must be rejected before touching storage."""


class ChecksumMismatchError(ClientRequestError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Invalid checksum - expected {expected}, calculated {actual}")
        self.expected = expected
        self.actual = actual


class IncompleteBodyError(ClientRequestError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Body length mismatch - {expected} bytes declared, {actual} bytes received")
        self.expected = expected
        self.actual = actual


class StateLockProviderProtocol(Protocol):
    async def get(self, key: str) -> bytes | None: ...
    async def put(self, key: str, lock_id: str, payload: bytes) -> None: ...
    async def lock(self, key: str, data: LockBody) -> None: ...
    async def unlock(self, key: str, data: LockBody) -> None: ...
