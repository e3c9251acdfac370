import os
import pathlib
import uuid
from typing import Any, Optional, Self, override

from pydantic import BaseModel

from tfbucket.server.base_state_lock_provider import StateObject, StorageError
from tfbucket.server.storage_provider_base import (
    StorageProviderProtocol,
    dump_state_object,
    load_state_object,
    translate_storage_errors,
)


class LocalStorageProviderInitConfig(BaseModel):
    """Initialization params of the local storage provider.

    Attributes:
        folder: Folder holding the state objects - defaults to `states` inside the tfbucket data directory.
        folder_mode: Permissions of created folders.
        file_mode: Permissions of written state objects.
    """

    folder: Optional[pathlib.Path] = None
    folder_mode: int = 0o700
    file_mode: int = 0o600


class LocalStorageProvider(StorageProviderProtocol):
    """Stores every state object as a JSON document in a local folder - the key is the relative file path."""

    def __init__(self, folder: pathlib.Path, folder_mode: int, file_mode: int) -> None:
        self.folder = folder.expanduser().resolve()
        self.folder_mode = folder_mode
        self.file_mode = file_mode

        if not self.folder.exists():
            self.folder.mkdir(parents=True, exist_ok=True)
            self.folder.chmod(self.folder_mode)

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = LocalStorageProviderInitConfig.model_validate(raw_config)
        return cls(
            folder=result.folder or workdir / "states",
            folder_mode=result.folder_mode,
            file_mode=result.file_mode,
        )

    def _state_file(self, key: str) -> pathlib.Path:
        state_file = (self.folder / key).resolve()
        if not state_file.is_relative_to(self.folder):
            raise StorageError(f"Key {key} points outside of {self.folder}")

        return state_file

    @override
    async def retrieve(self, key: str) -> StateObject:
        state_file = self._state_file(key)
        with translate_storage_errors("read", key):
            try:
                data = state_file.read_bytes()

            except FileNotFoundError as exc:
                raise FileNotFoundError(f"File {state_file} not found") from exc

            return load_state_object(data)

    @override
    async def store(self, key: str, obj: StateObject) -> None:
        state_file = self._state_file(key)
        with translate_storage_errors("store", key):
            state_file.parent.mkdir(parents=True, exist_ok=True, mode=self.folder_mode)
            # write aside and rename - readers never observe a partially written document
            temp_file = state_file.with_name(f".{state_file.name}.{uuid.uuid4().hex}.tmp")
            temp_file.write_bytes(dump_state_object(obj))
            temp_file.chmod(self.file_mode)
            os.replace(temp_file, state_file)
