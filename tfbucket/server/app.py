import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator, Literal, Optional

import uvicorn
import yaml
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from tfbucket.server.base_state_lock_provider import (
    ClientRequestError,
    IncompleteBodyError,
    LockBody,
    LockingError,
    StateLockProviderProtocol,
    StorageError,
)
from tfbucket.server.checksum import validate_checksum
from tfbucket.server.config import ConfigFile, Settings
from tfbucket.server.path_locks import PathLocks
from tfbucket.server.storage_provider_base import (
    STORAGE_PROVIDERS_ENTRYPOINT,
    StorageProviderProtocol,
)
from tfbucket.server.tf_state_lock_controller import TFStateLockController
from tfbucket.utils.plugins import get_providers

logger = logging.getLogger(__name__)

config = Settings()  # type: ignore


def load_config_file(config_file_location: Path) -> ConfigFile:
    if not config_file_location.exists():
        raise FileNotFoundError(f"Config file not found: {config_file_location}")

    content = config_file_location.read_bytes()
    obj = yaml.safe_load(content)
    return ConfigFile.model_validate(obj)


async def create_storage_provider(
    config: ConfigFile,
    workdir: Path,
) -> StorageProviderProtocol:
    storage_providers = get_providers(
        StorageProviderProtocol,
        STORAGE_PROVIDERS_ENTRYPOINT,
    )

    storage_config = config.storage
    if storage_config.type not in storage_providers:
        raise ValueError(f"Unsupported storage provider type: {storage_config.type}")

    storage_class = storage_providers[storage_config.type].model_class
    return await storage_class.from_config(
        storage_config.model_extra or {},
        workdir=workdir,
    )


def build_controller(
    storage_provider: StorageProviderProtocol,
    file_config: ConfigFile,
    path_locks: PathLocks,
) -> TFStateLockController:
    controller = TFStateLockController(
        storage_driver=storage_provider,
        path_locks=path_locks,
        native_locking=file_config.native_locking,
        cas_attempts=config.cas_attempts,
    )
    if not controller.supports_conditional_writes:
        logger.warning(
            "Storage provider %s has no conditional writes - locking is only safe with a single server instance",
            file_config.storage.type,
        )

    return controller


async def initialize_controller(file_config: ConfigFile, path_locks: PathLocks) -> TFStateLockController:
    storage_provider = await create_storage_provider(file_config, workdir=config.state_dir)
    return build_controller(storage_provider, file_config, path_locks)


state = {}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    file_config = load_config_file(config.config_file)
    state["key_prefix"] = file_config.key_prefix
    state["path_locks"] = PathLocks()
    state["controller"] = controller = await initialize_controller(file_config, state["path_locks"])
    try:
        yield
    finally:
        await controller.aclose()


def get_controller() -> StateLockProviderProtocol:
    return state["controller"]


def get_key_prefix() -> str:
    return state.get("key_prefix", "")


ControllerDependency = Annotated[StateLockProviderProtocol, Depends(get_controller)]


def resolve_key(state_path: str, key_prefix: Annotated[str, Depends(get_key_prefix)]) -> str:
    if not state_path:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    if any(segment in (".", "..") for segment in state_path.split("/")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid state path: {state_path}")

    return f"{key_prefix}{state_path}"


StateKey = Annotated[str, Depends(resolve_key)]

app = FastAPI(lifespan=lifespan)


@app.exception_handler(LockingError)
async def locking_exception_handler(_: Request, exc: LockingError) -> JSONResponse:
    logger.warning("Lock conflict: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=jsonable_encoder({"detail": str(exc), "ID": exc.lock_id}),
    )


@app.exception_handler(ClientRequestError)
async def client_request_exception_handler(_: Request, exc: ClientRequestError) -> JSONResponse:
    logger.warning("Rejected request: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder({"detail": exc.errors()}),
    )


@app.exception_handler(StorageError)
async def storage_exception_handler(_: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure: %s", exc, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


@app.exception_handler(StarletteHTTPException)
async def not_found_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    # a state path answers only GET, POST, LOCK and UNLOCK - any other method finds nothing
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        exc = StarletteHTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    return await http_exception_handler(request, exc)


@app.exception_handler(ClientDisconnect)
async def disconnect_exception_handler(request: Request, _: ClientDisconnect) -> Response:
    logger.warning("Client disconnected during upload to %s - write aborted", request.url.path)
    return Response(status_code=status.HTTP_400_BAD_REQUEST)


@app.get("/ready")
def ready() -> Literal["Ready"]:
    return "Ready"


async def read_body(request: Request, expected_length: int) -> bytes:
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > expected_length:
            raise IncompleteBodyError(expected=expected_length, actual=len(body))

    return bytes(body)


@app.get("/{state_path:path}")
async def get_state(key: StateKey, controller: ControllerDependency) -> Response:
    existing_state = await controller.get(key)
    if existing_state is None:
        # nothing stored yet - terraform treats it as a fresh state
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return Response(content=existing_state, media_type="application/octet-stream")


@app.post("/{state_path:path}")
async def update_state(
    key: StateKey,
    request: Request,
    controller: ControllerDependency,
    lock_id: Annotated[str, Query(alias="ID", description="ID of the lock held by the caller")] = "",
    content_md5: Annotated[Optional[str], Header(alias="content-md5")] = None,
    content_length: Annotated[Optional[str], Header(alias="content-length")] = None,
) -> None:
    if not content_md5:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing content-md5 header")

    if content_length is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing content-length header")

    if not content_length.isdigit():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid content-length header")

    expected_length = int(content_length)
    body = await read_body(request, expected_length)
    validate_checksum(body, content_md5, expected_length)

    return await controller.put(key, lock_id, body)


@app.api_route("/{state_path:path}", methods=["LOCK"], include_in_schema=False)
async def lock_state(key: StateKey, body: LockBody, controller: ControllerDependency) -> None:
    return await controller.lock(key, body)


@app.api_route("/{state_path:path}", methods=["UNLOCK"], include_in_schema=False)
async def unlock_state(key: StateKey, body: LockBody, controller: ControllerDependency) -> None:
    return await controller.unlock(key, body)


def start_server(host: str, port: int) -> None:
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=config.log_level,
        timeout_graceful_shutdown=config.shutdown_grace_period,
    )


if __name__ == "__main__":
    start_server(host=config.host, port=config.port)
