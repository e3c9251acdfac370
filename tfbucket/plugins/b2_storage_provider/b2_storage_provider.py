import hashlib
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Optional, Self, override
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from tfbucket.server.base_state_lock_provider import StateObject, StorageError
from tfbucket.server.storage_provider_base import (
    StorageProviderProtocol,
    dump_state_object,
    load_state_object,
    translate_storage_errors,
)

logger = logging.getLogger(__name__)

AUTH_URL = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
API_VERSION = "v2"


class B2Credentials(BaseSettings):
    """Application key read from `B2_KEY_ID` and `B2_APP_KEY` environment variables."""

    model_config = SettingsConfigDict(env_prefix="B2_")

    key_id: str
    app_key: SecretStr


class B2StorageProviderInitConfig(BaseModel):
    """Initialization params of the Backblaze B2 storage provider (native API).

    Attributes:
        key_id: Application key id - read from `B2_KEY_ID` when not set.
        application_key: Application key - read from `B2_APP_KEY` when not set.
        bucket_name: Bucket holding the state objects - defaults to the bucket the key is restricted to.

    Example:
        ```yaml
        type: b2
        bucket_name: my-states
        ```
    """

    key_id: Optional[str] = None
    application_key: Optional[SecretStr] = None
    bucket_name: Optional[str] = None


class B2Allowed(BaseModel):
    bucket_id: Optional[str] = Field(None, alias="bucketId")
    bucket_name: Optional[str] = Field(None, alias="bucketName")


class B2AuthorizeAccountResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    authorization_token: str = Field(alias="authorizationToken")
    api_url: str = Field(alias="apiUrl")
    download_url: str = Field(alias="downloadUrl")
    allowed: Optional[B2Allowed] = None


class B2Bucket(BaseModel):
    bucket_id: str = Field(alias="bucketId")


class B2ListBucketsResponse(BaseModel):
    buckets: list[B2Bucket] = []


class B2UploadUrlResponse(BaseModel):
    upload_url: str = Field(alias="uploadUrl")
    authorization_token: str = Field(alias="authorizationToken")


@dataclass
class B2Authorization:
    token: str
    api_url: str
    download_url: str
    bucket_id: str
    bucket_name: str


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code != httpx.codes.OK:
        raise StorageError(
            f"B2 {action} request failed with status code {response.status_code} and message {response.text}"
        )


class B2StorageProvider(StorageProviderProtocol):
    """Stores state objects in a Backblaze B2 bucket using the B2 native API.

    B2 has no conditional uploads - locking relies on the per key serialization of a single server instance.
    """

    def __init__(
        self,
        *,
        key_id: str,
        application_key: str,
        bucket_name: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.key_id = key_id
        self.application_key = application_key
        self.bucket_name = bucket_name
        self.client = client or httpx.AsyncClient(timeout=30)
        self._authorization: B2Authorization | None = None

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = B2StorageProviderInitConfig.model_validate(raw_config)
        if result.key_id is None or result.application_key is None:
            credentials = B2Credentials()  # type: ignore
            key_id, application_key = credentials.key_id, credentials.app_key
        else:
            key_id, application_key = result.key_id, result.application_key

        return cls(
            key_id=key_id,
            application_key=application_key.get_secret_value(),
            bucket_name=result.bucket_name,
        )

    def _api_path(self, api_url: str, endpoint: str) -> str:
        return f"{api_url}/b2api/{API_VERSION}/b2_{endpoint}"

    async def _authorize(self) -> B2Authorization:
        if self._authorization is not None:
            return self._authorization

        response = await self.client.get(AUTH_URL, auth=(self.key_id, self.application_key))
        _raise_for_status(response, "authorize_account")
        info = B2AuthorizeAccountResponse.model_validate_json(response.content)
        allowed = info.allowed or B2Allowed()

        bucket_name = self.bucket_name or allowed.bucket_name
        if bucket_name is None:
            raise StorageError(f"Key {self.key_id} is not restricted to a bucket - bucket_name must be configured")

        bucket_id = allowed.bucket_id if allowed.bucket_name == bucket_name else None
        if bucket_id is None:
            bucket_id = await self._find_bucket_id(info, bucket_name)

        self._authorization = B2Authorization(
            token=info.authorization_token,
            api_url=info.api_url,
            download_url=info.download_url,
            bucket_id=bucket_id,
            bucket_name=bucket_name,
        )
        logger.info("Authorized B2 key %s for bucket %s", self.key_id, bucket_name)
        return self._authorization

    async def _find_bucket_id(self, info: B2AuthorizeAccountResponse, bucket_name: str) -> str:
        response = await self.client.post(
            self._api_path(info.api_url, "list_buckets"),
            headers={"Authorization": info.authorization_token},
            json={"accountId": info.account_id, "bucketName": bucket_name},
        )
        _raise_for_status(response, "list_buckets")
        buckets = B2ListBucketsResponse.model_validate_json(response.content).buckets
        if not buckets:
            raise StorageError(f"Bucket {bucket_name} not found")

        return buckets[0].bucket_id

    def _check_authorization(self, response: httpx.Response) -> None:
        # expired tokens are refreshed on the next request
        if response.status_code == httpx.codes.UNAUTHORIZED:
            self._authorization = None

    @override
    async def retrieve(self, key: str) -> StateObject:
        with translate_storage_errors("read", key, httpx.HTTPError):
            authorization = await self._authorize()
            response = await self.client.get(
                f"{authorization.download_url}/file/{authorization.bucket_name}/{quote(key, safe='/')}",
                headers={"Authorization": authorization.token},
            )
            if response.status_code == httpx.codes.NOT_FOUND:
                raise FileNotFoundError(f"File {key} not found in bucket {authorization.bucket_name}")

            self._check_authorization(response)
            _raise_for_status(response, "download_file_by_name")
            return load_state_object(response.content)

    @override
    async def store(self, key: str, obj: StateObject) -> None:
        data = dump_state_object(obj)
        with translate_storage_errors("store", key, httpx.HTTPError):
            authorization = await self._authorize()
            response = await self.client.post(
                self._api_path(authorization.api_url, "get_upload_url"),
                headers={"Authorization": authorization.token},
                json={"bucketId": authorization.bucket_id},
            )
            self._check_authorization(response)
            _raise_for_status(response, "get_upload_url")
            upload_info = B2UploadUrlResponse.model_validate_json(response.content)

            response = await self.client.post(
                upload_info.upload_url,
                headers={
                    "Authorization": upload_info.authorization_token,
                    "X-Bz-File-Name": quote(key, safe="/"),
                    "Content-Type": "application/json",
                    "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),
                },
                content=data,
            )
            _raise_for_status(response, "upload_file")
            logger.debug("Uploaded %s (%d bytes)", key, len(data))

    @override
    async def aclose(self) -> None:
        await self.client.aclose()
