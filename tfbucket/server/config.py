import pathlib
from typing import Annotated

import semver
import xdg_base_dirs
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)

from pydantic import BaseModel, ConfigDict, Field, field_validator

PACKAGE_NAME = "tfbucket"

CONFIG_VERSION = "1"

CONFIG_FILE_NAME = "tfbucket.yaml"


class StorageConfig(BaseModel):
    """Data struct that contains the configuration for the storage provider.

    Each storage provider defines it's own unique configuration parameters -
    and the parameters will be passed through to the storage provider.

    Attributes:
        type: storage provider type as declared in the entrypoint.
        **kwargs: storage provider specific configuration parameters.

    Example:
        In this example, the `s3` storage provider gets a dict: `{"bucket": "my-states"}` as the configuration.

        ```yaml
        type: s3
        bucket: my-states
        ```
    """

    model_config = ConfigDict(extra="allow")
    type: str


class ConfigFile(BaseModel):
    """The configuration file for tfbucket.

    Attributes:
        version: The version of the configuration file.
        storage: The configuration for the storage provider holding the states.
        key_prefix: Prefix prepended to the request path to build the object key.
        native_locking: Whether to apply the storage provider native lock (legal hold) when locking a state.

    Example:
        ```yaml
        version: "1"
        key_prefix: terraform/
        storage:
            type: local
            folder: ~/tfstates
        ```
    """

    version: str = CONFIG_VERSION
    storage: StorageConfig
    key_prefix: str = ""
    native_locking: bool = False

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        current_version = semver.Version.parse(value, optional_minor_and_patch=True)
        config_version = semver.Version.parse(CONFIG_VERSION, optional_minor_and_patch=True)
        if current_version < config_version:
            raise ValueError(
                f"Unsupported version ({current_version} < {config_version}) - please upgrade the config file"
            )

        if current_version > config_version:
            raise ValueError(
                f"Unsupported version ({current_version} > {config_version}) - please check if there is a newer version of {PACKAGE_NAME}"
            )

        return value


class Settings(BaseSettings):
    """Process settings - read from `TFBUCKET_*` environment variables."""

    model_config = SettingsConfigDict(env_prefix="TFBUCKET_")

    state_dir: Annotated[
        pathlib.Path,
        Field(
            default=xdg_base_dirs.xdg_data_home() / PACKAGE_NAME,
        ),
    ]
    config_file: pathlib.Path = pathlib.Path(CONFIG_FILE_NAME)
    host: str = "localhost"
    port: int = 8080
    log_level: str = "info"
    shutdown_grace_period: Annotated[float, Field(ge=0)] = 5.0
    cas_attempts: Annotated[int, Field(ge=1)] = 3
