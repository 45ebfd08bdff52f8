"""Settings from an optional JSON config file and environment variables."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from biblio_madrid_tracker.tracker import LibraryAccount

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "appsettings.json"
DEFAULT_STORAGE_LOCATION = "data"

# config file key -> environment variable
ENV_OVERRIDES = {
    "LibraryUsername": "LIBRARY_USERNAME",
    "LibraryPassword": "LIBRARY_PASSWORD",
    "SecondaryLibraryUsername": "LIBRARY_SECONDARY_USERNAME",
    "SecondaryLibraryPassword": "LIBRARY_SECONDARY_PASSWORD",
    "SecondaryLibraryLabel": "LIBRARY_SECONDARY_LABEL",
    "StorageLocation": "BOOKS_STORAGE_LOCATION",
    "PublishDirectory": "BOOKS_PUBLISH_DIR",
    "CoversDirectory": "BOOKS_COVERS_DIR",
}

# Storage setting of older deployments, no longer read
LEGACY_STORAGE_KEY = "AzureStorageConnectionString"
LEGACY_STORAGE_ENV = "AZURE_STORAGE_CONNECTION_STRING"


class ConfigError(Exception):
    """Raised when required settings are missing or the config file is invalid."""
    pass


@dataclass
class TrackerSettings:
    """Everything a sync run needs, resolved once at startup."""

    accounts: list[LibraryAccount] = field(default_factory=list)
    storage_location: str = DEFAULT_STORAGE_LOCATION
    publish_dir: Optional[Path] = None
    covers_dir: Optional[Path] = None


def read_config_file(path: Path) -> dict[str, str]:
    """
    Read a JSON config file.

    Raises:
        ConfigError: If the file is not a JSON object.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a JSON object")
    return {key: str(value) for key, value in data.items() if value is not None}


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Optional[str]]] = None,
) -> TrackerSettings:
    """
    Resolve settings: config file, then environment variables, then overrides.

    Args:
        config_path: Explicit config file. If not provided, appsettings.json in
            the working directory is used when it exists.
        environ: Environment to read (defaults to os.environ).
        overrides: Values from the command line, keyed like the config file.

    Raises:
        ConfigError: If the primary account's username or password is missing,
            or an explicit config file cannot be read.
    """
    environ = os.environ if environ is None else environ

    values: dict[str, str] = {}
    if config_path is not None:
        values.update(read_config_file(config_path))
    elif Path(DEFAULT_CONFIG_FILE).exists():
        values.update(read_config_file(Path(DEFAULT_CONFIG_FILE)))

    for key, env_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[key] = environ[env_name]

    for key, value in (overrides or {}).items():
        if value:
            values[key] = value

    if values.get(LEGACY_STORAGE_KEY) or environ.get(LEGACY_STORAGE_ENV):
        logger.warning(
            "%s is no longer read; set StorageLocation (or %s) to a blob container SAS URL "
            "to keep using blob storage",
            LEGACY_STORAGE_KEY,
            ENV_OVERRIDES["StorageLocation"],
        )

    username = values.get("LibraryUsername")
    password = values.get("LibraryPassword")
    if not username or not password:
        raise ConfigError("Missing required configuration: LibraryUsername, LibraryPassword")

    accounts = [LibraryAccount(username=username, password=password)]

    secondary_username = values.get("SecondaryLibraryUsername")
    secondary_password = values.get("SecondaryLibraryPassword")
    if secondary_username and secondary_password:
        accounts.append(LibraryAccount(
            username=secondary_username,
            password=secondary_password,
            label=values.get("SecondaryLibraryLabel") or "secondary",
        ))
    else:
        logger.info("No credentials for a secondary account, skipping it")

    publish_dir = values.get("PublishDirectory")
    covers_dir = values.get("CoversDirectory")

    return TrackerSettings(
        accounts=accounts,
        storage_location=values.get("StorageLocation") or DEFAULT_STORAGE_LOCATION,
        publish_dir=Path(publish_dir) if publish_dir else None,
        covers_dir=Path(covers_dir) if covers_dir else None,
    )
