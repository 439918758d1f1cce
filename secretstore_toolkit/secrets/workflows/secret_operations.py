"""Caller-level workflows built on the Store contract."""
import json
import logging
import re
from typing import Dict, Optional

from ..domains.errors import NotFoundError
from ..domains.models import LATEST_VERSION, SecretId
from ..domains.store import Store

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "dotenv")

_ENV_NAME_INVALID = re.compile(r'[^A-Z0-9_]')


class VersionConflictError(Exception):
    """The secret changed since the version the caller last read."""

    def __init__(self, secret_id: SecretId, expected: int, actual: int):
        self.secret_id = secret_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Secret '{secret_id}' is at version {actual}, expected {expected}"
        )


def get_secret_value(store: Store, service: str, key: str, version: int = LATEST_VERSION) -> str:
    """
    Fetch a secret value.

    Args:
        store: Store to read from
        service: Service name
        key: Key name within the service
        version: Version to read (-1 for the latest)

    Returns:
        Secret value as string

    Raises:
        NotFoundError: If the secret or version does not exist
    """
    return store.read(SecretId(service=service, key=key), version).value


def update_if_unchanged(store: Store, secret_id: SecretId, expected_version: int, value: str) -> int:
    """
    Write value only if the latest version is still expected_version.

    Use expected_version=0 to require that the secret does not exist (or is
    deleted). This is a best-effort read-check-write: a writer that lands
    between the check and the write is not detected.

    Returns:
        The new version number

    Raises:
        VersionConflictError: If the latest version differs from expected_version
    """
    try:
        current = store.read(secret_id).meta.version
    except NotFoundError:
        current = 0

    if current != expected_version:
        raise VersionConflictError(secret_id, expected_version, current)

    version = store.write(secret_id, value)
    logger.debug(f"Updated {secret_id} from version {expected_version} to {version}")
    return version


def to_env_name(key: str) -> str:
    """Map a key to an environment variable name: upper case, separators as '_'."""
    return _ENV_NAME_INVALID.sub("_", key.upper())


def export_service(store: Store, service: str) -> Dict[str, str]:
    """Return {key: latest value} for every live secret in service."""
    exported = {}
    for secret in store.list(service, include_values=True):
        key = secret.meta.key.partition("/")[2]
        exported[key] = secret.value
    logger.debug(f"Exported {len(exported)} secrets from service '{service}'")
    return exported


def format_export(values: Dict[str, str], fmt: str = "json") -> str:
    """
    Render exported secrets.

    Args:
        values: Mapping of key to value
        fmt: "json" (keys as-is) or "dotenv" (KEY="value" lines, keys as env names)

    Raises:
        ValueError: If fmt is not a supported format, or two keys map to the
            same environment variable name
    """
    if fmt == "json":
        return json.dumps(values, indent=2, sort_keys=True)
    if fmt == "dotenv":
        lines = []
        seen: Dict[str, str] = {}
        for key in sorted(values):
            env_name = to_env_name(key)
            if env_name in seen:
                raise ValueError(
                    f"Keys '{seen[env_name]}' and '{key}' both export as {env_name}; "
                    f"use the json format or rename one of them"
                )
            seen[env_name] = key
            lines.append(f"{env_name}={_quote_dotenv(values[key])}")
        return "\n".join(lines)
    raise ValueError(f"Unsupported export format '{fmt}'. Supported: {', '.join(EXPORT_FORMATS)}")


def _quote_dotenv(value: Optional[str]) -> str:
    escaped = (value or "").replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'
