"""Abstract Store contract implemented by every secret backend."""
from abc import ABC, abstractmethod
from typing import Iterator, List

from .models import LATEST_VERSION, ChangeEvent, RawSecret, Secret, SecretId


def id_to_name(secret_id: SecretId) -> str:
    """Canonical backend-native name for a SecretId: "service/key"."""
    return f"{secret_id.service}/{secret_id.key}"


def name_to_id(name: str) -> SecretId:
    """
    Inverse of id_to_name.

    Raises:
        ValueError: If name has no "/" separator
    """
    service, sep, key = name.partition("/")
    if not sep:
        raise ValueError(f"Not a canonical secret name: '{name}'")
    return SecretId(service=service, key=key)


class Store(ABC):
    """
    Uniform secret store.

    Every operation raises only StoreError subclasses: ValidationError,
    NotFoundError, BackendError or NotSupportedError. Operations are
    synchronous and there is no compare-and-swap: concurrent writers to the
    same id may both succeed, producing two versions in either order.
    """

    #: Short backend name used in logs and error messages
    name = "store"

    @abstractmethod
    def write(self, secret_id: SecretId, value: str) -> int:
        """Append a new version (1 if the secret is absent) and return its number."""

    @abstractmethod
    def read(self, secret_id: SecretId, version: int = LATEST_VERSION) -> Secret:
        """Return the latest version, or the version numbered `version`."""

    @abstractmethod
    def list(self, service: str, include_values: bool = False) -> List[Secret]:
        """Return the latest version of every live secret in service, sorted by key."""

    @abstractmethod
    def list_raw(self, service: str) -> Iterator[RawSecret]:
        """Lazily enumerate native entries of service without decrypting values."""

    @abstractmethod
    def history(self, secret_id: SecretId) -> List[ChangeEvent]:
        """Return the audit trail of secret_id, oldest first."""

    @abstractmethod
    def delete(self, secret_id: SecretId) -> None:
        """Append a deletion marker. Earlier versions remain readable by number."""

    @abstractmethod
    def rotate(self, secret_id: SecretId) -> int:
        """Regenerate the value through the backend and return the new version."""
