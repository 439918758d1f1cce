"""Domain models for secret management."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

# Version argument meaning "the newest version"
LATEST_VERSION = -1


class ChangeAction(str, Enum):
    """Kind of change recorded in a secret's audit trail."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ROTATED = "rotated"


@dataclass(frozen=True)
class SecretId:
    """Logical address of a secret: a key inside a service."""
    service: str
    key: str

    def __str__(self) -> str:
        return f"{self.service}/{self.key}"


@dataclass(frozen=True)
class SecretMetadata:
    """Provenance of one version of a secret."""
    created: datetime
    created_by: str
    version: int
    key: str  # canonical "service/key" name


@dataclass(frozen=True)
class Secret:
    """One version's worth of secret data. value is None for metadata-only listings."""
    value: Optional[str]
    meta: SecretMetadata


@dataclass(frozen=True)
class RawSecret:
    """Backend-native listing entry, resolved without reading full metadata."""
    service: str
    key: str
    native_name: str
    last_modified: Optional[datetime] = None
    value: Optional[str] = None  # stored ciphertext, only where the backend holds one


@dataclass(frozen=True)
class ChangeEvent:
    """One entry in a secret's audit trail."""
    version: int
    action: ChangeAction
    actor: str
    time: datetime
    key: str


@dataclass(frozen=True)
class Revision:
    """
    A single native revision as seen by a backend adapter.

    version is None for revisions written outside this toolkit; those get
    numbers synthesized from their position in the backend's own order.
    created is the writer's clock; native_created is the backend's record of
    when the revision landed, where the backend reports one.
    """
    version: Optional[int]
    action: ChangeAction
    value: Optional[str]
    created: datetime
    created_by: str
    native_id: str = ""
    native_created: Optional[datetime] = field(default=None, compare=False)

    @property
    def landed(self) -> datetime:
        """Backend creation time, or the writer's clock where the backend has none."""
        return self.native_created or self.created

    @property
    def is_deleted(self) -> bool:
        return self.action == ChangeAction.DELETED
