"""Shared Store implementation for backends that keep revision history."""
import getpass
import logging
from abc import abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, List, Optional

from ..domains.envelope import UNKNOWN_ACTOR
from ..domains.errors import BackendError, NotFoundError, NotSupportedError, StoreError, ValidationError
from ..domains.key_validator import is_valid_name, validate_secret_id
from ..domains.models import (
    LATEST_VERSION,
    ChangeAction,
    ChangeEvent,
    RawSecret,
    Revision,
    Secret,
    SecretId,
    SecretMetadata,
)
from ..domains.retry import DEFAULT_RETRIES, RetryPolicy
from ..domains.store import Store, id_to_name

logger = logging.getLogger(__name__)


def number_revisions(revisions: Iterable[Revision]) -> List[Revision]:
    """
    Give every revision a version number and sort by it.

    Recorded numbers are kept. A revision without one is numbered one past
    the highest number seen before it in the order the backend stored them,
    never by the writers' clocks, which may disagree.
    """
    numbered = []
    last = 0
    for revision in sorted(revisions, key=lambda r: r.landed):
        if revision.version is None:
            revision = replace(revision, version=last + 1)
        last = max(last, revision.version)
        numbered.append(revision)
    return sorted(numbered, key=lambda r: r.version)


class VersionedStore(Store):
    """
    Store contract on top of a handful of backend primitives.

    Subclasses translate names and revisions to their native system by
    implementing _revisions, _append and _iter_raw, and may override _latest
    and _revision with cheaper native lookups. Primitives signal "absent" by
    returning None or an empty list; any other exception is retried under the
    configured policy and then surfaced as BackendError.
    """

    name = "versioned"
    supports_rotation = False

    def __init__(self, retries: int = DEFAULT_RETRIES, actor: Optional[str] = None, backoff: float = 0.5):
        self._retry = RetryPolicy(
            max_retries=retries,
            is_transient=self._is_transient,
            is_permanent=self._is_permanent,
            backoff=backoff,
        )
        self._actor = actor

    @property
    def retries(self) -> int:
        """Configured retry count, the only backpressure control exposed."""
        return self._retry.max_retries

    @property
    def actor(self) -> str:
        """Identity recorded as created_by on revisions written by this store."""
        if self._actor is None:
            self._actor = self._resolve_actor()
            logger.debug(f"Resolved {self.name} actor: {self._actor}")
        return self._actor

    # Backend primitives

    def _resolve_actor(self) -> str:
        try:
            return getpass.getuser()
        except (OSError, KeyError):
            return UNKNOWN_ACTOR

    @abstractmethod
    def _revisions(self, name: str) -> List[Revision]:
        """All native revisions of name, possibly unnumbered. Empty if absent."""

    @abstractmethod
    def _append(self, name: str, draft: Revision, previous: Optional[Revision]) -> int:
        """Store draft as the next revision after previous and return its version."""

    @abstractmethod
    def _iter_raw(self, service: str) -> Iterator[RawSecret]:
        """Native entries whose canonical name starts with "service/"."""

    def _latest(self, name: str) -> Optional[Revision]:
        revisions = self._numbered(name)
        return revisions[-1] if revisions else None

    def _revision(self, name: str, version: int) -> Optional[Revision]:
        for revision in self._numbered(name):
            if revision.version == version:
                return revision
        return None

    def _rotated_value(self, name: str, current: Revision) -> str:
        raise NotSupportedError(self.name, "rotate")

    def _is_transient(self, exc: BaseException) -> bool:
        return False

    def _is_permanent(self, exc: BaseException) -> bool:
        return False

    # Helpers

    def _numbered(self, name: str) -> List[Revision]:
        return number_revisions(self._revisions(name))

    def _call(self, operation: str, func: Callable[..., Any], *args: Any, mutating: bool = False) -> Any:
        try:
            if mutating:
                return self._retry.call_mutating(func, *args)
            return self._retry.call(func, *args)
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"{self.name} {operation} failed after retries: {e}")
            raise BackendError(operation, f"{type(e).__name__}: {e}") from e

    def _guarded(self, operation: str, entries: Iterator[RawSecret]) -> Iterator[RawSecret]:
        try:
            yield from entries
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"{self.name} {operation} failed: {e}")
            raise BackendError(operation, f"{type(e).__name__}: {e}") from e

    def _draft(self, action: ChangeAction, value: Optional[str]) -> Revision:
        return Revision(
            version=None,
            action=action,
            value=value,
            created=datetime.now(timezone.utc),
            created_by=self.actor,
        )

    @staticmethod
    def _checked_name(secret_id: SecretId) -> str:
        # An id that fails validation can never have been written
        if not (is_valid_name(secret_id.service) and is_valid_name(secret_id.key)):
            raise NotFoundError(str(secret_id))
        return id_to_name(secret_id)

    @staticmethod
    def _to_secret(name: str, revision: Revision, include_value: bool) -> Secret:
        return Secret(
            value=revision.value if include_value else None,
            meta=SecretMetadata(
                created=revision.created,
                created_by=revision.created_by,
                version=revision.version,
                key=name,
            ),
        )

    def _live_latest(self, operation: str, name: str) -> Revision:
        previous = self._call(operation, self._latest, name)
        if previous is None or previous.is_deleted:
            raise NotFoundError(name)
        return previous

    # Store contract

    def write(self, secret_id: SecretId, value: str) -> int:
        validate_secret_id(secret_id)
        if not isinstance(value, str):
            raise ValidationError(f"Secret value for '{secret_id}' must be a string")
        name = id_to_name(secret_id)

        previous = self._call("write", self._latest, name)
        if previous is None or previous.is_deleted:
            action = ChangeAction.CREATED
        else:
            action = ChangeAction.UPDATED

        version = self._call("write", self._append, name, self._draft(action, value), previous, mutating=True)
        logger.info(f"Wrote {name} version {version} ({action.value}) to {self.name}")
        return version

    def read(self, secret_id: SecretId, version: int = LATEST_VERSION) -> Secret:
        name = self._checked_name(secret_id)

        if version == LATEST_VERSION:
            revision = self._call("read", self._latest, name)
            if revision is None or revision.is_deleted:
                raise NotFoundError(name)
        elif version >= 1:
            revision = self._call("read", self._revision, name, version)
            if revision is None or revision.is_deleted:
                raise NotFoundError(name, version)
        else:
            raise NotFoundError(name, version)

        return self._to_secret(name, revision, include_value=True)

    def list(self, service: str, include_values: bool = False) -> List[Secret]:
        secrets = []
        for raw in self.list_raw(service):
            name = f"{raw.service}/{raw.key}"
            revision = self._call("list", self._latest, name)
            if revision is None or revision.is_deleted:
                continue
            secrets.append(self._to_secret(name, revision, include_values))
        return sorted(secrets, key=lambda s: s.meta.key)

    def list_raw(self, service: str) -> Iterator[RawSecret]:
        if not is_valid_name(service):
            return iter(())
        return self._guarded("list_raw", self._iter_raw(service))

    def history(self, secret_id: SecretId) -> List[ChangeEvent]:
        name = self._checked_name(secret_id)
        revisions = self._call("history", self._numbered, name)
        if not revisions:
            raise NotFoundError(name)
        return [
            ChangeEvent(
                version=r.version,
                action=r.action,
                actor=r.created_by,
                time=r.created,
                key=name,
            )
            for r in revisions
        ]

    def delete(self, secret_id: SecretId) -> None:
        validate_secret_id(secret_id)
        name = id_to_name(secret_id)
        previous = self._live_latest("delete", name)

        version = self._call(
            "delete", self._append, name, self._draft(ChangeAction.DELETED, None), previous, mutating=True
        )
        logger.info(f"Deleted {name} from {self.name} (marker version {version})")

    def rotate(self, secret_id: SecretId) -> int:
        validate_secret_id(secret_id)
        if not self.supports_rotation:
            raise NotSupportedError(self.name, "rotate")
        name = id_to_name(secret_id)
        previous = self._live_latest("rotate", name)

        value = self._call("rotate", self._rotated_value, name, previous)
        version = self._call(
            "rotate", self._append, name, self._draft(ChangeAction.ROTATED, value), previous, mutating=True
        )
        logger.info(f"Rotated {name} in {self.name} to version {version}")
        return version
