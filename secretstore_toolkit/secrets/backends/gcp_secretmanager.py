"""GCP Secret Manager backend.

Each SecretId maps to one Secret Manager secret. Secret ids only allow
[a-zA-Z0-9_-], so the canonical "service/key" name is escaped reversibly
("_" -> "_u", "." -> "_d", "/" -> "_s") and also kept as an annotation.

Secret Manager numbers versions 1, 2, 3... per secret and never reuses a
number, so the native version number is the toolkit's version number.
Deletion markers are versions too. Versions disabled or destroyed outside the
toolkit show up in history as deletions.

Approximate metadata: "created" and "created_by" come from the payload the
writer stored (writer's clock, service-account e-mail). Foreign versions
report the native create_time and created_by "unknown".
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator, List, Optional

import google.auth
from google.api_core import exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import secretmanager
from google.oauth2 import service_account

from ..domains import envelope
from ..domains.key_validator import is_valid_name
from ..domains.models import ChangeAction, RawSecret, Revision
from ..domains.retry import DEFAULT_RETRIES
from ..domains.store import name_to_id
from .base import VersionedStore

logger = logging.getLogger(__name__)

NAME_ANNOTATION = "secretstore-name"

_ESCAPES = {"_": "_u", ".": "_d", "/": "_s"}
_UNESCAPES = {code[1]: char for char, code in _ESCAPES.items()}

_TRANSIENT_ERRORS = (
    exceptions.TooManyRequests,
    exceptions.ResourceExhausted,
    exceptions.ServiceUnavailable,
    exceptions.DeadlineExceeded,
)
_PERMANENT_ERRORS = (
    exceptions.NotFound,
    exceptions.AlreadyExists,
    exceptions.InvalidArgument,
    exceptions.FailedPrecondition,
    exceptions.PermissionDenied,
    exceptions.Unauthenticated,
    DefaultCredentialsError,
)


def encode_secret_id(name: str) -> str:
    """Escape a canonical name into the Secret Manager id alphabet."""
    return "".join(_ESCAPES.get(char, char) for char in name)


def decode_secret_id(secret_id: str) -> str:
    """
    Inverse of encode_secret_id.

    Raises:
        ValueError: If secret_id contains an unknown escape
    """
    chars = []
    i = 0
    while i < len(secret_id):
        char = secret_id[i]
        if char == "_":
            code = secret_id[i + 1:i + 2]
            if code not in _UNESCAPES:
                raise ValueError(f"Not a secretstore secret id: '{secret_id}'")
            chars.append(_UNESCAPES[code])
            i += 2
        else:
            chars.append(char)
            i += 1
    return "".join(chars)


def normalize_kms_key(key_alias: Optional[str], project_id: str) -> Optional[str]:
    """
    Return the Cloud KMS key name for customer-managed encryption.

    None (the default) means Google-managed encryption. Names that do not
    start with "projects/" are taken relative to the store's project.
    """
    if not key_alias:
        return None
    if key_alias.startswith("projects/"):
        return key_alias
    return f"projects/{project_id}/{key_alias.lstrip('/')}"


def _version_number(version_name: str) -> int:
    return int(version_name.rsplit("/", 1)[-1])


class GCPSecretManagerStore(VersionedStore):
    """Store backed by GCP Secret Manager."""

    name = "gcp-secretmanager"

    def __init__(
        self,
        project_id: str,
        retries: int = DEFAULT_RETRIES,
        key_alias: Optional[str] = None,
        credentials_path: Optional[str] = None,
        actor: Optional[str] = None,
        backoff: float = 0.5,
        client: Any = None,
    ):
        super().__init__(retries=retries, actor=actor, backoff=backoff)
        if not project_id:
            raise ValueError("project_id is required for the GCP Secret Manager backend")
        self._project_id = project_id
        self._kms_key_name = normalize_kms_key(key_alias, project_id)
        self._credentials_path = credentials_path
        self._credentials = None
        self._client = client

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def kms_key_name(self) -> Optional[str]:
        return self._kms_key_name

    def _load_credentials(self) -> Any:
        if self._credentials is None:
            if self._credentials_path:
                self._credentials = service_account.Credentials.from_service_account_file(self._credentials_path)
                logger.debug(f"Using service account from {self._credentials_path}")
            else:
                self._credentials, _ = google.auth.default()
        return self._credentials

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient(credentials=self._load_credentials())
        return self._client

    def _resolve_actor(self) -> str:
        try:
            email = getattr(self._load_credentials(), "service_account_email", None)
        except (DefaultCredentialsError, OSError, ValueError) as e:
            logger.warning(f"Failed to load GCP credentials for actor identity: {e}")
            email = None
        if email and email != "default":
            return email
        return super()._resolve_actor()

    def _secret_path(self, name: str) -> str:
        return f"projects/{self._project_id}/secrets/{encode_secret_id(name)}"

    def _access(self, version_path: str, native_created: Optional[datetime] = None) -> Revision:
        response = self.client.access_secret_version(request={"name": version_path}, retry=None)
        payload = response.payload.data.decode("utf-8")
        if native_created is None and not envelope.is_envelope(payload):
            native_created = self.client.get_secret_version(request={"name": response.name}, retry=None).create_time
        return envelope.decode(
            payload,
            native_created=native_created,
            native_id=response.name,
            native_version=_version_number(response.name),
        )

    def _latest(self, name: str) -> Optional[Revision]:
        try:
            return self._access(f"{self._secret_path(name)}/versions/latest")
        except exceptions.NotFound:
            return None
        except exceptions.FailedPrecondition:
            # Newest version was disabled or destroyed outside the toolkit
            return super()._latest(name)

    def _revision(self, name: str, version: int) -> Optional[Revision]:
        try:
            return self._access(f"{self._secret_path(name)}/versions/{version}")
        except (exceptions.NotFound, exceptions.FailedPrecondition):
            return None

    def _revisions(self, name: str) -> List[Revision]:
        revisions = []
        request = {"parent": self._secret_path(name)}
        while True:
            try:
                page = self.client.list_secret_versions(request=dict(request), retry=None)
            except exceptions.NotFound:
                return []
            for version in page.versions:
                if version.state == secretmanager.SecretVersion.State.ENABLED:
                    revisions.append(self._access(version.name, native_created=version.create_time))
                else:
                    revisions.append(Revision(
                        version=_version_number(version.name),
                        action=ChangeAction.DELETED,
                        value=None,
                        created=version.destroy_time or version.create_time,
                        created_by=envelope.UNKNOWN_ACTOR,
                        native_id=version.name,
                    ))
            if not page.next_page_token:
                return revisions
            request["page_token"] = page.next_page_token

    def _append(self, name: str, draft: Revision, previous: Optional[Revision]) -> int:
        secret_path = self._secret_path(name)
        if previous is None:
            replication = {"automatic": {}}
            if self._kms_key_name:
                replication = {"automatic": {"customer_managed_encryption": {"kms_key_name": self._kms_key_name}}}
            try:
                self.client.create_secret(
                    request={
                        "parent": f"projects/{self._project_id}",
                        "secret_id": encode_secret_id(name),
                        "secret": {"replication": replication, "annotations": {NAME_ANNOTATION: name}},
                    },
                    retry=None,
                )
                logger.debug(f"Created secret {secret_path}")
            except exceptions.AlreadyExists:
                logger.debug(f"Secret {secret_path} already exists, adding a version")

        payload = envelope.encode(draft, include_version=False)
        response = self.client.add_secret_version(
            request={"parent": secret_path, "payload": {"data": payload.encode("utf-8")}},
            retry=None,
        )
        return _version_number(response.name)

    def _iter_raw(self, service: str) -> Iterator[RawSecret]:
        prefix = encode_secret_id(f"{service}/")
        request = {"parent": f"projects/{self._project_id}", "filter": f"name:{prefix}"}
        while True:
            page = self._retry.call(self.client.list_secrets, request=dict(request), retry=None)
            for secret in page.secrets:
                secret_id = secret.name.rsplit("/", 1)[-1]
                if not secret_id.startswith(prefix):
                    continue
                try:
                    parsed = name_to_id(decode_secret_id(secret_id))
                except ValueError:
                    continue
                if not is_valid_name(parsed.key):
                    continue
                yield RawSecret(
                    service=parsed.service,
                    key=parsed.key,
                    native_name=secret.name,
                    last_modified=secret.create_time,
                )
            if not page.next_page_token:
                return
            request["page_token"] = page.next_page_token

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, _TRANSIENT_ERRORS)

    def _is_permanent(self, exc: BaseException) -> bool:
        return isinstance(exc, _PERMANENT_ERRORS)
