"""AWS Secrets Manager backend.

Each SecretId maps to one Secrets Manager secret named "service/key". Every
write puts a new secret version whose SecretString is a JSON envelope
carrying the toolkit's version number, action and writer identity, so
history and specific-version reads never depend on staging labels.

Version N of a secret is always written with ClientRequestToken
uuid5("service/key#N"). Secrets Manager treats a repeated token with the same
payload as a no-op and a repeated token with a different payload as a
conflict, which makes retries idempotent and lets concurrent writers detect
that a number was already claimed.

Approximate metadata: "created" is the writer's clock and "created_by" is the
writer's STS caller ARN. Versions written by other tools report the native
CreatedDate, created_by "unknown", and numbers synthesized by age.
"""
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ParamValidationError,
    ReadTimeoutError,
)

from ..domains import envelope
from ..domains.errors import BackendError
from ..domains.key_validator import is_valid_name
from ..domains.models import RawSecret, Revision
from ..domains.retry import DEFAULT_RETRIES
from ..domains.store import name_to_id
from .base import VersionedStore

logger = logging.getLogger(__name__)

# Default KMS key used to encrypt/decrypt secrets (the account's managed key)
DEFAULT_ASM_KEY_ID = "alias/aws/secretsmanager"
KMS_ALIAS_PREFIX = "alias/"
DEFAULT_REGION = "us-east-1"

ROTATED_PASSWORD_LENGTH = 32
# Attempts at claiming a version number when other writers race for it
MAX_VERSION_CLAIMS = 5

_TOKEN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "secretstore-toolkit/aws-secretsmanager")

_NOT_FOUND_CODES = {"ResourceNotFoundException"}
_CONFLICT_CODE = "ResourceExistsException"
_TRANSIENT_CODES = {
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalServiceError",
    "InternalFailure",
    "ServiceUnavailable",
}
_PERMANENT_CODES = {
    "ResourceNotFoundException",
    "ResourceExistsException",
    "InvalidParameterException",
    "InvalidRequestException",
    "AccessDeniedException",
    "AccessDenied",
    "UnrecognizedClientException",
    "DecryptionFailure",
    "EncryptionFailure",
    "LimitExceededException",
}


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def normalize_kms_key(key_alias: Optional[str]) -> str:
    """Return the KMS key id, prepending alias/ if necessary."""
    if not key_alias:
        return DEFAULT_ASM_KEY_ID
    if key_alias.startswith((KMS_ALIAS_PREFIX, "arn:")):
        return key_alias
    return f"{KMS_ALIAS_PREFIX}{key_alias}"


def version_token(name: str, version: int) -> str:
    """Deterministic ClientRequestToken (and VersionId) for version N of name."""
    return str(uuid.uuid5(_TOKEN_NAMESPACE, f"{name}#{version}"))


def _is_same_write(stored: Revision, draft: Revision) -> bool:
    # Every writer derives the same token for N; only the payload tells writes apart
    return (stored.action, stored.value, stored.created, stored.created_by) == (
        draft.action, draft.value, draft.created, draft.created_by
    )


class AWSSecretsManagerStore(VersionedStore):
    """Store backed by AWS Secrets Manager."""

    name = "aws-secretsmanager"
    supports_rotation = True

    def __init__(
        self,
        retries: int = DEFAULT_RETRIES,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        key_alias: Optional[str] = None,
        actor: Optional[str] = None,
        backoff: float = 0.5,
        client: Any = None,
        sts_client: Any = None,
    ):
        super().__init__(retries=retries, actor=actor, backoff=backoff)
        self._region = region or DEFAULT_REGION
        self._endpoint = endpoint
        self._kms_key_id = normalize_kms_key(key_alias)
        self._client = client
        self._sts_client = sts_client

    @property
    def kms_key_id(self) -> str:
        return self._kms_key_id

    def _session_config(self) -> Config:
        # The store's RetryPolicy is the only retry layer
        return Config(region_name=self._region, retries={"total_max_attempts": 1, "mode": "standard"})

    @property
    def client(self) -> Any:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = boto3.client(
                "secretsmanager", endpoint_url=self._endpoint, config=self._session_config()
            )
        return self._client

    def _resolve_actor(self) -> str:
        try:
            if self._sts_client is None:
                self._sts_client = boto3.client("sts", endpoint_url=self._endpoint, config=self._session_config())
            return self._sts_client.get_caller_identity()["Arn"]
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to resolve AWS caller identity, recording local user instead: {e}")
            return super()._resolve_actor()

    def _decode(self, response: Dict[str, Any]) -> Revision:
        return envelope.decode(
            response.get("SecretString") or "",
            native_created=response["CreatedDate"],
            native_id=response["VersionId"],
        )

    def _get_value(self, name: str, version_id: Optional[str] = None) -> Optional[Revision]:
        kwargs = {"SecretId": name}
        if version_id is not None:
            kwargs["VersionId"] = version_id
        try:
            response = self.client.get_secret_value(**kwargs)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise
        return self._decode(response)

    def _latest(self, name: str) -> Optional[Revision]:
        current = self._get_value(name)
        if current is None or current.version is not None:
            return current
        # Current value was written by another tool: number it against the history
        for revision in reversed(self._numbered(name)):
            if revision.native_id == current.native_id:
                return revision
        return None

    def _revision(self, name: str, version: int) -> Optional[Revision]:
        revision = self._get_value(name, version_token(name, version))
        if revision is not None and revision.version == version:
            return revision
        return super()._revision(name, version)

    def _revisions(self, name: str) -> List[Revision]:
        revisions = []
        kwargs = {"SecretId": name, "IncludeDeprecated": True}
        while True:
            try:
                page = self.client.list_secret_version_ids(**kwargs)
            except ClientError as e:
                if _error_code(e) in _NOT_FOUND_CODES:
                    return []
                raise
            for entry in page.get("Versions", []):
                revision = self._get_value(name, entry["VersionId"])
                if revision is None:
                    # Secrets Manager prunes unlabeled versions past its retention limit
                    logger.warning(f"Version {entry['VersionId']} of {name} is no longer retrievable")
                    continue
                revisions.append(revision)
            next_token = page.get("NextToken")
            if not next_token:
                return revisions
            kwargs["NextToken"] = next_token

    def _append(self, name: str, draft: Revision, previous: Optional[Revision]) -> int:
        create = previous is None
        version = 1 if previous is None else previous.version + 1

        for _ in range(MAX_VERSION_CLAIMS):
            token = version_token(name, version)
            payload = envelope.encode(replace(draft, version=version))
            try:
                if create:
                    self.client.create_secret(
                        Name=name,
                        SecretString=payload,
                        KmsKeyId=self._kms_key_id,
                        ClientRequestToken=token,
                        Description="Managed by secretstore-toolkit",
                    )
                else:
                    self.client.put_secret_value(SecretId=name, SecretString=payload, ClientRequestToken=token)
                return version
            except ClientError as e:
                if _error_code(e) != _CONFLICT_CODE:
                    raise

            latest = self._latest(name)
            if latest is not None and latest.native_id == token and _is_same_write(latest, draft):
                # An earlier attempt of this same write already landed
                return version
            logger.info(f"Version {version} of {name} was claimed by another writer, claiming the next one")
            create = latest is None
            version = 1 if latest is None else latest.version + 1

        raise BackendError("write", f"could not claim a new version of {name} after {MAX_VERSION_CLAIMS} attempts")

    def _iter_raw(self, service: str) -> Iterator[RawSecret]:
        prefix = f"{service}/"
        kwargs = {"Filters": [{"Key": "name", "Values": [prefix]}]}
        while True:
            page = self._retry.call(self.client.list_secrets, **kwargs)
            for entry in page.get("SecretList", []):
                name = entry["Name"]
                if not name.startswith(prefix):
                    continue
                secret_id = name_to_id(name)
                if not is_valid_name(secret_id.key):
                    continue
                yield RawSecret(
                    service=secret_id.service,
                    key=secret_id.key,
                    native_name=entry.get("ARN", name),
                    last_modified=entry.get("LastChangedDate"),
                )
            next_token = page.get("NextToken")
            if not next_token:
                return
            kwargs["NextToken"] = next_token

    def _rotated_value(self, name: str, current: Revision) -> str:
        response = self.client.get_random_password(
            PasswordLength=ROTATED_PASSWORD_LENGTH,
            ExcludePunctuation=True,
        )
        return response["RandomPassword"]

    def _is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
            return True
        return _error_code(exc) in _TRANSIENT_CODES

    def _is_permanent(self, exc: BaseException) -> bool:
        if isinstance(exc, (ParamValidationError, NoCredentialsError)):
            return True
        return _error_code(exc) in _PERMANENT_CODES
