"""Fernet-encrypted local file backend.

All secrets live in one JSON document. Each revision's value is encrypted
separately with Fernet, using a key derived from a master password via
PBKDF2-HMAC-SHA256 and a random per-file salt, so listings can return the
stored ciphertext without decrypting anything:

    {"format": 1, "salt": "<base64>",
     "secrets": {"billing/api_key": [
         {"version": 1, "action": "created", "created": "...",
          "created_by": "alice", "ciphertext": "gAAAAA..."}]}}
"""
import base64
import contextlib
import fcntl
import json
import logging
import os
import pathlib
import secrets
import tempfile
import threading
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..domains.config_loader import ConfigError
from ..domains.models import ChangeAction, RawSecret, Revision
from ..domains.retry import DEFAULT_RETRIES
from ..domains.store import name_to_id
from .base import VersionedStore

logger = logging.getLogger(__name__)

FILE_FORMAT = 1
PBKDF2_ITERATIONS = 480_000
_SALT_BYTES = 16

# Key references: "env:<VARIABLE>" or "file:<path>"
ENV_KEY_PREFIX = "env:"
FILE_KEY_PREFIX = "file:"
DEFAULT_FILE_KEY_REF = "env:SECRETSTORE_FILE_PASSWORD"

ROTATED_VALUE_BYTES = 32


def normalize_key_ref(key_alias: Optional[str]) -> str:
    """Return the key reference to use, prepending "env:" to bare names."""
    if not key_alias:
        return DEFAULT_FILE_KEY_REF
    if key_alias.startswith((ENV_KEY_PREFIX, FILE_KEY_PREFIX)):
        return key_alias
    return f"{ENV_KEY_PREFIX}{key_alias}"


def load_master_password(key_ref: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Resolve a key reference to the master password.

    Raises:
        ConfigError: If the variable is unset or the key file cannot be read
    """
    environ = os.environ if environ is None else environ
    if key_ref.startswith(FILE_KEY_PREFIX):
        key_path = pathlib.Path(key_ref[len(FILE_KEY_PREFIX):]).expanduser()
        try:
            password = key_path.read_text().strip()
        except OSError as e:
            raise ConfigError(f"Failed to read master password file {key_path}: {e}")
    else:
        variable = key_ref[len(ENV_KEY_PREFIX):]
        password = environ.get(variable, "")
        if not password:
            raise ConfigError(
                f"Master password for the encrypted file backend not found.\n"
                f"Set the {variable} environment variable, or point key_alias at a key file "
                f"with 'file:/path/to/keyfile'."
            )
    if not password:
        raise ConfigError(f"Master password from {key_ref} is empty")
    return password


def _derive_key(master_password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 32-byte Fernet key from the master password via PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_password.encode("utf-8")))


class EncryptedFileStore(VersionedStore):
    """
    Stores versioned secrets in a Fernet-encrypted JSON file.

    Writers serialize on an flock held on a sidecar "<file>.lock", so separate
    processes sharing one file never hand out the same version number.

    Args:
        file_path: Path to the secrets file, created on first write
        master_password: Password used to derive the Fernet key
        iterations: PBKDF2 iteration count; must stay the same for the life of a file
    """

    name = "file"
    supports_rotation = True

    def __init__(
        self,
        file_path: pathlib.Path,
        master_password: str,
        retries: int = DEFAULT_RETRIES,
        actor: Optional[str] = None,
        backoff: float = 0.5,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        super().__init__(retries=retries, actor=actor, backoff=backoff)
        self._iterations = iterations
        self._path = pathlib.Path(file_path)
        self._password = master_password
        self._fernets: Dict[bytes, Fernet] = {}
        self._lock = threading.Lock()

    @property
    def path(self) -> pathlib.Path:
        return self._path

    @property
    def lock_path(self) -> pathlib.Path:
        return self._path.with_name(self._path.name + ".lock")

    @contextlib.contextmanager
    def _exclusive(self):
        """Hold the in-process lock and an exclusive flock on the sidecar lock file."""
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _fernet(self, salt: bytes) -> Fernet:
        if salt not in self._fernets:
            self._fernets[salt] = Fernet(_derive_key(self._password, salt, self._iterations))
        return self._fernets[salt]

    def _read_document(self) -> Dict[str, Any]:
        """Read the secrets document. Returns a fresh empty document if the file is missing."""
        if not self._path.exists():
            return {
                "format": FILE_FORMAT,
                "salt": base64.b64encode(os.urandom(_SALT_BYTES)).decode("ascii"),
                "secrets": {},
            }
        document = json.loads(self._path.read_text())
        if document.get("format") != FILE_FORMAT:
            raise ValueError(f"Unsupported secrets file format in {self._path}: {document.get('format')}")
        return document

    def _write_document(self, document: Dict[str, Any]) -> None:
        """Replace the secrets file atomically, readable by the owner only. Call under _exclusive."""
        # mkstemp creates the file with mode 0600 and a name no other writer uses
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def _to_revision(self, record: Dict[str, Any], fernet: Fernet) -> Revision:
        ciphertext = record.get("ciphertext")
        value = None
        if ciphertext is not None:
            value = fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        return Revision(
            version=record["version"],
            action=ChangeAction(record["action"]),
            value=value,
            created=datetime.fromisoformat(record["created"]),
            created_by=record["created_by"],
            native_id=str(record["version"]),
        )

    def _revisions(self, name: str) -> List[Revision]:
        with self._lock:
            document = self._read_document()
        records = document["secrets"].get(name, [])
        if not records:
            return []
        fernet = self._fernet(base64.b64decode(document["salt"]))
        return [self._to_revision(record, fernet) for record in records]

    def _append(self, name: str, draft: Revision, previous: Optional[Revision]) -> int:
        with self._exclusive():
            document = self._read_document()
            fernet = self._fernet(base64.b64decode(document["salt"]))
            records = document["secrets"].setdefault(name, [])
            # The file, re-read under the flock, is authoritative for the next number
            version = records[-1]["version"] + 1 if records else 1

            ciphertext = None
            if draft.value is not None:
                ciphertext = fernet.encrypt(draft.value.encode("utf-8")).decode("ascii")
            records.append({
                "version": version,
                "action": draft.action.value,
                "created": draft.created.isoformat(),
                "created_by": draft.created_by,
                "ciphertext": ciphertext,
            })
            self._write_document(document)
        logger.debug(f"Appended {name} version {version} to {self._path}")
        return version

    def _iter_raw(self, service: str) -> Iterator[RawSecret]:
        with self._lock:
            document = self._read_document()
        prefix = f"{service}/"
        for name in sorted(document["secrets"]):
            if not name.startswith(prefix):
                continue
            records = document["secrets"][name]
            latest = records[-1] if records else {}
            secret_id = name_to_id(name)
            yield RawSecret(
                service=secret_id.service,
                key=secret_id.key,
                native_name=name,
                last_modified=datetime.fromisoformat(latest["created"]) if latest else None,
                value=latest.get("ciphertext"),
            )

    def _rotated_value(self, name: str, current: Revision) -> str:
        return secrets.token_urlsafe(ROTATED_VALUE_BYTES)

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, (BlockingIOError, InterruptedError, TimeoutError))

    def _is_permanent(self, exc: BaseException) -> bool:
        # Wrong master password, corrupt document, or unreadable file
        return isinstance(exc, (InvalidToken, ValueError, KeyError, PermissionError))
