"""Shared fixtures: in-memory fakes of the AWS and GCP clients and one store per backend."""
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError
from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from secretstore_toolkit.secrets.backends.aws_secretsmanager import AWSSecretsManagerStore
from secretstore_toolkit.secrets.backends.encrypted_file import EncryptedFileStore
from secretstore_toolkit.secrets.backends.gcp_secretmanager import GCPSecretManagerStore
from secretstore_toolkit.secrets.domains import preferences

TEST_PASSWORD = "test-master-password-123"
# Low iteration count keeps key derivation fast in tests
TEST_ITERATIONS = 1000


def client_error(code, operation="Operation"):
    """Build a botocore ClientError with the given error code."""
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised by fake"}}, operation)


class _FailureInjection:
    """Queue exceptions to be raised by the next calls of a named method."""

    def __init__(self):
        self.calls = []
        self._failures = {}

    def fail(self, method, *errors):
        self._failures.setdefault(method, []).extend(errors)

    def _enter(self, method):
        self.calls.append(method)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def count(self, method):
        return self.calls.count(method)


class FakeSecretsManagerClient(_FailureInjection):
    """In-memory stand-in for a boto3 "secretsmanager" client."""

    PAGE_SIZE = 2

    def __init__(self):
        super().__init__()
        self.secrets = {}
        self._started = datetime.now(timezone.utc)
        self._clock = itertools.count(1)
        self._passwords = itertools.count(1)

    def _now(self):
        return self._started + timedelta(seconds=next(self._clock))

    def _secret(self, name, operation):
        if name not in self.secrets:
            raise client_error("ResourceNotFoundException", operation)
        return self.secrets[name]

    def _add_version(self, secret, value, token):
        secret["versions"].append({"VersionId": token, "SecretString": value, "CreatedDate": self._now()})
        secret["current"] = token
        secret["LastChangedDate"] = secret["versions"][-1]["CreatedDate"]

    def put_foreign_value(self, name, value):
        """Simulate a write from another tool (random version id, plain value)."""
        token = f"foreign-{next(self._clock)}"
        if name not in self.secrets:
            self.secrets[name] = {"ARN": f"arn:aws:secretsmanager:us-east-1:123456789012:secret:{name}-AbCdEf",
                                  "KmsKeyId": None, "versions": []}
        self._add_version(self.secrets[name], value, token)

    def create_secret(self, Name, SecretString, ClientRequestToken, KmsKeyId=None, Description=None):
        self._enter("create_secret")
        if Name in self.secrets:
            raise client_error("ResourceExistsException", "CreateSecret")
        self.secrets[Name] = {
            "ARN": f"arn:aws:secretsmanager:us-east-1:123456789012:secret:{Name}-AbCdEf",
            "KmsKeyId": KmsKeyId,
            "versions": [],
        }
        self._add_version(self.secrets[Name], SecretString, ClientRequestToken)
        return {"Name": Name, "VersionId": ClientRequestToken}

    def put_secret_value(self, SecretId, SecretString, ClientRequestToken):
        self._enter("put_secret_value")
        secret = self._secret(SecretId, "PutSecretValue")
        for version in secret["versions"]:
            if version["VersionId"] == ClientRequestToken:
                if version["SecretString"] != SecretString:
                    raise client_error("ResourceExistsException", "PutSecretValue")
                return {"Name": SecretId, "VersionId": ClientRequestToken}
        self._add_version(secret, SecretString, ClientRequestToken)
        return {"Name": SecretId, "VersionId": ClientRequestToken}

    def get_secret_value(self, SecretId, VersionId=None):
        self._enter("get_secret_value")
        secret = self._secret(SecretId, "GetSecretValue")
        wanted = VersionId or secret["current"]
        for version in secret["versions"]:
            if version["VersionId"] == wanted:
                return {"Name": SecretId, **version}
        raise client_error("ResourceNotFoundException", "GetSecretValue")

    def list_secret_version_ids(self, SecretId, IncludeDeprecated=False, NextToken=None):
        self._enter("list_secret_version_ids")
        secret = self._secret(SecretId, "ListSecretVersionIds")
        # Newest first, like the real service
        entries = [
            {"VersionId": v["VersionId"], "CreatedDate": v["CreatedDate"]}
            for v in reversed(secret["versions"])
        ]
        return self._page(entries, "Versions", NextToken)

    def list_secrets(self, Filters=None, NextToken=None):
        self._enter("list_secrets")
        prefixes = []
        for f in Filters or []:
            if f["Key"] == "name":
                prefixes.extend(f["Values"])
        entries = [
            {"Name": name, "ARN": secret["ARN"], "LastChangedDate": secret.get("LastChangedDate")}
            for name, secret in sorted(self.secrets.items())
            if not prefixes or any(name.startswith(p) for p in prefixes)
        ]
        return self._page(entries, "SecretList", NextToken)

    def get_random_password(self, PasswordLength=32, ExcludePunctuation=False):
        self._enter("get_random_password")
        return {"RandomPassword": f"generated{next(self._passwords)}".ljust(PasswordLength, "x")}

    def _page(self, entries, field, next_token):
        start = int(next_token or 0)
        page = {field: entries[start:start + self.PAGE_SIZE]}
        if start + self.PAGE_SIZE < len(entries):
            page["NextToken"] = str(start + self.PAGE_SIZE)
        return page


class FakeSecretManagerServiceClient(_FailureInjection):
    """In-memory stand-in for google.cloud.secretmanager.SecretManagerServiceClient."""

    PAGE_SIZE = 2
    ENABLED = secretmanager.SecretVersion.State.ENABLED
    DISABLED = secretmanager.SecretVersion.State.DISABLED

    def __init__(self):
        super().__init__()
        self.secrets = {}
        self._started = datetime.now(timezone.utc)
        self._clock = itertools.count(1)

    def _now(self):
        return self._started + timedelta(seconds=next(self._clock))

    def _secret(self, path):
        if path not in self.secrets:
            raise gcp_exceptions.NotFound(f"Secret [{path}] not found")
        return self.secrets[path]

    def _version(self, version_path):
        secret_path, _, number = version_path.rpartition("/versions/")
        secret = self._secret(secret_path)
        if not secret["versions"]:
            raise gcp_exceptions.NotFound(f"Secret [{secret_path}] has no versions")
        if number == "latest":
            return secret["versions"][-1]
        for version in secret["versions"]:
            if version.name == version_path:
                return version
        raise gcp_exceptions.NotFound(f"Secret Version [{version_path}] not found")

    def disable_version(self, version_path):
        self._version(version_path).state = self.DISABLED

    def add_foreign_version(self, secret_path, data):
        """Simulate a version added by another tool (plain payload)."""
        if secret_path not in self.secrets:
            self.secrets[secret_path] = {"name": secret_path, "versions": [], "annotations": {},
                                         "replication": {}, "create_time": self._now()}
        return self.add_secret_version(request={"parent": secret_path, "payload": {"data": data}})

    def create_secret(self, request, retry=None):
        self._enter("create_secret")
        path = f"{request['parent']}/secrets/{request['secret_id']}"
        if path in self.secrets:
            raise gcp_exceptions.AlreadyExists(f"Secret [{path}] already exists")
        self.secrets[path] = {
            "name": path,
            "versions": [],
            "annotations": dict(request["secret"].get("annotations", {})),
            "replication": request["secret"]["replication"],
            "create_time": self._now(),
        }
        return SimpleNamespace(name=path)

    def add_secret_version(self, request, retry=None):
        self._enter("add_secret_version")
        secret = self._secret(request["parent"])
        number = len(secret["versions"]) + 1
        version = SimpleNamespace(
            name=f"{request['parent']}/versions/{number}",
            state=self.ENABLED,
            create_time=self._now(),
            destroy_time=None,
            data=request["payload"]["data"],
        )
        secret["versions"].append(version)
        return SimpleNamespace(name=version.name, state=version.state, create_time=version.create_time)

    def access_secret_version(self, request, retry=None):
        self._enter("access_secret_version")
        version = self._version(request["name"])
        if version.state != self.ENABLED:
            raise gcp_exceptions.FailedPrecondition(f"Secret Version [{version.name}] is in DISABLED state")
        return SimpleNamespace(name=version.name, payload=SimpleNamespace(data=version.data))

    def get_secret_version(self, request, retry=None):
        self._enter("get_secret_version")
        version = self._version(request["name"])
        return SimpleNamespace(name=version.name, state=version.state, create_time=version.create_time)

    def list_secret_versions(self, request, retry=None):
        self._enter("list_secret_versions")
        secret = self._secret(request["parent"])
        # Newest first, like the real service
        return self._page(list(reversed(secret["versions"])), "versions", request.get("page_token"))

    def list_secrets(self, request, retry=None):
        self._enter("list_secrets")
        term = request.get("filter", "").partition("name:")[2]
        secrets = [
            SimpleNamespace(name=path, create_time=secret["create_time"])
            for path, secret in sorted(self.secrets.items())
            if path.startswith(request["parent"] + "/secrets/") and term in path.rsplit("/", 1)[-1]
        ]
        return self._page(secrets, "secrets", request.get("page_token"))

    def _page(self, entries, field, page_token):
        start = int(page_token or 0)
        end = start + self.PAGE_SIZE
        return SimpleNamespace(**{
            field: entries[start:end],
            "next_page_token": str(end) if end < len(entries) else "",
        })


@pytest.fixture
def aws_client():
    return FakeSecretsManagerClient()


@pytest.fixture
def gcp_client():
    return FakeSecretManagerServiceClient()


@pytest.fixture
def aws_store(aws_client):
    return AWSSecretsManagerStore(retries=2, actor="tester", backoff=0, client=aws_client)


@pytest.fixture
def gcp_store(gcp_client):
    return GCPSecretManagerStore(project_id="test-project", retries=2, actor="tester", backoff=0, client=gcp_client)


@pytest.fixture
def file_store(tmp_path):
    return EncryptedFileStore(
        file_path=tmp_path / "secrets.json",
        master_password=TEST_PASSWORD,
        retries=2,
        actor="tester",
        backoff=0,
        iterations=TEST_ITERATIONS,
    )


@pytest.fixture(params=["file", "aws", "gcp"])
def store(request):
    """Every backend, for tests of the shared Store contract."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def temp_home(tmp_path, monkeypatch):
    """Fixture to create a temporary home directory for testing."""
    fake_home = tmp_path / "home"
    fake_home.mkdir()
    monkeypatch.setenv("HOME", str(fake_home))
    monkeypatch.setattr(Path, "home", lambda: fake_home)

    # Mock the preferences module paths
    fake_config_dir = fake_home / ".config" / "secretstore-toolkit"
    monkeypatch.setattr(preferences, "PREFERENCES_DIR", fake_config_dir)
    monkeypatch.setattr(preferences, "PREFERENCES_FILE", fake_config_dir / "preferences.json")

    # Keep the developer's environment out of config resolution
    for variable in ("SECRETSTORE_BACKEND", "SECRETSTORE_RETRIES", "SECRETSTORE_KMS_KEY_ALIAS",
                     "SECRETSTORE_REGION", "SECRETSTORE_FILE_PATH", "GCP_PROJECT"):
        monkeypatch.delenv(variable, raising=False)

    return fake_home
