"""End-to-end CLI tests against the encrypted file backend."""
import functools
import io
import json
import os
import stat

import pytest

from secretstore_toolkit.cli.main import VERSION, main
from secretstore_toolkit.secrets.backends.encrypted_file import EncryptedFileStore
from secretstore_toolkit.secrets.workflows import factory
from tests.conftest import TEST_ITERATIONS


@pytest.fixture
def file_backend(temp_home, tmp_path, monkeypatch):
    """Point the CLI at an encrypted file through the environment."""
    secrets_file = tmp_path / "secrets.json"
    monkeypatch.setenv("SECRETSTORE_BACKEND", "file")
    monkeypatch.setenv("SECRETSTORE_FILE_PATH", str(secrets_file))
    monkeypatch.setenv("SECRETSTORE_FILE_PASSWORD", "cli-test-password")
    monkeypatch.setattr(factory, "EncryptedFileStore",
                        functools.partial(EncryptedFileStore, iterations=TEST_ITERATIONS))
    return secrets_file


def run(capsys, *argv):
    """Run the CLI and return (exit code, stdout, stderr)."""
    try:
        main(list(argv))
        code = 0
    except SystemExit as e:
        code = e.code
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestBasics:

    def test_version(self, capsys):
        code, out, _ = run(capsys, "version")

        assert code == 0
        assert VERSION in out

    def test_no_command_is_usage_error(self, capsys):
        code, out, _ = run(capsys)

        assert code == 2
        assert "usage" in out.lower()

    def test_unknown_backend_override(self, file_backend, capsys):
        code, _, err = run(capsys, "--backend", "vault", "read", "billing", "api_key")

        assert code == 1
        assert "Unknown backend" in err

    def test_negative_retries_override(self, file_backend, capsys):
        code, _, err = run(capsys, "--retries", "-1", "read", "billing", "api_key")

        assert code == 1
        assert "retries" in err

    def test_gcp_without_project(self, file_backend, capsys):
        code, _, err = run(capsys, "--backend", "gcp-secretmanager", "list", "billing")

        assert code == 1
        assert "Project ID not found" in err

    def test_file_backend_without_password(self, file_backend, monkeypatch, capsys):
        monkeypatch.delenv("SECRETSTORE_FILE_PASSWORD")

        code, _, err = run(capsys, "list", "billing")

        assert code == 1
        assert "SECRETSTORE_FILE_PASSWORD" in err


class TestWriteAndRead:

    def test_write_then_read_quiet(self, file_backend, capsys):
        code, out, _ = run(capsys, "write", "billing", "api_key", "sk_live_abc")
        assert code == 0
        assert out.strip() == "Wrote billing/api_key version 1"

        code, out, _ = run(capsys, "read", "billing", "api_key", "-q")
        assert code == 0
        assert out == "sk_live_abc\n"

    def test_write_quiet(self, file_backend, capsys):
        code, out, _ = run(capsys, "write", "-q", "billing", "api_key", "sk_live_abc")

        assert code == 0
        assert out == ""

    def test_read_table(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")

        code, out, _ = run(capsys, "read", "billing", "api_key")

        assert code == 0
        header, row = out.splitlines()
        assert header.split() == ["Key", "Version", "LastModified", "User", "Value"]
        assert row.startswith("billing/api_key")
        assert row.endswith("sk_live_abc")

    def test_read_specific_version(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")
        run(capsys, "write", "billing", "api_key", "sk_live_def")

        _, latest, _ = run(capsys, "read", "billing", "api_key", "-q")
        _, first, _ = run(capsys, "read", "billing", "api_key", "--version", "1", "-q")

        assert latest.strip() == "sk_live_def"
        assert first.strip() == "sk_live_abc"

    def test_write_from_stdin(self, file_backend, monkeypatch, capsys):
        monkeypatch.setattr("sys.stdin", io.StringIO("from-stdin\n"))

        code, _, _ = run(capsys, "write", "billing", "api_key", "-")
        assert code == 0

        _, out, _ = run(capsys, "read", "billing", "api_key", "-q")
        assert out.strip() == "from-stdin"

    def test_read_missing(self, file_backend, capsys):
        code, _, err = run(capsys, "read", "billing", "missing")

        assert code == 1
        assert "not found" in err

    @pytest.mark.parametrize("service, key", [("bad/service", "api_key"), ("billing", "token-")])
    def test_invalid_names(self, file_backend, capsys, service, key):
        code, _, err = run(capsys, "write", service, key, "value")

        assert code == 2
        assert "Invalid" in err
        assert not file_backend.exists()

    def test_empty_value(self, file_backend, capsys):
        code, _, err = run(capsys, "write", "billing", "api_key", "  ")

        assert code == 2
        assert "cannot be empty" in err

    @pytest.mark.parametrize("version", ["0", "-5"])
    def test_invalid_version(self, file_backend, capsys, version):
        code, _, _ = run(capsys, "read", "billing", "api_key", "--version", version)

        assert code == 2

    def test_expect_version(self, file_backend, capsys):
        code, _, _ = run(capsys, "write", "billing", "api_key", "v1", "--expect-version", "0")
        assert code == 0

        code, _, err = run(capsys, "write", "billing", "api_key", "v2", "--expect-version", "0")
        assert code == 1
        assert "expected 0" in err

        code, out, _ = run(capsys, "write", "billing", "api_key", "v2", "--expect-version", "1")
        assert code == 0
        assert "version 2" in out


class TestListAndHistory:

    @pytest.fixture
    def populated(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")
        run(capsys, "write", "billing", "db_password", "hunter2")
        run(capsys, "write", "shipping", "api_key", "other")
        return file_backend

    def test_list(self, populated, capsys):
        code, out, _ = run(capsys, "list", "billing")

        assert code == 0
        lines = out.splitlines()
        assert lines[0].split() == ["Key", "Version", "LastModified", "User"]
        assert [line.split()[0] for line in lines[1:]] == ["api_key", "db_password"]
        assert "sk_live_abc" not in out

    def test_list_expand(self, populated, capsys):
        code, out, _ = run(capsys, "list", "billing", "--expand")

        assert code == 0
        assert "sk_live_abc" in out
        assert "hunter2" in out
        assert "other" not in out

    def test_list_raw(self, populated, capsys):
        code, out, _ = run(capsys, "list", "billing", "--raw")

        assert code == 0
        assert "billing/api_key" in out
        assert "sk_live_abc" not in out

    def test_list_expand_and_raw_conflict(self, populated, capsys):
        code, _, _ = run(capsys, "list", "billing", "--raw", "--expand")

        assert code == 2

    def test_history(self, populated, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_def")
        run(capsys, "delete", "billing", "api_key")

        code, out, _ = run(capsys, "history", "billing", "api_key")

        assert code == 0
        rows = [line.split() for line in out.splitlines()[1:]]
        assert [(row[0], row[1]) for row in rows] == [("created", "1"), ("updated", "2"), ("deleted", "3")]


class TestDeleteRotateExport:

    def test_delete(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")

        code, out, _ = run(capsys, "delete", "billing", "api_key")
        assert code == 0
        assert out.strip() == "Deleted billing/api_key"

        code, _, _ = run(capsys, "read", "billing", "api_key")
        assert code == 1

        code, out, _ = run(capsys, "read", "billing", "api_key", "--version", "1", "-q")
        assert code == 0
        assert out.strip() == "sk_live_abc"

    def test_rotate(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")

        code, out, _ = run(capsys, "rotate", "billing", "api_key")

        assert code == 0
        assert out.strip() == "Rotated billing/api_key to version 2"
        _, value, _ = run(capsys, "read", "billing", "api_key", "-q")
        assert value.strip() != "sk_live_abc"

    def test_export_json(self, file_backend, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")

        code, out, _ = run(capsys, "export", "billing")

        assert code == 0
        assert json.loads(out) == {"api_key": "sk_live_abc"}

    def test_export_dotenv_name_collision(self, file_backend, tmp_path, capsys):
        run(capsys, "write", "billing", "db.url", "a")
        run(capsys, "write", "billing", "db_url", "b")
        output = tmp_path / "billing.env"

        code, _, err = run(capsys, "export", "billing", "--format", "dotenv", "-o", str(output))

        assert code == 1
        assert "DB_URL" in err
        assert not output.exists()

    def test_export_file_is_private_while_written(self, file_backend, tmp_path, monkeypatch, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")
        output = tmp_path / "billing.env"
        output.write_text("stale\n")
        output.chmod(0o644)
        real_fdopen = os.fdopen
        modes = []

        def fdopen_recording_mode(fd, *args, **kwargs):
            modes.append(stat.S_IMODE(os.fstat(fd).st_mode))
            return real_fdopen(fd, *args, **kwargs)

        monkeypatch.setattr(os, "fdopen", fdopen_recording_mode)
        code, _, _ = run(capsys, "export", "billing", "--format", "dotenv", "-o", str(output))

        assert code == 0
        assert modes == [0o600]
        assert output.read_text() == 'API_KEY="sk_live_abc"\n'

    def test_export_dotenv_to_file(self, file_backend, tmp_path, capsys):
        run(capsys, "write", "billing", "api_key", "sk_live_abc")
        output = tmp_path / "billing.env"

        code, out, err = run(capsys, "export", "billing", "--format", "dotenv", "-o", str(output))

        assert code == 0
        assert out == ""
        assert str(output) in err
        assert output.read_text() == 'API_KEY="sk_live_abc"\n'
        assert stat.S_IMODE(output.stat().st_mode) == 0o600
