"""CLI entrypoint for secretstore-toolkit."""
import os
import sys
import argparse
import logging
from dataclasses import replace
from pathlib import Path

from secretstore_toolkit.secrets.domains.config_loader import (
    DEFAULT_BACKEND,
    DEFAULT_RETRIES,
    ConfigError,
    default_config_path,
    load_config,
)
from secretstore_toolkit.secrets.domains.errors import StoreError, ValidationError
from secretstore_toolkit.secrets.domains.models import LATEST_VERSION, SecretId
from secretstore_toolkit.secrets.workflows.factory import DEFAULT_FILE_PATH, create_store, get_registered_backends
from secretstore_toolkit.secrets.workflows.secret_operations import (
    EXPORT_FORMATS,
    VersionConflictError,
    export_service,
    format_export,
    update_if_unchanged,
)

from .validators import validate_secret_value, validate_segment, validate_version

VERSION = "0.1.0"

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_CONFIG_TEMPLATE = """\
# secretstore-toolkit configuration
backend: {backend}
retries: {retries}
# key_alias: my-key
# actor: deploy-bot
{section}"""

_CONFIG_SECTIONS = {
    "aws-secretsmanager": "aws:\n  region: us-east-1\n  # endpoint_url: http://localhost:4566\n",
    "gcp-secretmanager": (
        "gcp:\n"
        "  project_id:\n"
        "# authentication:\n"
        "#   type: service_account\n"
        "#   service_account_path: /path/to/service-account.json\n"
    ),
    "file": "file:\n  path: {file_path}\n",
}


def _build_store(args):
    """Load config, apply command-line overrides and create the store."""
    config = load_config()
    overrides = {}
    if getattr(args, "backend", None):
        overrides["backend"] = args.backend
    if getattr(args, "retries", None) is not None:
        overrides["retries"] = args.retries
    return create_store(replace(config, **overrides))


def _secret_id(args) -> SecretId:
    validate_segment(args.service, "service")
    validate_segment(args.key, "key")
    return SecretId(service=args.service, key=args.key)


def cmd_version(args):
    """Show version information."""
    print(f"secretstore-toolkit {VERSION}")


def cmd_write(args):
    """Write a new version of a secret."""
    secret_id = _secret_id(args)
    value = sys.stdin.read().rstrip("\n") if args.value == "-" else args.value
    validate_secret_value(value)

    store = _build_store(args)
    if args.expect_version is not None:
        version = update_if_unchanged(store, secret_id, args.expect_version, value)
    else:
        version = store.write(secret_id, value)

    if not args.quiet:
        print(f"Wrote {secret_id} version {version}")


def cmd_read(args):
    """Read the latest or a specific version of a secret."""
    secret_id = _secret_id(args)
    validate_version(args.version)

    secret = _build_store(args).read(secret_id, args.version)
    if args.quiet:
        # Quiet mode: output only value, no formatting
        print(secret.value)
        return

    print(f"{'Key':<30} {'Version':<8} {'LastModified':<20} {'User':<30} Value")
    print(
        f"{secret.meta.key:<30} {secret.meta.version:<8} "
        f"{secret.meta.created.strftime(_TIME_FORMAT):<20} {secret.meta.created_by:<30} {secret.value}"
    )


def cmd_list(args):
    """List secrets in a service."""
    validate_segment(args.service, "service")
    store = _build_store(args)

    if args.raw:
        print(f"{'Key':<30} {'LastModified':<20} NativeName")
        for raw in store.list_raw(args.service):
            modified = raw.last_modified.strftime(_TIME_FORMAT) if raw.last_modified else "-"
            print(f"{raw.key:<30} {modified:<20} {raw.native_name}")
        return

    header = f"{'Key':<30} {'Version':<8} {'LastModified':<20} {'User':<30}"
    print(f"{header} Value" if args.expand else header)
    for secret in store.list(args.service, include_values=args.expand):
        key = secret.meta.key.partition("/")[2]
        line = (
            f"{key:<30} {secret.meta.version:<8} "
            f"{secret.meta.created.strftime(_TIME_FORMAT):<20} {secret.meta.created_by:<30}"
        )
        print(f"{line} {secret.value}" if args.expand else line)


def cmd_history(args):
    """Show the change history of a secret."""
    secret_id = _secret_id(args)
    events = _build_store(args).history(secret_id)

    print(f"{'Event':<10} {'Version':<8} {'Date':<20} User")
    for event in events:
        print(f"{event.action.value:<10} {event.version:<8} {event.time.strftime(_TIME_FORMAT):<20} {event.actor}")


def cmd_delete(args):
    """Delete a secret (history is kept)."""
    secret_id = _secret_id(args)
    _build_store(args).delete(secret_id)
    print(f"Deleted {secret_id}")


def cmd_rotate(args):
    """Rotate a secret through the backend."""
    secret_id = _secret_id(args)
    version = _build_store(args).rotate(secret_id)
    print(f"Rotated {secret_id} to version {version}")


def cmd_export(args):
    """Export the latest values of a service."""
    validate_segment(args.service, "service")
    rendered = format_export(export_service(_build_store(args), args.service), args.format)

    if args.output:
        output = Path(args.output)
        # Owner-only before any plaintext lands, including for an existing file
        fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(rendered + "\n")
        print(f"Exported service '{args.service}' to {output}", file=sys.stderr)
    else:
        print(rendered)


def cmd_config_set_path(args):
    """Set config file path preference."""
    from secretstore_toolkit.secrets.domains.preferences import set_preference

    config_path = Path(args.path).resolve()

    # Validate that the path exists
    if not config_path.exists():
        print(f"Error: Config file does not exist: {config_path}", file=sys.stderr)
        sys.exit(1)

    if not config_path.is_file():
        print(f"Error: Path is not a file: {config_path}", file=sys.stderr)
        sys.exit(1)

    set_preference("config_path", str(config_path))
    print(f"Config path set to: {config_path}")


def cmd_config_set_backend(args):
    """Set the default backend preference."""
    from secretstore_toolkit.secrets.domains.preferences import set_preference

    if args.name not in get_registered_backends():
        print(f"Error: Unknown backend '{args.name}'", file=sys.stderr)
        print(f"Available: {', '.join(get_registered_backends())}", file=sys.stderr)
        sys.exit(2)

    set_preference("backend", args.name)
    print(f"Default backend set to: {args.name}")


def cmd_config_show(args):
    """Show the config file in use and the resolved settings."""
    from secretstore_toolkit.secrets.domains.preferences import get_preference

    config_path_pref = get_preference("config_path")
    default_config = default_config_path()

    if config_path_pref and Path(config_path_pref).exists():
        print(f"Config path: {config_path_pref}")
        print("Source: preference")
    elif config_path_pref:
        print(f"Config path (from preference, but file not found): {config_path_pref}")
        print("Source: preference")
    elif default_config.exists():
        print(f"Config path: {default_config}")
        print("Source: default")
    else:
        print(f"Config path: {default_config}")
        print("Source: default (file not found)")

    config = load_config()
    print(f"Backend: {config.backend}")
    print(f"Retries: {config.retries}")
    if config.key_alias:
        print(f"Key alias: {config.key_alias}")


def cmd_config_init(args):
    """Write a starter config file at the default location."""
    default_config = default_config_path()

    if default_config.exists() and not args.force:
        print(f"Configuration file already exists at: {default_config}", file=sys.stderr)
        print("Use --force to overwrite it, or 'secretstore config set-path <path>' to use another file.",
              file=sys.stderr)
        sys.exit(1)

    section = _CONFIG_SECTIONS[args.init_backend].format(file_path=DEFAULT_FILE_PATH)
    default_config.parent.mkdir(parents=True, exist_ok=True)
    default_config.write_text(
        _CONFIG_TEMPLATE.format(backend=args.init_backend, retries=DEFAULT_RETRIES, section=section)
    )
    print(f"Config written to: {default_config}")
    if args.init_backend == "gcp-secretmanager":
        print("Set gcp.project_id before first use.")


def cmd_config_clear(args):
    """Clear config path and backend preferences."""
    from secretstore_toolkit.secrets.domains.preferences import clear_preference

    clear_preference("config_path")
    clear_preference("backend")
    print(f"Preferences cleared. Will use default config: {default_config_path()}")


def _add_id_arguments(parser):
    parser.add_argument("service", help="Service name (e.g. billing)")
    parser.add_argument("key", help="Key name within the service (e.g. api_key)")


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="secretstore",
        description="secretstore-toolkit CLI - versioned secrets across AWS Secrets Manager, "
                    "GCP Secret Manager and local encrypted files",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (secret not found, backend failure, unsupported operation, etc.)
  2 - Usage error (invalid arguments, invalid service or key name, etc.)

Environment variables:
  SECRETSTORE_BACKEND       - Backend name (overrides config file)
  SECRETSTORE_RETRIES       - Retry count for backend calls
  SECRETSTORE_KMS_KEY_ALIAS - Encryption key override
  SECRETSTORE_REGION        - AWS region
  SECRETSTORE_FILE_PATH     - Encrypted file backend location
  GCP_PROJECT               - GCP project ID

Configuration:
  Default location: ~/.config/secretstore-toolkit/config.yml
  Starter file: Create with 'secretstore config init [backend]'
  Custom path: Set with 'secretstore config set-path <path>'
        """
    )
    parser.add_argument(
        "--backend",
        help=f"Backend to use for this command ({', '.join(get_registered_backends())})"
    )
    parser.add_argument(
        "--retries",
        type=int,
        help="Retry count for backend calls (overrides config)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging on stderr"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("version", help="Show version information")

    write_parser = subparsers.add_parser(
        "write",
        help="Write a secret",
        description="Write a new version of a secret. Pass '-' as the value to read it from stdin."
    )
    _add_id_arguments(write_parser)
    write_parser.add_argument("value", help="Secret value, or '-' to read from stdin")
    write_parser.add_argument(
        "--expect-version",
        type=int,
        help="Only write if the latest version is this number (0 = secret must not exist)"
    )
    write_parser.add_argument("-q", "--quiet", action="store_true", help="Print nothing on success")

    read_parser = subparsers.add_parser("read", help="Read a secret")
    _add_id_arguments(read_parser)
    read_parser.add_argument(
        "--version",
        type=int,
        default=LATEST_VERSION,
        help="Version to read (default: latest)"
    )
    read_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Output only the secret value (useful for scripts)"
    )

    list_parser = subparsers.add_parser("list", help="List secrets in a service")
    list_parser.add_argument("service", help="Service name")
    list_group = list_parser.add_mutually_exclusive_group()
    list_group.add_argument("-e", "--expand", action="store_true", help="Include secret values")
    list_group.add_argument("--raw", action="store_true", help="Native listing without version metadata")

    history_parser = subparsers.add_parser("history", help="Show the change history of a secret")
    _add_id_arguments(history_parser)

    delete_parser = subparsers.add_parser("delete", help="Delete a secret (history is kept)")
    _add_id_arguments(delete_parser)

    rotate_parser = subparsers.add_parser("rotate", help="Regenerate a secret through the backend")
    _add_id_arguments(rotate_parser)

    export_parser = subparsers.add_parser("export", help="Export the latest values of a service")
    export_parser.add_argument("service", help="Service name")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS, default="json", help="Output format")
    export_parser.add_argument("-o", "--output", help="Write to this file (mode 0600) instead of stdout")

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Manage secretstore-toolkit configuration"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    set_path_parser = config_subparsers.add_parser("set-path", help="Set config file path")
    set_path_parser.add_argument("path", help="Path to config file")
    set_backend_parser = config_subparsers.add_parser("set-backend", help="Set the default backend")
    set_backend_parser.add_argument("name", help="Backend name")
    init_parser = config_subparsers.add_parser("init", help="Write a starter config file at the default location")
    init_parser.add_argument(
        "init_backend",
        nargs="?",
        default=DEFAULT_BACKEND,
        choices=sorted(_CONFIG_SECTIONS),
        metavar="backend",
        help=f"Backend to configure (default: {DEFAULT_BACKEND})"
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing config file")
    config_subparsers.add_parser("show", help="Show current config path and settings")
    config_subparsers.add_parser("clear", help="Clear config preferences")

    return parser, config_parser


_COMMANDS = {
    "version": cmd_version,
    "write": cmd_write,
    "read": cmd_read,
    "list": cmd_list,
    "history": cmd_history,
    "delete": cmd_delete,
    "rotate": cmd_rotate,
    "export": cmd_export,
}

_CONFIG_COMMANDS = {
    "set-path": cmd_config_set_path,
    "set-backend": cmd_config_set_backend,
    "init": cmd_config_init,
    "show": cmd_config_show,
    "clear": cmd_config_clear,
}


def main(argv=None):
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (secret not found, backend failure, unsupported operation, etc.)
        2 - Usage errors (invalid arguments, invalid service or key name, etc.)
    """
    parser, config_parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # If no command provided, show help and exit with usage error code
    if not args.command:
        parser.print_help()
        sys.exit(2)

    try:
        if args.command == "config":
            handler = _CONFIG_COMMANDS.get(args.config_command)
            if handler is None:
                config_parser.print_help()
                sys.exit(2)
            handler(args)
        else:
            _COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (ConfigError, StoreError, VersionConflictError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
