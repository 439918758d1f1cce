"""Input validation for CLI arguments."""
import sys

from secretstore_toolkit.secrets.domains.key_validator import is_valid_name


def validate_segment(name: str, label: str) -> None:
    """
    Validate a service or key name.

    Allowed: letters, digits, '-', '_' and '.', starting and ending with a
    letter or digit.

    Args:
        name: Service or key name to validate
        label: "service" or "key", used in messages

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name:
        print(f"Error: {label.capitalize()} name cannot be empty", file=sys.stderr)
        sys.exit(2)

    if not is_valid_name(name):
        print(f"Error: Invalid {label} name '{name}'", file=sys.stderr)
        print("\nAllowed characters: letters, numbers, hyphens (-), underscores (_), dots (.)", file=sys.stderr)
        print("Must start and end with a letter or number. Slashes (/) are not allowed.", file=sys.stderr)
        print("\nExamples of valid names:", file=sys.stderr)
        print("  ✓ billing", file=sys.stderr)
        print("  ✓ api_key.v2", file=sys.stderr)
        print("\nExamples of invalid names:", file=sys.stderr)
        print("  ✗ db/password (contains slash)", file=sys.stderr)
        print("  ✗ -token (leading hyphen)", file=sys.stderr)
        sys.exit(2)


def validate_secret_value(value: str) -> None:
    """
    Validate secret value is not empty.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not value or value.strip() == "":
        print("Error: Secret value cannot be empty", file=sys.stderr)
        print("\nUse 'secretstore delete' to retire a secret instead of blanking it.", file=sys.stderr)
        sys.exit(2)


def validate_version(version: int) -> None:
    """
    Validate a --version argument: -1 (latest) or a positive number.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if version != -1 and version < 1:
        print(f"Error: Invalid version {version}", file=sys.stderr)
        print("\nVersions start at 1; use -1 (the default) for the latest version.", file=sys.stderr)
        sys.exit(2)
