"""Path-segment validation for secret service and key names."""
import re

from .errors import ValidationError
from .models import SecretId

# Alphanumeric, with '-', '_' and '.' allowed between alphanumeric characters.
# '/' is never allowed: it joins service and key in the canonical name.
_SEGMENT_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?$')


def is_valid_name(name: str) -> bool:
    """Return True if name is a valid service or key segment."""
    if not isinstance(name, str) or not name:
        return False
    return _SEGMENT_PATTERN.match(name) is not None


def validate_secret_id(secret_id: SecretId) -> None:
    """
    Validate both segments of a SecretId.

    Raises:
        ValidationError: If the service or the key is not a valid segment
    """
    if not is_valid_name(secret_id.service):
        raise ValidationError(
            f"Invalid service name '{secret_id.service}': use letters, digits, '-', '_' or '.', "
            f"starting and ending with a letter or digit"
        )
    if not is_valid_name(secret_id.key):
        raise ValidationError(
            f"Invalid key name '{secret_id.key}': use letters, digits, '-', '_' or '.', "
            f"starting and ending with a letter or digit"
        )
