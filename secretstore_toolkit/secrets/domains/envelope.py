"""JSON payload stored with each native revision by the cloud backends.

A revision written by this toolkit carries its own provenance:

    {"secretstore": 1, "action": "updated", "value": "...", "version": 3,
     "created": "2026-01-01T00:00:00+00:00", "created_by": "arn:aws:iam::..."}

"version" is omitted by backends whose native store already numbers revisions.
Payloads that are not envelopes were written by something else and are
returned as plain values.
"""
import json
import logging
from datetime import datetime
from typing import Any, Optional

from .models import ChangeAction, Revision

logger = logging.getLogger(__name__)

ENVELOPE_MARKER = "secretstore"
ENVELOPE_FORMAT = 1

UNKNOWN_ACTOR = "unknown"


def _load(payload: str) -> Optional[dict]:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get(ENVELOPE_MARKER) != ENVELOPE_FORMAT:
        return None
    return data


def _action(value: Any, native_id: str) -> ChangeAction:
    try:
        return ChangeAction(value)
    except ValueError:
        logger.warning(f"Unknown action {value!r} in revision {native_id or '(unnamed)'}, reading it as an update")
        return ChangeAction.UPDATED


def is_envelope(payload: str) -> bool:
    """True if payload was written by this toolkit."""
    return _load(payload) is not None


def encode(revision: Revision, include_version: bool = True) -> str:
    """Serialize a revision to its stored payload."""
    payload = {
        ENVELOPE_MARKER: ENVELOPE_FORMAT,
        "action": revision.action.value,
        "value": revision.value,
        "created": revision.created.isoformat(),
        "created_by": revision.created_by,
    }
    if include_version and revision.version is not None:
        payload["version"] = revision.version
    return json.dumps(payload, sort_keys=True)


def decode(
    payload: str,
    native_created: datetime,
    native_id: str = "",
    native_version: Optional[int] = None,
) -> Revision:
    """
    Parse a stored payload into a Revision.

    Args:
        payload: Stored secret string
        native_created: Creation time reported by the backend; orders revisions and
            stands in for "created" on foreign payloads
        native_id: Backend identifier of the revision
        native_version: Version number assigned by the backend, if it has one

    Returns:
        Revision; foreign payloads come back as an "updated" revision with
        created_by set to "unknown"
    """
    data = _load(payload)
    if data is None:
        return Revision(
            version=native_version,
            action=ChangeAction.UPDATED,
            value=payload,
            created=native_created,
            created_by=UNKNOWN_ACTOR,
            native_id=native_id,
            native_created=native_created,
        )

    version = native_version if native_version is not None else data.get("version")
    try:
        created = datetime.fromisoformat(data["created"])
    except (KeyError, TypeError, ValueError):
        created = native_created

    return Revision(
        version=version,
        action=_action(data.get("action", ChangeAction.UPDATED.value), native_id),
        value=data.get("value"),
        created=created,
        created_by=data.get("created_by") or UNKNOWN_ACTOR,
        native_id=native_id,
        native_created=native_created,
    )
