"""
Event intake - signature checks and normalization of repository events.
"""

import hmac
import hashlib
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from controller.src.models.pipeline import EventType, TriggerEvent

SIGNATURE_HEADER = "X-Kiln-Signature-256"

# Accepted spellings of the event type
EVENT_ALIASES = {
    "push": EventType.PUSH,
    "pull_request": EventType.PULL_REQUEST,
    "pull-request": EventType.PULL_REQUEST,
    "pr": EventType.PULL_REQUEST,
}

class InvalidEvent(ValueError):
    """Raised when a payload cannot be turned into a TriggerEvent."""
    pass

def sign(payload: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify the HMAC-SHA256 signature of a payload."""
    if not secret:
        # Skip verification if no secret configured (development)
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign(payload, secret), signature)

def _field(payload: Dict[str, Any], key: str, kind=str):
    value = payload.get(key)
    if value is not None and not isinstance(value, kind):
        raise InvalidEvent(f"Event field '{key}' has the wrong type")
    return value

def _branch(payload: Dict[str, Any]) -> Optional[str]:
    branch = _field(payload, "branch")
    if branch:
        return branch
    ref = _field(payload, "ref") or ""
    # Get branch from ref (refs/heads/main -> main)
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return ref or None

def _repository(payload: Dict[str, Any]) -> Optional[str]:
    repo = _field(payload, "repository", (str, dict))
    if isinstance(repo, dict):
        return _field(repo, "full_name") or _field(repo, "name")
    return repo

def _commit_sha(payload: Dict[str, Any]) -> Optional[str]:
    for key in ("commitSHA", "commit_sha", "after"):
        if _field(payload, key):
            return payload[key]
    head_commit = _field(payload, "head_commit", dict) or {}
    return _field(head_commit, "id")

def _actor(payload: Dict[str, Any]) -> Optional[str]:
    actor = _field(payload, "actor")
    if actor:
        return actor
    pusher = _field(payload, "pusher", dict) or {}
    return _field(pusher, "name") or None

def normalize_event(payload: Dict[str, Any], event_type: Optional[str] = None) -> TriggerEvent:
    """
    Build a TriggerEvent from an event payload.

    Canonical keys are `repository`, `branch`, `commitSHA` and `eventType`.
    A `ref` of the form refs/heads/<branch> stands in for `branch`, and the
    commit may be given as `after` or `head_commit.id`. `event_type`
    (typically from a request header) is used when the payload has none.
    """
    if not isinstance(payload, dict):
        raise InvalidEvent("Event payload must be a JSON object")

    raw_type = payload.get("eventType") or payload.get("event_type") or event_type or "push"
    resolved_type = EVENT_ALIASES.get(str(raw_type).lower())
    if resolved_type is None:
        raise InvalidEvent(f"Unsupported event type '{raw_type}'")

    fields = {
        "repository": _repository(payload),
        "branch": _branch(payload),
        "commit_sha": _commit_sha(payload),
    }
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise InvalidEvent(f"Event is missing {', '.join(missing)}")

    try:
        return TriggerEvent(event_type=resolved_type, actor=_actor(payload), **fields)
    except PydanticValidationError as e:
        raise InvalidEvent(str(e))
