"""Tests for event normalization and signature checks."""

import pytest

from api.src.services.intake import InvalidEvent, normalize_event, sign, verify_signature
from controller.src.models.pipeline import EventType

def test_canonical_payload():
    payload = {
        "repository": "acme/app",
        "branch": "main",
        "commitSHA": "abc123def456",
        "eventType": "push",
        "actor": "dev",
    }

    event = normalize_event(payload)

    assert event.repository == "acme/app"
    assert event.branch == "main"
    assert event.commit_sha == "abc123def456"
    assert event.event_type == EventType.PUSH
    assert event.actor == "dev"

def test_push_payload_with_ref():
    payload = {
        "ref": "refs/heads/feature/login",
        "repository": {"name": "app", "full_name": "acme/app"},
        "head_commit": {"id": "abc123def456", "message": "Test commit"},
        "pusher": {"name": "testuser"},
    }

    event = normalize_event(payload, "push")

    assert event.repository == "acme/app"
    assert event.branch == "feature/login"
    assert event.commit_sha == "abc123def456"
    assert event.actor == "testuser"

def test_payload_with_after():
    """Test fallback to 'after' field for commit SHA."""
    payload = {"ref": "refs/heads/feature", "after": "xyz789", "repository": "acme/app", "head_commit": {}}
    event = normalize_event(payload)
    assert event.commit_sha == "xyz789"
    assert event.branch == "feature"

@pytest.mark.parametrize("raw", ["pull_request", "pull-request", "PR"])
def test_pull_request_aliases(raw):
    payload = {"repository": "acme/app", "branch": "feature/x", "commitSHA": "abc"}
    assert normalize_event(payload, raw).event_type == EventType.PULL_REQUEST

def test_payload_event_type_wins_over_header():
    payload = {"repository": "acme/app", "branch": "main", "commitSHA": "abc", "eventType": "push"}
    assert normalize_event(payload, "pull_request").event_type == EventType.PUSH

def test_missing_fields():
    with pytest.raises(InvalidEvent, match="branch, commit_sha"):
        normalize_event({"repository": "acme/app"})

def test_unsupported_event_type():
    with pytest.raises(InvalidEvent, match="Unsupported event type 'tag'"):
        normalize_event({"repository": "acme/app", "branch": "main", "commitSHA": "abc"}, "tag")

def test_non_object_payload():
    with pytest.raises(InvalidEvent):
        normalize_event(["not", "an", "object"])

@pytest.mark.parametrize("field, value", [
    ("ref", 5),
    ("branch", ["main"]),
    ("repository", 42),
    ("head_commit", "abc123"),
    ("pusher", "dev"),
])
def test_wrongly_typed_fields(field, value):
    payload = {"repository": "acme/app", "ref": "refs/heads/main", "head_commit": {"id": "abc123"}}
    payload[field] = value
    with pytest.raises(InvalidEvent, match=field):
        normalize_event(payload)

def test_verify_signature_without_secret():
    """When no secret is configured, verification should pass."""
    assert verify_signature(b"payload", None, "") is True

def test_verify_signature_with_secret():
    body = b'{"repository": "acme/app"}'
    assert verify_signature(body, sign(body, "s3cret"), "s3cret")
    assert not verify_signature(body, sign(body, "other"), "s3cret")
    assert not verify_signature(body, None, "s3cret")
