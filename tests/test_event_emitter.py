# tests/test_event_emitter.py
import json
from datetime import datetime, timezone

from models.schemas import DeclineReason, VerificationOutcome, VerificationStatus
from services.event_emitter import (
    DECLINE_EVENT_KIND,
    SUCCESS_EVENT_KIND,
    VerificationEventEmitter,
    serialize_outcome,
)


def make_outcome(**overrides):
    values = {"identity_id": "identity-9", "external_id": "ext-9", "user_id": "alice"}
    values.update(overrides)
    return VerificationOutcome(**values)


def test_success_event_with_relay_url():
    outcome = make_outcome()
    outcome.start()
    outcome.finalize(VerificationStatus.COMPLETED)

    event = VerificationEventEmitter(relay_url="wss://relay.example").emit(outcome)

    assert event.kind == SUCCESS_EVENT_KIND
    assert event.tags == [
        ["e", "identity-9", "kyc_verification"],
        ["p", "alice", "wss://relay.example", "user"],
    ]
    assert event.content == ""
    assert event.created_at > 0


def test_decline_event_embeds_outcome():
    outcome = make_outcome()
    outcome.finalize(
        VerificationStatus.FAILED,
        decline_reason=DeclineReason.LIVENESS_FAILED.value,
        message="Liveness check returned not_live",
    )

    event = VerificationEventEmitter().emit(outcome)

    assert event.kind == DECLINE_EVENT_KIND
    assert event.tags == [["e", "identity-9", "liveness_failed"], ["p", "alice", "user"]]
    content = json.loads(event.content)
    assert content["message"] == "Liveness check returned not_live"
    assert content["details"]["identity_id"] == "identity-9"
    assert content["details"]["overall_status"] == "failed"


def test_decline_without_outcome():
    event = VerificationEventEmitter().emit(
        None, reason="missing_input", message="Document front image and primary selfie are required"
    )

    assert event.tags == [["e", "unknown", "missing_input"]]
    assert json.loads(event.content) == {"message": "Document front image and primary selfie are required"}


def test_details_can_be_left_out():
    outcome = make_outcome()
    outcome.finalize(VerificationStatus.FAILED, decline_reason="face_match_failed", message="low score")

    event = VerificationEventEmitter(embed_outcome=False).emit(outcome)

    assert "details" not in json.loads(event.content)


def test_external_id_identifies_anonymous_user():
    outcome = make_outcome(user_id=None)
    outcome.finalize(VerificationStatus.COMPLETED)

    event = VerificationEventEmitter().emit(outcome)

    assert event.tags[1] == ["p", "ext-9", "user"]


def test_serialize_outcome_renders_iso_dates():
    created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    data = serialize_outcome(make_outcome(created_at=created))

    assert data["created_at"] == "2024-05-01T12:30:00+00:00"
    assert data["overall_status"] == "pending"
    json.dumps(data)


def test_serialize_outcome_none():
    assert serialize_outcome(None) is None
