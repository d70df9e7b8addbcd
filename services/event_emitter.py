# app/services/event_emitter.py
import json
import logging
import time
from typing import Any, Dict, List, Optional

from models.schemas import VerificationOutcome, VerificationStatus, WorkflowEvent
from utils.serialization import to_jsonable

logger = logging.getLogger(__name__)

SUCCESS_EVENT_KIND = 3
DECLINE_EVENT_KIND = 1984
SUCCESS_EVENT_MARKER = "kyc_verification"


def serialize_outcome(outcome: Optional[VerificationOutcome]) -> Optional[Dict[str, Any]]:
    """Outcome as plain JSON data; datetimes rendered as ISO-8601 strings"""
    if outcome is None:
        return None
    return to_jsonable(outcome)


class VerificationEventEmitter:
    """Renders the terminal state of a run as a success or decline notification"""

    def __init__(self, relay_url: Optional[str] = None, embed_outcome: bool = True):
        self.relay_url = relay_url
        self.embed_outcome = embed_outcome

    def success(self, identity_id: str, user_identifier: Optional[str] = None) -> WorkflowEvent:
        tags: List[List[str]] = [["e", identity_id, SUCCESS_EVENT_MARKER]]

        if user_identifier:
            user_tag = ["p", user_identifier]
            if self.relay_url:
                user_tag.append(self.relay_url)
            user_tag.append("user")
            tags.append(user_tag)

        return WorkflowEvent(
            kind=SUCCESS_EVENT_KIND,
            created_at=int(time.time()),
            tags=tags,
            content="",
        )

    def decline(
        self,
        reason: str,
        message: str,
        identity_id: Optional[str] = None,
        user_identifier: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> WorkflowEvent:
        tags: List[List[str]] = [["e", identity_id or "unknown", reason]]

        if user_identifier:
            tags.append(["p", user_identifier, "user"])

        content: Dict[str, Any] = {"message": message}
        if details is not None and self.embed_outcome:
            content["details"] = details

        return WorkflowEvent(
            kind=DECLINE_EVENT_KIND,
            created_at=int(time.time()),
            tags=tags,
            content=json.dumps(content),
        )

    def emit(
        self,
        outcome: Optional[VerificationOutcome],
        reason: Optional[str] = None,
        message: Optional[str] = None,
        user_identifier: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> WorkflowEvent:
        """
        Build the single notification for a finished run. A completed outcome
        gives a success event; anything else (including runs that never got an
        identity record) gives a decline event. `details` is the already
        serialized outcome when the caller has one.
        """
        if outcome is not None and outcome.overall_status == VerificationStatus.COMPLETED:
            event = self.success(outcome.identity_id, outcome.user_identifier)
            logger.info(f"✅ Verification {outcome.identity_id} completed for {outcome.user_identifier}")
            return event

        reason = reason or (outcome.decline_reason if outcome else None) or "verification_failed"
        message = message or (outcome.message if outcome else None) or "Verification failed"
        user_identifier = user_identifier or (outcome.user_identifier if outcome else None)

        event = self.decline(
            reason=reason,
            message=message,
            identity_id=outcome.identity_id if outcome else None,
            user_identifier=user_identifier,
            details=details if details is not None else serialize_outcome(outcome),
        )
        logger.info(f"❌ Verification declined ({reason}) for {user_identifier or 'unknown user'}: {message}")
        return event
