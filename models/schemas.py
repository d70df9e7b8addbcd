# app/models/schemas.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime, timezone
from enum import Enum

from models.provider import DocumentPageResult, FaceMaskResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationStatus.COMPLETED, VerificationStatus.FAILED)


class RemoteOnboardingStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"


class DeclineReason(str, Enum):
    MISSING_INPUT = "missing_input"
    VERIFICATION_FAILED = "verification_failed"
    FACE_MATCH_FAILED = "face_match_failed"
    LIVENESS_FAILED = "liveness_failed"


class AuditEventType(str, Enum):
    STATUS_CHANGE = "STATUS_CHANGE"
    STEP_RESULT = "STEP_RESULT"
    ERROR = "ERROR"
    RETRY = "RETRY"


class LivenessStatus(str, Enum):
    LIVE = "live"
    NOT_LIVE = "not_live"
    SUSPICIOUS = "suspicious"


class LivenessMode(str, Enum):
    MASK_HEURISTIC = "mask_heuristic"
    CHALLENGE = "challenge"


# ==================== REQUEST ====================

class VerificationInput(BaseModel):
    """Caller-facing verification request; images are base64 or data URIs"""

    front_document_image: Optional[str] = None
    back_document_image: Optional[str] = None
    selfie_image: Optional[str] = None
    supplemental_selfies: List[str] = Field(default_factory=list)
    document_type: Optional[str] = None
    issuing_country: Optional[str] = None
    user_id: Optional[str] = Field(default=None, max_length=100)
    challenge_type: Optional[Literal["passive", "motion", "expression"]] = None

    @field_validator("supplemental_selfies", mode="before")
    @classmethod
    def _listify(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("user_id", "document_type", "issuing_country", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


# ==================== STEP RESULTS ====================

class DocumentVerificationSummary(BaseModel):
    document_type: Optional[str] = None
    issuing_country: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class DocumentVerificationResult(BaseModel):
    document: Optional[Dict[str, Any]] = None
    summary: DocumentVerificationSummary
    pages: List[DocumentPageResult] = Field(default_factory=list)
    inspection: Optional[Dict[str, Any]] = None
    disclosed_inspection: Optional[Dict[str, Any]] = None


class SelfieUploadResult(BaseModel):
    id: str


class FaceDetectionResult(BaseModel):
    id: str
    detection: Dict[str, Any] = Field(default_factory=dict)
    mask_result: FaceMaskResult


class FaceComparisonResult(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    strategy: Literal["inspection", "manual"]
    frame_scores: Optional[List[float]] = None


class LivenessIndicators(BaseModel):
    has_mask: bool = False
    face_quality: Optional[str] = None


class LivenessResult(BaseModel):
    status: LivenessStatus
    confidence: float = Field(ge=0.0, le=1.0)
    is_deepfake: Optional[bool] = None
    deepfake_confidence: Optional[float] = None
    indicators: Optional[LivenessIndicators] = None
    method: LivenessMode = LivenessMode.MASK_HEURISTIC


# ==================== OUTCOME ====================

class VerificationOutcome(BaseModel):
    identity_id: str
    external_id: str
    user_id: Optional[str] = None
    overall_status: VerificationStatus = VerificationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    document_verification: Optional[DocumentVerificationResult] = None
    selfie_upload: Optional[SelfieUploadResult] = None
    face_detection: Optional[FaceDetectionResult] = None
    face_comparison: Optional[FaceComparisonResult] = None
    liveness_check: Optional[LivenessResult] = None
    decline_reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.overall_status.is_terminal

    @property
    def user_identifier(self) -> str:
        return self.user_id or self.external_id

    def start(self) -> None:
        if self.overall_status == VerificationStatus.PENDING:
            self.overall_status = VerificationStatus.IN_PROGRESS
            self.updated_at = utcnow()

    def finalize(
        self,
        status: VerificationStatus,
        decline_reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """Move to a terminal state; a finalized outcome never changes again"""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.is_finalized:
            raise RuntimeError(
                f"Verification {self.identity_id} already finalized as {self.overall_status.value}"
            )
        self.overall_status = status
        self.decline_reason = decline_reason
        self.message = message
        self.updated_at = utcnow()


# ==================== EVENTS ====================

class WorkflowEvent(BaseModel):
    """Success (kind 3) or decline (kind 1984) notification for one run"""

    kind: int
    created_at: int
    tags: List[List[str]]
    content: str = ""


class AuditEvent(BaseModel):
    identity_id: str
    type: AuditEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ==================== RESPONSES ====================

class VerificationResponse(BaseModel):
    success: bool
    event: WorkflowEvent
    results: Optional[Dict[str, Any]] = None


class VerificationRecordResponse(BaseModel):
    identity_id: str
    user_id: Optional[str] = None
    external_id: Optional[str] = None
    status: str
    retry_count: int = 0
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    document_summary: Optional[Dict[str, Any]] = None
    face_comparison: Optional[Dict[str, Any]] = None
    liveness_result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
