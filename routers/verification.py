# app/routers/verification.py
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import List, Optional
from models.schemas import AuditEvent, VerificationInput, VerificationRecordResponse, VerificationResponse
from services.audit_recorder import MongoAuditRecorder
from services.image_archive import ImageArchive
from services.innovatrics_service import InnovatricsService
from services.verification_orchestrator import VerificationOrchestrator
from utils.auth import verify_api_key
from utils.exceptions import RecordNotFoundException, VerificationException
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/verification", tags=["Identity Verification"])


# ============ DEPENDENCIES ============

def get_provider(request: Request) -> InnovatricsService:
    """Provider shared by all requests, created in the application lifespan"""
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise VerificationException(
            "Verification provider is not available",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return provider


def get_image_archive(request: Request) -> Optional[ImageArchive]:
    return getattr(request.app.state, "image_archive", None)


def get_audit_recorder() -> Optional[MongoAuditRecorder]:
    try:
        return MongoAuditRecorder()
    except RuntimeError as e:
        logger.warning(f"⚠️ Audit store unavailable, running without audit trail: {str(e)}")
        return None


def get_orchestrator(
    provider: InnovatricsService = Depends(get_provider),
    audit_recorder: Optional[MongoAuditRecorder] = Depends(get_audit_recorder),
    archive: Optional[ImageArchive] = Depends(get_image_archive),
) -> VerificationOrchestrator:
    return VerificationOrchestrator(provider, audit_recorder=audit_recorder, archive=archive)


def _require_recorder(audit_recorder: Optional[MongoAuditRecorder]) -> MongoAuditRecorder:
    if audit_recorder is None:
        raise VerificationException(
            "Audit store is not available",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return audit_recorder


# ============ VERIFICATION FLOW ============

@router.post("", response_model=VerificationResponse)
async def run_verification(
    request: VerificationInput,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key)
):
    """
    Run the full verification for one user: document pages, selfie,
    face match, liveness and decision.

    Declines are a normal result (success=false with a decline event),
    not an HTTP error.
    """
    logger.info(f"Verification requested for {request.user_id or 'anonymous user'}")
    result = await orchestrator.run(request)

    return VerificationResponse(
        success=result.success,
        event=result.event,
        results=result.results,
    )


@router.get("/{identity_id}", response_model=VerificationRecordResponse)
async def get_verification_record(
    identity_id: str,
    audit_recorder: Optional[MongoAuditRecorder] = Depends(get_audit_recorder),
    api_key: str = Depends(verify_api_key)
):
    """Stored verification record for an identity"""
    recorder = _require_recorder(audit_recorder)
    try:
        record = await recorder.get_record(identity_id)
    except Exception as e:
        logger.error(f"Error loading verification record {identity_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to load verification record")

    if not record:
        raise RecordNotFoundException()

    return VerificationRecordResponse(**record)


@router.get("/{identity_id}/events", response_model=List[AuditEvent])
async def get_verification_events(
    identity_id: str,
    limit: int = Query(200, ge=1, le=1000),
    audit_recorder: Optional[MongoAuditRecorder] = Depends(get_audit_recorder),
    api_key: str = Depends(verify_api_key)
):
    """Audit trail (status changes, step results, retries, errors) in order"""
    recorder = _require_recorder(audit_recorder)
    try:
        events = await recorder.list_events(identity_id, limit=limit)
    except Exception as e:
        logger.error(f"Error loading audit events for {identity_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to load audit events")

    if not events:
        raise RecordNotFoundException(f"No audit events for {identity_id}")

    return [AuditEvent(**event) for event in events]
