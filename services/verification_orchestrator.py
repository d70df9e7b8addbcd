# app/services/verification_orchestrator.py
"""
Verification orchestration for one identity-verification request:

    validate → normalize images → create & link identity record
    → document pages + inspection → selfie upload → face detection / mask
    → face match (inspection score, else manual comparison) → liveness
    → decision → single success / decline event

Steps run strictly in sequence because every provider call depends on the
state left behind by the previous one. Every run ends with exactly one
WorkflowEvent; callers never see a raw exception.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from config import settings
from models.provider import DocumentPageResult, FaceDetection, IdentityInspection
from models.schemas import (
    DeclineReason,
    DocumentVerificationResult,
    DocumentVerificationSummary,
    FaceComparisonResult,
    FaceDetectionResult,
    LivenessIndicators,
    LivenessMode,
    LivenessResult,
    LivenessStatus,
    RemoteOnboardingStatus,
    SelfieUploadResult,
    VerificationInput,
    VerificationOutcome,
    VerificationStatus,
    WorkflowEvent,
)
from services.audit_recorder import AuditRecorder, AuditTrail
from services.event_emitter import VerificationEventEmitter, serialize_outcome
from services.image_archive import ImageArchive
from services.provider import DEFAULT_DOCUMENT_SOURCES, VerificationProvider
from utils.exceptions import InvalidImageError, UnhandledRunError
from utils.image import NormalizedImage, normalize_image
from utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class OrchestratorPolicy:
    face_match_threshold: float = 0.64
    face_mask_threshold: float = 0.5
    liveness_mode: LivenessMode = LivenessMode.MASK_HEURISTIC
    heuristic_liveness_confidence: float = 0.9
    deepfake_check: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, config=settings) -> "OrchestratorPolicy":
        return cls(
            face_match_threshold=config.FACE_MATCH_THRESHOLD,
            face_mask_threshold=config.FACE_MASK_THRESHOLD,
            liveness_mode=LivenessMode(config.LIVENESS_MODE),
            heuristic_liveness_confidence=config.HEURISTIC_LIVENESS_CONFIDENCE,
            deepfake_check=config.DEEPFAKE_CHECK,
            retry=RetryPolicy.from_settings(config),
        )


# ==================== FACE MATCH STRATEGY ====================

@dataclass(frozen=True)
class InspectionMatch:
    """Score computed by the provider while inspecting the identity record"""

    score: float
    inspection: IdentityInspection

    strategy = "inspection"

    def to_result(self) -> FaceComparisonResult:
        return FaceComparisonResult(score=self.score, strategy="inspection")


@dataclass(frozen=True)
class ManualMatch:
    """Explicit face-detect + compare against the document portrait template"""

    scores: Tuple[float, ...]
    inspection: Optional[IdentityInspection] = None

    strategy = "manual"

    @property
    def score(self) -> float:
        # any one strongly matching frame is enough
        return max(self.scores)

    def to_result(self) -> FaceComparisonResult:
        return FaceComparisonResult(score=self.score, strategy="manual", frame_scores=list(self.scores))


FaceMatchStrategy = Union[InspectionMatch, ManualMatch]


# ==================== RUN STATE ====================

@dataclass
class PreparedImages:
    front: NormalizedImage
    primary_selfie: NormalizedImage
    back: Optional[NormalizedImage] = None
    supplemental_selfies: List[NormalizedImage] = field(default_factory=list)


@dataclass
class VerificationRunResult:
    event: WorkflowEvent
    outcome: Optional[VerificationOutcome] = None
    results: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.outcome is not None and self.outcome.overall_status == VerificationStatus.COMPLETED


def _is_present(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(value.strip())


def summarize_document_pages(pages: List[DocumentPageResult]) -> DocumentVerificationSummary:
    """Front page type/country plus the de-duplicated warnings and error codes of all pages"""
    front_page = next((page for page in pages if page.page_type == "front"), pages[0] if pages else None)

    warnings = list(dict.fromkeys(warning for page in pages for warning in page.warnings))
    errors = list(dict.fromkeys(page.error_code for page in pages if page.error_code))

    document_type = front_page.document_type if front_page else None
    return DocumentVerificationSummary(
        document_type=document_type.type if document_type else None,
        issuing_country=document_type.issuing_country if document_type else None,
        warnings=warnings,
        errors=errors,
    )


class VerificationOrchestrator:
    """
    Drives one verification run against a VerificationProvider.

    The provider, audit recorder and emitter are injected so each run can be
    exercised against test doubles.
    """

    def __init__(
        self,
        provider: VerificationProvider,
        audit_recorder: Optional[AuditRecorder] = None,
        emitter: Optional[VerificationEventEmitter] = None,
        policy: Optional[OrchestratorPolicy] = None,
        archive: Optional[ImageArchive] = None,
    ):
        self.provider = provider
        self.archive = archive
        self.audit = AuditTrail(audit_recorder)
        self.emitter = emitter or VerificationEventEmitter(
            relay_url=settings.EVENT_RELAY_URL,
            embed_outcome=settings.EMBED_OUTCOME_IN_DECLINE,
        )
        self.policy = policy or OrchestratorPolicy.from_settings()

    # ==================== ENTRY POINT ====================

    async def run(self, request: VerificationInput) -> VerificationRunResult:
        user_id = request.user_id

        if not _is_present(request.front_document_image) or not _is_present(request.selfie_image):
            logger.warning(f"Rejecting verification for {user_id or 'anonymous user'}: missing input")
            return self._finish(
                None,
                reason=DeclineReason.MISSING_INPUT.value,
                message="Document front image and primary selfie are required",
                user_identifier=user_id,
            )

        try:
            images = self._prepare_images(request)
        except InvalidImageError as image_error:
            logger.error(f"Image normalization failed: {str(image_error)}")
            return self._finish(
                None,
                reason=DeclineReason.VERIFICATION_FAILED.value,
                message=str(image_error),
                user_identifier=user_id,
            )

        identity_id: Optional[str] = None
        external_id: Optional[str] = user_id
        outcome: Optional[VerificationOutcome] = None

        try:
            logger.info("STEP 1: Creating identity record")
            identity = await self.provider.create_identity()
            identity_id = identity.id
            external_id = user_id or f"external_{int(time.time() * 1000)}"

            outcome = VerificationOutcome(identity_id=identity_id, external_id=external_id, user_id=user_id)

            # record must exist before any retry or error of this run is audited
            await self.audit.initialize(user_id or external_id, external_id, identity_id)

            await self._call(
                identity_id,
                "link_external_id",
                lambda: self.provider.link_external_id(
                    identity_id, external_id, RemoteOnboardingStatus.IN_PROGRESS.value
                ),
            )
            outcome.start()

            logger.info("STEP 2: Uploading and verifying document pages")
            document_images = await self._archive_images(
                identity_id, {"document_front": images.front, "document_back": images.back}
            )
            outcome.document_verification = await self._verify_document(identity_id, images, request)
            await self.audit.step(
                identity_id,
                "document",
                fields={
                    "document_summary": outcome.document_verification.summary,
                    "document_pages": outcome.document_verification.pages,
                    "inspection": outcome.document_verification.inspection,
                    "disclosed_inspection": outcome.document_verification.disclosed_inspection,
                    "document_images": document_images,
                },
                payload={
                    "summary": outcome.document_verification.summary,
                    "images": {
                        "front": {**images.front.describe(), "archive": document_images.get("document_front")},
                        "back": (
                            {**images.back.describe(), "archive": document_images.get("document_back")}
                            if images.back
                            else None
                        ),
                    },
                },
            )

            logger.info("STEP 3: Uploading selfie image")
            selfie_images = await self._archive_images(
                identity_id,
                {
                    "selfie_primary": images.primary_selfie,
                    **{f"selfie_{index}": image for index, image in enumerate(images.supplemental_selfies, start=1)},
                },
            )
            selfie = await self._call(
                identity_id,
                "upload_selfie",
                lambda: self.provider.upload_selfie(identity_id, images.primary_selfie.data),
            )
            outcome.selfie_upload = SelfieUploadResult(id=selfie.id or identity_id)
            await self.audit.step(
                identity_id,
                "selfie_upload",
                fields={"selfie_result": outcome.selfie_upload, "selfie_images": selfie_images},
                payload={"image": {**images.primary_selfie.describe(), "archive": selfie_images.get("selfie_primary")}},
            )

            logger.info("STEP 4: Detecting selfie face and checking for a face mask")
            primary_face = await self._call(
                identity_id,
                "detect_selfie_face",
                lambda: self.provider.detect_face(images.primary_selfie.data),
            )
            mask_result = await self._call(
                identity_id,
                "check_face_mask",
                lambda: self.provider.check_face_mask(primary_face.id),
            )
            outcome.face_detection = FaceDetectionResult(
                id=primary_face.id,
                detection=primary_face.detection,
                mask_result=mask_result,
            )
            await self.audit.step(
                identity_id,
                "face_detection",
                fields={"face_detection": outcome.face_detection},
                payload={"image": images.primary_selfie.describe()},
            )

            logger.info("STEP 5: Comparing document portrait with selfie")
            match = await self._resolve_face_match(identity_id, images, primary_face)
            outcome.face_comparison = match.to_result()
            logger.info(
                f"   Face match ({match.strategy}): {outcome.face_comparison.score * 100:.1f}%"
            )
            await self.audit.step(
                identity_id,
                "face_comparison",
                fields={"face_comparison": outcome.face_comparison},
                payload={"strategy": match.strategy, "image": images.primary_selfie.describe()},
            )

            logger.info("STEP 6: Evaluating liveness")
            outcome.liveness_check = await self._evaluate_liveness(identity_id, match, outcome, images, request)
            await self.audit.step(
                identity_id,
                "liveness",
                fields={"liveness_result": outcome.liveness_check},
                payload={"status": outcome.liveness_check.status},
            )

            logger.info("STEP 7: Applying decision policy")
            await self._decide(outcome)

        except Exception as error:
            failure = UnhandledRunError.from_exception(error)
            logger.error(f"KYC verification error: {failure.message}", exc_info=True)

            if outcome is not None and not outcome.is_finalized:
                outcome.finalize(
                    VerificationStatus.FAILED,
                    decline_reason=DeclineReason.VERIFICATION_FAILED.value,
                    message=failure.message,
                )

            if identity_id is not None:
                await self.audit.error(
                    identity_id,
                    failure.message,
                    code=str(failure.status_code) if failure.status_code is not None else None,
                    mark_failed=True,
                    context=failure.payload if failure.payload is not None else {"message": failure.message},
                )

            return self._finish(
                outcome,
                reason=DeclineReason.VERIFICATION_FAILED.value,
                message=failure.message,
                user_identifier=user_id or external_id,
            )

        return self._finish(outcome)

    def _finish(
        self,
        outcome: Optional[VerificationOutcome],
        reason: Optional[str] = None,
        message: Optional[str] = None,
        user_identifier: Optional[str] = None,
    ) -> VerificationRunResult:
        results = serialize_outcome(outcome)
        event = self.emitter.emit(
            outcome, reason=reason, message=message, user_identifier=user_identifier, details=results
        )
        return VerificationRunResult(event=event, outcome=outcome, results=results)

    # ==================== HELPERS ====================

    async def _call(self, identity_id: str, stage: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a provider call under the retry policy, auditing every retry"""

        async def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            await self.audit.retry(
                identity_id,
                stage,
                context={
                    "attempt": attempt,
                    "delay": delay,
                    "message": str(error),
                    "status": getattr(error, "status_code", None),
                },
            )

        return await with_retry(operation, self.policy.retry.with_hooks(on_retry=on_retry))

    async def _archive_images(
        self, identity_id: str, named_images: Dict[str, Optional[NormalizedImage]]
    ) -> Dict[str, Optional[Dict[str, Any]]]:
        """Store submitted images; a failed upload leaves its entry None and never fails the run"""
        if self.archive is None:
            return {}

        archived: Dict[str, Optional[Dict[str, Any]]] = {}
        for label, image in named_images.items():
            if image is None:
                continue
            try:
                stored = await self.archive.archive(
                    image, f"{identity_id}/{label}", tags={"identity": identity_id, "image": label}
                )
                archived[label] = stored.to_dict()
            except Exception as e:
                logger.warning(f"⚠️ Could not archive {label} for {identity_id}: {str(e)}")
                archived[label] = None
        return archived

    def _prepare_images(self, request: VerificationInput) -> PreparedImages:
        front = normalize_image(request.front_document_image)
        back = normalize_image(request.back_document_image) if _is_present(request.back_document_image) else None
        primary_selfie = normalize_image(request.selfie_image)

        supplemental: List[NormalizedImage] = []
        for index, raw in enumerate(request.supplemental_selfies, start=1):
            try:
                supplemental.append(normalize_image(raw))
            except InvalidImageError as selfie_error:
                logger.warning(f"Skipping invalid supplemental selfie #{index}: {str(selfie_error)}")

        return PreparedImages(
            front=front,
            back=back,
            primary_selfie=primary_selfie,
            supplemental_selfies=supplemental,
        )

    # ==================== DOCUMENT ====================

    async def _verify_document(
        self,
        identity_id: str,
        images: PreparedImages,
        request: VerificationInput,
    ) -> DocumentVerificationResult:
        document = await self._call(
            identity_id,
            "document_create_document",
            lambda: self.provider.submit_document(
                identity_id,
                DEFAULT_DOCUMENT_SOURCES,
                document_type=request.document_type,
                issuing_country=request.issuing_country,
            ),
        )

        pages = [
            await self._call(
                identity_id,
                "document_upload_page_front",
                lambda: self.provider.submit_document_page(identity_id, images.front.data, "front"),
            )
        ]

        if images.back is not None:
            pages.append(
                await self._call(
                    identity_id,
                    "document_upload_page_back",
                    lambda: self.provider.submit_document_page(identity_id, images.back.data, "back"),
                )
            )

        inspection = await self._call(
            identity_id,
            "document_inspect_document",
            lambda: self.provider.inspect_document(identity_id),
        )

        disclosed_inspection = None
        try:
            disclosed_inspection = await self._call(
                identity_id,
                "document_disclose_inspection",
                lambda: self.provider.disclose_inspection(identity_id),
            )
        except Exception as disclose_error:
            logger.warning(f"Document inspection disclosure failed: {str(disclose_error)}")

        summary = summarize_document_pages(pages)
        logger.info(
            f"✅ Document verified: type={summary.document_type}, country={summary.issuing_country}, "
            f"warnings={len(summary.warnings)}, errors={len(summary.errors)}"
        )

        return DocumentVerificationResult(
            document=document,
            summary=summary,
            pages=pages,
            inspection=inspection,
            disclosed_inspection=disclosed_inspection,
        )

    # ==================== FACE MATCH ====================

    async def _resolve_face_match(
        self,
        identity_id: str,
        images: PreparedImages,
        primary_face: FaceDetection,
    ) -> FaceMatchStrategy:
        inspection: Optional[IdentityInspection] = None
        try:
            inspection = await self._call(
                identity_id,
                "inspect_identity",
                lambda: self.provider.inspect_identity(identity_id),
            )
        except Exception as inspection_error:
            logger.warning(f"Identity inspection unavailable, using manual comparison: {str(inspection_error)}")

        if inspection is not None and inspection.face_match_score is not None:
            return InspectionMatch(score=inspection.face_match_score, inspection=inspection)

        if inspection is not None:
            logger.info("Identity inspection has no face match score, using manual comparison")

        scores = await self._compare_manually(identity_id, images, primary_face)
        if not scores:
            raise UnhandledRunError("Face comparison produced no similarity scores")

        return ManualMatch(scores=tuple(scores), inspection=inspection)

    async def _compare_manually(
        self,
        identity_id: str,
        images: PreparedImages,
        primary_face: FaceDetection,
    ) -> List[float]:
        document_face = await self._call(
            identity_id,
            "detect_document_face",
            lambda: self.provider.detect_face(images.front.data),
        )
        template = await self._call(
            identity_id,
            "get_face_template",
            lambda: self.provider.get_face_template(document_face.id),
        )

        scores: List[float] = []

        primary_score = await self._compare_selfie(identity_id, "primary", primary_face.id, template.data)
        if primary_score is not None:
            scores.append(primary_score)

        for index, frame in enumerate(images.supplemental_selfies, start=1):
            label = f"selfie_{index}"
            try:
                face = await self._call(
                    identity_id,
                    f"detect_{label}_face",
                    lambda: self.provider.detect_face(frame.data),
                )
            except Exception as detect_error:
                logger.warning(f"Skipping supplemental {label}: face detection failed ({str(detect_error)})")
                continue

            frame_score = await self._compare_selfie(identity_id, label, face.id, template.data)
            if frame_score is not None:
                scores.append(frame_score)

        return scores

    async def _compare_selfie(
        self, identity_id: str, label: str, face_id: str, reference_template: str
    ) -> Optional[float]:
        try:
            similarity = await self._call(
                identity_id,
                f"compare_{label}",
                lambda: self.provider.compare_faces(face_id, reference_template),
            )
        except Exception as compare_error:
            logger.warning(f"Face comparison for {label} failed: {str(compare_error)}")
            return None

        if not math.isfinite(similarity.score) or not 0.0 <= similarity.score <= 1.0:
            logger.warning(f"Ignoring out-of-range similarity for {label}: {similarity.score}")
            return None

        logger.info(f"   Similarity {label} → document: {similarity.score:.3f}")
        return similarity.score

    # ==================== LIVENESS ====================

    async def _evaluate_liveness(
        self,
        identity_id: str,
        match: FaceMatchStrategy,
        outcome: VerificationOutcome,
        images: PreparedImages,
        request: VerificationInput,
    ) -> LivenessResult:
        inspection = match.inspection
        if inspection is None:
            try:
                inspection = await self._call(
                    identity_id,
                    "inspect_identity",
                    lambda: self.provider.inspect_identity(identity_id),
                )
            except Exception as inspection_error:
                logger.warning(f"Identity inspection unavailable for liveness: {str(inspection_error)}")

        indicators = self._liveness_indicators(inspection, outcome)

        if indicators.has_mask:
            logger.info("Face mask detected, selfie is not live")
            return LivenessResult(status=LivenessStatus.NOT_LIVE, confidence=0.0, indicators=indicators)

        result = LivenessResult(
            status=LivenessStatus.LIVE,
            confidence=self.policy.heuristic_liveness_confidence,
            indicators=indicators,
        )

        if self.policy.liveness_mode == LivenessMode.CHALLENGE:
            result = await self._extended_liveness(identity_id, images, request, result)

        return result

    def _liveness_indicators(
        self, inspection: Optional[IdentityInspection], outcome: VerificationOutcome
    ) -> LivenessIndicators:
        selfie_block = inspection.selfie_inspection if inspection is not None else None

        if selfie_block is not None and selfie_block.has_mask is not None:
            has_mask = selfie_block.has_mask
        elif outcome.face_detection is not None:
            # no inspection verdict, fall back to the face-mask check of the selfie
            has_mask = outcome.face_detection.mask_result.score >= self.policy.face_mask_threshold
        else:
            has_mask = False

        return LivenessIndicators(
            has_mask=has_mask,
            face_quality=selfie_block.face_quality if selfie_block is not None else None,
        )

    async def _extended_liveness(
        self,
        identity_id: str,
        images: PreparedImages,
        request: VerificationInput,
        heuristic: LivenessResult,
    ) -> LivenessResult:
        frames = [images.primary_selfie.data] + [frame.data for frame in images.supplemental_selfies]
        try:
            evaluation = await self._call(
                identity_id,
                "evaluate_liveness",
                lambda: self.provider.evaluate_liveness(
                    identity_id,
                    selfies=frames,
                    challenge_type=request.challenge_type,
                    deepfake_check=self.policy.deepfake_check,
                ),
            )
        except Exception as liveness_error:
            logger.warning(f"Extended liveness evaluation failed, keeping heuristic result: {str(liveness_error)}")
            return heuristic

        status = LivenessStatus(evaluation.status)
        if evaluation.is_deepfake and status == LivenessStatus.LIVE:
            status = LivenessStatus.SUSPICIOUS

        return LivenessResult(
            status=status,
            confidence=min(max(evaluation.confidence, 0.0), 1.0),
            is_deepfake=evaluation.is_deepfake,
            deepfake_confidence=evaluation.deepfake_confidence,
            indicators=heuristic.indicators,
            method=LivenessMode.CHALLENGE,
        )

    # ==================== DECISION ====================

    async def _decide(self, outcome: VerificationOutcome) -> None:
        threshold = self.policy.face_match_threshold
        score = outcome.face_comparison.score
        liveness = outcome.liveness_check

        failed: List[str] = []
        messages: List[str] = []

        if score < threshold:
            failed.append(DeclineReason.FACE_MATCH_FAILED.value)
            messages.append(f"Face match score {score:.2f} is below the {threshold:.2f} threshold")

        if liveness.status != LivenessStatus.LIVE:
            failed.append(DeclineReason.LIVENESS_FAILED.value)
            messages.append(f"Liveness check returned {liveness.status.value}")

        if failed:
            reason = "|".join(failed)
            message = "; ".join(messages)
            outcome.finalize(VerificationStatus.FAILED, decline_reason=reason, message=message)
            await self.audit.error(
                outcome.identity_id,
                message,
                code=reason,
                mark_failed=True,
                context={"face_match_score": score, "liveness_status": liveness.status},
            )
            return

        await self._call(
            outcome.identity_id,
            "link_external_id",
            lambda: self.provider.link_external_id(
                outcome.identity_id, outcome.external_id, RemoteOnboardingStatus.FINISHED.value
            ),
        )
        outcome.finalize(VerificationStatus.COMPLETED)
        await self.audit.finished(outcome.identity_id)
        logger.info(f"✅ KYC VERIFICATION COMPLETE for identity {outcome.identity_id}")
