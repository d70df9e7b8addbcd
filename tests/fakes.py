# tests/fakes.py
import base64
from typing import Any, Dict, List, Optional

from models.provider import (
    DocumentPageResult,
    FaceDetection,
    FaceMaskResult,
    FaceSimilarity,
    FaceTemplate,
    Identity,
    IdentityInspection,
    LivenessEvaluation,
    SelfieUpload,
)
from models.schemas import AuditEventType, VerificationInput
from services.image_archive import ArchivedImage, ImageArchiveError
from services.verification_orchestrator import OrchestratorPolicy
from utils.exceptions import RemoteCallError
from utils.retry import RetryPolicy

JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x11" * 32
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x22" * 32


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def jpeg_data_uri(marker: bytes = b"") -> str:
    return "data:image/jpeg;base64," + b64(JPEG_BYTES + marker)


def make_input(**overrides) -> VerificationInput:
    values: Dict[str, Any] = {
        "front_document_image": jpeg_data_uri(b"front"),
        "back_document_image": jpeg_data_uri(b"back"),
        "selfie_image": jpeg_data_uri(b"selfie"),
        "user_id": "user-123",
    }
    values.update(overrides)
    return VerificationInput(**values)


def fast_policy(**overrides) -> OrchestratorPolicy:
    values: Dict[str, Any] = {"retry": RetryPolicy(initial_delay=0.0, max_delay=0.0)}
    values.update(overrides)
    return OrchestratorPolicy(**values)


def http_error(status_code: int, message: str = "provider error") -> RemoteCallError:
    return RemoteCallError(message, status_code=status_code, payload={"errorMessage": message})


def inspection_with(score: Any = 0.9, has_mask: Optional[bool] = False) -> IdentityInspection:
    payload: Dict[str, Any] = {"selfieInspection": {"hasMask": has_mask, "faceQuality": "GOOD"}}
    if score is not None:
        payload["faceMatch"] = {"score": score}
    return IdentityInspection.model_validate(payload)


class FakeProvider:
    """
    In-memory VerificationProvider.

    `failures` maps an operation name to errors raised on its next calls, in
    order; once drained the operation succeeds. `inspection` may be an
    IdentityInspection or an exception raised on every inspection call.
    `similarity_scores` are returned by compare_faces in order (an exception
    entry is raised instead).
    """

    def __init__(
        self,
        inspection: Any = None,
        similarity_scores: Optional[List[Any]] = None,
        mask_score: float = 0.0,
        failures: Optional[Dict[str, List[BaseException]]] = None,
        liveness: Any = None,
    ):
        self.inspection = inspection if inspection is not None else inspection_with()
        self.similarity_scores = list(similarity_scores or [])
        self.mask_score = mask_score
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.liveness = liveness
        self.calls: List[tuple] = []
        self._face_counter = 0

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def calls_to(self, name: str) -> List[tuple]:
        return [call[1] for call in self.calls if call[0] == name]

    def _enter(self, name: str, *args) -> None:
        self.calls.append((name, args))
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    async def create_identity(self) -> Identity:
        self._enter("create_identity")
        return Identity(id="identity-1")

    async def link_external_id(self, identity_id: str, external_id: str, status: str) -> None:
        self._enter("link_external_id", identity_id, external_id, status)

    async def submit_document(self, identity_id, sources=(), document_type=None, issuing_country=None):
        self._enter("submit_document", identity_id, tuple(sources), document_type, issuing_country)
        return {"links": {"pages": f"/customers/{identity_id}/document/pages"}}

    async def submit_document_page(self, identity_id: str, image: bytes, page_role: str) -> DocumentPageResult:
        self._enter("submit_document_page", identity_id, image, page_role)
        warnings = ["DOCUMENT_TOO_SMALL"] if page_role == "front" else ["DOCUMENT_TOO_SMALL", "GLARE"]
        return DocumentPageResult.model_validate({
            "pageType": page_role,
            "documentType": {"type": "passport", "issuingCountry": "SVK"},
            "warnings": warnings,
        })

    async def inspect_document(self, identity_id: str):
        self._enter("inspect_document", identity_id)
        return {"expired": False}

    async def disclose_inspection(self, identity_id: str):
        self._enter("disclose_inspection", identity_id)
        return {"visualZone": {"ok": True}}

    async def upload_selfie(self, identity_id: str, image: bytes) -> SelfieUpload:
        self._enter("upload_selfie", identity_id, image)
        return SelfieUpload(id=identity_id)

    async def detect_face(self, image: bytes) -> FaceDetection:
        self._enter("detect_face", image)
        self._face_counter += 1
        return FaceDetection(id=f"face-{self._face_counter}", detection={"confidence": 0.99})

    async def get_face_template(self, face_id: str) -> FaceTemplate:
        self._enter("get_face_template", face_id)
        return FaceTemplate(data="template-data", version="1.0")

    async def compare_faces(self, face_id: str, reference_template: str) -> FaceSimilarity:
        self._enter("compare_faces", face_id, reference_template)
        score = self.similarity_scores.pop(0) if self.similarity_scores else 0.0
        if isinstance(score, BaseException):
            raise score
        return FaceSimilarity(score=score)

    async def check_face_mask(self, face_id: str) -> FaceMaskResult:
        self._enter("check_face_mask", face_id)
        return FaceMaskResult(score=self.mask_score)

    async def inspect_identity(self, identity_id: str) -> IdentityInspection:
        self._enter("inspect_identity", identity_id)
        if isinstance(self.inspection, BaseException):
            raise self.inspection
        return self.inspection

    async def evaluate_liveness(self, identity_id, selfies=None, challenge_type=None, deepfake_check=False):
        self._enter("evaluate_liveness", identity_id, list(selfies or []), challenge_type, deepfake_check)
        if isinstance(self.liveness, BaseException):
            raise self.liveness
        return self.liveness or LivenessEvaluation(status="live", confidence=0.97, is_deepfake=False)


class InMemoryAuditRecorder:
    """Like the Mongo recorder, writes for an identity without a record are dropped"""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []

    def events_of(self, event_type: AuditEventType) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]

    async def initialize_record(self, user_id, external_id, identity_id):
        self.records[identity_id] = {
            "identity_id": identity_id,
            "user_id": user_id,
            "external_id": external_id,
            "status": "IN_PROGRESS",
            "retry_count": 0,
        }
        await self.record_event(identity_id, AuditEventType.STATUS_CHANGE, {"status": "IN_PROGRESS"})

    async def record_event(self, identity_id, event_type, payload):
        self.events.append({"identity_id": identity_id, "type": AuditEventType(event_type), "payload": payload})

    async def record_step(self, identity_id, step, fields, payload=None):
        if identity_id not in self.records:
            return
        self.records[identity_id].update(fields)
        await self.record_event(identity_id, AuditEventType.STEP_RESULT, {"step": step, **(payload or {})})

    async def mark_finished(self, identity_id):
        if identity_id not in self.records:
            return
        self.records[identity_id]["status"] = "FINISHED"
        await self.record_event(identity_id, AuditEventType.STATUS_CHANGE, {"status": "FINISHED"})

    async def record_error(self, identity_id, message, code=None, mark_failed=False, context=None):
        record = self.records.get(identity_id)
        if record is None:
            return
        record.update({"last_error_code": code, "last_error_message": message})
        if mark_failed:
            record["status"] = "FAILED"
        await self.record_event(
            identity_id, AuditEventType.ERROR, {"code": code, "message": message, "context": context}
        )

    async def record_retry(self, identity_id, reason, context=None):
        record = self.records.get(identity_id)
        if record is None:
            return
        record["retry_count"] = record.get("retry_count", 0) + 1
        await self.record_event(identity_id, AuditEventType.RETRY, {"reason": reason, "context": context})


class FailingAuditRecorder:
    """Every write blows up"""

    def __init__(self):
        self.attempts = 0

    def _fail(self):
        self.attempts += 1
        raise RuntimeError("audit store down")

    async def initialize_record(self, user_id, external_id, identity_id):
        self._fail()

    async def record_event(self, identity_id, event_type, payload):
        self._fail()

    async def record_step(self, identity_id, step, fields, payload=None):
        self._fail()

    async def mark_finished(self, identity_id):
        self._fail()

    async def record_error(self, identity_id, message, code=None, mark_failed=False, context=None):
        self._fail()

    async def record_retry(self, identity_id, reason, context=None):
        self._fail()


class FakeImageArchive:
    """Stores archived images in memory; names listed in `failing` raise instead"""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.stored: Dict[str, Any] = {}

    async def archive(self, image, name, tags=None) -> ArchivedImage:
        label = name.rsplit("/", 1)[-1]
        if label in self.failing:
            raise ImageArchiveError(f"Could not archive {name}: bucket unavailable")
        self.stored[name] = {"data": image.data, "tags": tags}
        return ArchivedImage(
            url=f"https://kyc-archive.s3.eu-central-1.amazonaws.com/{name}.jpg",
            key=f"{name}.jpg",
            bucket="kyc-archive",
            bytes=image.size,
            mime_type=image.mime_type,
        )
