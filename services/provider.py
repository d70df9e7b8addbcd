# app/services/provider.py
"""
Capability surface the orchestrator needs from a verification provider.

`create_identity` is not idempotent and must be called at most once per run.
`link_external_id` is last-write-wins on the provider side. Every operation
raises `RemoteCallError` on failure.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

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

DEFAULT_DOCUMENT_SOURCES = ("VIZ", "MRZ", "DOCUMENT_PORTRAIT")


class VerificationProvider(Protocol):
    async def create_identity(self) -> Identity: ...

    async def link_external_id(self, identity_id: str, external_id: str, status: str) -> None: ...

    async def submit_document(
        self,
        identity_id: str,
        sources: Iterable[str] = DEFAULT_DOCUMENT_SOURCES,
        document_type: Optional[str] = None,
        issuing_country: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]: ...

    async def submit_document_page(
        self, identity_id: str, image: bytes, page_role: str
    ) -> DocumentPageResult: ...

    async def inspect_document(self, identity_id: str) -> Optional[Dict[str, Any]]: ...

    async def disclose_inspection(self, identity_id: str) -> Optional[Dict[str, Any]]: ...

    async def upload_selfie(self, identity_id: str, image: bytes) -> SelfieUpload: ...

    async def detect_face(self, image: bytes) -> FaceDetection: ...

    async def get_face_template(self, face_id: str) -> FaceTemplate: ...

    async def compare_faces(self, face_id: str, reference_template: str) -> FaceSimilarity: ...

    async def check_face_mask(self, face_id: str) -> FaceMaskResult: ...

    async def inspect_identity(self, identity_id: str) -> IdentityInspection: ...

    async def evaluate_liveness(
        self,
        identity_id: str,
        selfies: Optional[List[bytes]] = None,
        challenge_type: Optional[str] = None,
        deepfake_check: bool = False,
    ) -> LivenessEvaluation: ...
