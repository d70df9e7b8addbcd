# app/services/innovatrics_service.py
"""
Innovatrics Digital Identity Service client.

Implements the VerificationProvider capability surface used by the
orchestrator: customer lifecycle, document pages, face detection and
comparison, customer inspection and liveness evaluation.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from config import settings
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
from services.provider import DEFAULT_DOCUMENT_SOURCES
from utils.exceptions import RemoteCallError, RemoteErrorKind

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_LIVENESS_EVALUATION_TYPES = {
    "passive": "PASSIVE_LIVENESS",
    "expression": "SMILE_LIVENESS",
    "motion": "EYE_GAZE_LIVENESS",
}


class InnovatricsService:
    """
    Innovatrics DIS integration. Calls are made with `requests` on a worker
    thread so a slow provider never blocks the event loop.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        bearer_token: Optional[str] = None,
        host: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.INNOVATRICS_BASE_URL).rstrip('/')  # Ensure no trailing slash
        self.bearer_token = bearer_token if bearer_token is not None else settings.INNOVATRICS_BEARER_TOKEN
        self.host = host if host is not None else settings.INNOVATRICS_HOST
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.session = session or requests.Session()

    def close(self) -> None:
        """Release pooled connections; called once at application shutdown"""
        self.session.close()

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            'Authorization': f'Bearer {self.bearer_token}',
            'Accept': 'application/json',
        }
        if self.host:
            headers['Host'] = self.host
        return headers

    @staticmethod
    def _image_payload(image: bytes) -> Dict[str, str]:
        return {'data': base64.b64encode(image).decode('ascii')}

    @staticmethod
    def _parse_response_body(response: requests.Response) -> Any:
        if response.status_code == 204 or response.headers.get('Content-Length') == '0':
            return None

        content_type = response.headers.get('Content-Type', '')
        if 'application/json' in content_type:
            try:
                return response.json()
            except ValueError:
                return None

        text = response.text
        return text if text else None

    @staticmethod
    def _as_dict(payload: Any) -> Optional[Dict[str, Any]]:
        if payload is None:
            return None
        if isinstance(payload, dict):
            return payload
        return {'raw': payload}

    @staticmethod
    def _parse(model: Type[ModelT], payload: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(payload if payload is not None else {})
        except ValidationError as validation_error:
            logger.error(f"❌ Unexpected {operation} response: {validation_error}")
            raise RemoteCallError(
                f"Unexpected {operation} response from Innovatrics",
                kind=RemoteErrorKind.INVALID_RESPONSE,
                payload=payload,
                operation=operation,
            ) from validation_error

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        kwargs: Dict[str, Any] = {
            'headers': self._build_headers(),
            'timeout': self.timeout,
        }
        if body is not None:
            kwargs['json'] = body

        logger.debug(f"Innovatrics {method} {path} ({operation})")

        try:
            response = await asyncio.to_thread(self.session.request, method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout: Innovatrics {operation} took longer than {self.timeout}s - {str(e)}")
            raise RemoteCallError(
                'Request timed out', kind=RemoteErrorKind.TIMEOUT, operation=operation
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Connection Error: Cannot reach Innovatrics API at {self.base_url} - {str(e)}")
            raise RemoteCallError(
                f"Connection error: {str(e)}", kind=RemoteErrorKind.NETWORK, operation=operation
            ) from e

        payload = self._parse_response_body(response)

        if not response.ok:
            error_msg = f"Request failed with status {response.status_code}"
            if isinstance(payload, dict):
                if payload.get('errorMessage'):
                    error_msg += f" - {payload['errorMessage']}"
                if payload.get('errorCode'):
                    error_msg += f" (Code: {payload['errorCode']})"

            if response.status_code == 401:
                logger.error("⚠️ 401 UNAUTHORIZED - Verify INNOVATRICS_BEARER_TOKEN in .env")
            elif response.status_code == 404:
                logger.error(f"⚠️ 404 NOT FOUND - {path} does not exist or has expired")

            logger.error(f"❌ Innovatrics {operation} failed: {error_msg}")
            raise RemoteCallError(
                error_msg,
                kind=RemoteErrorKind.HTTP_STATUS,
                status_code=response.status_code,
                payload=payload,
                operation=operation,
            )

        return payload

    # ==================== CUSTOMER LIFECYCLE ====================

    async def create_identity(self) -> Identity:
        payload = await self._request('POST', '/customers', 'create_identity')
        identity = self._parse(Identity, payload, 'create_identity')
        logger.info(f"✅ Innovatrics customer created: {identity.id}")
        return identity

    async def link_external_id(self, identity_id: str, external_id: str, status: str) -> None:
        await self._request(
            'POST',
            f'/customers/{identity_id}/store',
            'link_external_id',
            body={'externalId': external_id, 'onboardingStatus': status},
        )
        logger.info(f"Customer {identity_id} linked to {external_id} ({status})")

    async def inspect_identity(self, identity_id: str) -> IdentityInspection:
        payload = await self._request('POST', f'/customers/{identity_id}/inspect', 'inspect_identity')
        return self._parse(IdentityInspection, payload, 'inspect_identity')

    # ==================== DOCUMENT ====================

    async def submit_document(
        self,
        identity_id: str,
        sources: Iterable[str] = DEFAULT_DOCUMENT_SOURCES,
        document_type: Optional[str] = None,
        issuing_country: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        body: Dict[str, Any] = {'sources': list(sources)}

        classification: Dict[str, List[str]] = {}
        if document_type:
            classification['types'] = [document_type]
        if issuing_country:
            classification['countries'] = [issuing_country]
        if classification:
            body['advice'] = {'classification': classification}

        payload = await self._request('PUT', f'/customers/{identity_id}/document', 'submit_document', body=body)
        return self._as_dict(payload)

    async def submit_document_page(self, identity_id: str, image: bytes, page_role: str) -> DocumentPageResult:
        logger.info(f"Document page upload - {page_role} ({len(image)} bytes)")
        payload = await self._request(
            'PUT',
            f'/customers/{identity_id}/document/pages',
            f'upload_page_{page_role}',
            body={
                'image': self._image_payload(image),
                'advice': {'classification': {'pageTypes': [page_role]}},
            },
        )
        return self._parse(DocumentPageResult, payload, f'upload_page_{page_role}')

    async def inspect_document(self, identity_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request('POST', f'/customers/{identity_id}/document/inspect', 'inspect_document')
        return self._as_dict(payload)

    async def disclose_inspection(self, identity_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            'POST', f'/customers/{identity_id}/document/inspect/disclose', 'disclose_inspection'
        )
        return self._as_dict(payload)

    # ==================== SELFIE & FACES ====================

    async def upload_selfie(self, identity_id: str, image: bytes) -> SelfieUpload:
        payload = await self._request(
            'PUT',
            f'/customers/{identity_id}/selfie',
            'upload_selfie',
            body={'image': self._image_payload(image)},
        )
        selfie = self._parse(SelfieUpload, payload, 'upload_selfie')
        if not selfie.id:
            selfie.id = identity_id
        return selfie

    async def detect_face(self, image: bytes) -> FaceDetection:
        payload = await self._request('POST', '/faces', 'detect_face', body={'image': self._image_payload(image)})
        return self._parse(FaceDetection, payload, 'detect_face')

    async def get_face_template(self, face_id: str) -> FaceTemplate:
        payload = await self._request('GET', f'/faces/{face_id}/face-template', 'get_face_template')
        return self._parse(FaceTemplate, payload, 'get_face_template')

    async def compare_faces(self, face_id: str, reference_template: str) -> FaceSimilarity:
        payload = await self._request(
            'POST',
            f'/faces/{face_id}/similarity',
            'compare_faces',
            body={'referenceFaceTemplate': reference_template},
        )
        return self._parse(FaceSimilarity, payload, 'compare_faces')

    async def check_face_mask(self, face_id: str) -> FaceMaskResult:
        payload = await self._request('GET', f'/faces/{face_id}/face-mask', 'check_face_mask')
        return self._parse(FaceMaskResult, payload, 'check_face_mask')

    # ==================== LIVENESS ====================

    async def evaluate_liveness(
        self,
        identity_id: str,
        selfies: Optional[List[bytes]] = None,
        challenge_type: Optional[str] = None,
        deepfake_check: bool = False,
    ) -> LivenessEvaluation:
        """
        Challenge-based liveness: create the liveness record, attach the
        selfie frames, evaluate and optionally run the deepfake extension.
        A failing deepfake evaluation leaves the base result untouched.
        """
        await self._request('PUT', f'/customers/{identity_id}/liveness', 'create_liveness')

        for selfie in selfies or []:
            await self._request(
                'POST',
                f'/customers/{identity_id}/liveness/selfies',
                'upload_liveness_selfie',
                body={'image': self._image_payload(selfie)},
            )

        evaluation_type = _LIVENESS_EVALUATION_TYPES.get(challenge_type or 'passive', 'PASSIVE_LIVENESS')
        payload = await self._request(
            'POST',
            f'/customers/{identity_id}/liveness/evaluation',
            'evaluate_liveness',
            body={'type': evaluation_type},
        )
        base_result = self._as_dict(payload) or {}
        if 'confidence' not in base_result and 'score' in base_result:
            base_result = {**base_result, 'confidence': base_result['score']}
        evaluation = self._parse(LivenessEvaluation, base_result, 'evaluate_liveness')

        if deepfake_check:
            try:
                deepfake_payload = await self._request(
                    'POST',
                    f'/customers/{identity_id}/liveness/evaluation/extended',
                    'evaluate_deepfake',
                    body={'type': 'DEEPFAKE', 'livenessResources': ['PASSIVE']},
                )
                deepfake = self._as_dict(deepfake_payload) or {}
                evaluation.is_deepfake = deepfake.get('isDeepfake')
                evaluation.deepfake_confidence = deepfake.get('confidence')
            except RemoteCallError as deepfake_error:
                logger.warning(f"Deepfake evaluation failed: {deepfake_error.message}")

        logger.info(f"Liveness evaluated for {identity_id}: {evaluation.status} ({evaluation.confidence:.2f})")
        return evaluation
